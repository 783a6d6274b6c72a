"""
Scanner payload cleanup.

Checks:
1. sanitize() strips control characters and repairs doubled tokens / stutter
2. sanitize() is idempotent, including on empty and junk input
3. interpret() pulls studentNo / id out of loosely quoted object payloads
4. canonical_identifier() never turns a non-empty scan into ''
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent))

from kiosk.scan_payload import canonical_identifier, interpret, sanitize

SAMPLES = [
    "",
    "2023-1001",
    "ab\x00\x1Fcd",
    '{{""key""::""value""}}',
    "SS2255--228811111155",
    "{studentNo: '2023-1001', id: 'abc'}",
    "  spaced out  ",
    "\x7f\x9f",
    "a__b--c",
    "{{{,,,:::}}}",
    "AAAAAA",
    "ééé-café",
]


def test_strips_control_chars():
    assert sanitize("ab\x00\x1Fcd") == "abcd"
    assert sanitize("\x7fab\x85c\x9f") == "abc"


def test_collapses_doubled_tokens():
    assert sanitize('{{""key""::""value""}}') == '{"key":"value"}'
    assert sanitize("a,,b") == "a,b"


def test_collapses_runs_and_dashes():
    assert sanitize("SS2255--228811111155") == "SS2255-2288155"
    assert sanitize("2023__1001") == "2023-1001"
    # two of a kind survive
    assert sanitize("2023-1001") == "2023-1001"


def test_trims_and_handles_empty():
    assert sanitize("   2023-1001 \r\n") == "2023-1001"
    assert sanitize("") == ""
    assert sanitize(None) == ""  # type: ignore[arg-type]


def test_sanitize_is_idempotent():
    for s in SAMPLES:
        once = sanitize(s)
        assert sanitize(once) == once, f"not idempotent for {s!r}: {once!r}"


def test_interpret_loose_object():
    assert interpret('{studentNo: "2023-0001"}') == "2023-0001"
    assert interpret("{'studentNo': '2023-1001', 'id': 'abc'}") == "2023-1001"


def test_interpret_prefers_student_no_then_id():
    assert interpret('{"id": "abc", "studentNo": "2023-1001"}') == "2023-1001"
    assert interpret("{id: 'abc'}") == "abc"
    assert interpret("{id: 42}") == "42"


def test_interpret_object_without_known_fields():
    assert interpret('{"name": "Ana"}') == '{"name":"Ana"}'


def test_interpret_passthrough():
    assert interpret("2023-1001") == "2023-1001"
    assert interpret("{not json at all") == "{not json at all"
    assert interpret("{broken: }") == "{broken: }"
    assert interpret("") == ""


def test_canonical_identifier_pipeline():
    assert canonical_identifier("  {{studentNo:: '2023-1001'}}\r") == "2023-1001"
    assert canonical_identifier("2023-1002") == "2023-1002"


def test_canonical_identifier_never_empty():
    # all noise: the raw scan is sent rather than nothing
    assert canonical_identifier(" \x00\x01 ") == "\x00\x01"
    assert canonical_identifier("") == ""


if __name__ == "__main__":
    for name, fn in list(globals().items()):
        if name.startswith("test_") and callable(fn):
            fn()
            print(f"[OK] {name}")
    print("[PASS] scan payload tests passed")
