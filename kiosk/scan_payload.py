"""
Scan payload cleanup.

Desktop scanners emulate a keyboard, and cheap ones misbehave: they leak
control codes, fire keys twice, or stutter on a single character. Some ID
cards also carry a small object-like payload instead of a bare number, e.g.

    {studentNo: '2023-0001', id: 'abc'}

sanitize()   repairs the raw string (never fails)
interpret()  pulls the identifier out of a structured payload (never fails)
canonical_identifier()  both, plus the non-empty guarantee the resolver relies on
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

log = logging.getLogger("kiosk.payload")

_CONTROL_CHARS = re.compile(r"[\x00-\x1F\x7F-\x9F]")
_DOUBLED_TOKENS = (
    (re.compile(r"\{\{+"), "{"),
    (re.compile(r"\}\}+"), "}"),
    (re.compile(r'""+'), '"'),
    (re.compile(r"::+"), ":"),
    (re.compile(r",,+"), ","),
)
_STUTTER_RUN = re.compile(r"(.)\1{2,}")
_DASH_RUN = re.compile(r"[-_]{2,}")

# loosely quoted keys:  studentNo:  'studentNo':  "studentNo" :
_LOOSE_KEY = re.compile(r"""(['"]?)([A-Za-z0-9_]+)\1\s*:""")

PREFERRED_FIELDS = ("studentNo", "id")


def sanitize(raw: str) -> str:
    """Repair a raw scanner string. Idempotent; non-strings come back as ''."""
    if not isinstance(raw, str) or not raw:
        return ""
    out = _CONTROL_CHARS.sub("", raw)
    for pattern, repl in _DOUBLED_TOKENS:
        out = pattern.sub(repl, out)
    out = _STUTTER_RUN.sub(r"\1", out)
    out = _DASH_RUN.sub("-", out)
    return out.strip()


def _as_identifier(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def interpret(sanitized: str) -> str:
    """
    Return the identifier carried by `sanitized`.

    Object-like payloads yield studentNo, else id, else the whole object as
    compact JSON. Anything that does not parse comes back unchanged.
    """
    s = sanitized if isinstance(sanitized, str) else ""
    if not (s.startswith("{") and s.endswith("}")):
        return s

    normalized = _LOOSE_KEY.sub(r'"\2":', s).replace("'", '"')
    try:
        parsed = json.loads(normalized)
    except (ValueError, RecursionError) as e:
        log.debug("payload_unparsed", extra={"payload": s, "err": str(e)})
        return s
    if not isinstance(parsed, dict):
        return s

    for key in PREFERRED_FIELDS:
        value = parsed.get(key)
        if value:
            return _as_identifier(value)
    return _as_identifier(parsed)


def canonical_identifier(code: str) -> str:
    """ScanCode -> identifier for the resolver. Non-empty in, non-empty out."""
    ident = interpret(sanitize(code))
    if ident:
        return ident
    # everything was stripped as noise; send what was scanned rather than nothing
    return code.strip() if isinstance(code, str) else ""
