from __future__ import annotations
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

# ---------- small helpers ----------

def now_ms() -> int:
    return int(time.monotonic() * 1000)

log = logging.getLogger("kiosk.decoder")

KEY = "key"
PASTE = "paste"

SUBMIT_KEY = "Enter"
MODIFIER_KEYS = frozenset({"Shift", "Control", "Alt", "Meta"})

# ---------- events ----------

@dataclass(frozen=True)
class KeyEvent:
    """
    One raw input event from a KeySource.

    kind == "key":   `key` is a single printable character, "Enter", or a
                     named key ("Shift", "Tab", ...)
    kind == "paste": `text` holds the whole pasted string
    ts_ms is the arrival time on a monotonic millisecond clock.
    """
    kind: str
    ts_ms: int
    key: str = ""
    text: str = ""

    @classmethod
    def press(cls, key: str, ts_ms: Optional[int] = None) -> "KeyEvent":
        return cls(KEY, now_ms() if ts_ms is None else int(ts_ms), key=key)

    @classmethod
    def paste(cls, text: str, ts_ms: Optional[int] = None) -> "KeyEvent":
        return cls(PASTE, now_ms() if ts_ms is None else int(ts_ms), text=text)

# ---------- config snapshot ----------

@dataclass
class DecoderConfig:
    # keystrokes further apart than this belong to different scans
    gap_ms: int = 500
    submit_key: str = SUBMIT_KEY

    @classmethod
    def from_app(cls, decoder_dict: Optional[Dict[str, Any]]) -> "DecoderConfig":
        dec = decoder_dict or {}
        return cls(
            gap_ms=int(dec.get("gap_ms", 500)),
            submit_key=str(dec.get("submit_key") or SUBMIT_KEY),
        )

# ---------- decoder ----------

class KeystrokeDecoder:
    """
    Segments a keyboard-wedge stream into scan codes.

    Scanners type a whole code within a few milliseconds and finish with
    Enter; humans are slower. A pause longer than gap_ms starts a fresh
    buffer, so a stray key pressed minutes earlier never prefixes a scan.
    Pastes bypass the buffer entirely.

    feed() holds all of the timing logic and touches nothing but this
    object, so tests drive it with hand-written timestamps.
    """
    def __init__(self, cfg: Optional[DecoderConfig] = None):
        self.cfg = cfg or DecoderConfig()
        self._buf = ""
        self._last_ms: Optional[int] = None

        # Observability counters
        self.codes_emitted = 0
        self.discarded_partials = 0

    @property
    def buffer(self) -> str:
        return self._buf

    def reset(self) -> None:
        self._buf = ""
        self._last_ms = None

    def feed(self, event: KeyEvent) -> Optional[str]:
        """Consume one event; return a completed scan code or None."""
        if event.kind == PASTE:
            code = (event.text or "").strip()
            if not code:
                return None
            log.debug("paste_code", extra={"code": code})
            return self._emit(code)

        key = event.key
        if key in MODIFIER_KEYS:
            return None

        if key == self.cfg.submit_key:
            code = self._buf.strip()
            self.reset()
            if not code:
                return None
            return self._emit(code)

        if len(key) != 1 or not key.isprintable():
            # Tab, Escape, arrows, stray control bytes ...
            return None

        if self._last_ms is not None and event.ts_ms - self._last_ms > self.cfg.gap_ms:
            self._discard(event.ts_ms - self._last_ms)
        self._buf += key
        self._last_ms = event.ts_ms
        return None

    def _discard(self, gap_ms: int) -> None:
        if self._buf.strip():
            # TODO: surface abandoned partial scans to the operator once we have
            # failure samples showing whether these are slow scanners or stray keys
            self.discarded_partials += 1
            log.debug(
                "partial_discarded",
                extra={"partial": self._buf, "gap_ms": gap_ms, "discarded": self.discarded_partials},
            )
        self._buf = ""

    def _emit(self, code: str) -> str:
        self.codes_emitted += 1
        log.debug("scan_code", extra={"code": code, "emitted": self.codes_emitted})
        return code
