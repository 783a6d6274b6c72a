"""
Input event sources for the keystroke decoder.

A KeySource is the only place where scanner hardware (emulating a keyboard)
enters the system. Sources yield KeyEvent objects; they never segment or
interpret anything themselves.

  TerminalKeySource  the kiosk's controlling TTY in cbreak mode, with
                     bracketed paste so a paste arrives as one event
  ScriptedKeySource  deterministic events with explicit timestamps (tests)
  MockKeySource      types a mock student number every few seconds (demos)
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import logging
import os
import sys
from abc import ABC, abstractmethod
from typing import AsyncIterator, Iterable, List, Optional

from .keystroke_decoder import KeyEvent, SUBMIT_KEY, now_ms

log = logging.getLogger("kiosk.input")


# -----------------
# Source interface
# -----------------
class KeySource(ABC):
    @abstractmethod
    def events(self) -> AsyncIterator[KeyEvent]:
        """
        Return an async-iterable stream of raw key/paste events.

        Concrete implementations typically implement this as an async generator:
            async def events(self) -> AsyncIterator[KeyEvent]:
                ...
        """
        raise NotImplementedError


# ------------------------------------------------------------
# Synthetic sources
# ------------------------------------------------------------

class ScriptedKeySource(KeySource):
    """
    Replays a fixed list of events. Timestamps are taken as given, so a test
    can put a 600 ms pause between two keys without sleeping for it.

    With realtime=True the gaps between timestamps are actually slept, which
    makes the source usable for demos against a live service.
    """
    def __init__(self, events: Iterable[KeyEvent], *, realtime: bool = False):
        self._events: List[KeyEvent] = list(events)
        self.realtime = realtime

    @staticmethod
    def from_text(text: str, start_ms: int = 0, interval_ms: int = 10,
                  submit: bool = True) -> List[KeyEvent]:
        """Key events typing `text` one character every interval_ms, then Enter."""
        out = [KeyEvent.press(ch, start_ms + i * interval_ms) for i, ch in enumerate(text)]
        if submit:
            out.append(KeyEvent.press(SUBMIT_KEY, start_ms + len(text) * interval_ms))
        return out

    async def events(self) -> AsyncIterator[KeyEvent]:
        prev: Optional[int] = None
        for ev in self._events:
            if self.realtime and prev is not None and ev.ts_ms > prev:
                await asyncio.sleep((ev.ts_ms - prev) / 1000.0)
            else:
                # let in-flight tasks run between events
                await asyncio.sleep(0)
            prev = ev.ts_ms
            yield ev


class MockKeySource(KeySource):
    """Types a rotating mock student number every period_s, like a scanner would."""
    def __init__(self, period_s: float = 6.0, prefix: str = "2023-1", count: int = 5):
        self.period_s = float(period_s)
        self.prefix = prefix
        self.count = max(1, int(count))

    async def events(self) -> AsyncIterator[KeyEvent]:
        i = 0
        while True:
            await asyncio.sleep(self.period_s)
            i = i % self.count + 1
            code = f"{self.prefix}{i:03d}"
            log.info("mock_scan", extra={"code": code})
            for ch in code:
                yield KeyEvent.press(ch)
                await asyncio.sleep(0.005)
            yield KeyEvent.press(SUBMIT_KEY)


# ------------------------------------------------------------
# Terminal source
# ------------------------------------------------------------

PASTE_START = "\x1b[200~"
PASTE_END = "\x1b[201~"
_NAMED_CONTROLS = {
    "\r": SUBMIT_KEY,
    "\n": SUBMIT_KEY,
    "\t": "Tab",
    "\x7f": "Backspace",
    "\x08": "Backspace",
}
# CSI tails that name a key the kiosk acts on; every other sequence is "Escape"
_CSI_KEYS = {
    "[5~": "PageUp",
    "[6~": "PageDown",
}


class TerminalParser:
    """
    Turns decoded terminal text into KeyEvents.

    Handles bracketed paste (ESC[200~ ... ESC[201~) and swallows other
    escape sequences (arrows, function keys) as a single "Escape" key so
    their bytes never leak into a scan buffer. PageUp and PageDown keep
    their names. A CSI sequence split across reads is held until complete;
    a bare ESC ending a read is reported as Escape at once.
    """
    def __init__(self):
        self._pending = ""
        self._paste: Optional[str] = None

    def feed(self, text: str, ts_ms: int) -> List[KeyEvent]:
        data = self._pending + text
        self._pending = ""
        out: List[KeyEvent] = []
        i = 0
        while i < len(data):
            if self._paste is not None:
                end = data.find(PASTE_END, i)
                if end < 0:
                    tail = _partial_suffix(data[i:], PASTE_END)
                    self._paste += data[i:len(data) - tail]
                    self._pending = data[len(data) - tail:] if tail else ""
                    return out
                self._paste += data[i:end]
                out.append(KeyEvent.paste(self._paste, ts_ms))
                self._paste = None
                i = end + len(PASTE_END)
                continue

            ch = data[i]
            if ch == "\x1b":
                seq_len = _escape_length(data, i)
                if seq_len == 0:
                    # incomplete; wait for the rest
                    self._pending = data[i:]
                    return out
                if data.startswith(PASTE_START, i):
                    self._paste = ""
                else:
                    named = _CSI_KEYS.get(data[i + 1:i + seq_len], "Escape")
                    out.append(KeyEvent.press(named, ts_ms))
                i += seq_len
                continue

            if ch in _NAMED_CONTROLS:
                out.append(KeyEvent.press(_NAMED_CONTROLS[ch], ts_ms))
            elif ch.isprintable():
                out.append(KeyEvent.press(ch, ts_ms))
            i += 1
        return out


def _escape_length(data: str, i: int) -> int:
    """Length of the escape sequence at data[i], or 0 if it is still incomplete."""
    if i + 1 >= len(data):
        # ESC alone at the end of a read is the Escape key itself; terminals
        # write a whole sequence in one go
        return 1
    if data[i + 1] == "O":
        # SS3: ESC O + one final byte (F1-F4, keypad arrows)
        return 3 if i + 2 < len(data) else 2
    if data[i + 1] != "[":
        # a lone Escape followed by ordinary input; the input is kept
        return 1
    j = i + 2
    while j < len(data):
        if "\x40" <= data[j] <= "\x7e":
            return j - i + 1
        j += 1
    return 0


def _partial_suffix(chunk: str, marker: str) -> int:
    """How many trailing chars of chunk could be the start of marker."""
    for n in range(min(len(marker) - 1, len(chunk)), 0, -1):
        if marker.startswith(chunk[-n:]):
            return n
    return 0


class TerminalKeySource(KeySource):
    """
    Reads the kiosk terminal directly. Keyboard-wedge scanners type into
    whatever has focus, which on a headless kiosk is this TTY.

    The terminal is put in cbreak mode (Ctrl+C still interrupts) with
    bracketed paste enabled, and restored on exit.
    """
    def __init__(self, stream=None):
        self._stream = stream or sys.stdin
        self._log = logging.getLogger("kiosk.input.tty")

    async def events(self) -> AsyncIterator[KeyEvent]:
        # POSIX only; imported lazily so other sources work everywhere
        import termios
        import tty

        fd = self._stream.fileno()
        if not os.isatty(fd):
            raise RuntimeError("TerminalKeySource needs an interactive terminal; use source 'mock' instead")

        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[Optional[bytes]] = asyncio.Queue()
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        parser = TerminalParser()

        def _on_readable() -> None:
            try:
                chunk = os.read(fd, 1024)
            except OSError as e:
                self._log.warning("tty_read_error", extra={"err": str(e)})
                chunk = b""
            queue.put_nowait(chunk or None)

        old_attrs = termios.tcgetattr(fd)
        tty.setcbreak(fd)
        sys.stdout.write("\x1b[?2004h")
        sys.stdout.flush()
        loop.add_reader(fd, _on_readable)
        self._log.info("tty_open", extra={"fd": fd})
        try:
            while True:
                chunk = await queue.get()
                if chunk is None:
                    self._log.info("tty_eof")
                    return
                for ev in parser.feed(decoder.decode(chunk), now_ms()):
                    yield ev
        finally:
            loop.remove_reader(fd)
            with contextlib.suppress(Exception):
                sys.stdout.write("\x1b[?2004l")
                sys.stdout.flush()
            termios.tcsetattr(fd, termios.TCSADRAIN, old_attrs)
            self._log.info("tty_closed")
