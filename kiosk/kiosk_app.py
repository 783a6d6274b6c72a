"""
Library kiosk runtime
=====================

Purpose
-------
Wires the pieces of a front-desk kiosk together and runs them on one
asyncio loop:

    KeySource ─▶ KeystrokeDecoder ─▶ scan code ─▶ SessionMachine ─▶ attendance service
                                                        │
                                                        └─▶ side panels (history / recent visits)

and, for the admin screen, LiveFeedPoller ─▶ console table.

Operator keys (kiosk view)
--------------------------
While the purpose prompt is showing, the operator types the option number
and Enter ("3⏎"); option 8 ("Others") accepts free text after the number
("8 thesis defense⏎"). "0⏎" or Escape cancels. A real scan is never a
single digit, so scans and menu answers share the same keyboard. The
prompt line has no scanner gap rule, so the operator may type slowly.

While no student is on screen the kiosk lists recent time-ins and
time-outs across all students; PgUp / PgDn page through them.

CLI
---
    python -m kiosk.kiosk_app --config config/config.yaml
    # Optional runtime overrides:
    --view kiosk|feed
    --source terminal|mock
    --base-url http://localhost:5000
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import re
import sys
import time
from typing import Any, List, Optional, Set

import httpx

from . import config_loader as _config_module
from .config_loader import get_decoder_cfg, get_feed_cfg, get_kiosk_cfg, get_log_level, get_service_cfg
from .input_sources import KeySource, MockKeySource, TerminalKeySource
from .keystroke_decoder import PASTE, DecoderConfig, KeyEvent, KeystrokeDecoder
from .live_feed import Activity, LiveFeedPoller
from .models import VisitRecord
from .service_client import AttendanceClient, ServiceError
from .session_machine import PURPOSE_OPTIONS, SessionMachine, SessionState
from .time_utils import format_clock, format_duration

_MENU_ANSWER = re.compile(r"^([0-9])(?:\s+(.*))?$")
_PAGE_KEYS = {"PageUp": -1, "PageDown": 1}


def make_source(name: str, kiosk_cfg: Optional[dict] = None) -> KeySource:
    kc = kiosk_cfg or {}
    name = (name or "terminal").lower()
    if name == "terminal":
        return TerminalKeySource()
    if name == "mock":
        return MockKeySource(period_s=float(kc.get("mock_period_s", 6.0)))
    raise ValueError(f"Unknown kiosk.source: {name}")


def _bell() -> None:
    sys.stdout.write("\a")
    sys.stdout.flush()


# ------------------------------------------------------------
# Kiosk view
# ------------------------------------------------------------
class KioskService:
    """
    Wires: KeySource → KeystrokeDecoder → SessionMachine, plus side panels.

    Input is never blocked by the service: each scan is handed to the
    machine in its own task, and the machine's pending slot decides what
    happens to scans that arrive while a call is outstanding.
    """
    def __init__(
        self,
        client: AttendanceClient,
        source: KeySource,
        *,
        device_id: str = "kiosk-1",
        decoder: Optional[KeystrokeDecoder] = None,
        history_limit: int = 5,
        recent_limit: int = 10,
        chime: bool = True,
        render: bool = True,
    ):
        self.client = client
        self.source = source
        self.decoder = decoder or KeystrokeDecoder()
        self.history_limit = int(history_limit)
        self.recent_limit = int(recent_limit)
        self.render_enabled = render
        self.log = logging.getLogger("kiosk")

        self.machine = SessionMachine(client, device_id, chime=_bell if chime else None)
        self.machine.add_listener(self._on_transition)

        # side panels
        self.history: List[VisitRecord] = []
        self.recent: List[VisitRecord] = []
        self.recent_page = 1
        self.recent_total_pages = 1

        # purpose prompt line, typed by the operator
        self._prompt_buf = ""

        self._tasks: Set[asyncio.Task] = set()

    @classmethod
    def from_config(cls, *, source: Optional[str] = None, base_url: Optional[str] = None) -> "KioskService":
        kc = get_kiosk_cfg()
        svc = dict(get_service_cfg())
        if base_url:
            svc["base_url"] = base_url
        return cls(
            AttendanceClient.from_app(svc),
            make_source(source or kc.get("source", "terminal"), kc),
            device_id=str(kc.get("device_id", "kiosk-1")),
            decoder=KeystrokeDecoder(DecoderConfig.from_app(get_decoder_cfg())),
            history_limit=int(kc.get("history_limit", 5)),
            recent_limit=int(kc.get("recent_limit", 10)),
            chime=bool(kc.get("chime", True)),
        )

    # ---------- lifecycle ----------

    async def run(self, stop_evt: asyncio.Event) -> None:
        await self.client.start()
        self.log.info("kiosk_start", extra={"device_id": self.machine.device_id, "base_url": self.client.base_url})
        self._spawn(self.fetch_recent(1))
        self._render()

        try:
            async for ev in self.source.events():
                if stop_evt.is_set():
                    break
                self.handle_event(ev)
            else:
                # source ran dry (EOF, scripted input): finish what was scanned
                await self.settle()
        except asyncio.CancelledError:
            stop_evt.set()
            self.log.info("kiosk_run_cancelled")
        except Exception:
            self.log.exception("kiosk_run_crashed")
        finally:
            await self.shutdown()

    async def settle(self) -> None:
        """Wait until every scan, purpose answer and panel refresh has finished."""
        while True:
            pending = [t for t in self._tasks if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def shutdown(self) -> None:
        # retire first so late responses cannot touch the screen
        self.machine.close()
        tasks = list(self._tasks)
        for t in tasks:
            t.cancel()
        for t in tasks:
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await t
        self._tasks.clear()
        try:
            await self.client.aclose()
        except Exception:
            self.log.exception("client_close_failed")
        self.log.info(
            "kiosk_stop",
            extra={
                "codes": self.decoder.codes_emitted,
                "discarded_partials": self.decoder.discarded_partials,
                "calls": self.client.calls,
                "failures": self.client.failures,
            },
        )

    # ---------- input ----------

    def handle_event(self, ev: KeyEvent) -> None:
        if ev.key in _PAGE_KEYS:
            if self.recent_visible:
                self._spawn(self.page_recent(_PAGE_KEYS[ev.key]))
            return
        if self.machine.state is SessionState.AWAITING_PURPOSE:
            # operator typing at human speed: the scanner gap rule does not apply
            if ev.key == "Escape":
                self.machine.cancel_purpose()
                return
            line = self._prompt_feed(ev)
        else:
            line = self.decoder.feed(ev)
        if line is not None:
            self.handle_code(line)

    def _prompt_feed(self, ev: KeyEvent) -> Optional[str]:
        """Line editor for the purpose prompt. Returns the line on Enter or paste."""
        if ev.kind == PASTE:
            text = (ev.text or "").strip()
            return text or None
        key = ev.key
        if key == self.decoder.cfg.submit_key:
            line, self._prompt_buf = self._prompt_buf.strip(), ""
            return line or None
        if key == "Backspace":
            self._prompt_buf = self._prompt_buf[:-1]
        elif len(key) == 1 and key.isprintable():
            self._prompt_buf += key
        return None

    def handle_code(self, code: str) -> None:
        if self.machine.state is SessionState.AWAITING_PURPOSE and not self.machine.busy:
            m = _MENU_ANSWER.match(code)
            if m:
                self._answer_menu(int(m.group(1)), m.group(2))
                return
        self._spawn(self.machine.submit_scan(code))

    def _answer_menu(self, number: int, text: Optional[str]) -> None:
        if number == 0:
            self.machine.cancel_purpose()
            return
        if not 1 <= number <= len(PURPOSE_OPTIONS):
            self.log.info("menu_out_of_range", extra={"choice": number})
            return
        self._spawn(self.machine.confirm_purpose(PURPOSE_OPTIONS[number - 1], text))

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.log.error("kiosk_task_failed", exc_info=exc)

    # ---------- side panels ----------

    def _on_transition(self, machine: SessionMachine) -> None:
        if machine.state is SessionState.AWAITING_PURPOSE:
            # keys already typed after the scan belong to the prompt line
            self._prompt_buf = self.decoder.buffer
            self.decoder.reset()
        else:
            self._prompt_buf = ""
        if machine.state is SessionState.RESOLVING:
            self.history = []
        elif machine.state is SessionState.CONFIRMED and machine.student and machine.student.id:
            self._spawn(self.fetch_history(machine.student.id))
            self._spawn(self.fetch_recent(1))
        self._render()

    @property
    def recent_visible(self) -> bool:
        """Recent visits across all students show while nobody is on screen."""
        return self.machine.student is None

    @property
    def recent_time_ins(self) -> List[VisitRecord]:
        return [v for v in self.recent if v.time_out is None]

    @property
    def recent_time_outs(self) -> List[VisitRecord]:
        return [v for v in self.recent if v.time_out is not None]

    async def fetch_history(self, student_id: str) -> None:
        try:
            visits = await self.client.student_history(student_id, limit=self.history_limit)
        except (ServiceError, httpx.HTTPError) as e:
            self.log.warning("history_fetch_failed", extra={"student": student_id, "err": str(e)})
            visits = []
        if self.machine.closed:
            return
        self.history = visits[: self.history_limit]
        self._render_panel("Recent Visits", self.history)

    async def fetch_recent(self, page: int = 1) -> None:
        try:
            result = await self.client.recent_visits(page=page, limit=self.recent_limit)
        except (ServiceError, httpx.HTTPError) as e:
            self.log.warning("recent_fetch_failed", extra={"page": page, "err": str(e)})
            return
        if self.machine.closed:
            return
        self.recent = result.visits
        self.recent_page = result.page
        self.recent_total_pages = max(1, result.total_pages)
        if self.recent_visible:
            self._render_recent()

    async def page_recent(self, delta: int) -> bool:
        """Move the recent-visits panel by `delta` pages. False at either end."""
        target = min(max(1, self.recent_page + delta), self.recent_total_pages)
        if target == self.recent_page:
            return False
        await self.fetch_recent(target)
        return True

    # ---------- console rendering ----------

    def _render(self) -> None:
        if not self.render_enabled:
            return
        m = self.machine
        print(f"\n[{m.state.value.upper()}] {m.message}", flush=True)
        if m.student:
            s = m.student
            print(f"  {s.display_name}  {s.student_no or ''}  {s.level} {s.course}".rstrip(), flush=True)
        if m.active_session and m.active_session.time_in_at:
            print(f"  Inside since {format_clock(m.active_session.time_in_at)}", flush=True)
        if m.state is SessionState.AWAITING_PURPOSE:
            for i, opt in enumerate(PURPOSE_OPTIONS, start=1):
                print(f"    {i}) {opt}", flush=True)
            print("    0) Cancel", flush=True)
        elif self.recent_visible:
            self._render_recent()

    def _render_recent(self) -> None:
        if not self.render_enabled:
            return
        self._render_panel("Recent Time-Ins", self.recent_time_ins)
        self._render_panel("Recent Time-Outs", self.recent_time_outs)
        print(f"  Page {self.recent_page} / {self.recent_total_pages}  (PgUp / PgDn)", flush=True)

    def _render_panel(self, title: str, visits: List[VisitRecord]) -> None:
        if not self.render_enabled:
            return
        print(f"  -- {title} --", flush=True)
        if not visits:
            print("     (none)", flush=True)
        for v in visits:
            out = format_clock(v.time_out) if v.time_out else "--:--"
            print(f"     {format_clock(v.time_in)} → {out}  {v.purpose or '-'}", flush=True)


# ------------------------------------------------------------
# Admin live feed view
# ------------------------------------------------------------
class FeedDashboard:
    def __init__(self, client: AttendanceClient, poller: LiveFeedPoller, *, render: bool = True):
        self.client = client
        self.poller = poller
        self.render_enabled = render
        self.log = logging.getLogger("kiosk.dashboard")
        self.poller.add_listener(self._render)

    @classmethod
    def from_config(cls, *, base_url: Optional[str] = None) -> "FeedDashboard":
        svc = dict(get_service_cfg())
        if base_url:
            svc["base_url"] = base_url
        client = AttendanceClient.from_app(svc)
        return cls(client, LiveFeedPoller.from_app(client, get_feed_cfg()))

    async def run(self, stop_evt: asyncio.Event) -> None:
        await self.client.start()
        self.poller.start()
        try:
            await stop_evt.wait()
        except asyncio.CancelledError:
            self.log.info("dashboard_cancelled")
        finally:
            await self.poller.close()
            await self.client.aclose()

    def _render(self, rows: List[Activity]) -> None:
        if not self.render_enabled:
            return
        stamp = time.strftime("%H:%M:%S")
        total = self.poller.visits_total
        print(f"\n== Live Activity  {stamp}  (visits: {total if total is not None else '-'}) ==", flush=True)
        if not rows:
            print("   No recent activity", flush=True)
        for a in rows:
            label = "Time In " if a.type == "IN" else "Time Out"
            dur = format_duration(a.duration_ms) if a.duration_ms is not None else ""
            print(f"   {a.time}  {label}  {a.name:<24} {a.student_no or '-':<12} {a.purpose or '-':<24} {dur}", flush=True)


# ------------------------------------------------------------
# Entry point
# ------------------------------------------------------------

def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(description="Library kiosk scanner client")
    ap.add_argument("--config", help="Path to config/config.yaml (optional)")
    ap.add_argument("--view", choices=("kiosk", "feed"), default="kiosk")
    ap.add_argument("--source", choices=("terminal", "mock"), help="Override kiosk.source")
    ap.add_argument("--base-url", help="Override service.base_url")
    return ap.parse_args(argv)


async def _amain(argv: Optional[List[str]] = None) -> None:
    args = _parse_args(argv)

    if args.config:
        _config_module.CONFIG = _config_module.load_config(args.config)

    logging.basicConfig(
        level=getattr(logging, get_log_level("INFO"), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    runner: Any
    if args.view == "feed":
        runner = FeedDashboard.from_config(base_url=args.base_url)
    else:
        runner = KioskService.from_config(source=args.source, base_url=args.base_url)

    stop_evt = asyncio.Event()
    task = asyncio.create_task(runner.run(stop_evt))
    try:
        await task
    except KeyboardInterrupt:
        stop_evt.set()
        with contextlib.suppress(asyncio.CancelledError):
            await task
    finally:
        if not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task


def main() -> None:
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(_amain())


if __name__ == "__main__":
    main()
