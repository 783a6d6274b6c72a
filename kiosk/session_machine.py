"""
Kiosk attendance session state machine.

    Idle ──scan──▶ Resolving ──denied──────────▶ Restricted
                     │  ├────TIME_IN────────────▶ AwaitingPurpose ──purpose──▶ Confirmed
                     │  ├────TIME_OUT (auto)────▶ Confirmed               └─cancel──▶ Idle
                     │  └────identified only────▶ Confirmed
                     └──call failed──▶ Idle

Confirmed / Restricted / AwaitingPurpose go back through Idle on the next
scan; nobody has to press a reset button.

Single flight: while a resolve, time-in or time-out call is outstanding,
new scans are parked in one pending slot (latest wins) and dispatched as
soon as the call settles. Scanner double-fire therefore never opens two
sessions, and the last physical scan is never lost.

Everything runs on one asyncio loop; there are no locks. close() retires
the machine: responses that arrive afterwards are dropped unapplied.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import httpx

from .models import AttendanceSession, ScanAction, ScanResolution, Student
from .scan_payload import canonical_identifier
from .service_client import AttendanceClient, ServiceError
from .time_utils import format_clock

log = logging.getLogger("kiosk.session")
aria_log = logging.getLogger("kiosk.aria")


class SessionState(str, Enum):
    IDLE = "idle"
    RESOLVING = "resolving"
    AWAITING_PURPOSE = "awaiting_purpose"
    RESTRICTED = "restricted"
    CONFIRMED = "confirmed"


S = SessionState

TRANSITIONS: Dict[SessionState, frozenset] = {
    S.IDLE:             frozenset({S.RESOLVING}),
    S.RESOLVING:        frozenset({S.RESTRICTED, S.AWAITING_PURPOSE, S.CONFIRMED, S.IDLE}),
    S.AWAITING_PURPOSE: frozenset({S.CONFIRMED, S.IDLE}),
    S.RESTRICTED:       frozenset({S.IDLE}),
    S.CONFIRMED:        frozenset({S.IDLE}),
}

PURPOSE_OPTIONS = (
    "Research",
    "Borrow/Return",
    "Individual Study",
    "Group Study",
    "Computer / Internet Use",
    "Printing / Photocopy",
    "Consultation",
    "Others",
)
OTHER_PURPOSE = "Others"

MSG_READY = "Ready to scan."
MSG_RESOLVING = "Reading your card, please wait."
MSG_RESTRICTED = "You are not allowed to enter the library."
MSG_PURPOSE = "Please choose your purpose of visit."


def resolve_purpose(choice: str, other_text: Optional[str] = None) -> str:
    """The purpose string sent on time-in. 'Others' carries the typed text when given."""
    choice = (choice or "").strip() or PURPOSE_OPTIONS[0]
    if choice == OTHER_PURPOSE:
        return (other_text or "").strip() or OTHER_PURPOSE
    return choice


class IllegalTransition(RuntimeError):
    pass


class SessionMachine:
    """
    Drives one kiosk screen. Feed it scan codes with submit_scan(); the
    operator answers the purpose prompt with confirm_purpose() or
    cancel_purpose().

    announce(message) receives the accessibility status text on every
    transition; chime() fires when a time-in has just been recorded.
    """
    def __init__(
        self,
        client: AttendanceClient,
        device_id: str = "kiosk-1",
        *,
        announce: Optional[Callable[[str], Any]] = None,
        chime: Optional[Callable[[], Any]] = None,
    ):
        self.client = client
        self.device_id = device_id
        self._announce = announce
        self._chime = chime
        self._listeners: List[Callable[["SessionMachine"], Any]] = []

        self.state = S.IDLE
        self.message = MSG_READY

        # read-through cache of what the service told us
        self.student: Optional[Student] = None
        self.active_session: Optional[AttendanceSession] = None
        self.last_session: Optional[AttendanceSession] = None
        self.last_action: Optional[ScanAction] = None

        self._in_flight = False
        self._pending: Optional[str] = None
        self._closed = False

        # Observability counters
        self.scans_seen = 0
        self.scans_overwritten = 0
        self.calls_failed = 0

    # ---------- public surface ----------

    @property
    def busy(self) -> bool:
        return self._in_flight

    @property
    def pending_scan(self) -> Optional[str]:
        return self._pending

    @property
    def closed(self) -> bool:
        return self._closed

    def add_listener(self, fn: Callable[["SessionMachine"], Any]) -> None:
        self._listeners.append(fn)

    def view(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "message": self.message,
            "student": self.student.to_wire() if self.student else None,
            "active_session": self.active_session.to_wire() if self.active_session else None,
            "last_session": self.last_session.to_wire() if self.last_session else None,
            "last_action": self.last_action.value if self.last_action else None,
            "pending": self._pending,
            "busy": self._in_flight,
        }

    async def submit_scan(self, code: str) -> None:
        """
        Handle one decoded scan. Returns once this scan, and any scan parked
        behind it, has been processed. Busy machines park the code instead.
        """
        if self._closed:
            log.debug("scan_after_close", extra={"code": code})
            return
        self.scans_seen += 1

        if self._in_flight:
            if self._pending is not None:
                self.scans_overwritten += 1
                log.info("pending_overwritten", extra={"dropped": self._pending, "code": code})
            else:
                log.info("pending_parked", extra={"code": code})
            self._pending = code
            return

        await self._dispatch(code)

    async def confirm_purpose(self, purpose: str, other_text: Optional[str] = None) -> None:
        """Operator picked a purpose: record the time-in."""
        if self._closed or self._in_flight:
            return
        if self.state is not S.AWAITING_PURPOSE or self.student is None:
            log.warning("purpose_without_prompt", extra={"state": self.state.value})
            return

        student = self.student
        chosen = resolve_purpose(purpose, other_text)
        self._in_flight = True
        try:
            session = await self.client.time_in(student.id or "", chosen, self.device_id)
        except (ServiceError, httpx.HTTPError) as e:
            self._in_flight = False
            if self._stale("time_in"):
                return
            self._fail("time_in", e)
        except BaseException:
            self._in_flight = False
            raise
        else:
            self._in_flight = False
            if self._stale("time_in"):
                return
            self.active_session = session
            self.last_session = session
            self.last_action = ScanAction.TIME_IN
            self._transition(
                S.CONFIRMED,
                f"Time In recorded at {format_clock(session.time_in_at)}. "
                f"Purpose: {session.purpose or chosen}.",
            )
            log.info("time_in", extra={"student": student.id, "session": session.id, "purpose": chosen})
            self._fire_chime()
        await self._drain_pending()

    def cancel_purpose(self) -> None:
        if self._closed or self._in_flight or self.state is not S.AWAITING_PURPOSE:
            return
        self._clear_cache()
        self._transition(S.IDLE, MSG_READY)

    def close(self) -> None:
        """Retire the machine; late responses are discarded from now on."""
        if self._closed:
            return
        self._closed = True
        self._pending = None
        self._listeners.clear()
        log.info(
            "session_machine_closed",
            extra={"seen": self.scans_seen, "overwritten": self.scans_overwritten, "failed": self.calls_failed},
        )

    # ---------- internals ----------

    async def _dispatch(self, code: str) -> None:
        next_code: Optional[str] = code
        while next_code is not None and not self._closed:
            self._pending = None
            await self._resolve(next_code)
            next_code = self._pending

    async def _drain_pending(self) -> None:
        if self._closed or self._pending is None:
            return
        code, self._pending = self._pending, None
        await self._dispatch(code)

    async def _resolve(self, code: str) -> None:
        if self.state is not S.IDLE:
            # a fresh scan always starts from a clean screen
            self._clear_cache()
            self._transition(S.IDLE, MSG_READY)

        identifier = canonical_identifier(code)
        self._transition(S.RESOLVING, MSG_RESOLVING)
        log.info("scan", extra={"code": code, "identifier": identifier})

        self._in_flight = True
        try:
            res = await self.client.resolve_scan(identifier)
            if self._stale("resolve"):
                return
            await self._apply_resolution(res)
        except (ServiceError, httpx.HTTPError) as e:
            if self._stale("resolve"):
                return
            self._fail("resolve", e)
        finally:
            self._in_flight = False

    async def _apply_resolution(self, res: ScanResolution) -> None:
        self.student = res.student
        self.active_session = res.active_session

        if res.allowed is False:
            log.info("restricted", extra={"student": res.student.id if res.student else None})
            self._transition(S.RESTRICTED, MSG_RESTRICTED)
            return

        if res.action is ScanAction.TIME_IN:
            if res.student is None or not res.student.id:
                raise ServiceError("TIME_IN resolution without a student", detail=res.to_wire())
            self._transition(S.AWAITING_PURPOSE, MSG_PURPOSE)
            return

        if res.action is ScanAction.TIME_OUT:
            await self._auto_time_out(res)
            return

        name = res.student.display_name if res.student else "Unknown"
        self.last_action = None
        self._transition(S.CONFIRMED, f"Student identified: {name}.")

    async def _auto_time_out(self, res: ScanResolution) -> None:
        student, open_session = res.student, res.active_session
        if student is None or not student.id or open_session is None or not open_session.id:
            raise ServiceError("TIME_OUT resolution without an open session", detail=res.to_wire())

        closed = await self.client.time_out(student.id, open_session.id)
        if self._stale("time_out"):
            return
        self.active_session = None
        self.last_session = closed
        self.last_action = ScanAction.TIME_OUT
        self._transition(
            S.CONFIRMED,
            f"Time Out recorded at {format_clock(closed.time_out_at)}. "
            f"Thank you for visiting the library.",
        )
        log.info("time_out", extra={"student": student.id, "session": closed.id})

    def _transition(self, new_state: SessionState, message: str) -> None:
        if new_state not in TRANSITIONS[self.state]:
            raise IllegalTransition(f"{self.state.value} -> {new_state.value}")
        log.debug("transition", extra={"from": self.state.value, "to": new_state.value})
        self.state = new_state
        self.message = message
        aria_log.info(message, extra={"state": new_state.value})
        if self._announce is not None:
            self._announce(message)
        for fn in list(self._listeners):
            try:
                fn(self)
            except Exception:
                log.exception("listener_failed")

    def _fail(self, what: str, err: Exception) -> None:
        self.calls_failed += 1
        log.warning(
            "call_failed",
            extra={"call": what, "err": str(err), "status": getattr(err, "status", None)},
        )
        self._clear_cache()
        if self.state is not S.IDLE:
            self._transition(S.IDLE, MSG_READY)

    def _clear_cache(self) -> None:
        self.student = None
        self.active_session = None
        self.last_session = None
        self.last_action = None

    def _stale(self, what: str) -> bool:
        if self._closed:
            log.debug("stale_response_discarded", extra={"call": what})
            return True
        return False

    def _fire_chime(self) -> None:
        if self._chime is None:
            return
        try:
            self._chime()
        except Exception:
            log.exception("chime_failed")
