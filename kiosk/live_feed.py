"""
Administrative live feed.

The dashboard polls the recent-visits endpoint on a fixed interval and
shows one row per student: a student who timed in and out again appears
once, with the latest event. Visits without a matched student are shown
every time.

Each poll replaces the snapshot wholesale. A poll that finishes after
stop() carries a revoked liveness token and is thrown away.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
from dataclasses import dataclass
from typing import Any, Callable, Hashable, Iterable, List, Mapping, Optional, TypeVar

import httpx

from .models import VisitRecord
from .service_client import AttendanceClient, ServiceError
from .time_utils import duration_ms, format_clock, to_utc

log = logging.getLogger("kiosk.feed")

T = TypeVar("T")

_EPOCH = dt.datetime(1970, 1, 1, tzinfo=dt.timezone.utc)


def _student_key(record: Any) -> Optional[Hashable]:
    if isinstance(record, Mapping):
        return record.get("studentId")
    return getattr(record, "student_key", None)


def dedupe(records: Iterable[T], key: Callable[[T], Optional[Hashable]] = _student_key) -> List[T]:
    """
    Keep the first record per student identity, in input order.

    Input is expected newest-first, so "first" means "latest". Records whose
    key is None (anonymous / unmatched) are always kept.
    """
    seen = set()
    out: List[T] = []
    for rec in records:
        k = key(rec)
        if k is None:
            out.append(rec)
            continue
        if k in seen:
            continue
        seen.add(k)
        out.append(rec)
    return out


def newest_first(visits: Iterable[VisitRecord]) -> List[VisitRecord]:
    """Order by latest event (time-out when present, else time-in), newest first."""
    return sorted(visits, key=lambda v: to_utc(v.latest_event) or _EPOCH, reverse=True)


@dataclass
class Activity:
    """One display row of the live feed."""
    name: str
    student_no: str
    student_id: Optional[str]
    purpose: str
    type: str               # IN | OUT
    status: str
    time: str               # HH:MM of the latest event
    time_in: Optional[dt.datetime] = None
    time_out: Optional[dt.datetime] = None
    duration_ms: Optional[int] = None

    @property
    def student_key(self) -> Optional[str]:
        return self.student_id

    @classmethod
    def from_visit(cls, v: VisitRecord) -> "Activity":
        s = v.student
        return cls(
            name=s.display_name if s else "Unknown",
            student_no=(s.student_no or "") if s else "",
            student_id=v.student_key,
            purpose=v.purpose or "",
            type="OUT" if v.time_out else "IN",
            status=v.status or "OK",
            time=format_clock(v.latest_event),
            time_in=v.time_in,
            time_out=v.time_out,
            duration_ms=duration_ms(v.time_in, v.time_out),
        )


def build_activities(visits: Iterable[VisitRecord]) -> List[Activity]:
    return dedupe(Activity.from_visit(v) for v in newest_first(visits))


class _Liveness:
    __slots__ = ("alive",)

    def __init__(self):
        self.alive = True


class LiveFeedPoller:
    """
    Cancellable polling task: start() begins ticking immediately, stop()
    revokes the current tick's token and cancels the task. Listeners stay
    attached across stop() / start(); close() drops them.
    """
    def __init__(
        self,
        client: AttendanceClient,
        *,
        interval_s: float = 8.0,
        limit: int = 12,
        max_rows: Optional[int] = None,
    ):
        self.client = client
        self.interval_s = float(interval_s)
        self.limit = int(limit)
        self.max_rows = max_rows

        self.activities: List[Activity] = []
        self.visits_total: Optional[int] = None
        self.last_refresh: Optional[dt.datetime] = None

        self._listeners: List[Callable[[List[Activity]], Any]] = []
        self._task: Optional[asyncio.Task] = None
        self._token: Optional[_Liveness] = None

        # Observability counters
        self.ticks = 0
        self.ticks_failed = 0
        self.ticks_discarded = 0

    @classmethod
    def from_app(cls, client: AttendanceClient, feed_cfg: Optional[dict]) -> "LiveFeedPoller":
        fc = feed_cfg or {}
        max_rows = fc.get("max_rows")
        return cls(
            client,
            interval_s=float(fc.get("interval_s", 8)),
            limit=int(fc.get("limit", 12)),
            max_rows=int(max_rows) if max_rows else None,
        )

    @property
    def running(self) -> bool:
        return bool(self._task and not self._task.done())

    def add_listener(self, fn: Callable[[List[Activity]], Any]) -> None:
        self._listeners.append(fn)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="live_feed_poller")
        log.info("feed_start", extra={"interval_s": self.interval_s, "limit": self.limit})

    async def stop(self) -> None:
        if self._token is not None:
            self._token.alive = False
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        log.info("feed_stop", extra={"ticks": self.ticks, "failed": self.ticks_failed, "discarded": self.ticks_discarded})

    async def close(self) -> None:
        """Final teardown: stop polling and detach every listener."""
        await self.stop()
        self._listeners.clear()

    async def refresh(self) -> bool:
        """Run one tick now. Returns True when the snapshot was replaced."""
        token = _Liveness()
        if self._token is not None:
            self._token.alive = False
        self._token = token
        return await self._tick(token)

    async def _run(self) -> None:
        try:
            while True:
                await self.refresh()
                await asyncio.sleep(self.interval_s)
        except asyncio.CancelledError:
            raise
        except Exception:
            log.exception("feed_task_crashed")
            raise

    async def _tick(self, token: _Liveness) -> bool:
        self.ticks += 1
        try:
            page = await self.client.recent_visits(page=1, limit=self.limit)
        except (ServiceError, httpx.HTTPError) as e:
            self.ticks_failed += 1
            log.debug("feed_fetch_failed", extra={"err": str(e)})
            return False

        if not token.alive:
            self.ticks_discarded += 1
            log.debug("feed_tick_discarded")
            return False

        rows = build_activities(page.visits)
        if self.max_rows:
            rows = rows[: self.max_rows]
        self.activities = rows
        self.visits_total = page.total
        self.last_refresh = dt.datetime.now(dt.timezone.utc)
        for fn in list(self._listeners):
            try:
                fn(rows)
            except Exception:
                log.exception("feed_listener_failed")
        return True
