"""
Admin live feed: de-duplication, ordering and poller lifecycle.
"""

import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent))

from kiosk.live_feed import Activity, LiveFeedPoller, build_activities, dedupe, newest_first
from kiosk.models import RecentVisitsPage, VisitRecord
from kiosk.service_client import ServiceError


def visit(vid, student_id, time_in, time_out=None, purpose="Research"):
    student = {"_id": student_id, "studentNo": f"no-{student_id}", "firstName": "F", "lastName": student_id} if student_id else None
    return VisitRecord.model_validate({
        "_id": vid, "student": student, "purpose": purpose,
        "timeIn": time_in, "timeOut": time_out,
    })


VISITS = [
    visit("v1", "s1", "2024-05-01T09:00:00Z", "2024-05-01T09:30:00Z"),
    visit("v2", "s1", "2024-05-01T10:00:00Z", "2024-05-01T11:00:00Z"),
    visit("v3", "s2", "2024-05-01T10:30:00Z"),
    visit("v4", None, "2024-05-01T08:00:00Z"),
    visit("v5", None, "2024-05-01T08:10:00Z"),
]


class FakeClient:
    def __init__(self, visits):
        self.visits = visits
        self.gate = None
        self.fail = False
        self.calls = 0

    async def recent_visits(self, page=1, limit=10):
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise ServiceError("down", status=503)
        return RecentVisitsPage(visits=self.visits[:limit], total=len(self.visits))


def test_dedupe_keeps_first_per_identity():
    records = [
        {"id": "123", "t": 10},
        {"id": "123", "t": 5},
        {"id": None, "t": 8},
        {"id": None, "t": 3},
    ]
    out = dedupe(records, key=lambda r: r["id"])
    assert out == [{"id": "123", "t": 10}, {"id": None, "t": 8}, {"id": None, "t": 3}]


def test_dedupe_default_key_on_mappings():
    records = [{"studentId": "a"}, {"studentId": "b"}, {"studentId": "a"}, {}]
    assert dedupe(records) == [{"studentId": "a"}, {"studentId": "b"}, {}]


def test_newest_first_uses_latest_event():
    ordered = newest_first(VISITS)
    assert [v.id for v in ordered] == ["v2", "v3", "v1", "v5", "v4"]


def test_build_activities():
    rows = build_activities(VISITS)
    assert [r.student_id for r in rows] == ["s1", "s2", None, None]
    latest = rows[0]
    assert isinstance(latest, Activity)
    assert latest.type == "OUT"
    assert latest.duration_ms == 60 * 60 * 1000
    assert latest.name == "s1, F"
    assert rows[1].type == "IN" and rows[1].duration_ms is None
    assert rows[2].name == "Unknown"


def test_refresh_replaces_snapshot():
    client = FakeClient(VISITS)
    poller = LiveFeedPoller(client, limit=12, max_rows=3)
    got = []
    poller.add_listener(got.append)
    assert asyncio.run(poller.refresh()) is True
    assert len(poller.activities) == 3
    assert poller.visits_total == 5
    assert got == [poller.activities]


def test_failed_tick_keeps_previous_snapshot():
    client = FakeClient(VISITS)
    poller = LiveFeedPoller(client)

    async def scenario():
        await poller.refresh()
        before = poller.activities
        client.fail = True
        assert await poller.refresh() is False
        return before

    before = asyncio.run(scenario())
    assert poller.activities == before
    assert poller.ticks_failed == 1


def test_tick_after_stop_is_discarded():
    client = FakeClient(VISITS)
    poller = LiveFeedPoller(client)
    got = []
    poller.add_listener(got.append)

    async def scenario():
        client.gate = asyncio.Event()
        tick = asyncio.create_task(poller.refresh())
        await asyncio.sleep(0)
        await poller.stop()
        client.gate.set()
        return await tick

    assert asyncio.run(scenario()) is False
    assert poller.activities == []
    assert got == []
    assert poller.ticks_discarded == 1


def test_start_polls_until_stopped():
    client = FakeClient(VISITS)
    poller = LiveFeedPoller(client, interval_s=0.01)

    async def scenario():
        seen = asyncio.Event()
        poller.add_listener(lambda rows: seen.set())
        poller.start()
        assert poller.running
        await asyncio.wait_for(seen.wait(), timeout=2)
        await poller.stop()
        assert not poller.running

    asyncio.run(scenario())
    assert client.calls >= 1
    assert poller.ticks >= 1


def test_listeners_survive_stop_and_restart():
    client = FakeClient(VISITS)
    poller = LiveFeedPoller(client, interval_s=0.01)
    got = []

    async def wait_for_rows(count):
        for _ in range(200):
            if len(got) >= count:
                return
            await asyncio.sleep(0.01)
        raise AssertionError(f"listener saw {len(got)} snapshot(s), expected {count}")

    async def scenario():
        poller.add_listener(got.append)
        poller.start()
        await wait_for_rows(1)
        await poller.stop()

        seen = len(got)
        poller.start()
        await wait_for_rows(seen + 1)
        await poller.close()

        # closed: a manual refresh still updates the snapshot but notifies nobody
        after_close = len(got)
        assert await poller.refresh() is True
        assert len(got) == after_close

    asyncio.run(scenario())
    assert not poller.running


def test_from_app_reads_feed_config():
    poller = LiveFeedPoller.from_app(FakeClient([]), {"interval_s": 3, "limit": 20, "max_rows": 6})
    assert poller.interval_s == 3.0 and poller.limit == 20 and poller.max_rows == 6
    defaults = LiveFeedPoller.from_app(FakeClient([]), None)
    assert defaults.interval_s == 8.0 and defaults.limit == 12 and defaults.max_rows is None


if __name__ == "__main__":
    for name, fn in list(globals().items()):
        if name.startswith("test_") and callable(fn):
            fn()
            print(f"[OK] {name}")
    print("[PASS] live feed tests passed")
