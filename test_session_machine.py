"""
Attendance session state machine.

Tests verify:
1. Denied entry goes to RESTRICTED and issues no time-in/out
2. TIME_IN waits for a purpose, then records it (chime fires)
3. TIME_OUT is recorded automatically
4. While a call is outstanding, later scans overwrite one pending slot
5. Failures and late responses leave no half-applied state
"""

import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent))

from kiosk.models import AttendanceSession, ScanAction, ScanResolution
from kiosk.service_client import ServiceError
from kiosk.session_machine import (
    MSG_PURPOSE,
    MSG_READY,
    MSG_RESTRICTED,
    IllegalTransition,
    SessionMachine,
    SessionState,
    resolve_purpose,
)

ANA = {"_id": "s1", "studentNo": "2023-1001", "firstName": "Ana", "lastName": "Reyes"}


class FakeClient:
    """Records calls; resolve_scan answers from a table and can be held on a gate."""
    def __init__(self, resolutions):
        self.resolutions = resolutions
        self.gates = {}
        # "time_in" / "time_out" -> Event holding that call open
        self.call_gates = {}
        self.calls = []

    async def resolve_scan(self, identifier):
        self.calls.append(("scan", identifier))
        gate = self.gates.get(identifier)
        if gate is not None:
            await gate.wait()
        res = self.resolutions[identifier]
        if isinstance(res, Exception):
            raise res
        return ScanResolution.model_validate(res)

    async def time_in(self, student_id, purpose, device_id):
        self.calls.append(("time_in", student_id, purpose, device_id))
        if "time_in" in self.call_gates:
            await self.call_gates["time_in"].wait()
        return AttendanceSession.model_validate({
            "_id": "v1", "studentId": student_id, "purpose": purpose,
            "deviceId": device_id, "timeInAt": "2024-05-01T08:00:00Z",
        })

    async def time_out(self, student_id, session_id):
        self.calls.append(("time_out", student_id, session_id))
        if "time_out" in self.call_gates:
            await self.call_gates["time_out"].wait()
        return AttendanceSession.model_validate({
            "_id": session_id, "studentId": student_id, "purpose": "Research",
            "timeInAt": "2024-05-01T08:00:00Z", "timeOutAt": "2024-05-01T09:30:00Z",
        })

    def kinds(self):
        return [c[0] for c in self.calls]


def identified(student=ANA):
    return {"allowed": True, "action": None, "student": student}


def test_restricted_issues_no_session_calls():
    client = FakeClient({"2023-1313": {"allowed": False, "action": None, "student": {"_id": "s13"}}})
    m = SessionMachine(client)
    asyncio.run(m.submit_scan("2023-1313"))
    assert m.state is SessionState.RESTRICTED
    assert m.message == MSG_RESTRICTED
    assert client.kinds() == ["scan"]


def test_time_in_waits_for_purpose_then_chimes():
    chimes = []
    client = FakeClient({"2023-1001": {"allowed": True, "action": "TIME_IN", "student": ANA}})
    m = SessionMachine(client, "kiosk-7", chime=lambda: chimes.append(1))

    async def scenario():
        await m.submit_scan("2023-1001")
        assert m.state is SessionState.AWAITING_PURPOSE
        assert m.message == MSG_PURPOSE
        assert client.kinds() == ["scan"]
        await m.confirm_purpose("Others", "  thesis defense ")

    asyncio.run(scenario())
    assert m.state is SessionState.CONFIRMED
    assert client.calls[-1] == ("time_in", "s1", "thesis defense", "kiosk-7")
    assert m.last_action is ScanAction.TIME_IN
    assert m.active_session is not None and m.active_session.is_open
    assert "Purpose: thesis defense." in m.message
    assert chimes == [1]


def test_time_out_is_automatic():
    client = FakeClient({"2023-1001": {
        "allowed": True, "action": "TIME_OUT", "student": ANA,
        "activeSession": {"_id": "v9", "studentId": "s1", "timeInAt": "2024-05-01T08:00:00Z"},
    }})
    m = SessionMachine(client)
    asyncio.run(m.submit_scan("2023-1001"))
    assert m.state is SessionState.CONFIRMED
    assert client.calls == [("scan", "2023-1001"), ("time_out", "s1", "v9")]
    assert m.last_action is ScanAction.TIME_OUT
    assert m.last_session is not None and not m.last_session.is_open
    assert m.active_session is None
    assert m.message.startswith("Time Out recorded at ")


def test_identified_only_confirms_without_session_change():
    client = FakeClient({"2023-1001": identified()})
    m = SessionMachine(client)
    asyncio.run(m.submit_scan("2023-1001"))
    assert m.state is SessionState.CONFIRMED
    assert m.message == "Student identified: Reyes, Ana."
    assert client.kinds() == ["scan"]


def test_pending_scan_latest_wins():
    client = FakeClient({"A": identified(), "B": identified(), "C": identified()})
    m = SessionMachine(client)

    async def scenario():
        gate = asyncio.Event()
        client.gates["A"] = gate
        first = asyncio.create_task(m.submit_scan("A"))
        await asyncio.sleep(0)
        assert m.state is SessionState.RESOLVING and m.busy

        await m.submit_scan("B")
        assert m.pending_scan == "B"
        await m.submit_scan("C")
        assert m.pending_scan == "C"
        assert client.calls == [("scan", "A")], "no second resolve while busy"

        gate.set()
        await first

    asyncio.run(scenario())
    assert client.calls == [("scan", "A"), ("scan", "C")]
    assert m.scans_overwritten == 1
    assert m.pending_scan is None
    assert m.state is SessionState.CONFIRMED


def test_new_scan_needs_no_manual_reset():
    client = FakeClient({
        "2023-1313": {"allowed": False, "student": {"_id": "s13"}},
        "2023-1001": identified(),
    })
    seen = []
    m = SessionMachine(client)
    m.add_listener(lambda machine: seen.append(machine.state))

    async def scenario():
        await m.submit_scan("2023-1313")
        await m.submit_scan("2023-1001")

    asyncio.run(scenario())
    assert seen == [
        SessionState.RESOLVING, SessionState.RESTRICTED,
        SessionState.IDLE, SessionState.RESOLVING, SessionState.CONFIRMED,
    ]


def test_scan_during_purpose_prompt_abandons_it():
    client = FakeClient({
        "2023-1001": {"allowed": True, "action": "TIME_IN", "student": ANA},
        "2023-1002": identified({"_id": "s2", "firstName": "Ben", "lastName": "Cruz"}),
    })
    m = SessionMachine(client)

    async def scenario():
        await m.submit_scan("2023-1001")
        assert m.state is SessionState.AWAITING_PURPOSE
        await m.submit_scan("2023-1002")

    asyncio.run(scenario())
    assert m.state is SessionState.CONFIRMED
    assert m.student is not None and m.student.id == "s2"
    assert "time_in" not in client.kinds()


def test_cancel_purpose_returns_to_idle():
    client = FakeClient({"2023-1001": {"allowed": True, "action": "TIME_IN", "student": ANA}})
    m = SessionMachine(client)
    asyncio.run(m.submit_scan("2023-1001"))
    m.cancel_purpose()
    assert m.state is SessionState.IDLE
    assert m.message == MSG_READY
    assert m.student is None
    assert client.kinds() == ["scan"]


def test_failure_returns_to_idle():
    client = FakeClient({"2023-1001": ServiceError("boom", status=500)})
    announced = []
    m = SessionMachine(client, announce=announced.append)
    asyncio.run(m.submit_scan("2023-1001"))
    assert m.state is SessionState.IDLE
    assert m.student is None and m.active_session is None
    assert m.calls_failed == 1
    assert not m.busy
    assert announced[-1] == MSG_READY


def test_late_response_after_close_is_dropped():
    client = FakeClient({"2023-1001": {"allowed": True, "action": "TIME_IN", "student": ANA}})
    m = SessionMachine(client)
    seen = []
    m.add_listener(lambda machine: seen.append(machine.state))

    async def scenario():
        gate = asyncio.Event()
        client.gates["2023-1001"] = gate
        task = asyncio.create_task(m.submit_scan("2023-1001"))
        await asyncio.sleep(0)
        m.close()
        gate.set()
        await task
        await m.submit_scan("2023-1002")

    asyncio.run(scenario())
    assert m.closed
    assert m.state is SessionState.RESOLVING
    assert m.student is None
    assert seen == [SessionState.RESOLVING]
    assert client.calls == [("scan", "2023-1001")]


def test_scans_park_while_time_in_outstanding():
    client = FakeClient({
        "2023-1001": {"allowed": True, "action": "TIME_IN", "student": ANA},
        "B": identified(),
        "C": identified(),
    })
    m = SessionMachine(client)

    async def scenario():
        await m.submit_scan("2023-1001")
        gate = asyncio.Event()
        client.call_gates["time_in"] = gate
        confirm = asyncio.create_task(m.confirm_purpose("Research"))
        await asyncio.sleep(0)
        assert m.busy and client.kinds() == ["scan", "time_in"]

        await m.submit_scan("B")
        await m.submit_scan("C")
        assert m.pending_scan == "C"
        assert client.kinds() == ["scan", "time_in"], "no resolve while time-in is open"

        gate.set()
        await confirm

    asyncio.run(scenario())
    assert client.calls[2:] == [("scan", "C")]
    assert m.scans_overwritten == 1
    assert m.pending_scan is None
    assert m.state is SessionState.CONFIRMED
    assert m.student is not None and m.student.id == "s1"


def test_scans_park_while_time_out_outstanding():
    client = FakeClient({
        "2023-1001": {
            "allowed": True, "action": "TIME_OUT", "student": ANA,
            "activeSession": {"_id": "v9", "studentId": "s1"},
        },
        "B": identified(),
        "C": identified(),
    })
    m = SessionMachine(client)

    async def scenario():
        gate = asyncio.Event()
        client.call_gates["time_out"] = gate
        first = asyncio.create_task(m.submit_scan("2023-1001"))
        await asyncio.sleep(0)
        assert m.busy and client.kinds() == ["scan", "time_out"]

        await m.submit_scan("B")
        await m.submit_scan("C")
        assert m.pending_scan == "C"
        assert client.kinds() == ["scan", "time_out"], "no resolve while time-out is open"

        gate.set()
        await first

    asyncio.run(scenario())
    assert client.calls == [("scan", "2023-1001"), ("time_out", "s1", "v9"), ("scan", "C")]
    assert m.scans_overwritten == 1
    assert m.state is SessionState.CONFIRMED
    assert m.last_action is None


def test_unknown_action_counts_as_identified():
    client = FakeClient({"2023-1001": {"allowed": True, "action": "NONE", "student": ANA}})
    m = SessionMachine(client)
    asyncio.run(m.submit_scan("2023-1001"))
    assert m.state is SessionState.CONFIRMED
    assert m.message == "Student identified: Reyes, Ana."
    assert m.calls_failed == 0
    assert ScanResolution.model_validate({"action": "time_in"}).action is None
    assert ScanResolution.model_validate({"action": "TIME_OUT"}).action is ScanAction.TIME_OUT


def test_transition_table_is_enforced():
    m = SessionMachine(FakeClient({}))
    try:
        m._transition(SessionState.CONFIRMED, "nope")
    except IllegalTransition:
        pass
    else:
        raise AssertionError("IDLE -> CONFIRMED must be rejected")


def test_resolve_purpose():
    assert resolve_purpose("Research") == "Research"
    assert resolve_purpose("Others", "  ") == "Others"
    assert resolve_purpose("Others", " Club meeting ") == "Club meeting"
    assert resolve_purpose("") == "Research"


if __name__ == "__main__":
    for name, fn in list(globals().items()):
        if name.startswith("test_") and callable(fn):
            fn()
            print(f"[OK] {name}")
    print("[PASS] session machine tests passed")
