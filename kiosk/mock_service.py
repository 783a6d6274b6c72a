"""
kiosk/mock_service.py
---------------------
In-memory stand-in for the attendance service, for running the kiosk on a
laptop and for client tests (httpx.ASGITransport talks to it directly).

Endpoints mirror the real service:
    POST /api/attendance/scan        {"qr": "..."}
    POST /api/attendance/time-in     {"studentId", "purpose", "deviceId"}
    POST /api/attendance/time-out    {"studentId", "sessionId"}
    GET  /api/students/{id}/history  ?limit=
    GET  /api/attendance/recent      ?page=&limit=
    GET  /healthz

Nothing is persisted; restarting the process forgets every visit.

Run:
    python -m kiosk.mock_service            # binds mock_service.host/port from config
"""

from __future__ import annotations

import datetime as dt
import itertools
import math
from typing import Any, Dict, Iterable, List, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

DEMO_ROSTER: List[Dict[str, Any]] = [
    {"_id": "s1", "studentNo": "2023-1001", "firstName": "Ana", "lastName": "Reyes", "level": "Grade 11", "course": "STEM"},
    {"_id": "s2", "studentNo": "2023-1002", "firstName": "Ben", "lastName": "Cruz", "level": "Grade 12", "course": "ABM"},
    {"_id": "s3", "studentNo": "2023-1003", "firstName": "Carla", "lastName": "Santos", "level": "Grade 11", "course": "HUMSS"},
    {"_id": "s4", "studentNo": "2023-1004", "firstName": "Dino", "lastName": "Garcia", "level": "Grade 12", "course": "TVL"},
    {"_id": "s5", "studentNo": "2023-1005", "firstName": "Ella", "lastName": "Lim", "level": "Grade 11", "course": "STEM"},
    {"_id": "s13", "studentNo": "2023-1313", "firstName": "Xavi", "lastName": "Tan", "level": "Grade 12", "course": "GAS"},
]


def _iso(ts: Optional[dt.datetime]) -> Optional[str]:
    if ts is None:
        return None
    return ts.astimezone(dt.timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


# ------------------------------------------------------------
# Request bodies
# ------------------------------------------------------------
class ScanReq(BaseModel):
    qr: str = ""


class TimeInReq(BaseModel):
    student_id: str = Field(alias="studentId")
    purpose: str = "Others"
    device_id: Optional[str] = Field(default=None, alias="deviceId")


class TimeOutReq(BaseModel):
    student_id: str = Field(alias="studentId")
    session_id: str = Field(alias="sessionId")


# ------------------------------------------------------------
# Store
# ------------------------------------------------------------
class AttendanceStore:
    def __init__(self, roster: Iterable[Dict[str, Any]], denied: Iterable[str] = (), clock=None):
        self.students: Dict[str, Dict[str, Any]] = {str(s["_id"]): dict(s) for s in roster}
        self.denied = {str(d) for d in denied}
        self.visits: List[Dict[str, Any]] = []
        self._ids = itertools.count(1)
        self._clock = clock or (lambda: dt.datetime.now(dt.timezone.utc))

    def find_student(self, qr: str) -> Optional[Dict[str, Any]]:
        qr = (qr or "").strip()
        if qr in self.students:
            return self.students[qr]
        for s in self.students.values():
            if s.get("studentNo") == qr:
                return s
        return None

    def is_denied(self, student: Dict[str, Any]) -> bool:
        return student["_id"] in self.denied or student.get("studentNo") in self.denied

    def open_visit(self, student_id: str) -> Optional[Dict[str, Any]]:
        for v in reversed(self.visits):
            if v["studentId"] == student_id and v["timeOut"] is None:
                return v
        return None

    def time_in(self, student_id: str, purpose: str, device_id: Optional[str]) -> Dict[str, Any]:
        visit = {
            "_id": f"v{next(self._ids)}",
            "studentId": student_id,
            "purpose": purpose,
            "deviceId": device_id,
            "timeIn": self._clock(),
            "timeOut": None,
            "status": "OK",
        }
        self.visits.append(visit)
        return visit

    def time_out(self, visit: Dict[str, Any]) -> Dict[str, Any]:
        visit["timeOut"] = self._clock()
        return visit

    def newest_first(self, student_id: Optional[str] = None) -> List[Dict[str, Any]]:
        rows = [v for v in self.visits if student_id is None or v["studentId"] == student_id]
        return sorted(rows, key=lambda v: v["timeOut"] or v["timeIn"], reverse=True)


def session_json(v: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "_id": v["_id"],
        "studentId": v["studentId"],
        "purpose": v["purpose"],
        "deviceId": v["deviceId"],
        "timeInAt": _iso(v["timeIn"]),
        "timeOutAt": _iso(v["timeOut"]),
    }


def visit_json(store: AttendanceStore, v: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "_id": v["_id"],
        "student": store.students.get(v["studentId"]),
        "purpose": v["purpose"],
        "status": v["status"],
        "timeIn": _iso(v["timeIn"]),
        "timeOut": _iso(v["timeOut"]),
    }


# ------------------------------------------------------------
# App factory
# ------------------------------------------------------------
def create_app(
    roster: Optional[Iterable[Dict[str, Any]]] = None,
    denied: Iterable[str] = (),
    clock=None,
) -> FastAPI:
    store = AttendanceStore(DEMO_ROSTER if roster is None else roster, denied, clock)
    app = FastAPI(title="Kiosk Attendance Stub", version="0.1.0")
    app.state.store = store

    @app.get("/healthz")
    def healthz():
        return {"ok": True}

    @app.post("/api/attendance/scan")
    def scan(req: ScanReq) -> Dict[str, Any]:
        student = store.find_student(req.qr)
        if student is None:
            raise HTTPException(status_code=404, detail="Student not found")
        if store.is_denied(student):
            return {"allowed": False, "action": None, "student": student, "activeSession": None}
        open_v = store.open_visit(student["_id"])
        if open_v is not None:
            return {"allowed": True, "action": "TIME_OUT", "student": student, "activeSession": session_json(open_v)}
        return {"allowed": True, "action": "TIME_IN", "student": student, "activeSession": None}

    @app.post("/api/attendance/time-in")
    def time_in(req: TimeInReq) -> Dict[str, Any]:
        if req.student_id not in store.students:
            raise HTTPException(status_code=404, detail="Student not found")
        if store.is_denied(store.students[req.student_id]):
            raise HTTPException(status_code=403, detail="Student is restricted")
        if store.open_visit(req.student_id) is not None:
            raise HTTPException(status_code=409, detail="Student already has an open session")
        visit = store.time_in(req.student_id, req.purpose, req.device_id)
        return {"session": session_json(visit)}

    @app.post("/api/attendance/time-out")
    def time_out(req: TimeOutReq) -> Dict[str, Any]:
        visit = store.open_visit(req.student_id)
        if visit is None or visit["_id"] != req.session_id:
            raise HTTPException(status_code=409, detail="No matching open session")
        return {"session": session_json(store.time_out(visit))}

    @app.get("/api/students/{student_id}/history")
    def history(student_id: str, limit: int = 50) -> Dict[str, Any]:
        if student_id not in store.students:
            raise HTTPException(status_code=404, detail="Student not found")
        rows = store.newest_first(student_id)[: max(1, int(limit))]
        return {"visits": [visit_json(store, v) for v in rows]}

    @app.get("/api/attendance/recent")
    def recent(page: int = 1, limit: int = 10) -> Dict[str, Any]:
        page = max(1, int(page))
        limit = max(1, min(int(limit), 200))
        rows = store.newest_first()
        total = len(rows)
        total_pages = max(1, math.ceil(total / limit))
        chunk = rows[(page - 1) * limit: page * limit]
        return {
            "visits": [visit_json(store, v) for v in chunk],
            "page": page,
            "limit": limit,
            "total": total,
            "totalPages": total_pages,
            "hasMore": page < total_pages,
        }

    return app


def _main() -> None:
    import argparse
    import uvicorn

    from . import config_loader

    ap = argparse.ArgumentParser(description="Kiosk attendance service stub")
    ap.add_argument("--config", help="Path to config/config.yaml (optional)")
    args = ap.parse_args()
    if args.config:
        config_loader.CONFIG = config_loader.load_config(args.config)

    host, port = config_loader.get_mock_service_bind()
    denied = (config_loader.CONFIG.get("mock_service", {}) or {}).get("denied") or []
    uvicorn.run(create_app(denied=denied), host=host, port=port, log_level=config_loader.get_log_level().lower())


if __name__ == "__main__":
    _main()
