"""
Async client for the remote attendance service.

One shared httpx.AsyncClient per kiosk. Every call either returns a parsed
model or raises: ServiceError for a non-2xx answer, httpx.HTTPError for
transport trouble. Nothing is retried here; callers decide what a failure
means for their state.
"""

from __future__ import annotations

import logging
import time
from typing import Any, List, Optional

import httpx
from pydantic import ValidationError

from .models import AttendanceSession, RecentVisitsPage, ScanResolution, SessionResult, VisitRecord

log = logging.getLogger("kiosk.client")


class ServiceError(RuntimeError):
    """The attendance service answered, but not with a 2xx or not with usable JSON."""
    def __init__(self, message: str, *, status: Optional[int] = None, detail: Any = None):
        super().__init__(message)
        self.status = status
        self.detail = detail


class AttendanceClient:
    """
    Thin typed wrapper over the attendance REST API:
      - POST /api/attendance/scan
      - POST /api/attendance/time-in
      - POST /api/attendance/time-out
      - GET  /api/students/{id}/history
      - GET  /api/attendance/recent
    """
    def __init__(
        self,
        base_url: str,
        *,
        timeout_ms: int = 4000,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout_ms / 1000.0
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

        # Observability counters (simple integers; emit in logs)
        self.calls = 0
        self.failures = 0

    @classmethod
    def from_app(cls, service_cfg: Optional[dict], **kwargs) -> "AttendanceClient":
        svc = service_cfg or {}
        return cls(
            str(svc.get("base_url") or "http://localhost:5000"),
            timeout_ms=int(svc.get("timeout_ms", 4000)),
            **kwargs,
        )

    async def start(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self._transport
            )

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "AttendanceClient":
        await self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    # ---------- endpoints ----------

    async def resolve_scan(self, identifier: str) -> ScanResolution:
        body = await self._request("POST", "/api/attendance/scan", json={"qr": identifier})
        return self._parse(ScanResolution, body, "scan")

    async def time_in(self, student_id: str, purpose: str, device_id: str) -> AttendanceSession:
        body = await self._request(
            "POST",
            "/api/attendance/time-in",
            json={"studentId": student_id, "purpose": purpose, "deviceId": device_id},
        )
        return self._session_from(body, "time-in")

    async def time_out(self, student_id: str, session_id: str) -> AttendanceSession:
        body = await self._request(
            "POST",
            "/api/attendance/time-out",
            json={"studentId": student_id, "sessionId": session_id},
        )
        return self._session_from(body, "time-out")

    async def student_history(self, student_id: str, limit: Optional[int] = None) -> List[VisitRecord]:
        """Most-recent-first visits of one student. Accepts a bare list or {visits: [...]}."""
        params = {"limit": limit} if limit else None
        body = await self._request("GET", f"/api/students/{student_id}/history", params=params)
        if isinstance(body, dict):
            body = body.get("visits")
        if not isinstance(body, list):
            body = []
        visits = [self._parse(VisitRecord, v, "history") for v in body if isinstance(v, dict)]
        return visits[:limit] if limit else visits

    async def recent_visits(self, page: int = 1, limit: int = 10) -> RecentVisitsPage:
        body = await self._request("GET", "/api/attendance/recent", params={"page": page, "limit": limit})
        if not isinstance(body, dict):
            body = {}
        result = self._parse(RecentVisitsPage, body, "recent")
        if "page" not in body:
            result.page = page
        return result

    # ---------- plumbing ----------

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        if self._client is None:
            await self.start()
        assert self._client is not None

        self.calls += 1
        t0 = time.perf_counter()
        try:
            resp = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            self.failures += 1
            log.warning("http_error", extra={"method": method, "path": path, "err": str(e)})
            raise

        latency_ms = round((time.perf_counter() - t0) * 1000, 1)
        try:
            body = resp.json()
        except ValueError:
            body = None

        if not 200 <= resp.status_code < 300:
            self.failures += 1
            log.warning(
                "http_non_2xx",
                extra={"method": method, "path": path, "status": resp.status_code, "latency_ms": latency_ms},
            )
            raise ServiceError(
                f"{method} {path} -> HTTP {resp.status_code}",
                status=resp.status_code,
                detail=body if body is not None else resp.text,
            )

        if body is None:
            self.failures += 1
            raise ServiceError(f"{method} {path} returned non-JSON body", status=resp.status_code, detail=resp.text)

        log.debug("http_ok", extra={"method": method, "path": path, "status": resp.status_code, "latency_ms": latency_ms})
        return body

    def _parse(self, model, body: Any, what: str):
        try:
            return model.model_validate(body)
        except ValidationError as e:
            self.failures += 1
            raise ServiceError(f"unexpected {what} payload: {e.error_count()} error(s)", detail=body) from e

    def _session_from(self, body: Any, what: str) -> AttendanceSession:
        if not isinstance(body, dict):
            body = {}
        if "session" not in body and ("_id" in body or "id" in body):
            # older deployments answer with the bare session object
            return self._parse(AttendanceSession, body, what)
        result = self._parse(SessionResult, body, what)
        if result.session is None:
            raise ServiceError(f"{what} response carried no session", detail=body)
        return result.session
