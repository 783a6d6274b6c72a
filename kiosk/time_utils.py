from __future__ import annotations
import datetime as dt
from typing import Optional


def to_utc(ts: Optional[dt.datetime]) -> Optional[dt.datetime]:
    """Aware UTC datetime; naive values from the service are taken as UTC."""
    if ts is None:
        return None
    if ts.tzinfo is None:
        return ts.replace(tzinfo=dt.timezone.utc)
    return ts.astimezone(dt.timezone.utc)


def format_clock(ts: Optional[dt.datetime] = None) -> str:
    """HH:MM in kiosk local time; now when ts is None."""
    ts = to_utc(ts) or dt.datetime.now(dt.timezone.utc)
    return ts.astimezone().strftime("%H:%M")


def format_duration(ms: Optional[float]) -> str:
    if not ms or ms <= 0:
        return ""
    total = int(ms // 1000)
    hrs, rem = divmod(total, 3600)
    mins = rem // 60
    parts = []
    if hrs:
        parts.append(f"{hrs}h")
    if mins or not hrs:
        parts.append(f"{mins}m")
    return " ".join(parts)


def duration_ms(start: Optional[dt.datetime], end: Optional[dt.datetime]) -> Optional[int]:
    a, b = to_utc(start), to_utc(end)
    if a is None or b is None:
        return None
    return int((b - a).total_seconds() * 1000)
