"""
Wire models for the attendance service.

The service speaks camelCase JSON with Mongo-style `_id` keys; attributes
here are snake_case with aliases so both directions round-trip. Unknown
keys are ignored, because the service adds fields freely.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, List, Optional

from pydantic import AliasChoices, BaseModel, BeforeValidator, ConfigDict, Field, field_validator

_ID_ALIASES = AliasChoices("_id", "id")


def _str_id(v: Any) -> Any:
    # numeric ids from SQL-backed registries
    return str(v) if isinstance(v, int) and not isinstance(v, bool) else v


WireId = Annotated[Optional[str], BeforeValidator(_str_id)]


class _Wire(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


class ScanAction(str, Enum):
    TIME_IN = "TIME_IN"
    TIME_OUT = "TIME_OUT"


class Student(_Wire):
    id: WireId = Field(default=None, alias="_id", validation_alias=_ID_ALIASES)
    student_no: Optional[str] = Field(default=None, alias="studentNo")
    first_name: str = Field(default="", alias="firstName")
    last_name: str = Field(default="", alias="lastName")
    level: str = ""
    course: str = ""
    photo: Optional[str] = None

    @property
    def display_name(self) -> str:
        name = ", ".join(p for p in (self.last_name, self.first_name) if p)
        return name or "Unknown"


class AttendanceSession(_Wire):
    id: WireId = Field(default=None, alias="_id", validation_alias=_ID_ALIASES)
    student_id: WireId = Field(default=None, alias="studentId")
    purpose: Optional[str] = None
    device_id: Optional[str] = Field(default=None, alias="deviceId")
    time_in_at: Optional[datetime] = Field(default=None, alias="timeInAt")
    time_out_at: Optional[datetime] = Field(default=None, alias="timeOutAt")

    @property
    def is_open(self) -> bool:
        return self.time_out_at is None


class ScanResolution(_Wire):
    allowed: Optional[bool] = True
    action: Optional[ScanAction] = None
    student: Optional[Student] = None
    active_session: Optional[AttendanceSession] = Field(default=None, alias="activeSession")

    @field_validator("action", mode="before")
    @classmethod
    def _known_action(cls, v: Any) -> Any:
        # blank or unrecognised actions mean "identified only"
        if not v:
            return None
        try:
            return ScanAction(v)
        except ValueError:
            return None


class SessionResult(_Wire):
    """Body of time-in / time-out responses."""
    session: Optional[AttendanceSession] = None


class VisitRecord(_Wire):
    id: WireId = Field(default=None, alias="_id", validation_alias=_ID_ALIASES)
    student: Optional[Student] = None
    purpose: str = ""
    status: str = "OK"
    time_in: Optional[datetime] = Field(default=None, alias="timeIn")
    time_out: Optional[datetime] = Field(default=None, alias="timeOut")

    @property
    def student_key(self) -> Optional[str]:
        """Student identity used for de-duplication; None when unmatched."""
        if self.student is None or not self.student.id:
            return None
        return self.student.id

    @property
    def latest_event(self) -> Optional[datetime]:
        return self.time_out or self.time_in


class RecentVisitsPage(_Wire):
    visits: List[VisitRecord] = Field(default_factory=list)
    page: int = 1
    limit: int = 10
    total: int = 0
    total_pages: int = Field(default=1, alias="totalPages")
    has_more: bool = Field(default=False, alias="hasMore")
