from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from presence.models import AttendanceStatus, ClockStatus, DayType


class ClockInRequest(BaseModel):
    notes: str | None = Field(default=None, max_length=1000)


class ClockOutRequest(BaseModel):
    notes: str | None = Field(default=None, max_length=1000)


class AttendanceRecordRead(BaseModel):
    id: int
    user_id: int
    date: str
    day_type: DayType
    holiday_name: str | None = None
    attendance_status: AttendanceStatus
    clock_in: datetime | None = None
    clock_out: datetime | None = None
    clock_status: ClockStatus
    break_in: datetime | None = None
    break_out: datetime | None = None
    break_duration_ms: int = 0
    break_taken: bool = False
    break_ended_by_system: bool = False
    break_overdue_ms: int = 0
    duration_ms: int = 0
    is_closed: bool = False
    auto_clock_out: bool = False
    auto_marked_absent: bool = False
    clock_in_notes: str | None = None
    clock_out_notes: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class AttendanceActionResponse(BaseModel):
    message: str
    record: AttendanceRecordRead
    work_duration: str | None = None


class DayInfoRead(BaseModel):
    date: str
    day_type: DayType
    holiday_name: str | None = None
    is_workday: bool


class TodayStatusResponse(BaseModel):
    day: DayInfoRead
    clock_status: ClockStatus
    attendance_status: str
    work_duration_ms: int
    work_duration: str
    message: str | None = None
    record: AttendanceRecordRead | None = None


class AttendanceHistoryItem(AttendanceRecordRead):
    work_duration_ms: int = 0
    work_duration: str = "0h 0m"


class AttendanceHistoryResponse(BaseModel):
    items: list[AttendanceHistoryItem]
    total: int
    page: int
    pages: int
    limit: int


class AttendanceSummaryResponse(BaseModel):
    present: int = 0
    absent: int = 0
    weekend: int = 0
    holiday: int = 0
    total: int = 0
    start_date: str | None = None
    end_date: str | None = None
    user_id: int | None = None


class HolidayRead(BaseModel):
    date: str
    name: str


class HolidayListResponse(BaseModel):
    year: int
    holidays: list[HolidayRead]


class JobRunResponse(BaseModel):
    job: str
    date_key: str
    processed: int
    succeeded: int
    skipped: int
    failed: int
    notified: int
    note: str | None = None
    errors: list[str] = Field(default_factory=list)


class HealthResponse(BaseModel):
    status: str
    schema_guard: dict[str, Any]
    scheduler: dict[str, Any]


class PushConfigResponse(BaseModel):
    enabled: bool
    vapid_public_key: str | None = None


class PushSubscribeRequest(BaseModel):
    subscription: dict[str, Any]


class PushSubscribeResponse(BaseModel):
    ok: bool
    subscription_id: int


class NotificationRead(BaseModel):
    id: int
    kind: str
    title: str
    message: str
    data: dict[str, Any] = Field(default_factory=dict)
    channels_used: list[str] = Field(default_factory=list)
    status: str
    is_read: bool
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class NotificationListResponse(BaseModel):
    items: list[NotificationRead]
    unread: int
