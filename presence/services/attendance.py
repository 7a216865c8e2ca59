from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import logging
from typing import Any
from zoneinfo import ZoneInfo

from presence.business_calendar import DayInfo, classify_day, parse_date_key
from presence.errors import (
    GUARD_ALREADY_CLOCKED_IN,
    GUARD_ALREADY_MARKED_ABSENT,
    GUARD_BREAK_ALREADY_TAKEN,
    GUARD_DAY_CLOSED,
    GUARD_NON_WORKING_DAY,
    GUARD_NOT_CLOCKED_IN,
    GUARD_NOT_ON_BREAK,
    GUARD_OUTSIDE_BUSINESS_HOURS,
    NOT_FOUND_NO_ACTIVE_SESSION,
    ConcurrencyConflict,
    DuplicateKeyError,
    GuardViolation,
    NotFoundError,
)
from presence.models import AttendanceRecord, AttendanceStatus, ClockStatus, DayType
from presence.settings import Settings, get_settings
from presence.store import AttendanceStore, RecordFilter
from presence.tz_clock import (
    current_instant,
    date_key_for_instant,
    end_of_day_instant,
    local_hour,
    ms_between,
    normalize_instant,
    zone_for,
)

logger = logging.getLogger("presence.attendance")

PENDING_STATUS = "pending"


def work_duration_ms(clock_in: datetime | None, end: datetime | None, break_duration_ms: int) -> int:
    if clock_in is None or end is None:
        return 0
    return max(0, ms_between(end, clock_in) - max(0, int(break_duration_ms or 0)))


def live_work_duration_ms(record: AttendanceRecord, *, now: datetime, tz: ZoneInfo | None = None) -> int:
    """Work time so far; open sessions are capped at the end of their own day."""
    if record.clock_in is None:
        return 0
    if record.is_closed:
        return max(0, int(record.duration_ms or 0))

    reference = min(normalize_instant(now), end_of_day_instant(record.date, tz))
    break_ms = int(record.break_duration_ms or 0)
    if record.clock_status == ClockStatus.ON_BREAK and record.break_in is not None:
        break_ms += ms_between(reference, record.break_in)
    return work_duration_ms(record.clock_in, reference, break_ms)


def build_close_patch(record: AttendanceRecord, *, close_at: datetime) -> dict[str, Any]:
    """Field changes that end the session at `close_at`, closing any open break first."""
    close_at = normalize_instant(close_at)
    break_duration = int(record.break_duration_ms or 0)
    patch: dict[str, Any] = {}

    if record.clock_status == ClockStatus.ON_BREAK and record.break_in is not None:
        break_duration += ms_between(close_at, record.break_in)
        patch["break_out"] = max(close_at, record.break_in)
        patch["break_duration_ms"] = break_duration
        patch["break_taken"] = True

    clock_out = max(close_at, record.clock_in) if record.clock_in is not None else close_at
    patch.update(
        clock_out=clock_out,
        duration_ms=work_duration_ms(record.clock_in, clock_out, break_duration),
        clock_status=ClockStatus.CLOCKED_OUT,
        is_closed=True,
    )
    return patch


def _ensure_can_clock_in(record: AttendanceRecord) -> None:
    if record.day_type != DayType.WORKDAY:
        raise GuardViolation(GUARD_NON_WORKING_DAY, f"Cannot clock in on a {record.day_type.value}.")
    if record.auto_marked_absent and record.attendance_status == AttendanceStatus.ABSENT:
        raise GuardViolation(
            GUARD_ALREADY_MARKED_ABSENT,
            "You were marked absent for today and can no longer clock in. Please contact your administrator.",
        )
    if record.clock_in is not None:
        raise GuardViolation(
            GUARD_ALREADY_CLOCKED_IN,
            "You have already clocked in today. Only one clock-in per day is allowed.",
        )
    if record.is_closed:
        raise GuardViolation(GUARD_DAY_CLOSED, "Attendance for today is already closed.")


def _ensure_workday(day: DayInfo) -> None:
    if day.day_type == DayType.WEEKEND:
        raise GuardViolation(GUARD_NON_WORKING_DAY, "Cannot clock in on weekends.")
    if day.day_type == DayType.HOLIDAY:
        raise GuardViolation(GUARD_NON_WORKING_DAY, f"Cannot clock in on {day.holiday_name}.")


def _ensure_within_business_hours(reference: datetime, settings: Settings) -> None:
    cutoff_hour = int(settings.clock_in_cutoff_hour)
    if local_hour(reference, zone_for(settings)) >= cutoff_hour:
        raise GuardViolation(
            GUARD_OUTSIDE_BUSINESS_HOURS,
            f"Cannot clock in after {cutoff_hour}:00. Business hours have ended.",
        )


def _require_open_session(record: AttendanceRecord | None) -> AttendanceRecord:
    if record is None or record.clock_in is None or record.is_closed:
        raise NotFoundError("No active clock-in found for today.", code=NOT_FOUND_NO_ACTIVE_SESSION)
    return record


def _require_clocked_in(record: AttendanceRecord | None) -> AttendanceRecord:
    if record is None or record.clock_in is None or record.is_closed:
        raise GuardViolation(GUARD_NOT_CLOCKED_IN, "You must be clocked in to take a break.")
    if record.clock_status != ClockStatus.CLOCKED_IN:
        raise GuardViolation(GUARD_NOT_CLOCKED_IN, "You must be actively working to start a break.")
    if record.break_taken:
        raise GuardViolation(GUARD_BREAK_ALREADY_TAKEN, "You have already taken your break for today.")
    return record


def _require_on_break(record: AttendanceRecord | None) -> AttendanceRecord:
    if record is None or record.is_closed or record.clock_status != ClockStatus.ON_BREAK or record.break_in is None:
        raise GuardViolation(GUARD_NOT_ON_BREAK, "You are not currently on break.")
    return record


def _explain_conflict(store: AttendanceStore, record_id: int, guard, conflict: ConcurrencyConflict) -> None:  # type: ignore[no-untyped-def]
    """Re-check the guard against the winner's state; re-raise the conflict if it still holds."""
    current = store.get(record_id)
    guard(current)
    raise conflict


def clock_in(
    store: AttendanceStore,
    *,
    user_id: int,
    now: datetime | None = None,
    notes: str | None = None,
    settings: Settings | None = None,
) -> AttendanceRecord:
    settings = settings or get_settings()
    reference = current_instant(now)
    date_key = date_key_for_instant(reference, zone_for(settings))
    _ensure_workday(classify_day(date_key))

    existing = store.find(user_id, date_key)
    if existing is not None:
        _ensure_can_clock_in(existing)
    _ensure_within_business_hours(reference, settings)

    patch: dict[str, Any] = {
        "clock_in": reference,
        "clock_status": ClockStatus.CLOCKED_IN,
        "attendance_status": AttendanceStatus.PRESENT,
        "auto_marked_absent": False,
        "clock_in_notes": notes or "",
    }

    if existing is None:
        try:
            record = store.create_if_absent(
                AttendanceRecord(user_id=user_id, date=date_key, day_type=DayType.WORKDAY, **patch)
            )
        except DuplicateKeyError:
            # A scheduler tick (or a second request) created the row first.
            existing = store.find(user_id, date_key)
            if existing is None:
                raise ConcurrencyConflict(f"Attendance for user {user_id} on {date_key} changed concurrently.")
            _ensure_can_clock_in(existing)
        else:
            logger.info("user_clocked_in", extra={"user_id": user_id, "attendance_id": record.id, "date": date_key})
            return record

    try:
        record = store.update_if_matches(
            existing.id,
            expected={"clock_in": None, "auto_marked_absent": False, "is_closed": False},
            patch=patch,
        )
    except ConcurrencyConflict as conflict:
        _explain_conflict(store, existing.id, _ensure_can_clock_in, conflict)
        raise

    logger.info("user_clocked_in", extra={"user_id": user_id, "attendance_id": record.id, "date": date_key})
    return record


def clock_out(
    store: AttendanceStore,
    *,
    user_id: int,
    now: datetime | None = None,
    notes: str | None = None,
    settings: Settings | None = None,
) -> AttendanceRecord:
    reference = current_instant(now)
    date_key = date_key_for_instant(reference, zone_for(settings))
    record = _require_open_session(store.find(user_id, date_key))

    patch = build_close_patch(record, close_at=reference)
    patch["clock_out_notes"] = notes or ""
    try:
        record = store.update_if_matches(
            record.id,
            expected={"is_closed": False, "clock_out": None, "clock_status": record.clock_status},
            patch=patch,
        )
    except ConcurrencyConflict as conflict:
        _explain_conflict(store, record.id, _require_open_session, conflict)
        raise

    logger.info(
        "user_clocked_out",
        extra={
            "user_id": user_id,
            "attendance_id": record.id,
            "date": record.date,
            "duration_ms": record.duration_ms,
            "break_duration_ms": record.break_duration_ms,
        },
    )
    return record


def break_in(
    store: AttendanceStore,
    *,
    user_id: int,
    now: datetime | None = None,
    settings: Settings | None = None,
) -> AttendanceRecord:
    reference = current_instant(now)
    date_key = date_key_for_instant(reference, zone_for(settings))
    record = _require_clocked_in(store.find(user_id, date_key))

    try:
        record = store.update_if_matches(
            record.id,
            expected={"is_closed": False, "clock_status": ClockStatus.CLOCKED_IN, "break_taken": False},
            patch={"break_in": max(reference, record.clock_in), "clock_status": ClockStatus.ON_BREAK},
        )
    except ConcurrencyConflict as conflict:
        _explain_conflict(store, record.id, _require_clocked_in, conflict)
        raise

    logger.info("user_break_started", extra={"user_id": user_id, "attendance_id": record.id})
    return record


def break_out(
    store: AttendanceStore,
    *,
    user_id: int,
    now: datetime | None = None,
    settings: Settings | None = None,
) -> AttendanceRecord:
    reference = current_instant(now)
    date_key = date_key_for_instant(reference, zone_for(settings))
    record = _require_on_break(store.find(user_id, date_key))

    elapsed_ms = ms_between(reference, record.break_in)
    try:
        record = store.update_if_matches(
            record.id,
            expected={"is_closed": False, "clock_status": ClockStatus.ON_BREAK, "break_in": record.break_in},
            patch={
                "break_out": max(reference, record.break_in),
                "break_duration_ms": int(record.break_duration_ms or 0) + elapsed_ms,
                "break_taken": True,
                "clock_status": ClockStatus.CLOCKED_IN,
            },
        )
    except ConcurrencyConflict as conflict:
        _explain_conflict(store, record.id, _require_on_break, conflict)
        raise

    logger.info(
        "user_break_ended",
        extra={"user_id": user_id, "attendance_id": record.id, "break_ms": elapsed_ms},
    )
    return record


@dataclass(frozen=True, slots=True)
class TodayStatus:
    date_key: str
    day: DayInfo
    record: AttendanceRecord | None
    clock_status: ClockStatus
    attendance_status: str
    work_duration_ms: int

    @property
    def message(self) -> str | None:
        if self.day.day_type == DayType.WEEKEND:
            return "It's the weekend!"
        if self.day.day_type == DayType.HOLIDAY:
            return f"Today is {self.day.holiday_name}"
        return None


def get_today_status(
    store: AttendanceStore,
    *,
    user_id: int,
    now: datetime | None = None,
    settings: Settings | None = None,
) -> TodayStatus:
    tz = zone_for(settings)
    reference = current_instant(now)
    date_key = date_key_for_instant(reference, tz)
    day = classify_day(date_key)
    record = store.find(user_id, date_key)

    if record is None:
        # Absence is only confirmed once the mark-absent job has run.
        attendance_status = PENDING_STATUS if day.is_workday else day.day_type.value
        return TodayStatus(
            date_key=date_key,
            day=day,
            record=None,
            clock_status=ClockStatus.CLOCKED_OUT,
            attendance_status=attendance_status,
            work_duration_ms=0,
        )

    return TodayStatus(
        date_key=date_key,
        day=day,
        record=record,
        clock_status=record.clock_status,
        attendance_status=record.attendance_status.value,
        work_duration_ms=live_work_duration_ms(record, now=reference, tz=tz),
    )


@dataclass(slots=True)
class HistoryPage:
    records: list[AttendanceRecord]
    total: int
    page: int
    limit: int
    durations_ms: dict[int, int] = field(default_factory=dict)

    @property
    def pages(self) -> int:
        if self.limit <= 0:
            return 0
        return -(-self.total // self.limit)


def list_history(
    store: AttendanceStore,
    *,
    user_id: int | None = None,
    start_date: str | None = None,
    end_date: str | None = None,
    day_type: DayType | None = None,
    attendance_status: AttendanceStatus | None = None,
    page: int = 1,
    limit: int = 10,
    now: datetime | None = None,
    settings: Settings | None = None,
) -> HistoryPage:
    if start_date is not None:
        parse_date_key(start_date)
    if end_date is not None:
        parse_date_key(end_date)
    page = max(1, int(page))
    limit = max(1, min(int(limit), 200))
    reference = current_instant(now)
    tz = zone_for(settings)

    record_filter = RecordFilter(
        user_id=user_id,
        start_date=start_date,
        end_date=end_date,
        day_type=day_type,
        attendance_status=attendance_status,
    )
    total = store.count(record_filter)
    record_filter.limit = limit
    record_filter.offset = (page - 1) * limit
    records = store.find_many(record_filter)
    return HistoryPage(
        records=records,
        total=total,
        page=page,
        limit=limit,
        durations_ms={record.id: live_work_duration_ms(record, now=reference, tz=tz) for record in records},
    )


def summarize(
    store: AttendanceStore,
    *,
    user_id: int | None = None,
    start_date: str | None = None,
    end_date: str | None = None,
) -> dict[str, int]:
    if start_date is not None:
        parse_date_key(start_date)
    if end_date is not None:
        parse_date_key(end_date)
    counts = store.status_counts(RecordFilter(user_id=user_id, start_date=start_date, end_date=end_date))
    result = {status.value: 0 for status in AttendanceStatus}
    for status, total in counts.items():
        result[status.value] = total
    result["total"] = sum(counts.values())
    return result
