from __future__ import annotations

from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
import logging
from typing import Any

from presence.audit import log_job_audit
from presence.business_calendar import classify_day
from presence.errors import ConcurrencyConflict, DuplicateKeyError, NotFoundError
from presence.models import (
    AttendanceRecord,
    AttendanceStatus,
    AuditActorType,
    ClockStatus,
    DayType,
    NotificationTag,
)
from presence.services.attendance import build_close_patch
from presence.services.notifications import (
    CHANNEL_EMAIL,
    CHANNEL_IN_APP,
    CHANNEL_WEBPUSH,
    Notifier,
)
from presence.settings import Settings, get_settings
from presence.store import AttendanceStore, RecordFilter
from presence.tz_clock import (
    current_instant,
    date_key_for_instant,
    end_of_day_instant,
    local_hour,
    ms_between,
    wall_parts,
    zone_for,
)

logger = logging.getLogger("presence.reconciliation")

JOB_DAY_INIT = "day_init"
JOB_MARK_ABSENT = "mark_absent"
JOB_AUTO_CLOCK_OUT = "auto_clock_out"
JOB_BREAK_REMINDER = "break_reminder"
JOB_CLOCK_OUT_REMINDER = "clock_out_reminder"

AUTO_CLOCK_OUT_NOTE = "Auto clocked out by system at end of day"
ONE_MINUTE_MS = 60_000


@dataclass(slots=True)
class JobRunResult:
    job: str
    date_key: str
    processed: int = 0
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0
    notified: int = 0
    note: str | None = None
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.failed == 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _record_failure(result: JobRunResult, record_ref: str, exc: Exception) -> None:
    result.failed += 1
    result.errors.append(f"{record_ref}: {str(exc)[:200]}")
    logger.exception(
        "reconciliation_item_failed",
        extra={"job": result.job, "date": result.date_key, "item": record_ref},
    )


def _safe_notify(result: JobRunResult, send: Callable[[], Any], *, record_id: int, tag: str) -> None:
    """Delivery problems are logged; the state change that triggered them stands."""
    try:
        send()
    except Exception:
        logger.exception(
            "reconciliation_notify_failed",
            extra={"job": result.job, "attendance_id": record_id, "tag": tag},
        )
        return
    result.notified += 1


def run_day_init(
    store: AttendanceStore,
    *,
    now: datetime,
    settings: Settings,
    notifier: Notifier | None = None,
) -> JobRunResult:
    date_key = date_key_for_instant(now, zone_for(settings))
    day = classify_day(date_key)
    result = JobRunResult(job=JOB_DAY_INIT, date_key=date_key)
    if day.is_workday:
        result.note = "workday"
        return result

    status = AttendanceStatus(day.day_type.value)
    for user in store.list_active_users():
        result.processed += 1
        try:
            store.create_if_absent(
                AttendanceRecord(
                    user_id=user.id,
                    date=date_key,
                    day_type=day.day_type,
                    holiday_name=day.holiday_name,
                    attendance_status=status,
                    clock_status=ClockStatus.CLOCKED_OUT,
                    is_closed=True,
                )
            )
        except DuplicateKeyError:
            result.skipped += 1
        except Exception as exc:
            _record_failure(result, f"user:{user.id}", exc)
        else:
            result.succeeded += 1
    return result


def run_mark_absent(
    store: AttendanceStore,
    *,
    now: datetime,
    settings: Settings,
    notifier: Notifier | None = None,
) -> JobRunResult:
    tz = zone_for(settings)
    date_key = date_key_for_instant(now, tz)
    day = classify_day(date_key)
    result = JobRunResult(job=JOB_MARK_ABSENT, date_key=date_key)
    if not day.is_workday:
        result.note = day.day_type.value
        return result
    # Users may still clock in until the cutoff.
    if local_hour(now, tz) < int(settings.clock_in_cutoff_hour):
        result.note = "before_cutoff"
        return result

    absent_patch: dict[str, Any] = {
        "attendance_status": AttendanceStatus.ABSENT,
        "auto_marked_absent": True,
        "is_closed": True,
        "clock_status": ClockStatus.CLOCKED_OUT,
    }
    for user in store.list_active_users():
        result.processed += 1
        try:
            existing = store.find(user.id, date_key)
            if existing is None:
                store.create_if_absent(
                    AttendanceRecord(user_id=user.id, date=date_key, day_type=DayType.WORKDAY, **absent_patch)
                )
            elif existing.clock_in is None and not existing.auto_marked_absent and not existing.is_closed:
                store.update_if_matches(
                    existing.id,
                    expected={"clock_in": None, "auto_marked_absent": False, "is_closed": False},
                    patch=absent_patch,
                )
            else:
                result.skipped += 1
                continue
        except (DuplicateKeyError, ConcurrencyConflict):
            # The user clocked in between the read and the write.
            result.skipped += 1
        except Exception as exc:
            _record_failure(result, f"user:{user.id}", exc)
        else:
            result.succeeded += 1
            logger.info("user_marked_absent", extra={"user_id": user.id, "date": date_key})
    return result


def run_auto_clock_out(
    store: AttendanceStore,
    *,
    now: datetime,
    settings: Settings,
    notifier: Notifier | None = None,
) -> JobRunResult:
    tz = zone_for(settings)
    date_key = date_key_for_instant(now, tz)
    result = JobRunResult(job=JOB_AUTO_CLOCK_OUT, date_key=date_key)
    local = wall_parts(now, tz)
    before_close_time = (local.hour, local.minute) < settings.auto_clock_out_hour_minute

    for record in store.find_many(RecordFilter(open_only=True, has_clock_in=True)):
        result.processed += 1
        if record.date >= date_key and before_close_time:
            # Today's sessions stay open until the configured close time.
            result.skipped += 1
            continue
        try:
            # Sessions left open on earlier days close at the end of their own day.
            close_at = min(now, end_of_day_instant(record.date, tz))
            patch = build_close_patch(record, close_at=close_at)
            patch.update(auto_clock_out=True, clock_out_notes=AUTO_CLOCK_OUT_NOTE)
            store.update_if_matches(
                record.id,
                expected={"is_closed": False, "clock_out": None, "clock_status": record.clock_status},
                patch=patch,
            )
        except ConcurrencyConflict:
            result.skipped += 1
        except Exception as exc:
            _record_failure(result, f"attendance:{record.id}", exc)
        else:
            result.succeeded += 1
            logger.info(
                "user_auto_clocked_out",
                extra={"user_id": record.user_id, "attendance_id": record.id, "date": record.date},
            )
    return result


def _enforce_break_policy(
    store: AttendanceStore,
    record: AttendanceRecord,
    *,
    now: datetime,
    settings: Settings,
    notifier: Notifier,
    result: JobRunResult,
) -> bool:
    max_ms = int(settings.max_break_minutes) * ONE_MINUTE_MS
    lead_ms = int(settings.break_warning_lead_minutes) * ONE_MINUTE_MS
    admin_after_ms = int(settings.break_admin_overdue_after_minutes) * ONE_MINUTE_MS

    elapsed_ms = ms_between(now, record.break_in)
    remaining_ms = max_ms - elapsed_ms
    acted = False

    if 0 < remaining_ms < lead_ms:
        if store.claim_notification(record.id, NotificationTag.BREAK_ALMOST_OVER.value, now=now):
            minutes_left = max(1, -(-remaining_ms // ONE_MINUTE_MS))
            _safe_notify(
                result,
                lambda: notifier.notify(
                    record.user_id,
                    kind=NotificationTag.BREAK_ALMOST_OVER.value,
                    title="Break almost over",
                    message=f"Your break ends in {minutes_left} minute(s). Please get ready to resume work.",
                    channels=(CHANNEL_IN_APP, CHANNEL_WEBPUSH),
                    data={"attendance_id": record.id, "remaining_ms": remaining_ms},
                ),
                record_id=record.id,
                tag=NotificationTag.BREAK_ALMOST_OVER.value,
            )
            acted = True

    if elapsed_ms < max_ms:
        return acted

    overdue_ms = elapsed_ms - max_ms
    store.update_if_matches(
        record.id,
        expected={"is_closed": False, "clock_status": ClockStatus.ON_BREAK, "break_in": record.break_in},
        patch={
            "break_out": record.break_in + timedelta(milliseconds=max_ms),
            "break_overdue_ms": overdue_ms,
            "break_duration_ms": int(record.break_duration_ms or 0) + max_ms + overdue_ms,
            "break_ended_by_system": True,
            "break_taken": True,
            "clock_status": ClockStatus.CLOCKED_IN,
        },
    )
    logger.info(
        "break_ended_by_system",
        extra={"user_id": record.user_id, "attendance_id": record.id, "overdue_ms": overdue_ms},
    )

    if store.claim_notification(record.id, NotificationTag.BREAK_ENDED.value, now=now):
        _safe_notify(
            result,
            lambda: notifier.notify(
                record.user_id,
                kind=NotificationTag.BREAK_ENDED.value,
                title="Break ended",
                message=(
                    f"Your break reached the {settings.max_break_minutes}-minute limit and was ended automatically."
                ),
                channels=(CHANNEL_IN_APP, CHANNEL_WEBPUSH),
                data={"attendance_id": record.id, "overdue_ms": overdue_ms},
            ),
            record_id=record.id,
            tag=NotificationTag.BREAK_ENDED.value,
        )

    if overdue_ms > admin_after_ms and store.claim_notification(
        record.id, NotificationTag.BREAK_ADMIN_OVERDUE.value, now=now
    ):
        overdue_minutes = overdue_ms // ONE_MINUTE_MS
        _safe_notify(
            result,
            lambda: notifier.notify_admins(
                kind=NotificationTag.BREAK_ADMIN_OVERDUE.value,
                title="Break overdue",
                message=f"User {record.user_id} exceeded the break limit by {overdue_minutes} minute(s) on {record.date}.",
                channels=(CHANNEL_IN_APP, CHANNEL_EMAIL),
                data={"attendance_id": record.id, "user_id": record.user_id, "overdue_ms": overdue_ms},
            ),
            record_id=record.id,
            tag=NotificationTag.BREAK_ADMIN_OVERDUE.value,
        )
    return True


def run_break_reminder(
    store: AttendanceStore,
    *,
    now: datetime,
    settings: Settings,
    notifier: Notifier | None = None,
) -> JobRunResult:
    date_key = date_key_for_instant(now, zone_for(settings))
    result = JobRunResult(job=JOB_BREAK_REMINDER, date_key=date_key)
    notifier = notifier or Notifier(store.session)

    for record in store.find_many(RecordFilter(open_only=True, clock_status=ClockStatus.ON_BREAK)):
        if record.break_in is None:
            continue
        result.processed += 1
        try:
            acted = _enforce_break_policy(
                store,
                record,
                now=now,
                settings=settings,
                notifier=notifier,
                result=result,
            )
        except ConcurrencyConflict:
            result.skipped += 1
        except Exception as exc:
            _record_failure(result, f"attendance:{record.id}", exc)
        else:
            if acted:
                result.succeeded += 1
            else:
                result.skipped += 1
    return result


def run_clock_out_reminder(
    store: AttendanceStore,
    *,
    now: datetime,
    settings: Settings,
    notifier: Notifier | None = None,
) -> JobRunResult:
    tz = zone_for(settings)
    date_key = date_key_for_instant(now, tz)
    result = JobRunResult(job=JOB_CLOCK_OUT_REMINDER, date_key=date_key)
    if not classify_day(date_key).is_workday:
        result.note = "non_workday"
        return result

    local = wall_parts(now, tz)
    if (local.hour, local.minute) < (settings.clock_out_reminder_hour, settings.clock_out_reminder_minute):
        result.note = "before_reminder_time"
        return result

    notifier = notifier or Notifier(store.session)
    for record in store.find_many(RecordFilter(date=date_key, open_only=True, has_clock_in=True)):
        result.processed += 1
        try:
            claimed = store.claim_notification(record.id, NotificationTag.CLOCK_OUT_REMINDER.value, now=now)
        except Exception as exc:
            _record_failure(result, f"attendance:{record.id}", exc)
            continue
        if not claimed:
            result.skipped += 1
            continue
        _safe_notify(
            result,
            lambda: notifier.notify(
                record.user_id,
                kind="missed_clockout",
                title="Clock-out reminder",
                message="You forgot to clock out today. Please clock out to record your hours.",
                channels=(CHANNEL_EMAIL, CHANNEL_WEBPUSH, CHANNEL_IN_APP),
                data={"attendance_id": record.id, "date": record.date},
            ),
            record_id=record.id,
            tag=NotificationTag.CLOCK_OUT_REMINDER.value,
        )
        result.succeeded += 1
    return result


JobFunc = Callable[..., JobRunResult]

JOBS: dict[str, JobFunc] = {
    JOB_DAY_INIT: run_day_init,
    JOB_MARK_ABSENT: run_mark_absent,
    JOB_AUTO_CLOCK_OUT: run_auto_clock_out,
    JOB_BREAK_REMINDER: run_break_reminder,
    JOB_CLOCK_OUT_REMINDER: run_clock_out_reminder,
}


def run_job(
    name: str,
    store: AttendanceStore,
    *,
    now: datetime | None = None,
    settings: Settings | None = None,
    notifier: Notifier | None = None,
    actor_type: AuditActorType = AuditActorType.SYSTEM,
    actor_id: str = "scheduler",
) -> JobRunResult:
    """Run one reconciliation job for the day `now` falls on and audit the outcome."""
    job = JOBS.get(name)
    if job is None:
        raise NotFoundError(f"Unknown job: {name}", code="JOB_NOT_FOUND")

    reference = current_instant(now)
    result = job(store, now=reference, settings=settings or get_settings(), notifier=notifier)

    logger.info("reconciliation_job_finished", extra=result.to_dict())
    log_job_audit(store.session, result, actor_type=actor_type, actor_id=actor_id)
    return result
