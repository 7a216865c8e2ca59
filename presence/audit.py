from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from presence.models import AttendanceRecord, AuditActorType, AuditLog

if TYPE_CHECKING:
    from presence.services.reconciliation import JobRunResult

logger = logging.getLogger("presence.audit")

JOB_ENTITY_TYPE = "attendance_job"
ATTENDANCE_ENTITY_TYPE = "attendance"


def log_audit(
    db: Session,
    *,
    actor_type: AuditActorType,
    actor_id: str,
    action: str,
    success: bool,
    entity_type: str | None = None,
    entity_id: str | None = None,
    details: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> bool:
    """Persist one audit row. A failed write is logged and reported as `False`.

    The caller's own change is already committed by the time this runs, so an
    audit failure never undoes it.
    """
    payload = dict(details or {})
    event = {
        "request_id": request_id,
        "action": action,
        "actor_type": actor_type.value,
        "actor_id": actor_id,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "success": success,
    }
    db.add(
        AuditLog(
            ts_utc=datetime.now(timezone.utc),
            actor_type=actor_type,
            actor_id=actor_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            success=success,
            details=payload,
        )
    )
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("audit_log_write_failed", extra=event)
        return False

    logger.info("audit_event", extra=event | {"details": payload})
    return True


def job_action(job: str) -> str:
    return f"JOB_{job.upper()}"


def log_job_audit(
    db: Session,
    result: JobRunResult,
    *,
    actor_type: AuditActorType = AuditActorType.SYSTEM,
    actor_id: str = "scheduler",
) -> bool:
    """Audit a finished reconciliation run under `JOB_<NAME>`, keyed by its date.

    Error messages stay in the application log; the row only carries their count.
    """
    details = {key: value for key, value in result.to_dict().items() if key != "errors"}
    details["error_count"] = len(result.errors)
    return log_audit(
        db,
        actor_type=actor_type,
        actor_id=actor_id,
        action=job_action(result.job),
        success=result.ok,
        entity_type=JOB_ENTITY_TYPE,
        entity_id=result.date_key,
        details=details,
    )


def log_attendance_audit(
    db: Session,
    record: AttendanceRecord,
    *,
    user_id: int,
    action: str,
    request_id: str | None = None,
) -> bool:
    return log_audit(
        db,
        actor_type=AuditActorType.USER,
        actor_id=str(user_id),
        action=action,
        success=True,
        entity_type=ATTENDANCE_ENTITY_TYPE,
        entity_id=str(record.id),
        details={
            "date": record.date,
            "attendance_status": record.attendance_status.value,
            "clock_status": record.clock_status.value,
        },
        request_id=request_id,
    )
