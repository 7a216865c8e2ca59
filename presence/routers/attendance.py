from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from presence.audit import log_attendance_audit
from presence.db import get_db
from presence.errors import get_request_id
from presence.models import AttendanceRecord, AttendanceStatus, User
from presence.schemas import (
    AttendanceActionResponse,
    AttendanceHistoryItem,
    AttendanceHistoryResponse,
    AttendanceRecordRead,
    ClockInRequest,
    ClockOutRequest,
    DayInfoRead,
    TodayStatusResponse,
)
from presence.security import get_current_user
from presence.services.attendance import (
    HistoryPage,
    break_in,
    break_out,
    clock_in,
    clock_out,
    get_today_status,
    list_history,
)
from presence.store import AttendanceStore
from presence.tz_clock import format_duration_ms

router = APIRouter(prefix="/api/attendance", tags=["attendance"])


def history_response(history: HistoryPage) -> AttendanceHistoryResponse:
    items = []
    for record in history.records:
        duration_ms = history.durations_ms.get(record.id, 0)
        item = AttendanceHistoryItem.model_validate(record)
        item.work_duration_ms = duration_ms
        item.work_duration = format_duration_ms(duration_ms)
        items.append(item)
    return AttendanceHistoryResponse(
        items=items,
        total=history.total,
        page=history.page,
        pages=history.pages,
        limit=history.limit,
    )


def _audit_action(
    db: Session,
    request: Request,
    *,
    user: User,
    action: str,
    record: AttendanceRecord,
) -> None:
    request.state.attendance_id = record.id
    log_attendance_audit(db, record, user_id=user.id, action=action, request_id=get_request_id(request))


@router.get("/today", response_model=TodayStatusResponse)
def get_today(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> TodayStatusResponse:
    status = get_today_status(AttendanceStore(db), user_id=user.id)
    return TodayStatusResponse(
        day=DayInfoRead(
            date=status.date_key,
            day_type=status.day.day_type,
            holiday_name=status.day.holiday_name,
            is_workday=status.day.is_workday,
        ),
        clock_status=status.clock_status,
        attendance_status=status.attendance_status,
        work_duration_ms=status.work_duration_ms,
        work_duration=format_duration_ms(status.work_duration_ms),
        message=status.message,
        record=AttendanceRecordRead.model_validate(status.record) if status.record is not None else None,
    )


@router.post("/clock-in", response_model=AttendanceActionResponse)
def post_clock_in(
    request: Request,
    payload: ClockInRequest | None = None,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> AttendanceActionResponse:
    record = clock_in(AttendanceStore(db), user_id=user.id, notes=payload.notes if payload else None)
    _audit_action(db, request, user=user, action="ATTENDANCE_CLOCK_IN", record=record)
    return AttendanceActionResponse(
        message="Clocked in successfully",
        record=AttendanceRecordRead.model_validate(record),
    )


@router.post("/clock-out", response_model=AttendanceActionResponse)
def post_clock_out(
    request: Request,
    payload: ClockOutRequest | None = None,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> AttendanceActionResponse:
    record = clock_out(AttendanceStore(db), user_id=user.id, notes=payload.notes if payload else None)
    _audit_action(db, request, user=user, action="ATTENDANCE_CLOCK_OUT", record=record)
    return AttendanceActionResponse(
        message="Clocked out successfully",
        record=AttendanceRecordRead.model_validate(record),
        work_duration=format_duration_ms(record.duration_ms),
    )


@router.post("/break-in", response_model=AttendanceActionResponse)
def post_break_in(
    request: Request,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> AttendanceActionResponse:
    record = break_in(AttendanceStore(db), user_id=user.id)
    _audit_action(db, request, user=user, action="ATTENDANCE_BREAK_IN", record=record)
    return AttendanceActionResponse(message="Break started", record=AttendanceRecordRead.model_validate(record))


@router.post("/break-out", response_model=AttendanceActionResponse)
def post_break_out(
    request: Request,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> AttendanceActionResponse:
    record = break_out(AttendanceStore(db), user_id=user.id)
    _audit_action(db, request, user=user, action="ATTENDANCE_BREAK_OUT", record=record)
    return AttendanceActionResponse(message="Break ended", record=AttendanceRecordRead.model_validate(record))


@router.get("/history", response_model=AttendanceHistoryResponse)
def get_history(
    start_date: str | None = Query(default=None),
    end_date: str | None = Query(default=None),
    attendance_status: AttendanceStatus | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=200),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> AttendanceHistoryResponse:
    history = list_history(
        AttendanceStore(db),
        user_id=user.id,
        start_date=start_date,
        end_date=end_date,
        attendance_status=attendance_status,
        page=page,
        limit=limit,
    )
    return history_response(history)
