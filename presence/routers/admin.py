from fastapi import APIRouter, Depends, Path, Query, Request
from sqlalchemy.orm import Session

from presence.business_calendar import holidays_for_year
from presence.db import get_db
from presence.errors import DependencyError
from presence.models import AttendanceStatus, AuditActorType, DayType, User
from presence.routers.attendance import history_response
from presence.scheduler import ReconciliationScheduler
from presence.schemas import (
    AttendanceHistoryResponse,
    AttendanceSummaryResponse,
    HolidayListResponse,
    HolidayRead,
    JobRunResponse,
)
from presence.security import require_admin
from presence.services.attendance import list_history, summarize
from presence.store import AttendanceStore

router = APIRouter(prefix="/api/admin", tags=["admin"])


def get_scheduler(request: Request) -> ReconciliationScheduler:
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise DependencyError("Reconciliation scheduler is not initialised.", dependency="scheduler")
    return scheduler


@router.get("/attendance", response_model=AttendanceHistoryResponse)
def list_attendance(
    user_id: int | None = Query(default=None),
    start_date: str | None = Query(default=None),
    end_date: str | None = Query(default=None),
    day_type: DayType | None = Query(default=None),
    attendance_status: AttendanceStatus | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
    _admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> AttendanceHistoryResponse:
    history = list_history(
        AttendanceStore(db),
        user_id=user_id,
        start_date=start_date,
        end_date=end_date,
        day_type=day_type,
        attendance_status=attendance_status,
        page=page,
        limit=limit,
    )
    return history_response(history)


@router.get("/attendance/summary", response_model=AttendanceSummaryResponse)
def attendance_summary(
    user_id: int | None = Query(default=None),
    start_date: str | None = Query(default=None),
    end_date: str | None = Query(default=None),
    _admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> AttendanceSummaryResponse:
    counts = summarize(AttendanceStore(db), user_id=user_id, start_date=start_date, end_date=end_date)
    return AttendanceSummaryResponse(**counts, start_date=start_date, end_date=end_date, user_id=user_id)


@router.get("/holidays/{year}", response_model=HolidayListResponse)
def list_holidays(
    year: int = Path(ge=1583, le=9999),
    _admin: User = Depends(require_admin),
) -> HolidayListResponse:
    holidays = holidays_for_year(year)
    return HolidayListResponse(
        year=year,
        holidays=[HolidayRead(date=key, name=name) for key, name in sorted(holidays.items())],
    )


@router.post("/jobs/{job_name}/run", response_model=JobRunResponse)
def run_job_manually(
    job_name: str,
    request: Request,
    admin: User = Depends(require_admin),
    scheduler: ReconciliationScheduler = Depends(get_scheduler),
) -> JobRunResponse:
    request.state.job_name = job_name
    result = scheduler.run_job_now(job_name, actor_type=AuditActorType.ADMIN, actor_id=str(admin.id))
    return JobRunResponse(**result.to_dict())
