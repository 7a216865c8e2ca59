from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.orm import Session

from presence.errors import ConcurrencyConflict, DependencyError, DuplicateKeyError
from presence.models import (
    AttendanceRecord,
    AttendanceStatus,
    ClockStatus,
    DayType,
    NotificationLedgerEntry,
    User,
    UserRole,
)
from presence.tz_clock import normalize_instant

logger = logging.getLogger("presence.store")


@dataclass(slots=True)
class RecordFilter:
    user_id: int | None = None
    date: str | None = None
    start_date: str | None = None
    end_date: str | None = None
    day_type: DayType | None = None
    attendance_status: AttendanceStatus | None = None
    clock_status: ClockStatus | None = None
    open_only: bool = False
    has_clock_in: bool | None = None
    limit: int | None = None
    offset: int = 0


def _conditions(record_filter: RecordFilter) -> list[Any]:
    conditions: list[Any] = []
    if record_filter.user_id is not None:
        conditions.append(AttendanceRecord.user_id == record_filter.user_id)
    if record_filter.date is not None:
        conditions.append(AttendanceRecord.date == record_filter.date)
    # Date keys are zero-padded ISO strings, so lexical order is calendar order.
    if record_filter.start_date is not None:
        conditions.append(AttendanceRecord.date >= record_filter.start_date)
    if record_filter.end_date is not None:
        conditions.append(AttendanceRecord.date <= record_filter.end_date)
    if record_filter.day_type is not None:
        conditions.append(AttendanceRecord.day_type == record_filter.day_type)
    if record_filter.attendance_status is not None:
        conditions.append(AttendanceRecord.attendance_status == record_filter.attendance_status)
    if record_filter.clock_status is not None:
        conditions.append(AttendanceRecord.clock_status == record_filter.clock_status)
    if record_filter.open_only:
        conditions.append(AttendanceRecord.is_closed.is_(False))
    if record_filter.has_clock_in is True:
        conditions.append(AttendanceRecord.clock_in.is_not(None))
        conditions.append(AttendanceRecord.clock_out.is_(None))
    elif record_filter.has_clock_in is False:
        conditions.append(AttendanceRecord.clock_in.is_(None))
    return conditions


def _match_condition(field: str, expected: Any) -> Any:
    column = getattr(AttendanceRecord, field)
    if expected is None:
        return column.is_(None)
    if isinstance(expected, bool):
        return column.is_(expected)
    return column == expected


class AttendanceStore:
    """Persistence contract for attendance records on top of a SQLAlchemy session.

    Every mutation commits immediately. Conditional updates are a single
    UPDATE ... WHERE statement, so a racing writer either wins outright or
    observes a no-match (`ConcurrencyConflict`).
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def _dependency_error(self, exc: Exception, *, operation: str) -> DependencyError:
        self.session.rollback()
        logger.error(
            "attendance_store_unavailable",
            extra={"operation": operation, "error": str(exc)[:500]},
        )
        return DependencyError(f"Attendance store unavailable during {operation}.", dependency="database")

    def get(self, record_id: int) -> AttendanceRecord | None:
        try:
            return self.session.get(AttendanceRecord, record_id, populate_existing=True)
        except (OperationalError, InterfaceError) as exc:
            raise self._dependency_error(exc, operation="get") from exc

    def find(self, user_id: int, date_key: str) -> AttendanceRecord | None:
        stmt = (
            select(AttendanceRecord)
            .where(AttendanceRecord.user_id == user_id, AttendanceRecord.date == date_key)
            .execution_options(populate_existing=True)
        )
        try:
            return self.session.scalar(stmt)
        except (OperationalError, InterfaceError) as exc:
            raise self._dependency_error(exc, operation="find") from exc

    def find_many(self, record_filter: RecordFilter | None = None) -> list[AttendanceRecord]:
        record_filter = record_filter or RecordFilter()
        stmt = (
            select(AttendanceRecord)
            .where(*_conditions(record_filter))
            .order_by(AttendanceRecord.date.desc(), AttendanceRecord.id.asc())
            .execution_options(populate_existing=True)
        )
        if record_filter.offset:
            stmt = stmt.offset(record_filter.offset)
        if record_filter.limit is not None:
            stmt = stmt.limit(record_filter.limit)
        try:
            return list(self.session.scalars(stmt).all())
        except (OperationalError, InterfaceError) as exc:
            raise self._dependency_error(exc, operation="find_many") from exc

    def count(self, record_filter: RecordFilter | None = None) -> int:
        record_filter = record_filter or RecordFilter()
        stmt = select(func.count(AttendanceRecord.id)).where(*_conditions(record_filter))
        try:
            return int(self.session.scalar(stmt) or 0)
        except (OperationalError, InterfaceError) as exc:
            raise self._dependency_error(exc, operation="count") from exc

    def status_counts(self, record_filter: RecordFilter | None = None) -> dict[AttendanceStatus, int]:
        record_filter = record_filter or RecordFilter()
        stmt = (
            select(AttendanceRecord.attendance_status, func.count(AttendanceRecord.id))
            .where(*_conditions(record_filter))
            .group_by(AttendanceRecord.attendance_status)
        )
        try:
            rows = self.session.execute(stmt).all()
        except (OperationalError, InterfaceError) as exc:
            raise self._dependency_error(exc, operation="status_counts") from exc
        return {AttendanceStatus(status): int(total) for status, total in rows}

    def create_if_absent(self, record: AttendanceRecord) -> AttendanceRecord:
        self.session.add(record)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise DuplicateKeyError(
                f"Attendance record already exists for user {record.user_id} on {record.date}.",
                user_id=record.user_id,
                date_key=record.date,
            ) from exc
        except (OperationalError, InterfaceError) as exc:
            raise self._dependency_error(exc, operation="create_if_absent") from exc
        return record

    def update_if_matches(
        self,
        record_id: int,
        expected: Mapping[str, Any],
        patch: Mapping[str, Any],
    ) -> AttendanceRecord:
        stmt = (
            update(AttendanceRecord)
            .where(
                AttendanceRecord.id == record_id,
                *(_match_condition(field, value) for field, value in expected.items()),
            )
            .values(**patch)
            .execution_options(synchronize_session=False)
        )
        try:
            result = self.session.execute(stmt)
            if result.rowcount == 0:
                self.session.rollback()
                raise ConcurrencyConflict(
                    f"Attendance record {record_id} no longer matches the expected state.",
                    record_id=record_id,
                )
            self.session.commit()
        except (OperationalError, InterfaceError) as exc:
            raise self._dependency_error(exc, operation="update_if_matches") from exc

        record = self.get(record_id)
        if record is None:
            raise ConcurrencyConflict(f"Attendance record {record_id} disappeared.", record_id=record_id)
        return record

    def claim_notification(self, record_id: int, tag: str, *, now: datetime | None = None) -> bool:
        self.session.add(
            NotificationLedgerEntry(
                attendance_id=record_id,
                tag=tag,
                fired_at=normalize_instant(now),
            )
        )
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            return False
        except (OperationalError, InterfaceError) as exc:
            raise self._dependency_error(exc, operation="claim_notification") from exc
        return True

    def fired_notifications(self, record_id: int) -> set[str]:
        stmt = select(NotificationLedgerEntry.tag).where(NotificationLedgerEntry.attendance_id == record_id)
        try:
            return set(self.session.scalars(stmt).all())
        except (OperationalError, InterfaceError) as exc:
            raise self._dependency_error(exc, operation="fired_notifications") from exc

    def list_active_users(self, role: UserRole | None = UserRole.EMPLOYEE) -> list[User]:
        stmt = select(User).where(User.is_active.is_(True)).order_by(User.id.asc())
        if role is not None:
            stmt = stmt.where(User.role == role)
        try:
            return list(self.session.scalars(stmt).all())
        except (OperationalError, InterfaceError) as exc:
            raise self._dependency_error(exc, operation="list_active_users") from exc

    def list_admins(self) -> list[User]:
        return self.list_active_users(role=UserRole.ADMIN)
