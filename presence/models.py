from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from presence.db import Base, UtcDateTime


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class UserRole(str, enum.Enum):
    EMPLOYEE = "employee"
    ADMIN = "admin"


class DayType(str, enum.Enum):
    WORKDAY = "workday"
    WEEKEND = "weekend"
    HOLIDAY = "holiday"


class AttendanceStatus(str, enum.Enum):
    ABSENT = "absent"
    PRESENT = "present"
    WEEKEND = "weekend"
    HOLIDAY = "holiday"


class ClockStatus(str, enum.Enum):
    CLOCKED_OUT = "clocked-out"
    CLOCKED_IN = "clocked-in"
    ON_BREAK = "on-break"


class NotificationTag(str, enum.Enum):
    BREAK_ALMOST_OVER = "break_almost_over"
    BREAK_ENDED = "break_ended"
    BREAK_ADMIN_OVERDUE = "break_admin_overdue"
    CLOCK_OUT_REMINDER = "clock_out_reminder"


class AuditActorType(str, enum.Enum):
    USER = "USER"
    ADMIN = "ADMIN"
    SYSTEM = "SYSTEM"


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True, unique=True)
    role: Mapped[UserRole] = mapped_column(
        Enum(UserRole, name="user_role", values_callable=_enum_values),
        nullable=False,
        default=UserRole.EMPLOYEE,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    created_at: Mapped[datetime] = mapped_column(
        UtcDateTime,
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    attendance_records: Mapped[list[AttendanceRecord]] = relationship(back_populates="user")
    push_subscriptions: Mapped[list[PushSubscription]] = relationship(back_populates="user")


class PushSubscription(Base):
    __tablename__ = "push_subscriptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    endpoint: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    p256dh: Mapped[str] = mapped_column(String(255), nullable=False)
    auth: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_seen_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)

    user: Mapped[User] = relationship(back_populates="push_subscriptions")


class AttendanceRecord(Base):
    __tablename__ = "attendance_records"
    __table_args__ = (UniqueConstraint("user_id", "date", name="uq_attendance_records_user_date"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    date: Mapped[str] = mapped_column(String(10), nullable=False, index=True)
    day_type: Mapped[DayType] = mapped_column(
        Enum(DayType, name="attendance_day_type", values_callable=_enum_values),
        nullable=False,
        default=DayType.WORKDAY,
    )
    holiday_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    attendance_status: Mapped[AttendanceStatus] = mapped_column(
        Enum(AttendanceStatus, name="attendance_status", values_callable=_enum_values),
        nullable=False,
        default=AttendanceStatus.ABSENT,
    )

    clock_in: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    clock_out: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    clock_status: Mapped[ClockStatus] = mapped_column(
        Enum(ClockStatus, name="attendance_clock_status", values_callable=_enum_values),
        nullable=False,
        default=ClockStatus.CLOCKED_OUT,
    )

    break_in: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    break_out: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    break_duration_ms: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default=text("0"))
    break_taken: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    break_ended_by_system: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=text("false"),
    )
    break_overdue_ms: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default=text("0"))

    duration_ms: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default=text("0"))
    is_closed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    auto_clock_out: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    auto_marked_absent: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=text("false"),
    )
    clock_in_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    clock_out_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        UtcDateTime,
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        UtcDateTime,
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=_utcnow,
    )

    user: Mapped[User] = relationship(back_populates="attendance_records")
    notification_ledger: Mapped[list[NotificationLedgerEntry]] = relationship(
        back_populates="attendance",
        cascade="all, delete-orphan",
    )


class NotificationLedgerEntry(Base):
    __tablename__ = "attendance_notification_ledger"
    __table_args__ = (UniqueConstraint("attendance_id", "tag", name="uq_attendance_notification_ledger_tag"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    attendance_id: Mapped[int] = mapped_column(
        ForeignKey("attendance_records.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    tag: Mapped[str] = mapped_column(String(64), nullable=False)
    fired_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False, default=_utcnow)

    attendance: Mapped[AttendanceRecord] = relationship(back_populates="notification_ledger")


class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    channels_requested: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    channels_used: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="pending",
        server_default=text("'pending'"),
    )
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    created_at: Mapped[datetime] = mapped_column(
        UtcDateTime,
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    user: Mapped[User] = relationship()


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ts_utc: Mapped[datetime] = mapped_column(
        UtcDateTime,
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
        index=True,
    )
    actor_type: Mapped[AuditActorType] = mapped_column(
        Enum(AuditActorType, name="audit_actor_type"),
        nullable=False,
    )
    actor_id: Mapped[str] = mapped_column(String(255), nullable=False)
    action: Mapped[str] = mapped_column(String(255), nullable=False)
    entity_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    details: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
