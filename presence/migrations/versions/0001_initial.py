"""Initial presence schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-18 00:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

user_role = postgresql.ENUM("employee", "admin", name="user_role", create_type=False)
attendance_day_type = postgresql.ENUM("workday", "weekend", "holiday", name="attendance_day_type", create_type=False)
attendance_status = postgresql.ENUM(
    "absent",
    "present",
    "weekend",
    "holiday",
    name="attendance_status",
    create_type=False,
)
attendance_clock_status = postgresql.ENUM(
    "clocked-out",
    "clocked-in",
    "on-break",
    name="attendance_clock_status",
    create_type=False,
)
audit_actor_type = postgresql.ENUM("USER", "ADMIN", "SYSTEM", name="audit_actor_type", create_type=False)

ENUMS = (user_role, attendance_day_type, attendance_status, attendance_clock_status, audit_actor_type)


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in ENUMS:
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("full_name", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("role", user_role, nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.UniqueConstraint("email", name="uq_users_email"),
    )

    op.create_table(
        "push_subscriptions",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("endpoint", sa.Text(), nullable=False),
        sa.Column("p256dh", sa.String(length=255), nullable=False),
        sa.Column("auth", sa.String(length=255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("endpoint", name="uq_push_subscriptions_endpoint"),
    )
    op.create_index("ix_push_subscriptions_user_id", "push_subscriptions", ["user_id"], unique=False)

    op.create_table(
        "attendance_records",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("date", sa.String(length=10), nullable=False),
        sa.Column("day_type", attendance_day_type, nullable=False),
        sa.Column("holiday_name", sa.String(length=255), nullable=True),
        sa.Column("attendance_status", attendance_status, nullable=False),
        sa.Column("clock_in", sa.DateTime(timezone=True), nullable=True),
        sa.Column("clock_out", sa.DateTime(timezone=True), nullable=True),
        sa.Column("clock_status", attendance_clock_status, nullable=False),
        sa.Column("break_in", sa.DateTime(timezone=True), nullable=True),
        sa.Column("break_out", sa.DateTime(timezone=True), nullable=True),
        sa.Column("break_duration_ms", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
        sa.Column("break_taken", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("break_ended_by_system", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("break_overdue_ms", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
        sa.Column("duration_ms", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
        sa.Column("is_closed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("auto_clock_out", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("auto_marked_absent", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("clock_in_notes", sa.Text(), nullable=True),
        sa.Column("clock_out_notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("user_id", "date", name="uq_attendance_records_user_date"),
    )
    op.create_index("ix_attendance_records_user_id", "attendance_records", ["user_id"], unique=False)
    op.create_index("ix_attendance_records_date", "attendance_records", ["date"], unique=False)
    # Auto-clock-out and break-reminder scan open sessions only.
    op.create_index(
        "ix_attendance_records_open_sessions",
        "attendance_records",
        ["clock_status"],
        unique=False,
        postgresql_where=sa.text("is_closed = false"),
    )

    op.create_table(
        "attendance_notification_ledger",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("attendance_id", sa.Integer(), nullable=False),
        sa.Column("tag", sa.String(length=64), nullable=False),
        sa.Column("fired_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["attendance_id"], ["attendance_records.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("attendance_id", "tag", name="uq_attendance_notification_ledger_tag"),
    )
    op.create_index(
        "ix_attendance_notification_ledger_attendance_id",
        "attendance_notification_ledger",
        ["attendance_id"],
        unique=False,
    )

    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("kind", sa.String(length=64), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("data", sa.JSON(), nullable=False),
        sa.Column("channels_requested", sa.JSON(), nullable=False),
        sa.Column("channels_used", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default=sa.text("'pending'")),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_notifications_user_id", "notifications", ["user_id"], unique=False)
    op.create_index("ix_notifications_kind", "notifications", ["kind"], unique=False)

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("ts_utc", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("actor_type", audit_actor_type, nullable=False),
        sa.Column("actor_id", sa.String(length=255), nullable=False),
        sa.Column("action", sa.String(length=255), nullable=False),
        sa.Column("entity_type", sa.String(length=255), nullable=True),
        sa.Column("entity_id", sa.String(length=255), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("details", sa.JSON(), nullable=False),
    )
    op.create_index("ix_audit_logs_ts_utc", "audit_logs", ["ts_utc"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_audit_logs_ts_utc", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_index("ix_notifications_kind", table_name="notifications")
    op.drop_index("ix_notifications_user_id", table_name="notifications")
    op.drop_table("notifications")
    op.drop_index("ix_attendance_notification_ledger_attendance_id", table_name="attendance_notification_ledger")
    op.drop_table("attendance_notification_ledger")
    op.drop_index("ix_attendance_records_open_sessions", table_name="attendance_records")
    op.drop_index("ix_attendance_records_date", table_name="attendance_records")
    op.drop_index("ix_attendance_records_user_id", table_name="attendance_records")
    op.drop_table("attendance_records")
    op.drop_index("ix_push_subscriptions_user_id", table_name="push_subscriptions")
    op.drop_table("push_subscriptions")
    op.drop_table("users")

    bind = op.get_bind()
    for enum_type in reversed(ENUMS):
        enum_type.drop(bind, checkfirst=True)
