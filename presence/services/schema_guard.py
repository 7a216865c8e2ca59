from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError


@dataclass(frozen=True, slots=True)
class SchemaGuardResult:
    ok: bool
    checked_at_utc: datetime
    issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "checked_at_utc": self.checked_at_utc.isoformat(),
            "issues": list(self.issues),
            "warnings": list(self.warnings),
            "issue_count": len(self.issues),
            "warning_count": len(self.warnings),
        }


REQUIRED_TABLE_COLUMNS: dict[str, set[str]] = {
    "users": {"id", "role", "is_active"},
    "attendance_records": {
        "id",
        "user_id",
        "date",
        "day_type",
        "attendance_status",
        "clock_in",
        "clock_out",
        "clock_status",
        "break_in",
        "break_out",
        "break_duration_ms",
        "break_taken",
        "break_ended_by_system",
        "break_overdue_ms",
        "duration_ms",
        "is_closed",
        "auto_clock_out",
        "auto_marked_absent",
    },
    "attendance_notification_ledger": {"id", "attendance_id", "tag", "fired_at"},
    "notifications": {"id", "user_id", "kind", "channels_used", "status"},
    "alembic_version": {"version_num"},
}

REQUIRED_ENUM_VALUES: dict[str, set[str]] = {
    "attendance_clock_status": {"clocked-out", "clocked-in", "on-break"},
    "attendance_status": {"absent", "present", "weekend", "holiday"},
}


def verify_runtime_schema(engine: Engine) -> SchemaGuardResult:
    issues: list[str] = []
    warnings: list[str] = []
    checked_at_utc = datetime.now(timezone.utc)
    try:
        inspector = inspect(engine)
        existing_tables = set(inspector.get_table_names())
    except SQLAlchemyError as exc:
        return SchemaGuardResult(
            ok=False,
            checked_at_utc=checked_at_utc,
            issues=[f"DATABASE_UNREACHABLE:{exc.__class__.__name__}"],
        )

    for table_name, required_columns in REQUIRED_TABLE_COLUMNS.items():
        if table_name not in existing_tables:
            issues.append(f"MISSING_TABLE:{table_name}")
            continue
        column_names = {str(item.get("name")) for item in inspector.get_columns(table_name)}
        missing_columns = sorted(item for item in required_columns if item not in column_names)
        if missing_columns:
            issues.append(f"MISSING_COLUMNS:{table_name}:{','.join(missing_columns)}")

    # Only PostgreSQL reports native enums.
    if engine.dialect.name == "postgresql":
        enum_values_by_name: dict[str, set[str]] = {}
        for enum_item in inspector.get_enums() or []:
            name = str(enum_item.get("name") or "").strip()
            labels = enum_item.get("labels")
            if name and isinstance(labels, list):
                enum_values_by_name[name] = {str(label) for label in labels}

        for enum_name, required_values in REQUIRED_ENUM_VALUES.items():
            if enum_name not in enum_values_by_name:
                warnings.append(f"ENUM_NOT_FOUND:{enum_name}")
                continue
            missing_values = sorted(item for item in required_values if item not in enum_values_by_name[enum_name])
            if missing_values:
                issues.append(f"MISSING_ENUM_VALUES:{enum_name}:{','.join(missing_values)}")

    if "alembic_version" in existing_tables:
        try:
            with engine.connect() as connection:
                row = connection.execute(text("SELECT version_num FROM alembic_version LIMIT 1")).scalar()
        except SQLAlchemyError as exc:
            issues.append(f"ALEMBIC_VERSION_CHECK_FAILED:{exc.__class__.__name__}")
        else:
            if not (str(row).strip() if row is not None else ""):
                issues.append("ALEMBIC_VERSION_EMPTY")

    return SchemaGuardResult(
        ok=len(issues) == 0,
        checked_at_utc=checked_at_utc,
        issues=issues,
        warnings=warnings,
    )
