from __future__ import annotations

import unittest

from sqlalchemy import create_engine, text
from sqlalchemy.pool import StaticPool

from presence.services.schema_guard import verify_runtime_schema

from presence_fixtures import make_engine


def _stamp(engine, version: str) -> None:  # type: ignore[no-untyped-def]
    with engine.begin() as connection:
        connection.execute(text("CREATE TABLE alembic_version (version_num VARCHAR(32) NOT NULL)"))
        if version:
            connection.execute(text("INSERT INTO alembic_version (version_num) VALUES (:v)"), {"v": version})


class SchemaGuardTests(unittest.TestCase):
    def test_ok_when_models_are_created_and_stamped(self) -> None:
        engine = make_engine()
        _stamp(engine, "0001_initial")

        result = verify_runtime_schema(engine)

        self.assertTrue(result.ok, result.issues)
        self.assertEqual(result.issues, [])
        self.assertEqual(result.to_dict()["issue_count"], 0)

    def test_reports_missing_alembic_table(self) -> None:
        result = verify_runtime_schema(make_engine())
        self.assertFalse(result.ok)
        self.assertIn("MISSING_TABLE:alembic_version", result.issues)

    def test_reports_empty_alembic_version(self) -> None:
        engine = make_engine()
        _stamp(engine, "")
        result = verify_runtime_schema(engine)
        self.assertIn("ALEMBIC_VERSION_EMPTY", result.issues)

    def test_reports_missing_columns(self) -> None:
        engine = create_engine("sqlite+pysqlite://", poolclass=StaticPool, future=True)
        with engine.begin() as connection:
            connection.execute(text("CREATE TABLE attendance_records (id INTEGER PRIMARY KEY, user_id INTEGER, date VARCHAR(10))"))
        _stamp(engine, "0001_initial")

        result = verify_runtime_schema(engine)

        self.assertFalse(result.ok)
        self.assertIn("MISSING_TABLE:users", result.issues)
        self.assertTrue(
            any(item.startswith("MISSING_COLUMNS:attendance_records:") and "clock_status" in item for item in result.issues)
        )


if __name__ == "__main__":
    unittest.main()
