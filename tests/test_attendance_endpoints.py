from __future__ import annotations

import unittest
from collections.abc import Generator

from fastapi.testclient import TestClient
from sqlalchemy import select
from sqlalchemy.orm import Session

from presence.db import get_db
from presence.main import app
from presence.models import AuditLog, UserRole
from presence.scheduler import ReconciliationScheduler
from presence.tz_clock import FixedClock, set_default_clock

from presence_fixtures import add_user, local_instant, make_engine, make_session_factory, make_settings


class _EndpointCase(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine()
        self.session_factory = make_session_factory(self.engine)

        def _override() -> Generator[Session, None, None]:
            db = self.session_factory()
            try:
                yield db
            finally:
                db.close()

        app.dependency_overrides[get_db] = _override
        self.previous_scheduler = app.state.scheduler
        app.state.scheduler = ReconciliationScheduler(self.session_factory, settings=make_settings())

        # Tuesday, 08:00 in Johannesburg.
        self.clock = FixedClock(local_instant(2026, 3, 3, 8, 0))
        set_default_clock(self.clock)

        session = self.session_factory()
        self.employee = add_user(session, "Thabo Nkosi")
        self.admin = add_user(session, "Lerato Dlamini", role=UserRole.ADMIN)
        session.close()

        self.client = TestClient(app)

    def tearDown(self) -> None:
        app.dependency_overrides.clear()
        app.state.scheduler = self.previous_scheduler
        set_default_clock(None)
        self.engine.dispose()

    def _as(self, user_id: int) -> dict[str, str]:
        return {"X-User-Id": str(user_id)}


class AttendanceEndpointTests(_EndpointCase):
    def test_missing_identity_is_rejected(self) -> None:
        response = self.client.get("/api/attendance/today")
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["error"]["code"], "MISSING_IDENTITY")

    def test_unknown_user_is_rejected(self) -> None:
        response = self.client.get("/api/attendance/today", headers=self._as(999))
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["error"]["code"], "USER_INACTIVE")

    def test_today_is_pending_before_clock_in(self) -> None:
        response = self.client.get("/api/attendance/today", headers=self._as(self.employee.id))

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["day"]["date"], "2026-03-03")
        self.assertTrue(body["day"]["is_workday"])
        self.assertEqual(body["attendance_status"], "pending")
        self.assertIsNone(body["record"])

    def test_clock_in_twice_returns_conflict(self) -> None:
        first = self.client.post(
            "/api/attendance/clock-in",
            headers=self._as(self.employee.id),
            json={"notes": "on site"},
        )
        self.assertEqual(first.status_code, 200)
        self.assertEqual(first.json()["record"]["clock_status"], "clocked-in")
        self.assertEqual(first.json()["record"]["date"], "2026-03-03")

        second = self.client.post("/api/attendance/clock-in", headers=self._as(self.employee.id))
        self.assertEqual(second.status_code, 409)
        self.assertEqual(second.json()["error"]["code"], "ALREADY_CLOCKED_IN")

        session = self.session_factory()
        try:
            actions = [row.action for row in session.scalars(select(AuditLog)).all()]
        finally:
            session.close()
        self.assertEqual(actions, ["ATTENDANCE_CLOCK_IN"])

    def test_full_day_flow_over_http(self) -> None:
        headers = self._as(self.employee.id)
        self.assertEqual(self.client.post("/api/attendance/clock-in", headers=headers).status_code, 200)

        not_on_break = self.client.post("/api/attendance/break-out", headers=headers)
        self.assertEqual(not_on_break.status_code, 409)
        self.assertEqual(not_on_break.json()["error"]["code"], "NOT_ON_BREAK")

        self.clock.advance(local_instant(2026, 3, 3, 12, 0) - self.clock.now())
        self.assertEqual(self.client.post("/api/attendance/break-in", headers=headers).status_code, 200)
        self.clock.advance(local_instant(2026, 3, 3, 12, 30) - self.clock.now())
        self.assertEqual(self.client.post("/api/attendance/break-out", headers=headers).status_code, 200)
        self.clock.advance(local_instant(2026, 3, 3, 17, 0) - self.clock.now())

        response = self.client.post("/api/attendance/clock-out", headers=headers)

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["record"]["clock_status"], "clocked-out")
        self.assertEqual(body["record"]["duration_ms"], int(8.5 * 3_600_000))
        self.assertEqual(body["work_duration"], "8h 30m")

        history = self.client.get("/api/attendance/history", headers=headers)
        self.assertEqual(history.status_code, 200)
        self.assertEqual(history.json()["total"], 1)
        self.assertEqual(history.json()["items"][0]["work_duration"], "8h 30m")

    def test_clock_out_without_session_is_not_found(self) -> None:
        response = self.client.post("/api/attendance/clock-out", headers=self._as(self.employee.id))
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["error"]["code"], "NO_ACTIVE_SESSION")

    def test_clock_in_on_weekend_is_rejected(self) -> None:
        set_default_clock(FixedClock(local_instant(2026, 3, 7, 9, 0)))
        response = self.client.post("/api/attendance/clock-in", headers=self._as(self.employee.id))
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["error"]["code"], "NON_WORKING_DAY")

    def test_history_rejects_bad_date_filter(self) -> None:
        response = self.client.get(
            "/api/attendance/history",
            headers=self._as(self.employee.id),
            params={"start_date": "2026-3-1"},
        )
        self.assertEqual(response.status_code, 422)


class AdminEndpointTests(_EndpointCase):
    def test_employee_cannot_use_admin_routes(self) -> None:
        response = self.client.get("/api/admin/attendance", headers=self._as(self.employee.id))
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["error"]["code"], "FORBIDDEN")

    def test_holiday_list(self) -> None:
        response = self.client.get("/api/admin/holidays/2026", headers=self._as(self.admin.id))

        self.assertEqual(response.status_code, 200)
        holidays = response.json()["holidays"]
        self.assertEqual(len(holidays), 12)
        self.assertIn({"date": "2026-04-27", "name": "Freedom Day"}, holidays)

    def test_summary_counts_statuses(self) -> None:
        self.client.post("/api/attendance/clock-in", headers=self._as(self.employee.id))

        response = self.client.get(
            "/api/admin/attendance/summary",
            headers=self._as(self.admin.id),
            params={"start_date": "2026-03-01", "end_date": "2026-03-31"},
        )

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["present"], 1)
        self.assertEqual(body["total"], 1)

    def test_admin_lists_all_users(self) -> None:
        self.client.post("/api/attendance/clock-in", headers=self._as(self.employee.id))
        self.client.post("/api/attendance/clock-in", headers=self._as(self.admin.id))

        response = self.client.get("/api/admin/attendance", headers=self._as(self.admin.id))

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["total"], 2)

    def test_manual_job_run_is_audited_as_admin(self) -> None:
        response = self.client.post("/api/admin/jobs/day_init/run", headers=self._as(self.admin.id))

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["job"], "day_init")
        self.assertEqual(body["date_key"], "2026-03-03")
        self.assertEqual(body["note"], "workday")

        session = self.session_factory()
        try:
            row = session.scalars(select(AuditLog).where(AuditLog.action == "JOB_DAY_INIT")).one()
        finally:
            session.close()
        self.assertEqual(row.actor_id, str(self.admin.id))

    def test_unknown_job_is_not_found(self) -> None:
        response = self.client.post("/api/admin/jobs/nightly_backup/run", headers=self._as(self.admin.id))
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["error"]["code"], "JOB_NOT_FOUND")

    def test_health_reports_scheduler(self) -> None:
        response = self.client.get("/health")

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["status"], "ok")
        self.assertFalse(body["scheduler"]["running"])


if __name__ == "__main__":
    unittest.main()
