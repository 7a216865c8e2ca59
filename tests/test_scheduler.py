from __future__ import annotations

import asyncio
from datetime import timedelta
import unittest
from unittest.mock import patch

from sqlalchemy import select

from presence.errors import NotFoundError
from presence.models import AuditLog, AttendanceRecord
from presence.scheduler import ReconciliationScheduler, build_cron_trigger, crontab_day_of_week
from presence.services.reconciliation import (
    JOB_BREAK_REMINDER,
    JOB_CLOCK_OUT_REMINDER,
    JOB_DAY_INIT,
    JOB_MARK_ABSENT,
    JOBS,
)

from presence_fixtures import JOHANNESBURG, add_user, local_instant, make_engine, make_session_factory, make_settings


def _fire_times(trigger, start, count: int):  # type: ignore[no-untyped-def]
    fires = []
    previous = None
    now = start
    for _ in range(count):
        fire = trigger.get_next_fire_time(previous, now)
        fires.append(fire.astimezone(JOHANNESBURG))
        previous = fire
        now = fire + timedelta(seconds=1)
    return fires


class CrontabDayOfWeekTests(unittest.TestCase):
    def test_numeric_days_follow_crontab_numbering(self) -> None:
        self.assertEqual(crontab_day_of_week("1-5"), "mon,tue,wed,thu,fri")
        self.assertEqual(crontab_day_of_week("0,6"), "sat,sun")
        self.assertEqual(crontab_day_of_week("7"), "sun")
        self.assertEqual(crontab_day_of_week("5-7"), "fri,sat,sun")
        self.assertEqual(crontab_day_of_week("*/2"), "tue,thu,sat,sun")

    def test_wildcards_and_names_pass_through(self) -> None:
        self.assertEqual(crontab_day_of_week("*"), "*")
        self.assertEqual(crontab_day_of_week("mon-fri"), "mon-fri")

    def test_out_of_range_values_are_rejected(self) -> None:
        for field in ("8", "5-1"):
            with self.assertRaises(ValueError):
                crontab_day_of_week(field)

    def test_wrong_field_count_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            build_cron_trigger("0 17 * *", JOHANNESBURG)


class ReconciliationSchedulerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine()
        self.session_factory = make_session_factory(self.engine)
        self.settings = make_settings(mark_absent_cron="15 16 * * 1-5")
        self.scheduler = ReconciliationScheduler(self.session_factory, settings=self.settings)

    def tearDown(self) -> None:
        self.engine.dispose()

    def test_register_all_uses_configured_crons(self) -> None:
        self.scheduler.register_all()

        self.assertEqual(set(self.scheduler.registered), set(JOBS))
        self.assertEqual(self.scheduler.registered[JOB_MARK_ABSENT], "15 16 * * 1-5")
        self.assertEqual(self.scheduler.registered[JOB_DAY_INIT], "1 0 * * *")
        self.assertEqual(self.scheduler.registered[JOB_BREAK_REMINDER], "* * * * *")

        job = self.scheduler.scheduler.get_job(JOB_MARK_ABSENT)
        self.assertTrue(job.coalesce)
        self.assertEqual(job.max_instances, 2)
        self.assertEqual(str(job.trigger.timezone), "Africa/Johannesburg")

    def test_weekday_jobs_fire_monday_to_friday(self) -> None:
        self.scheduler.register_all()
        sunday = local_instant(2026, 3, 1, 0, 0)

        for name, hour, minute in ((JOB_MARK_ABSENT, 16, 15), (JOB_CLOCK_OUT_REMINDER, 17, 30)):
            trigger = self.scheduler.scheduler.get_job(name).trigger
            fires = _fire_times(trigger, sunday, 7)
            self.assertEqual(
                [fire.strftime("%a %d") for fire in fires],
                ["Mon 02", "Tue 03", "Wed 04", "Thu 05", "Fri 06", "Mon 09", "Tue 10"],
            )
            self.assertTrue(all((fire.hour, fire.minute) == (hour, minute) for fire in fires))

    def test_daily_job_fires_every_day(self) -> None:
        self.scheduler.register(JOB_DAY_INIT)
        trigger = self.scheduler.scheduler.get_job(JOB_DAY_INIT).trigger
        fires = _fire_times(trigger, local_instant(2026, 3, 6, 12, 0), 3)
        self.assertEqual([fire.strftime("%a %H:%M") for fire in fires], ["Sat 00:01", "Sun 00:01", "Mon 00:01"])

    def test_same_job_is_not_registered_twice(self) -> None:
        self.assertTrue(self.scheduler.register(JOB_DAY_INIT))
        with self.assertLogs("presence.scheduler", level="WARNING"):
            self.assertFalse(self.scheduler.register(JOB_DAY_INIT, "5 0 * * *"))
        self.assertEqual(len(self.scheduler.scheduler.get_jobs()), 1)
        self.assertEqual(self.scheduler.registered[JOB_DAY_INIT], "1 0 * * *")

    def test_unknown_job_cannot_be_registered(self) -> None:
        with self.assertRaises(NotFoundError):
            self.scheduler.register("nightly_backup")

    def test_run_job_now_uses_its_own_session_and_audits(self) -> None:
        setup_session = self.session_factory()
        user = add_user(setup_session, "Weekend Worker")
        setup_session.close()

        result = self.scheduler.run_job_now(JOB_DAY_INIT, now=local_instant(2026, 3, 7, 0, 1))

        self.assertEqual(result.succeeded, 1)
        check = self.session_factory()
        try:
            records = check.scalars(select(AttendanceRecord)).all()
            self.assertEqual([record.user_id for record in records], [user.id])
            actions = [row.action for row in check.scalars(select(AuditLog)).all()]
            self.assertEqual(actions, ["JOB_DAY_INIT"])
        finally:
            check.close()

    def test_failed_tick_is_logged_and_swallowed(self) -> None:
        with patch.object(self.scheduler, "run_job_now", side_effect=RuntimeError("db gone")):
            with self.assertLogs("presence.scheduler", level="ERROR") as captured:
                result = asyncio.run(self.scheduler._tick(JOB_DAY_INIT))
        self.assertIsNone(result)
        self.assertTrue(any("scheduler_tick_failed" in line for line in captured.output))

    def test_describe_lists_registered_jobs(self) -> None:
        self.scheduler.register(JOB_BREAK_REMINDER)
        items = self.scheduler.describe()
        self.assertEqual(len(items), 1)
        self.assertEqual(items[0]["job"], JOB_BREAK_REMINDER)
        self.assertEqual(items[0]["cron"], "* * * * *")


if __name__ == "__main__":
    unittest.main()
