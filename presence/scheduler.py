from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime
import logging
from typing import Any
from zoneinfo import ZoneInfo

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.orm import Session

from presence.errors import NotFoundError
from presence.models import AuditActorType
from presence.services.notifications import Notifier
from presence.services.reconciliation import (
    JOB_AUTO_CLOCK_OUT,
    JOB_BREAK_REMINDER,
    JOB_CLOCK_OUT_REMINDER,
    JOB_DAY_INIT,
    JOB_MARK_ABSENT,
    JOBS,
    JobRunResult,
    run_job,
)
from presence.settings import Settings, get_settings
from presence.store import AttendanceStore
from presence.tz_clock import zone_for

logger = logging.getLogger("presence.scheduler")

_CRONTAB_WEEKDAYS = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")
_WEEK_ORDER = (1, 2, 3, 4, 5, 6, 0)


def _crontab_weekday(value: str) -> int:
    number = int(value)
    if not 0 <= number <= 7:
        raise ValueError(f"Day of week out of range: {value!r}")
    return number


def crontab_day_of_week(field: str) -> str:
    """Rewrite a crontab day-of-week field (0 and 7 are Sunday) as day names.

    APScheduler numbers weekdays from Monday, so numeric crontab values are
    expanded to names before they reach `CronTrigger`. Named entries pass
    through unchanged.
    """
    if field in ("*", "?"):
        return "*"
    days: set[int] = set()
    named: list[str] = []
    for part in field.split(","):
        body, _, step_text = part.partition("/")
        step = int(step_text) if step_text else 1
        if body == "*":
            first, last = 0, 6
        elif "-" in body and all(piece.isdigit() for piece in body.split("-", 1)):
            start, end = body.split("-", 1)
            first, last = _crontab_weekday(start), _crontab_weekday(end)
            if first > last:
                raise ValueError(f"Invalid day-of-week range: {part!r}")
        elif body.isdigit():
            first = _crontab_weekday(body)
            last = 7 if step_text else first
        else:
            named.append(part)
            continue
        if step < 1:
            raise ValueError(f"Invalid day-of-week step: {part!r}")
        days.update(number % 7 for number in range(first, last + 1, step))
    return ",".join([_CRONTAB_WEEKDAYS[day] for day in _WEEK_ORDER if day in days] + named)


def build_cron_trigger(expr: str, tz: ZoneInfo) -> CronTrigger:
    fields = expr.split()
    if len(fields) != 5:
        raise ValueError(f"Cron expression needs 5 fields, got {len(fields)}: {expr!r}")
    minute, hour, day, month, day_of_week = fields
    return CronTrigger(
        minute=minute,
        hour=hour,
        day=day,
        month=month,
        day_of_week=crontab_day_of_week(day_of_week),
        timezone=tz,
    )


def cron_expressions(settings: Settings) -> dict[str, str]:
    return {
        JOB_DAY_INIT: settings.day_init_cron,
        JOB_MARK_ABSENT: settings.mark_absent_cron,
        JOB_AUTO_CLOCK_OUT: settings.auto_clock_out_cron,
        JOB_BREAK_REMINDER: settings.break_reminder_cron,
        JOB_CLOCK_OUT_REMINDER: settings.clock_out_reminder_cron,
    }


class ReconciliationScheduler:
    """Cron-driven runner for the reconciliation jobs.

    Every tick opens its own session in a worker thread; a failing tick is
    logged and the next fire runs as usual.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        settings: Settings | None = None,
        scheduler: AsyncIOScheduler | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.scheduler = scheduler or AsyncIOScheduler(timezone=zone_for(self.settings))
        self._registered: dict[str, str] = {}

    @property
    def registered(self) -> dict[str, str]:
        return dict(self._registered)

    def register(self, name: str, cron_expr: str | None = None) -> bool:
        if name not in JOBS:
            raise NotFoundError(f"Unknown job: {name}", code="JOB_NOT_FOUND")
        if name in self._registered:
            logger.warning("scheduler_job_already_registered", extra={"job": name})
            return False

        expr = cron_expr or cron_expressions(self.settings)[name]
        trigger = build_cron_trigger(expr, zone_for(self.settings))
        self.scheduler.add_job(
            self._tick,
            trigger=trigger,
            args=[name],
            id=name,
            name=name,
            coalesce=True,
            max_instances=2,
            misfire_grace_time=max(1, int(self.settings.scheduler_misfire_grace_seconds)),
        )
        self._registered[name] = expr
        logger.info("scheduler_job_registered", extra={"job": name, "cron": expr})
        return True

    def register_all(self) -> None:
        for name in JOBS:
            self.register(name)

    def start(self) -> None:
        if self.scheduler.running:
            return
        self.scheduler.start()
        logger.info("scheduler_started", extra={"jobs": sorted(self._registered)})

    def shutdown(self) -> None:
        if not self.scheduler.running:
            return
        self.scheduler.shutdown(wait=False)
        logger.info("scheduler_stopped")

    def run_job_now(
        self,
        name: str,
        *,
        now: datetime | None = None,
        actor_type: AuditActorType = AuditActorType.SYSTEM,
        actor_id: str = "scheduler",
    ) -> JobRunResult:
        session = self.session_factory()
        try:
            return run_job(
                name,
                AttendanceStore(session),
                now=now,
                settings=self.settings,
                notifier=Notifier(session),
                actor_type=actor_type,
                actor_id=actor_id,
            )
        finally:
            session.close()

    async def _tick(self, name: str) -> JobRunResult | None:
        try:
            result = await asyncio.to_thread(self.run_job_now, name)
        except Exception:
            logger.exception("scheduler_tick_failed", extra={"job": name})
            return None
        if result.failed:
            logger.warning("scheduler_tick_partial_failure", extra=result.to_dict())
        return result

    def describe(self) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        for name, expr in sorted(self._registered.items()):
            job = self.scheduler.get_job(name)
            next_run = getattr(job, "next_run_time", None) if job is not None else None
            items.append(
                {
                    "job": name,
                    "cron": expr,
                    "next_run_time": next_run.isoformat() if next_run is not None else None,
                }
            )
        return items
