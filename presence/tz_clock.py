from __future__ import annotations

from datetime import datetime, timedelta, timezone
from functools import lru_cache
import logging
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from presence.business_calendar import format_date_key, parse_date_key
from presence.settings import Settings, get_settings

logger = logging.getLogger("presence.tz_clock")

DEFAULT_BUSINESS_TIMEZONE = "Africa/Johannesburg"
MAX_SOLVE_STEPS = 6
ONE_MS = timedelta(milliseconds=1)


@lru_cache
def business_timezone(name: str | None = None) -> ZoneInfo:
    raw_name = (name or get_settings().business_timezone or "").strip() or DEFAULT_BUSINESS_TIMEZONE
    try:
        return ZoneInfo(raw_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(
            "business_timezone_invalid",
            extra={"configured": raw_name, "fallback": DEFAULT_BUSINESS_TIMEZONE},
        )
        return ZoneInfo(DEFAULT_BUSINESS_TIMEZONE)


def zone_for(settings: Settings | None = None) -> ZoneInfo:
    """Business timezone named by `settings`, falling back to the process settings."""
    return business_timezone((settings or get_settings()).business_timezone)


class Clock:
    def now(self) -> datetime:
        raise NotImplementedError


class SystemClock(Clock):
    def now(self) -> datetime:
        return normalize_instant(datetime.now(timezone.utc))


class FixedClock(Clock):
    def __init__(self, instant: datetime) -> None:
        self.instant = normalize_instant(instant)

    def now(self) -> datetime:
        return self.instant

    def advance(self, delta: timedelta) -> datetime:
        self.instant = normalize_instant(self.instant + delta)
        return self.instant


_default_clock: Clock = SystemClock()


def set_default_clock(clock: Clock | None) -> None:
    global _default_clock
    _default_clock = clock or SystemClock()


def current_instant(now: datetime | None = None) -> datetime:
    """`now` normalized, or the default clock's reading when omitted."""
    if now is None:
        return _default_clock.now()
    return normalize_instant(now)


def normalize_instant(value: datetime | None) -> datetime:
    """UTC, millisecond precision. `None` means the current wall-clock instant."""
    if value is None:
        value = datetime.now(timezone.utc)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.replace(microsecond=(value.microsecond // 1000) * 1000)


def wall_parts(instant: datetime, tz: ZoneInfo | None = None) -> datetime:
    """Naive local wall-clock datetime of `instant` in the business timezone."""
    zone = tz or business_timezone()
    return normalize_instant(instant).astimezone(zone).replace(tzinfo=None)


def local_hour(instant: datetime, tz: ZoneInfo | None = None) -> int:
    return wall_parts(instant, tz).hour


def date_key_for_instant(instant: datetime, tz: ZoneInfo | None = None) -> str:
    return format_date_key(wall_parts(instant, tz).date())


def today_key(tz: ZoneInfo | None = None, now: datetime | None = None) -> str:
    return date_key_for_instant(current_instant(now), tz)


def instant_for_wall_time(wall: datetime, tz: ZoneInfo | None = None) -> datetime:
    """Solve for the UTC instant whose projection into `tz` reads `wall`.

    Starts from the wall time read as UTC and shifts the guess by the
    difference between the wanted and the projected wall time. Converges in one
    or two steps for fixed offsets; the step bound keeps DST gaps finite.
    """
    zone = tz or business_timezone()
    target = wall.replace(tzinfo=None)
    guess = target.replace(tzinfo=timezone.utc)
    for _ in range(MAX_SOLVE_STEPS):
        projected = guess.astimezone(zone).replace(tzinfo=None)
        delta = target - projected
        if not delta:
            return guess
        guess = guess + delta
    logger.warning(
        "wall_time_solve_not_converged",
        extra={"wall": target.isoformat(), "tz": str(zone), "best_guess": guess.isoformat()},
    )
    return guess


def start_of_day_instant(date_key: str, tz: ZoneInfo | None = None) -> datetime:
    day = parse_date_key(date_key)
    return instant_for_wall_time(datetime(day.year, day.month, day.day, 0, 0, 0, 0), tz)


def end_of_day_instant(date_key: str, tz: ZoneInfo | None = None) -> datetime:
    day = parse_date_key(date_key)
    return instant_for_wall_time(datetime(day.year, day.month, day.day, 23, 59, 59, 999000), tz)


def day_bounds(date_key: str, tz: ZoneInfo | None = None) -> tuple[datetime, datetime]:
    return start_of_day_instant(date_key, tz), end_of_day_instant(date_key, tz)


def ms_between(later: datetime | None, earlier: datetime | None) -> int:
    if later is None or earlier is None:
        return 0
    return max(0, (normalize_instant(later) - normalize_instant(earlier)) // ONE_MS)


def format_duration_ms(ms: int | None) -> str:
    if not ms or ms <= 0:
        return "0h 0m"
    hours, remainder = divmod(int(ms), 3_600_000)
    return f"{hours}h {remainder // 60_000}m"
