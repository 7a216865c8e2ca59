from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from functools import lru_cache
import re

from presence.errors import ValidationError
from presence.models import DayType

DATE_KEY_PATTERN = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")

# Sakamoto's month offsets; weekday 0 = Sunday.
_MONTH_OFFSETS = (0, 3, 2, 5, 0, 3, 5, 1, 4, 6, 2, 4)

SUNDAY = 0
SATURDAY = 6

FIXED_HOLIDAYS: tuple[tuple[int, int, str], ...] = (
    (1, 1, "New Year's Day"),
    (3, 21, "Human Rights Day"),
    (4, 27, "Freedom Day"),
    (5, 1, "Workers' Day"),
    (6, 16, "Youth Day"),
    (8, 9, "National Women's Day"),
    (9, 24, "Heritage Day"),
    (12, 16, "Day of Reconciliation"),
    (12, 25, "Christmas Day"),
    (12, 26, "Day of Goodwill"),
)

GOOD_FRIDAY_NAME = "Good Friday"
FAMILY_DAY_NAME = "Family Day"


@dataclass(frozen=True, slots=True)
class DayInfo:
    date_key: str
    day_type: DayType
    holiday_name: str | None = None

    @property
    def is_workday(self) -> bool:
        return self.day_type == DayType.WORKDAY


def parse_date_key(value: str) -> date:
    match = DATE_KEY_PATTERN.match((value or "").strip())
    if match is None:
        raise ValidationError(f"Invalid date key: {value!r}. Expected YYYY-MM-DD.", code="INVALID_DATE_KEY")
    year, month, day = (int(part) for part in match.groups())
    try:
        return date(year, month, day)
    except ValueError as exc:
        raise ValidationError(f"Invalid date key: {value!r}. {exc}.", code="INVALID_DATE_KEY") from exc


def format_date_key(value: date) -> str:
    return f"{value.year:04d}-{value.month:02d}-{value.day:02d}"


def weekday_from_date_key(date_key: str) -> int:
    parsed = parse_date_key(date_key)
    year = parsed.year - 1 if parsed.month < 3 else parsed.year
    return (
        year + year // 4 - year // 100 + year // 400 + _MONTH_OFFSETS[parsed.month - 1] + parsed.day
    ) % 7


def is_weekend(date_key: str) -> bool:
    return weekday_from_date_key(date_key) in (SATURDAY, SUNDAY)


def easter_sunday(year: int) -> date:
    """Gregorian Easter Sunday (anonymous Gregorian / Meeus-Jones-Butcher)."""
    if not isinstance(year, int) or year < 1583:
        raise ValidationError("year must be an integer >= 1583", code="INVALID_YEAR")

    a = year % 19
    b, c = divmod(year, 100)
    d, e = divmod(b, 4)
    f = (b + 8) // 25
    g = (b - f + 1) // 3
    h = (19 * a + b - d - g + 15) % 30
    i, k = divmod(c, 4)
    l = (32 + 2 * e + 2 * i - h - k) % 7
    m = (a + 11 * h + 22 * l) // 451
    month, day = divmod(h + l - 7 * m + 114, 31)
    return date(year, month, day + 1)


def good_friday(year: int) -> date:
    return easter_sunday(year) - timedelta(days=2)


def family_day(year: int) -> date:
    """Third Monday of February."""
    feb_first = date(year, 2, 1)
    offset_to_monday = (1 - weekday_from_date_key(format_date_key(feb_first))) % 7
    return feb_first + timedelta(days=offset_to_monday + 14)


@lru_cache(maxsize=64)
def _holidays_for_year(year: int) -> tuple[tuple[str, str], ...]:
    holidays: dict[str, str] = {
        format_date_key(date(year, month, day)): name for month, day, name in FIXED_HOLIDAYS
    }
    holidays.setdefault(format_date_key(good_friday(year)), GOOD_FRIDAY_NAME)
    holidays.setdefault(format_date_key(family_day(year)), FAMILY_DAY_NAME)
    return tuple(sorted(holidays.items()))


def holidays_for_year(year: int) -> dict[str, str]:
    return dict(_holidays_for_year(year))


def holiday_name(date_key: str) -> str | None:
    parsed = parse_date_key(date_key)
    return holidays_for_year(parsed.year).get(date_key)


def classify_day(date_key: str) -> DayInfo:
    if is_weekend(date_key):
        return DayInfo(date_key=date_key, day_type=DayType.WEEKEND)
    name = holiday_name(date_key)
    if name is not None:
        return DayInfo(date_key=date_key, day_type=DayType.HOLIDAY, holiday_name=name)
    return DayInfo(date_key=date_key, day_type=DayType.WORKDAY)
