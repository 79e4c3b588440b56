"""Recurrence rules: calendar-day applicability of medication schedules.

Everything in this module is pure: no I/O, no clock reads unless a ``now``
value is passed in.  Timestamps are integer epoch milliseconds; calendar days
are :class:`datetime.date` values interpreted in an explicit ``tzinfo``.

Weekday codes are the Monday-first 3-letter abbreviations used in the
``days_of_week`` column (``"MON,WED,FRI"``).  Comparison is case-insensitive
and unknown codes never match.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from datetime import UTC, date, datetime, time, timedelta, tzinfo
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from dosekeeper.models import Schedule, ScheduleTime

logger = logging.getLogger(__name__)

WEEKDAY_CODES: tuple[str, ...] = ("MON", "TUE", "WED", "THU", "FRI", "SAT", "SUN")
DAY_MS = 24 * 60 * 60 * 1000

# Wizard duration units and their length in days.
DURATION_UNIT_DAYS: dict[str, int] = {"days": 1, "weeks": 7, "months": 30}

_TIME_LOCAL_PATTERN = re.compile(r"^\s*(\d{1,2}):(\d{1,2})\s*$")

# A weekday filter cycles within a week; one extra day covers "today, but the
# time has already passed".
_NEXT_TRIGGER_SEARCH_DAYS = 8


class MalformedDataError(ValueError):
    """Raised when a time string or date range cannot be interpreted."""


# ---------------------------------------------------------------------------
# Day arithmetic
# ---------------------------------------------------------------------------


def to_epoch_ms(moment: datetime) -> int:
    """Convert an aware datetime to epoch milliseconds."""
    return int(moment.timestamp() * 1000)


def start_of_day_ms(day: date, tz: tzinfo = UTC) -> int:
    """Return local midnight of *day* in *tz* as epoch ms."""
    return to_epoch_ms(datetime.combine(day, time.min, tzinfo=tz))


def day_window(day: date, tz: tzinfo = UTC) -> tuple[int, int]:
    """Return the ``[midnight, next_midnight)`` window of *day* as epoch ms."""
    return start_of_day_ms(day, tz), start_of_day_ms(day + timedelta(days=1), tz)


def day_of(ts_ms: int, tz: tzinfo = UTC) -> date:
    """Return the calendar day in *tz* that contains *ts_ms*."""
    return datetime.fromtimestamp(ts_ms / 1000, tz=tz).date()


def timestamp_for(day: date, hour: int, minute: int, tz: tzinfo = UTC) -> int:
    """Return the epoch ms of ``hour:minute`` on *day* in *tz*."""
    return to_epoch_ms(datetime.combine(day, time(hour, minute), tzinfo=tz))


def weekday_code(day: date) -> str:
    """Return the 3-letter Monday-first weekday code of *day*."""
    return WEEKDAY_CODES[day.weekday()]


def week_monday(day: date) -> date:
    """Return the Monday that starts the ISO week containing *day*."""
    return day - timedelta(days=day.weekday())


def month_key(day: date) -> str:
    """Return the month cache key (``"{year}-{month}"``) for *day*."""
    return f"{day.year}-{day.month}"


def month_window(day: date, tz: tzinfo = UTC) -> tuple[int, int]:
    """Return ``[first-of-month, first-of-next-month)`` for *day* as epoch ms."""
    first = day.replace(day=1)
    if first.month == 12:
        following = first.replace(year=first.year + 1, month=1)
    else:
        following = first.replace(month=first.month + 1)
    return start_of_day_ms(first, tz), start_of_day_ms(following, tz)


def day_key(day: date) -> str:
    """Return the ``yyyymmdd`` key used by the week summary cache."""
    return day.strftime("%Y%m%d")


# ---------------------------------------------------------------------------
# Field parsing
# ---------------------------------------------------------------------------


def parse_days_of_week(raw: str | Iterable[str] | None) -> frozenset[str]:
    """Normalize a days-of-week filter to a set of uppercase codes.

    Accepts the stored CSV form or any iterable of codes.  Blank entries are
    dropped; unknown codes are kept as-is so that they simply never match.
    """
    if raw is None:
        return frozenset()
    parts = raw.split(",") if isinstance(raw, str) else raw
    return frozenset(p.strip().upper() for p in parts if p and p.strip())


def format_days_of_week(days: Iterable[str]) -> str | None:
    """Render a days-of-week set as the stored CSV, Monday first.

    Returns ``None`` for an empty filter (every day).
    """
    normalized = parse_days_of_week(list(days))
    if not normalized:
        return None
    known = [code for code in WEEKDAY_CODES if code in normalized]
    unknown = sorted(normalized.difference(WEEKDAY_CODES))
    return ",".join(known + unknown)


def parse_time_local(value: str | None, *, strict: bool = False) -> tuple[int, int]:
    """Parse an ``HH:MM`` string into ``(hour, minute)``.

    A malformed value yields ``(0, 0)`` unless *strict* is set, in which case
    :class:`MalformedDataError` is raised.
    """
    match = _TIME_LOCAL_PATTERN.match(value or "")
    if match is not None:
        hour, minute = int(match.group(1)), int(match.group(2))
        if 0 <= hour <= 23 and 0 <= minute <= 59:
            return hour, minute
    if strict:
        raise MalformedDataError(f"Invalid time_local {value!r}; expected HH:MM")
    return 0, 0


def format_time_local(hour: int, minute: int) -> str:
    """Render a time of day in the zero-padded ``HH:MM`` form."""
    return f"{hour:02d}:{minute:02d}"


# ---------------------------------------------------------------------------
# Applicability
# ---------------------------------------------------------------------------


def applies_to(schedule: Schedule, day: date, tz: tzinfo = UTC) -> bool:
    """Return whether *schedule* produces doses on calendar *day*.

    False before the start day, on or after the day following the end day
    (bounded schedules only), and on weekdays outside a non-empty filter.
    """
    if schedule.start_date is not None and day < day_of(schedule.start_date, tz):
        return False
    if schedule.is_bounded and day >= day_of(schedule.end_date, tz) + timedelta(days=1):
        return False
    if schedule.days_of_week:
        allowed = {code.upper() for code in schedule.days_of_week}
        if weekday_code(day) not in allowed:
            return False
    return True


# ---------------------------------------------------------------------------
# Durations
# ---------------------------------------------------------------------------


def compute_end_date(start_ms: int, durations: Iterable[tuple[int | None, str]]) -> int | None:
    """Return the end date for a set of per-time durations, or ``None`` for forever.

    Each duration is ``(value, unit)`` with *unit* one of ``days``, ``weeks``
    or ``months``.  A missing or non-positive value anywhere makes the whole
    schedule open-ended; otherwise the latest end wins.
    """
    latest: int | None = None
    for value, unit in durations:
        if value is None or value <= 0:
            return None
        days = value * DURATION_UNIT_DAYS.get(unit, 1)
        end = start_ms + days * DAY_MS
        if latest is None or end > latest:
            latest = end
    return latest


def describe_duration(start_ms: int | None, end_ms: int | None) -> tuple[int, str] | None:
    """Express a ``[start, end]`` span in the coarsest whole wizard unit.

    Returns ``None`` for an open-ended span.
    """
    if start_ms is None or end_ms is None:
        return None
    days = round((end_ms - start_ms) / DAY_MS)
    if days > 0 and days % 30 == 0:
        return days // 30, "months"
    if days > 0 and days % 7 == 0:
        return days // 7, "weeks"
    return days, "days"


# ---------------------------------------------------------------------------
# Next trigger
# ---------------------------------------------------------------------------


def compute_next_trigger(
    schedule: Schedule,
    schedule_time: ScheduleTime,
    now_ms: int,
    tz: tzinfo = UTC,
) -> int | None:
    """Return the next occurrence of *schedule_time* at or after *now_ms*.

    Returns ``None`` when the time string is unusable, the schedule has ended,
    or no weekday in the filter is a known code.
    """
    try:
        hour, minute = parse_time_local(schedule_time.time_local, strict=True)
    except MalformedDataError:
        logger.debug("No trigger for schedule time %s: bad time_local", schedule_time.id)
        return None

    first_day = day_of(now_ms, tz)
    if schedule.start_date is not None:
        first_day = max(first_day, day_of(schedule.start_date, tz))

    for offset in range(_NEXT_TRIGGER_SEARCH_DAYS):
        day = first_day + timedelta(days=offset)
        if schedule.is_bounded and day > day_of(schedule.end_date, tz):
            return None
        if not applies_to(schedule, day, tz):
            continue
        candidate = timestamp_for(day, hour, minute, tz)
        if candidate >= now_ms:
            return candidate
    return None
