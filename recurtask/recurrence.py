from __future__ import annotations

import calendar
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from .errors import InvalidPatternError, MissingDueDateForRecurringError
from .models import RecurrencePattern


def parse_pattern(pattern: RecurrencePattern | str | None) -> RecurrencePattern:
    """Coerce a stored or user-supplied value to a RecurrencePattern.

    Never falls back to a default: anything missing or unknown raises.
    """
    if isinstance(pattern, RecurrencePattern):
        return pattern
    if pattern is None or not isinstance(pattern, str) or not pattern.strip():
        raise InvalidPatternError(pattern)
    try:
        return RecurrencePattern(pattern.strip().lower())
    except ValueError as e:
        raise InvalidPatternError(pattern) from e


def add_months(dt: datetime, months: int) -> datetime:
    """Shift `dt` by whole calendar months, clamping the day to the target month's length."""
    month_index = dt.month - 1 + int(months)
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def _advance_wall_clock(local: datetime, pattern: RecurrencePattern) -> datetime:
    if pattern == RecurrencePattern.daily:
        return local + timedelta(days=1)
    if pattern == RecurrencePattern.weekly:
        return local + timedelta(days=7)
    if pattern == RecurrencePattern.monthly:
        return add_months(local, 1)
    if pattern == RecurrencePattern.yearly:
        # Feb 29 -> Feb 28 in non-leap years falls out of the month clamp.
        return add_months(local, 12)
    raise InvalidPatternError(pattern)


def compute_next_due_utc(
    current_due_utc: datetime,
    pattern: RecurrencePattern | str | None,
    *,
    tz: ZoneInfo,
) -> datetime:
    """Compute the due date of the occurrence following `current_due_utc`.

    The arithmetic runs on wall-clock time in `tz`, so "daily at 09:00" stays at
    09:00 local across DST changes. Accepts naive UTC (the storage convention)
    or aware datetimes; returns naive UTC.
    """
    rpattern = parse_pattern(pattern)

    if current_due_utc.tzinfo is None:
        current_due_utc = current_due_utc.replace(tzinfo=timezone.utc)

    # Work on naive local wall time so timedelta arithmetic is calendar arithmetic.
    local_wall = current_due_utc.astimezone(tz).replace(tzinfo=None)
    next_wall = _advance_wall_clock(local_wall, rpattern)

    next_local = next_wall.replace(tzinfo=tz)
    return next_local.astimezone(timezone.utc).replace(tzinfo=None)


def validate_recurrence(
    *,
    is_recurring: bool,
    due_at_utc: datetime | None,
    recurrence_pattern: RecurrencePattern | str | None,
) -> RecurrencePattern | None:
    """Check the recurrence rules and return the pattern to store.

    A recurring task needs both a due date and a valid pattern; a non-recurring
    task never stores a pattern.
    """
    if not is_recurring:
        return None
    if due_at_utc is None:
        raise MissingDueDateForRecurringError()
    return parse_pattern(recurrence_pattern)
