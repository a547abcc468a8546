"""
Cadence rules for recurring subscriptions.

Monthly subscriptions anchored past the end of a shorter month clamp to that
month's last day: an anchor of 31 lands on 30 April and 28/29 February, then
returns to the 31st in months that have one.
"""

import calendar
from datetime import date, timedelta
from typing import Iterator, Optional

from ..core.enums import RecurringInterval
from ..core.exceptions import ValidationException

WEEKDAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")

_STRIPE_INTERVALS = {
    RecurringInterval.EVERYDAY: "day",
    RecurringInterval.WEEKLY: "week",
    RecurringInterval.MONTHLY: "month",
}


def coerce_interval(interval: str) -> RecurringInterval:
    try:
        return RecurringInterval(str(interval).lower())
    except ValueError:
        raise ValidationException(
            f"Invalid recurring interval: {interval}",
            code="INVALID_INTERVAL",
            details={"allowed": [i.value for i in RecurringInterval]},
        )


def weekday_name(on_date: date) -> str:
    return WEEKDAY_NAMES[on_date.weekday()]


def clamp_day(year: int, month: int, anchor_day: int) -> date:
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(anchor_day, last_day))


def occurs_on(
    interval: str,
    on_date: date,
    *,
    day_of_week: Optional[str] = None,
    day_of_month: Optional[int] = None,
) -> bool:
    """Whether a cadence lands on ``on_date``."""
    cadence = coerce_interval(interval)
    if cadence is RecurringInterval.EVERYDAY:
        return True
    if cadence is RecurringInterval.WEEKLY:
        return bool(day_of_week) and weekday_name(on_date) == day_of_week
    if not day_of_month:
        return False
    return on_date == clamp_day(on_date.year, on_date.month, day_of_month)


def add_month(from_date: date, anchor_day: int) -> date:
    year = from_date.year + (1 if from_date.month == 12 else 0)
    month = 1 if from_date.month == 12 else from_date.month + 1
    return clamp_day(year, month, anchor_day)


def next_occurrence(
    interval: str, last_date: date, *, day_of_month: Optional[int] = None
) -> date:
    """The occurrence after ``last_date`` (which is assumed to be on-cadence)."""
    cadence = coerce_interval(interval)
    if cadence is RecurringInterval.EVERYDAY:
        return last_date + timedelta(days=1)
    if cadence is RecurringInterval.WEEKLY:
        return last_date + timedelta(days=7)
    return add_month(last_date, day_of_month or last_date.day)


def first_occurrence_on_or_after(
    interval: str,
    start: date,
    *,
    day_of_week: Optional[str] = None,
    day_of_month: Optional[int] = None,
) -> date:
    cadence = coerce_interval(interval)
    if cadence is RecurringInterval.EVERYDAY:
        return start
    if cadence is RecurringInterval.WEEKLY:
        if not day_of_week:
            raise ValidationException("Weekly cadence requires a day of week")
        target = WEEKDAY_NAMES.index(day_of_week)
        return start + timedelta(days=(target - start.weekday()) % 7)
    if not day_of_month:
        raise ValidationException("Monthly cadence requires a day of month")
    candidate = clamp_day(start.year, start.month, day_of_month)
    if candidate < start:
        candidate = add_month(candidate, day_of_month)
    return candidate


def iter_occurrences(
    interval: str,
    start: date,
    end: date,
    *,
    day_of_week: Optional[str] = None,
    day_of_month: Optional[int] = None,
) -> Iterator[date]:
    """Cadence dates in ``[start, end]``."""
    if end < start:
        return
    current = first_occurrence_on_or_after(
        interval, start, day_of_week=day_of_week, day_of_month=day_of_month
    )
    while current <= end:
        yield current
        current = next_occurrence(interval, current, day_of_month=day_of_month)


def stripe_interval(interval: str) -> str:
    return _STRIPE_INTERVALS[coerce_interval(interval)]
