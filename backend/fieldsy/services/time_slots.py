"""
Time-of-day parsing and slot overlap tests.

Booking and field times are stored as strings in either 24-hour ``"14:30"``
or 12-hour ``"2:30PM"`` / ``"2:30 pm"`` form. Everything here works in
minutes since midnight.
"""

from datetime import date, datetime, time, timedelta
import logging
import re
from typing import Optional

import pytz

from ..core.exceptions import TimeParseError

logger = logging.getLogger(__name__)

MINUTES_PER_DAY = 24 * 60

_TWELVE_HOUR = re.compile(r"^\s*(\d{1,2}):(\d{2})\s*([AaPp][Mm])\s*$")
_TWENTY_FOUR_HOUR = re.compile(r"^\s*(\d{1,2}):(\d{2})\s*$")


def parse_time(value: str) -> int:
    """
    Parse a time-of-day string into minutes since midnight.

    ``12:xxAM`` is just after midnight and ``12:xxPM`` just after noon.
    ``"24:00"`` is accepted as end-of-day (1440) for closing times.

    Raises:
        TimeParseError: unparsable or out-of-range input
    """
    if not isinstance(value, str):
        raise TimeParseError(value)

    match = _TWELVE_HOUR.match(value)
    if match:
        hours, minutes, meridiem = int(match.group(1)), int(match.group(2)), match.group(3).upper()
        if not 1 <= hours <= 12 or minutes > 59:
            raise TimeParseError(value)
        if meridiem == "PM" and hours != 12:
            hours += 12
        elif meridiem == "AM" and hours == 12:
            hours = 0
        return hours * 60 + minutes

    match = _TWENTY_FOUR_HOUR.match(value)
    if match:
        hours, minutes = int(match.group(1)), int(match.group(2))
        if hours == 24 and minutes == 0:
            return MINUTES_PER_DAY
        if hours > 23 or minutes > 59:
            raise TimeParseError(value)
        return hours * 60 + minutes

    raise TimeParseError(value)


def time_to_minutes(value: str, *, default: Optional[int] = None) -> int:
    """
    ``parse_time`` with an explicit fallback.

    With ``default=None`` this is strict. Otherwise malformed input is
    logged and ``default`` returned, so the caller owns that policy.
    """
    if default is None:
        return parse_time(value)
    try:
        return parse_time(value)
    except TimeParseError:
        logger.warning(f"Unparsable time {value!r}; falling back to {default} minutes")
        return default


def overlaps(a_start: int, a_end: int, b_start: int, b_end: int) -> bool:
    """
    Interval overlap on the slot grid.

    Kept as the three explicit clauses: start inside, end inside, or
    covering. Touching boundaries (one ends where the other starts) do not
    conflict.
    """
    return (
        (a_start >= b_start and a_start < b_end)
        or (a_end > b_start and a_end <= b_end)
        or (a_start <= b_start and a_end >= b_end)
    )


def slot_overlaps(a_start: str, a_end: str, b_start: str, b_end: str) -> bool:
    """String convenience wrapper around ``overlaps``; strict parsing."""
    return overlaps(parse_time(a_start), parse_time(a_end), parse_time(b_start), parse_time(b_end))


def format_minutes(minutes: int) -> str:
    """Render minutes since midnight as ``H:MMAM`` (the stored display form)."""
    minutes %= MINUTES_PER_DAY
    hours, mins = divmod(minutes, 60)
    meridiem = "AM" if hours < 12 else "PM"
    display_hour = hours % 12 or 12
    return f"{display_hour}:{mins:02d}{meridiem}"


def format_time_slot(start_time: str, end_time: str) -> str:
    return f"{format_minutes(parse_time(start_time))} - {format_minutes(parse_time(end_time))}"


def booking_start_instant(on_date: date, start_time: str, tz_name: str) -> datetime:
    """Absolute UTC instant for a local date and time-of-day string."""
    tz = pytz.timezone(tz_name)
    naive = datetime.combine(on_date, time()) + timedelta(minutes=parse_time(start_time))
    return tz.localize(naive).astimezone(pytz.utc)


def duration_minutes(start_time: str, end_time: str) -> int:
    return parse_time(end_time) - parse_time(start_time)
