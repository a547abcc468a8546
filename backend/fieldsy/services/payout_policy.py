"""Payout release rules: when a paid booking's owner share may leave the platform."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

import pytz

from ..core.clock import ensure_utc
from ..core.enums import BookingStatus, PaymentStatus, PayoutReleaseSchedule
from ..core.exceptions import TimeParseError
from ..models.booking import Booking
from ..schemas.system_settings import PlatformSettings
from .recurrence import weekday_name
from .time_slots import booking_start_instant

PAYABLE_BOOKING_STATUSES = frozenset({BookingStatus.CONFIRMED.value, BookingStatus.COMPLETED.value})


@dataclass(frozen=True)
class ReleaseDecision:
    eligible: bool
    reason: str | None = None


def has_cancellation_window_passed(
    booking: Booking, window_hours: int, now: datetime, tz_name: str
) -> bool:
    """True once ``now`` is past ``start - window_hours`` (strictly)."""
    starts_at = booking_start_instant(booking.date, booking.start_time, tz_name)
    return ensure_utc(now) > starts_at - timedelta(hours=window_hours)


class PayoutReleasePolicy:
    """Evaluates the admin-configured release schedule for one booking."""

    def __init__(self, tz_name: str = "Europe/London"):
        self.tz_name = tz_name

    def evaluate(
        self, booking: Booking, platform_settings: PlatformSettings, now: datetime
    ) -> ReleaseDecision:
        if booking.payment_status != PaymentStatus.PAID.value:
            return ReleaseDecision(False, f"Payment status is {booking.payment_status}")
        if booking.status not in PAYABLE_BOOKING_STATUSES:
            return ReleaseDecision(False, f"Booking status is {booking.status}")

        schedule = platform_settings.payout_release_schedule
        if schedule == PayoutReleaseSchedule.ON_WEEKEND.value:
            local_now = ensure_utc(now).astimezone(pytz.timezone(self.tz_name))
            today = weekday_name(local_now.date())
            if today in platform_settings.payout_release_days:
                return ReleaseDecision(True)
            days = ", ".join(platform_settings.payout_release_days)
            return ReleaseDecision(False, f"Payouts are released on {days}")

        try:
            passed = has_cancellation_window_passed(
                booking, platform_settings.cancellation_window_hours, now, self.tz_name
            )
        except TimeParseError:
            return ReleaseDecision(False, f"Unparsable start time {booking.start_time!r}")
        if not passed:
            return ReleaseDecision(False, "Cancellation window has not passed")
        return ReleaseDecision(True)
