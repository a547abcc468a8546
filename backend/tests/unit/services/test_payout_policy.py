"""Tests for the payout release policy."""

from datetime import date, datetime, timezone

import pytest

from fieldsy.models.booking import Booking
from fieldsy.schemas.system_settings import PlatformSettings
from fieldsy.services.payout_policy import PayoutReleasePolicy, has_cancellation_window_passed

# 09:00 BST == 08:00 UTC
NEXT_TUESDAY = date(2025, 6, 10)


def _booking(**overrides):
    values = {
        "date": NEXT_TUESDAY,
        "start_time": "09:00",
        "end_time": "10:00",
        "status": "CONFIRMED",
        "payment_status": "PAID",
    }
    values.update(overrides)
    return Booking(**values)


@pytest.fixture
def policy():
    return PayoutReleasePolicy("Europe/London")


class TestCancellationWindow:
    def test_window_boundary_is_strict(self):
        booking = _booking()
        at_boundary = datetime(2025, 6, 9, 8, 0, tzinfo=timezone.utc)
        just_after = datetime(2025, 6, 9, 8, 1, tzinfo=timezone.utc)

        assert not has_cancellation_window_passed(booking, 24, at_boundary, "Europe/London")
        assert has_cancellation_window_passed(booking, 24, just_after, "Europe/London")

    def test_after_window_schedule(self, policy):
        settings = PlatformSettings(cancellation_window_hours=48)
        booking = _booking()

        early = policy.evaluate(booking, settings, datetime(2025, 6, 8, 7, 0, tzinfo=timezone.utc))
        assert early.eligible is False
        assert early.reason == "Cancellation window has not passed"

        late = policy.evaluate(booking, settings, datetime(2025, 6, 8, 9, 0, tzinfo=timezone.utc))
        assert late.eligible is True

    def test_naive_now_is_read_as_utc(self, policy):
        decision = policy.evaluate(_booking(), PlatformSettings(), datetime(2025, 6, 9, 9, 0))
        assert decision.eligible is True

    def test_unparsable_start_time(self, policy):
        decision = policy.evaluate(
            _booking(start_time="whenever"),
            PlatformSettings(),
            datetime(2025, 6, 20, tzinfo=timezone.utc),
        )
        assert decision.eligible is False
        assert "whenever" in decision.reason


class TestWeekendSchedule:
    @pytest.fixture
    def weekend(self):
        return PlatformSettings(payout_release_schedule="on_weekend")

    def test_weekday_not_eligible(self, policy, weekend):
        monday = datetime(2025, 6, 2, 9, 0, tzinfo=timezone.utc)
        decision = policy.evaluate(_booking(), weekend, monday)
        assert decision.eligible is False
        assert decision.reason == "Payouts are released on Friday, Saturday, Sunday"

    def test_release_day_eligible_regardless_of_window(self, policy, weekend):
        saturday = datetime(2025, 6, 7, 12, 0, tzinfo=timezone.utc)
        assert policy.evaluate(_booking(), weekend, saturday).eligible is True

    def test_uses_local_weekday(self, policy):
        settings = PlatformSettings(
            payout_release_schedule="on_weekend", payout_release_days=["Saturday"]
        )
        # 23:30 UTC Friday is already Saturday in London
        friday_night = datetime(2025, 6, 6, 23, 30, tzinfo=timezone.utc)
        assert policy.evaluate(_booking(), settings, friday_night).eligible is True


class TestBookingState:
    @pytest.mark.parametrize(
        "overrides",
        [
            {"payment_status": "PENDING"},
            {"payment_status": "REFUNDED"},
            {"status": "CANCELLED"},
            {"status": "PENDING"},
        ],
    )
    def test_unpaid_or_closed_booking_never_eligible(self, policy, overrides):
        decision = policy.evaluate(
            _booking(**overrides), PlatformSettings(), datetime(2025, 7, 1, tzinfo=timezone.utc)
        )
        assert decision.eligible is False

    def test_completed_booking_eligible(self, policy):
        decision = policy.evaluate(
            _booking(status="COMPLETED"),
            PlatformSettings(),
            datetime(2025, 7, 1, tzinfo=timezone.utc),
        )
        assert decision.eligible is True
