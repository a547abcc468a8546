"""Tests for booking status-axis transitions."""

import pytest

from fieldsy.core.enums import BookingStatus, PaymentStatus, PayoutStatus
from fieldsy.core.exceptions import InvalidStateTransitionException
from fieldsy.services.booking_state import assert_transition, can_transition


class TestBookingAxis:
    def test_happy_path(self):
        assert can_transition("status", BookingStatus.PENDING, BookingStatus.CONFIRMED)
        assert can_transition("status", BookingStatus.CONFIRMED, BookingStatus.COMPLETED)

    def test_terminal_states(self):
        assert not can_transition("status", BookingStatus.CANCELLED, BookingStatus.CONFIRMED)
        assert not can_transition("status", BookingStatus.COMPLETED, BookingStatus.CANCELLED)

    def test_same_state_is_allowed(self):
        assert can_transition("status", "CONFIRMED", "CONFIRMED")


class TestPaymentAxis:
    def test_paid_can_only_be_refunded(self):
        assert can_transition("payment_status", PaymentStatus.PAID, PaymentStatus.REFUNDED)
        assert not can_transition("payment_status", PaymentStatus.PAID, PaymentStatus.CANCELLED)

    def test_refunded_is_terminal(self):
        with pytest.raises(InvalidStateTransitionException):
            assert_transition("payment_status", PaymentStatus.REFUNDED, PaymentStatus.PAID)


class TestPayoutAxis:
    def test_unset_can_start_anywhere_but_completed(self):
        assert can_transition("payout_status", None, PayoutStatus.PENDING)
        assert can_transition("payout_status", None, PayoutStatus.PROCESSING)
        assert not can_transition("payout_status", None, PayoutStatus.COMPLETED)

    def test_deferred_transfer_returns_to_pending(self):
        assert can_transition("payout_status", PayoutStatus.PROCESSING, PayoutStatus.PENDING)

    def test_completed_only_moves_when_money_returns(self):
        assert can_transition("payout_status", PayoutStatus.COMPLETED, PayoutStatus.REFUNDED)
        assert can_transition("payout_status", PayoutStatus.COMPLETED, PayoutStatus.CANCELLED)
        assert not can_transition("payout_status", PayoutStatus.COMPLETED, PayoutStatus.PENDING)

    def test_held_releases_to_pending(self):
        assert can_transition("payout_status", PayoutStatus.HELD, PayoutStatus.PENDING)
        assert not can_transition("payout_status", PayoutStatus.HELD, PayoutStatus.PROCESSING)

    def test_error_names_axis_and_states(self):
        with pytest.raises(InvalidStateTransitionException) as exc_info:
            assert_transition("payout_status", PayoutStatus.CANCELLED, PayoutStatus.PENDING)
        assert exc_info.value.code == "INVALID_STATE_TRANSITION"
        assert "payout_status" in exc_info.value.message
