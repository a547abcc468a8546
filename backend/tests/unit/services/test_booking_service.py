"""Tests for checkout, booking creation and booking status changes."""

from datetime import date
from decimal import Decimal

import pytest

from fieldsy.core.enums import BookingStatus, NotificationType, PaymentStatus, TransactionType
from fieldsy.core.exceptions import (
    BookingConflictException,
    InvalidStateTransitionException,
    SlotLockedException,
    ValidationException,
)
from fieldsy.models.notification import Notification
from fieldsy.models.transaction import Transaction

NEXT_TUESDAY = date(2025, 6, 10)


def _notifications(db, user_id):
    return db.query(Notification).filter(Notification.user_id == user_id).all()


class TestQuotePrice:
    def test_hourly_price_scales_with_dogs_and_hours(self, container, field):
        service = container.booking_service
        assert service.quote_price(field, "09:00", "10:00", 2) == Decimal("20.00")
        assert service.quote_price(field, "09:00", "11:30", 1) == Decimal("25.00")

    def test_half_hour_field_uses_half_hour_price(self, container, make_field, field_owner):
        field = make_field(field_owner, booking_duration="30min")
        assert container.booking_service.quote_price(field, "9:00AM", "10:00AM", 1) == Decimal(
            "12.00"
        )

    @pytest.mark.parametrize(
        "dogs, code", [(0, "INVALID_DOGS"), (11, "TOO_MANY_DOGS")]
    )
    def test_dog_limits(self, container, field, dogs, code):
        with pytest.raises(ValidationException) as exc_info:
            container.booking_service.quote_price(field, "09:00", "10:00", dogs)
        assert exc_info.value.code == code

    def test_unapproved_field_not_bookable(self, container, make_field, field_owner):
        field = make_field(field_owner, is_approved=False)
        with pytest.raises(ValidationException) as exc_info:
            container.booking_service.quote_price(field, "09:00", "10:00", 1)
        assert exc_info.value.code == "FIELD_NOT_BOOKABLE"


class TestCheckout:
    def test_checkout_locks_slot_for_other_users(self, container, field, dog_owner, make_user):
        service = container.booking_service

        hold = service.start_checkout(dog_owner.id, field.id, NEXT_TUESDAY, "09:00", "10:00", 2)

        assert hold.amount == Decimal("20.00")
        assert hold.lock.user_id == dog_owner.id
        with pytest.raises(SlotLockedException):
            service.start_checkout(make_user().id, field.id, NEXT_TUESDAY, "09:30", "10:30", 1)

    def test_same_user_can_restart_checkout(self, container, field, dog_owner):
        service = container.booking_service
        service.start_checkout(dog_owner.id, field.id, NEXT_TUESDAY, "09:00", "10:00", 1)
        hold = service.start_checkout(dog_owner.id, field.id, NEXT_TUESDAY, "09:00", "10:00", 1)
        assert hold.lock.user_id == dog_owner.id

    def test_booked_slot_is_a_conflict(self, container, field, dog_owner, make_user, make_booking):
        make_booking(field, make_user(), NEXT_TUESDAY, "09:00", "10:00")
        with pytest.raises(BookingConflictException) as exc_info:
            container.booking_service.start_checkout(
                dog_owner.id, field.id, NEXT_TUESDAY, "09:00", "10:00", 1
            )
        assert exc_info.value.conflict_type == "booking"

    def test_slot_in_the_past(self, container, field, dog_owner):
        with pytest.raises(ValidationException) as exc_info:
            container.booking_service.start_checkout(
                dog_owner.id, field.id, date(2025, 6, 2), "09:00", "10:00", 1
            )
        assert exc_info.value.code == "SLOT_IN_PAST"

    def test_closed_day(self, container, make_field, field_owner, dog_owner):
        field = make_field(field_owner, operating_days=["Saturday", "Sunday"])
        with pytest.raises(ValidationException) as exc_info:
            container.booking_service.start_checkout(
                dog_owner.id, field.id, NEXT_TUESDAY, "09:00", "10:00", 1
            )
        assert exc_info.value.code == "FIELD_CLOSED"


class TestCreateBooking:
    def test_creates_paid_booking_with_split_and_ledger(
        self, db, container, field, field_owner, dog_owner
    ):
        service = container.booking_service
        service.start_checkout(dog_owner.id, field.id, NEXT_TUESDAY, "09:00", "10:00", 2)

        booking = service.create_booking(
            dog_owner.id, field.id, NEXT_TUESDAY, "09:00", "10:00", 2, payment_intent_id="pi_1"
        )

        assert booking.booking_number == 1111
        assert booking.status == BookingStatus.CONFIRMED.value
        assert booking.payment_status == PaymentStatus.PAID.value
        assert booking.payout_status is None
        assert booking.total_price == Decimal("20.00")
        assert booking.platform_commission == Decimal("4.00")
        assert booking.field_owner_amount == Decimal("16.00")
        assert booking.time_slot == "9:00AM - 10:00AM"

        payments = db.query(Transaction).filter(Transaction.booking_id == booking.id).all()
        assert [t.type for t in payments] == [TransactionType.PAYMENT.value]
        assert payments[0].lifecycle_stage == "FUNDS_PENDING"

        assert container.slot_lock_service.get_active_locks(field.id, NEXT_TUESDAY) == []
        owner_notes = _notifications(db, field_owner.id)
        assert [n.type for n in owner_notes] == [NotificationType.BOOKING_RECEIVED.value]

    def test_booking_numbers_increase(self, container, field, dog_owner):
        service = container.booking_service
        first = service.create_booking(dog_owner.id, field.id, NEXT_TUESDAY, "09:00", "10:00", 1)
        second = service.create_booking(dog_owner.id, field.id, NEXT_TUESDAY, "10:00", "11:00", 1)
        assert (first.booking_number, second.booking_number) == (1111, 1112)

    def test_slot_taken_since_checkout(self, container, field, dog_owner, make_user, make_booking):
        make_booking(field, make_user(), NEXT_TUESDAY, "09:00", "10:00")
        with pytest.raises(BookingConflictException):
            container.booking_service.create_booking(
                dog_owner.id, field.id, NEXT_TUESDAY, "09:00", "10:00", 1
            )

    def test_other_users_lock_does_not_void_paid_checkout(
        self, container, field, dog_owner, make_user
    ):
        container.slot_lock_service.acquire(
            make_user().id, field.id, NEXT_TUESDAY, "09:00", "10:00"
        )
        booking = container.booking_service.create_booking(
            dog_owner.id, field.id, NEXT_TUESDAY, "09:00", "10:00", 1
        )
        assert booking.status == BookingStatus.CONFIRMED.value


class TestStatusChanges:
    def test_cancel_unpaid_booking(
        self, db, container, field, field_owner, dog_owner, make_booking
    ):
        booking = make_booking(
            field,
            dog_owner,
            status=BookingStatus.PENDING,
            payment_status=PaymentStatus.PENDING,
        )

        result = container.booking_service.cancel_booking(booking.id, dog_owner.id, "Plans changed")

        assert result.refund is None
        assert result.booking.status == BookingStatus.CANCELLED.value
        assert result.booking.payment_status == PaymentStatus.CANCELLED.value
        assert result.booking.payout_status is None
        assert result.booking.cancellation_reason == "Plans changed"
        container.stripe_service.create_refund.assert_not_called()
        assert len(_notifications(db, field_owner.id)) == 1
        assert len(_notifications(db, dog_owner.id)) == 1

    def test_cannot_cancel_completed_booking(self, container, field, dog_owner, make_booking):
        booking = make_booking(field, dog_owner, status=BookingStatus.COMPLETED)
        with pytest.raises(InvalidStateTransitionException):
            container.booking_service.cancel_booking(booking.id, dog_owner.id)

    def test_cannot_complete_cancelled_booking(self, container, field, dog_owner, make_booking):
        booking = make_booking(field, dog_owner, status=BookingStatus.CANCELLED)
        with pytest.raises(InvalidStateTransitionException):
            container.booking_service.complete_booking(booking.id)

    def test_confirm_pending_booking(self, container, field, dog_owner, make_booking):
        booking = make_booking(field, dog_owner, status=BookingStatus.PENDING)
        assert container.booking_service.confirm_booking(booking.id).status == "CONFIRMED"

    def test_mark_past_bookings_completed(self, container, field, dog_owner, make_booking):
        yesterday = make_booking(field, dog_owner, date(2025, 6, 1), "09:00", "10:00")
        # ends 10:00 London, exactly now
        ended = make_booking(field, dog_owner, date(2025, 6, 2), "09:00", "10:00")
        running = make_booking(field, dog_owner, date(2025, 6, 2), "10:00", "11:00")
        future = make_booking(field, dog_owner, NEXT_TUESDAY, "09:00", "10:00")

        assert container.booking_service.mark_past_bookings_completed() == 2

        assert yesterday.status == BookingStatus.COMPLETED.value
        assert ended.status == BookingStatus.COMPLETED.value
        assert running.status == BookingStatus.CONFIRMED.value
        assert future.status == BookingStatus.CONFIRMED.value
