"""Tests for the recurring subscription engine."""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from fieldsy.core.enums import BookingStatus, NotificationType, PayoutStatus
from fieldsy.core.exceptions import BookingConflictException, ExternalProcessorException
from fieldsy.models.booking import Booking
from fieldsy.models.notification import Notification
from fieldsy.services.subscription_service import (
    DEFAULT_FAILURE_REASON,
    extract_failure_reason,
    map_subscription_status,
)

NOW = datetime(2025, 6, 2, 9, 0, tzinfo=timezone.utc)
NEXT_TUESDAY = date(2025, 6, 10)


def _notification_types(db, user_id):
    return [n.type for n in db.query(Notification).filter(Notification.user_id == user_id)]


def _subscription_bookings(db, subscription_id):
    return (
        db.query(Booking)
        .filter(Booking.subscription_id == subscription_id)
        .order_by(Booking.date)
        .all()
    )


class TestCreateSubscription:
    def test_creates_billing_and_first_booking(
        self, db, container, stripe_mock, field, field_owner, dog_owner
    ):
        created = container.subscription_service.create_subscription(
            dog_owner.id, field.id, NEXT_TUESDAY, "09:00", "10:00", 1, "weekly", "pm_card"
        )

        subscription = created.subscription
        assert subscription.stripe_subscription_id == "sub_test"
        assert subscription.stripe_customer_id == "cus_test"
        assert subscription.status == "active"
        assert subscription.day_of_week == "Tuesday"
        assert subscription.day_of_month is None
        assert subscription.total_price == Decimal("10.00")
        assert subscription.last_booking_date == NEXT_TUESDAY
        assert dog_owner.stripe_customer_id == "cus_test"
        assert created.client_secret == "pi_secret_test"

        assert created.first_booking.date == NEXT_TUESDAY
        assert created.first_booking.subscription_id == subscription.id
        assert created.first_booking.booking_number == 1111

        stripe_mock.attach_payment_method.assert_called_once_with("pm_card", "cus_test")
        price_kwargs = stripe_mock.create_price.call_args.kwargs
        assert price_kwargs == {"product_id": "prod_test", "unit_amount": 1000, "interval": "week"}
        subscription_kwargs = stripe_mock.create_subscription.call_args.kwargs
        assert subscription_kwargs["default_payment_method"] == "pm_card"
        assert NotificationType.RECURRING_BOOKING_CREATED.value in _notification_types(
            db, field_owner.id
        )

    def test_existing_customer_is_reused(self, container, stripe_mock, field, make_user):
        user = make_user(stripe_customer_id="cus_existing")
        container.subscription_service.create_subscription(
            user.id, field.id, NEXT_TUESDAY, "09:00", "10:00", 1, "monthly"
        )
        stripe_mock.create_customer.assert_not_called()
        assert stripe_mock.create_subscription.call_args.kwargs["customer_id"] == "cus_existing"

    def test_series_conflict_is_reported_before_billing(
        self, container, stripe_mock, field, dog_owner, make_user, make_booking
    ):
        make_booking(field, make_user(), date(2025, 6, 17), "09:30", "10:30")

        with pytest.raises(BookingConflictException) as exc_info:
            container.subscription_service.create_subscription(
                dog_owner.id, field.id, NEXT_TUESDAY, "09:00", "10:00", 1, "weekly"
            )

        assert exc_info.value.conflicting_dates == ["2025-06-17"]
        assert exc_info.value.conflict_type == "recurring"
        stripe_mock.create_customer.assert_not_called()
        stripe_mock.create_subscription.assert_not_called()


class TestPaymentFailures:
    def test_retry_then_cancel(
        self,
        db,
        container,
        stripe_mock,
        field,
        field_owner,
        dog_owner,
        make_subscription,
        make_booking,
    ):
        subscription = make_subscription(field, dog_owner)
        upcoming = make_booking(
            field,
            dog_owner,
            NEXT_TUESDAY,
            total_price=Decimal("10.00"),
            subscription_id=subscription.id,
        )
        service = container.subscription_service

        service.handle_invoice_payment_failed("sub_test", failure_code="card_declined")
        assert subscription.status == "past_due"
        assert subscription.payment_retry_count == 1
        assert subscription.next_retry_date == NOW + timedelta(days=1)
        assert subscription.failure_reason == "Card declined"

        service.handle_invoice_payment_failed("sub_test", failure_code="card_declined")
        assert subscription.payment_retry_count == 2
        assert subscription.status == "past_due"
        stripe_mock.cancel_subscription.assert_not_called()

        service.handle_invoice_payment_failed("sub_test", failure_code="card_declined")
        assert subscription.status == "canceled"
        assert subscription.payment_retry_count == 3
        assert subscription.next_retry_date is None
        assert subscription.failure_reason.startswith("Auto-cancelled after 3 failed payment")
        stripe_mock.cancel_subscription.assert_called_once_with("sub_test")

        assert upcoming.status == BookingStatus.CANCELLED.value
        assert upcoming.payout_status == PayoutStatus.CANCELLED.value
        assert _notification_types(db, dog_owner.id).count(
            NotificationType.SUBSCRIPTION_PAYMENT_FAILED.value
        ) == 2
        assert NotificationType.SUBSCRIPTION_CANCELLED.value in _notification_types(
            db, field_owner.id
        )

    def test_failure_after_cancel_is_ignored(
        self, container, field, dog_owner, make_subscription
    ):
        subscription = make_subscription(field, dog_owner, status="canceled")
        container.subscription_service.handle_invoice_payment_failed("sub_test")
        assert subscription.payment_retry_count == 0

    def test_unknown_subscription(self, container):
        assert container.subscription_service.handle_invoice_payment_failed("sub_nope") is None


class TestRetryFailedPayments:
    def test_retries_only_due_stripe_subscriptions(
        self, container, stripe_mock, field, dog_owner, make_subscription
    ):
        due = make_subscription(
            field,
            dog_owner,
            stripe_subscription_id="sub_due",
            status="past_due",
            payment_retry_count=1,
            next_retry_date=NOW - timedelta(hours=1),
        )
        make_subscription(
            field,
            dog_owner,
            stripe_subscription_id="sub_later",
            status="past_due",
            payment_retry_count=1,
            next_retry_date=NOW + timedelta(hours=1),
        )
        make_subscription(
            field,
            dog_owner,
            stripe_subscription_id="manual_1",
            status="past_due",
            payment_retry_count=1,
            next_retry_date=NOW - timedelta(hours=1),
        )

        results = container.subscription_service.retry_failed_payments()

        assert results == {"attempted": 1, "succeeded": 1, "failed": 0, "skipped": 1}
        stripe_mock.list_open_invoices.assert_called_once_with("sub_due")
        stripe_mock.pay_invoice.assert_called_once_with("in_test")
        assert due.status == "active"
        assert due.payment_retry_count == 0
        assert due.next_retry_date is None

    def test_processor_error_counts_as_failed(
        self, container, stripe_mock, field, dog_owner, make_subscription
    ):
        subscription = make_subscription(
            field,
            dog_owner,
            status="past_due",
            payment_retry_count=2,
            next_retry_date=NOW - timedelta(minutes=5),
        )
        stripe_mock.pay_invoice.side_effect = ExternalProcessorException(
            "Your card has insufficient funds", processor_code="card_declined"
        )

        results = container.subscription_service.retry_failed_payments()

        assert results["failed"] == 1
        assert subscription.payment_retry_count == 2


class TestInvoiceSucceeded:
    def test_first_invoice_does_not_book_again(
        self, db, container, field, dog_owner, make_subscription
    ):
        subscription = make_subscription(field, dog_owner, last_booking_date=NEXT_TUESDAY)

        result = container.subscription_service.handle_invoice_payment_succeeded(
            "sub_test", {"billing_reason": "subscription_create"}
        )

        assert result is None
        assert _subscription_bookings(db, subscription.id) == []

    def test_renewal_books_next_occurrence_and_clears_retries(
        self, db, container, field, dog_owner, make_subscription
    ):
        subscription = make_subscription(
            field,
            dog_owner,
            last_booking_date=NEXT_TUESDAY,
            status="past_due",
            payment_retry_count=2,
            next_retry_date=NOW,
        )

        booking = container.subscription_service.handle_invoice_payment_succeeded(
            "sub_test", {"billing_reason": "subscription_cycle"}
        )

        assert booking.date == date(2025, 6, 17)
        assert booking.total_price == Decimal("10.00")
        assert subscription.status == "active"
        assert subscription.payment_retry_count == 0
        assert subscription.last_booking_date == date(2025, 6, 17)
        assert NotificationType.RECURRING_BOOKING_CHARGED.value in _notification_types(
            db, dog_owner.id
        )

    def test_occurrence_beyond_horizon_is_deferred(
        self, db, container, field, dog_owner, make_subscription
    ):
        subscription = make_subscription(
            field,
            dog_owner,
            interval="monthly",
            day_of_week=None,
            day_of_month=24,
            last_booking_date=date(2025, 6, 24),
        )

        result = container.subscription_service.handle_invoice_payment_succeeded("sub_test")

        assert result is None
        assert _subscription_bookings(db, subscription.id) == []
        assert _notification_types(db, dog_owner.id) == [
            NotificationType.RECURRING_BOOKING_PENDING.value
        ]


class TestMaterialize:
    def test_daily_run(self, db, container, stripe_mock, field, dog_owner, make_subscription):
        # last booked Tuesday 27 May, so next is Tuesday 3 June
        active = make_subscription(
            field,
            dog_owner,
            stripe_subscription_id="sub_active",
            last_booking_date=date(2025, 5, 27),
        )
        idle = make_subscription(
            field,
            dog_owner,
            stripe_subscription_id="sub_idle",
            start_time="11:00",
            end_time="12:00",
            time_slot="11:00AM - 12:00PM",
            last_booking_date=date(2025, 5, 6),
        )
        make_subscription(
            field,
            dog_owner,
            stripe_subscription_id="sub_ahead",
            start_time="13:00",
            end_time="14:00",
            time_slot="1:00PM - 2:00PM",
            last_booking_date=NEXT_TUESDAY,
        )

        results = container.subscription_service.materialize_upcoming_bookings()

        assert results == {"created": 1, "skipped": 1, "failed": 0, "cancelled": 1}
        assert [b.date for b in _subscription_bookings(db, active.id)] == [date(2025, 6, 3)]
        assert active.last_booking_date == date(2025, 6, 3)
        assert idle.status == "canceled"
        stripe_mock.cancel_subscription.assert_called_once_with("sub_idle")

    def test_second_run_is_idempotent(self, container, field, dog_owner, make_subscription):
        make_subscription(field, dog_owner, last_booking_date=date(2025, 5, 27))
        service = container.subscription_service

        assert service.materialize_upcoming_bookings()["created"] == 1
        assert service.materialize_upcoming_bookings() == {
            "created": 0,
            "skipped": 1,
            "failed": 0,
            "cancelled": 0,
        }


class TestCancelAndSync:
    def test_cancel_at_period_end(
        self, container, stripe_mock, field, dog_owner, make_subscription, make_booking
    ):
        subscription = make_subscription(field, dog_owner)
        upcoming = make_booking(field, dog_owner, NEXT_TUESDAY, subscription_id=subscription.id)

        container.subscription_service.cancel_subscription(subscription.id, user_id=dog_owner.id)

        stripe_mock.modify_subscription.assert_called_once_with(
            "sub_test", cancel_at_period_end=True
        )
        stripe_mock.cancel_subscription.assert_not_called()
        assert subscription.status == "active"
        assert subscription.cancel_at_period_end is True
        assert upcoming.status == BookingStatus.CANCELLED.value
        assert upcoming.cancelled_by_id == dog_owner.id

    def test_cancel_immediately(self, container, stripe_mock, field, dog_owner, make_subscription):
        subscription = make_subscription(field, dog_owner)
        container.subscription_service.cancel_subscription(subscription.id, cancel_immediately=True)
        stripe_mock.cancel_subscription.assert_called_once_with("sub_test")
        assert subscription.status == "canceled"
        assert subscription.canceled_at == NOW

    def test_stripe_updates_are_mirrored(self, container, field, dog_owner, make_subscription):
        subscription = make_subscription(field, dog_owner)
        service = container.subscription_service

        service.handle_subscription_updated(
            {"id": "sub_test", "status": "unpaid", "cancel_at_period_end": True}
        )
        assert subscription.status == "past_due"
        assert subscription.cancel_at_period_end is True

        service.handle_subscription_deleted("sub_test")
        assert subscription.status == "canceled"


class TestHelpers:
    def test_failure_reason_prefers_payment_intent_error(self):
        invoice = {
            "payment_intent": {
                "last_payment_error": {"code": "insufficient_funds", "message": "Not enough"}
            }
        }
        assert extract_failure_reason(invoice) == "Insufficient funds"

    def test_failure_reason_falls_back(self):
        assert extract_failure_reason({"charge": {"failure_message": "Do not honor"}}) == (
            "Do not honor"
        )
        assert extract_failure_reason(None, failure_code="expired_card") == "Card expired"
        assert extract_failure_reason(None, failure_message="Bank said no") == "Bank said no"
        assert extract_failure_reason(None) == DEFAULT_FAILURE_REASON

    @pytest.mark.parametrize(
        "stripe_status, expected",
        [
            ("active", "active"),
            ("trialing", "active"),
            ("unpaid", "past_due"),
            ("incomplete_expired", "canceled"),
            ("something_new", "active"),
        ],
    )
    def test_status_mapping(self, stripe_status, expected):
        assert map_subscription_status(stripe_status).value == expected
