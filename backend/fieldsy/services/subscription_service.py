# backend/fieldsy/services/subscription_service.py
"""
Recurring Subscription Engine for the Fieldsy booking engine.

A subscription bills on Stripe and seeds one booking per cadence occurrence.
Bookings are materialized one occurrence at a time, never further ahead than
the admin-configured advance booking horizon.

Failed renewals follow retry-then-cancel: each failure bumps
``payment_retry_count`` and schedules a retry a day later; the failure that
reaches ``max_payment_retries`` cancels the subscription and every future
booking under it instead of scheduling another retry.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
import logging
from typing import Any, Dict, List, Optional

import pytz
from sqlalchemy.orm import Session

from ..core.clock import Clock, ensure_utc
from ..core.config import Settings, settings as default_settings
from ..core.enums import (
    NotificationType,
    PaymentStatus,
    PayoutStatus,
    RecurringInterval,
    SubscriptionStatus,
)
from ..core.exceptions import (
    BookingConflictException,
    ExternalProcessorException,
    NotFoundException,
    SlotLockedException,
    TimeParseError,
)
from ..models.booking import Booking
from ..models.subscription import Subscription
from ..repositories.factory import RepositoryFactory
from .availability_service import AvailabilityService
from .base import BaseService
from .booking_service import BookingService
from .booking_state import assert_transition
from .commission_service import to_minor_units
from .notification_service import NotificationService
from .recurrence import (
    coerce_interval,
    first_occurrence_on_or_after,
    next_occurrence,
    stripe_interval,
    weekday_name,
)
from .settings_service import SettingsService
from .stripe_service import StripeService, stripe_value
from .time_slots import booking_start_instant, format_time_slot

logger = logging.getLogger(__name__)

# Stripe subscription status -> Subscription.status
_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "incomplete": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete_expired": SubscriptionStatus.CANCELED,
}

_DECLINE_MESSAGES = {
    "card_declined": "Card declined",
    "insufficient_funds": "Insufficient funds",
    "expired_card": "Card expired",
    "incorrect_cvc": "Incorrect CVC",
    "processing_error": "Processing error",
    "incorrect_number": "Invalid card number",
}

DEFAULT_FAILURE_REASON = "Payment could not be processed"


def map_subscription_status(stripe_status: Optional[str]) -> SubscriptionStatus:
    status = _STATUS_MAP.get((stripe_status or "").lower())
    if status is None:
        logger.warning(f"Unknown Stripe subscription status {stripe_status!r}; treating as active")
        return SubscriptionStatus.ACTIVE
    return status


def extract_failure_reason(
    invoice: Any = None,
    *,
    failure_code: Optional[str] = None,
    failure_message: Optional[str] = None,
) -> str:
    """
    Human-readable reason for a failed invoice payment.

    Looks at the expanded payment intent's last error first, then the
    expanded charge, then any code/message the caller already extracted.
    """
    payment_intent = stripe_value(invoice, "payment_intent")
    if payment_intent is not None and not isinstance(payment_intent, str):
        last_error = stripe_value(payment_intent, "last_payment_error")
        if last_error:
            code = stripe_value(last_error, "code")
            message = stripe_value(last_error, "message")
            return _DECLINE_MESSAGES.get(code) or message or code or "Payment failed"

    charge = stripe_value(invoice, "charge")
    if charge is not None and not isinstance(charge, str):
        if stripe_value(charge, "failure_message"):
            return stripe_value(charge, "failure_message")
        if stripe_value(charge, "failure_code"):
            return stripe_value(charge, "failure_code")

    if failure_code in _DECLINE_MESSAGES:
        return _DECLINE_MESSAGES[failure_code]
    return failure_message or failure_code or DEFAULT_FAILURE_REASON


def _from_timestamp(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def is_stripe_subscription_id(value: Optional[str]) -> bool:
    return bool(value) and value.startswith("sub_")


@dataclass(frozen=True)
class SubscriptionCreated:
    subscription: Subscription
    first_booking: Optional[Booking]
    client_secret: Optional[str]


class SubscriptionService(BaseService):
    def __init__(
        self,
        db: Session,
        *,
        stripe_service: StripeService,
        booking_service: BookingService,
        availability_service: AvailabilityService,
        notification_service: NotificationService,
        settings_service: SettingsService,
        config: Optional[Settings] = None,
        clock: Optional[Clock] = None,
    ):
        super().__init__(db, clock)
        self.config = config or default_settings
        self.stripe_service = stripe_service
        self.booking_service = booking_service
        self.availability_service = availability_service
        self.notification_service = notification_service
        self.settings_service = settings_service
        self.subscription_repository = RepositoryFactory.create_subscription_repository(db)
        self.booking_repository = RepositoryFactory.create_booking_repository(db)
        self.field_repository = RepositoryFactory.create_field_repository(db)
        self.user_repository = RepositoryFactory.create_user_repository(db)

    # ------------------------------------------------------------------ #
    # Creation
    # ------------------------------------------------------------------ #

    @BaseService.measure_operation("create_subscription")
    def create_subscription(
        self,
        user_id: str,
        field_id: str,
        on_date: date,
        start_time: str,
        end_time: str,
        number_of_dogs: int,
        interval: str,
        payment_method_id: Optional[str] = None,
    ) -> SubscriptionCreated:
        """
        Set up a recurring booking starting on ``on_date``.

        Raises:
            NotFoundException: unknown user or field
            ValidationException: bad interval, dogs or time range
            BookingConflictException: the series collides with existing bookings
            ExternalProcessorException: Stripe rejected the billing setup
        """
        cadence = coerce_interval(interval)
        user = self.user_repository.get_by_id(user_id)
        if user is None:
            raise NotFoundException(f"User {user_id} not found")
        field = self.field_repository.get_by_id(field_id)
        if field is None:
            raise NotFoundException(f"Field {field_id} not found")
        amount = self.booking_service.quote_price(field, start_time, end_time, number_of_dogs)

        day_of_week = weekday_name(on_date) if cadence is RecurringInterval.WEEKLY else None
        day_of_month = on_date.day if cadence is RecurringInterval.MONTHLY else None

        report = self.availability_service.check_recurring_subscription_conflicts(
            field_id,
            on_date,
            start_time,
            end_time,
            cadence.value,
            day_of_week=day_of_week,
            day_of_month=day_of_month,
        )
        if report.has_conflict:
            dates = list(report.conflicting_dates)
            raise BookingConflictException(
                f"This recurring booking conflicts with existing bookings on {len(dates)} date(s)",
                conflict_type="recurring",
                conflicting_dates=dates,
            )

        first = self.availability_service.is_available(
            field_id, on_date, start_time, end_time, user_id=user_id
        )
        if not first.available:
            if first.conflict_type == "lock":
                raise SlotLockedException()
            raise BookingConflictException(first.reason, conflict_type=first.conflict_type)

        time_slot = format_time_slot(start_time, end_time)
        customer_id = user.stripe_customer_id
        if not customer_id:
            customer = self.stripe_service.create_customer(
                email=user.email, name=user.name, metadata={"user_id": user.id}
            )
            customer_id = stripe_value(customer, "id")
            with self.transaction():
                self.user_repository.update(user, stripe_customer_id=customer_id)
        if payment_method_id:
            self.stripe_service.attach_payment_method(payment_method_id, customer_id)

        product = self.stripe_service.create_product(
            name=f"{field.name} - {time_slot}",
            metadata={"field_id": field.id, "time_slot": time_slot},
        )
        price = self.stripe_service.create_price(
            product_id=stripe_value(product, "id"),
            unit_amount=to_minor_units(amount),
            interval=stripe_interval(cadence.value),
        )
        stripe_subscription = self.stripe_service.create_subscription(
            customer_id=customer_id,
            price_id=stripe_value(price, "id"),
            default_payment_method=payment_method_id,
            metadata={
                "user_id": user.id,
                "field_id": field.id,
                "field_owner_id": field.owner_id,
                "interval": cadence.value,
                "start_time": start_time,
                "end_time": end_time,
                "number_of_dogs": str(number_of_dogs),
                "first_booking_date": on_date.isoformat(),
            },
        )

        with self.transaction():
            subscription = self.subscription_repository.create(
                user_id=user.id,
                field_id=field.id,
                stripe_subscription_id=stripe_value(stripe_subscription, "id"),
                stripe_customer_id=customer_id,
                stripe_price_id=stripe_value(price, "id"),
                interval=cadence.value,
                interval_count=1,
                day_of_week=day_of_week,
                day_of_month=day_of_month,
                time_slot=time_slot,
                start_time=start_time,
                end_time=end_time,
                number_of_dogs=number_of_dogs,
                total_price=amount,
                status=map_subscription_status(stripe_value(stripe_subscription, "status")).value,
                current_period_start=_from_timestamp(
                    stripe_value(stripe_subscription, "current_period_start")
                ),
                current_period_end=_from_timestamp(
                    stripe_value(stripe_subscription, "current_period_end")
                ),
            )

        first_booking = self.create_booking_from_subscription(subscription.id, on_date)

        if field.owner_id != user.id:
            with self.transaction():
                self.notification_service.notify(
                    field.owner_id,
                    NotificationType.RECURRING_BOOKING_CREATED,
                    "New recurring booking",
                    f"A {cadence.value} recurring booking has been set up for {field.name} "
                    f"starting {on_date.isoformat()} at {time_slot}.",
                    {
                        "subscription_id": subscription.id,
                        "field_id": field.id,
                        "interval": cadence.value,
                    },
                )

        latest_invoice = stripe_value(stripe_subscription, "latest_invoice")
        payment_intent = stripe_value(latest_invoice, "payment_intent")
        client_secret = stripe_value(payment_intent, "client_secret")
        self.logger.info(
            f"Created {cadence.value} subscription {subscription.id} for user {user.id} "
            f"on field {field.id} ({start_time}-{end_time}, £{amount})"
        )
        return SubscriptionCreated(
            subscription=subscription, first_booking=first_booking, client_secret=client_secret
        )

    def create_booking_from_subscription(
        self, subscription_id: str, on_date: date
    ) -> Optional[Booking]:
        """Materialize one occurrence; returns None when the slot is taken."""
        subscription = self._get_subscription(subscription_id)
        if self.booking_repository.exists_for_subscription_on(subscription.id, on_date):
            self.logger.info(
                f"Subscription {subscription.id} already has a booking on {on_date.isoformat()}"
            )
            return None

        try:
            booking = self.booking_service.create_booking(
                subscription.user_id,
                subscription.field_id,
                on_date,
                subscription.start_time,
                subscription.end_time,
                subscription.number_of_dogs,
                total_price=subscription.total_price,
                subscription_id=subscription.id,
            )
        except BookingConflictException as e:
            self.logger.info(
                f"Skipping {on_date.isoformat()} for subscription {subscription.id}: {e.message}"
            )
            return None

        with self.transaction():
            if subscription.last_booking_date is None or on_date > subscription.last_booking_date:
                self.subscription_repository.update(subscription, last_booking_date=on_date)
        return booking

    # ------------------------------------------------------------------ #
    # Invoice events
    # ------------------------------------------------------------------ #

    @BaseService.measure_operation("handle_invoice_payment_succeeded")
    def handle_invoice_payment_succeeded(
        self, stripe_subscription_id: str, invoice: Any = None
    ) -> Optional[Booking]:
        subscription = self.subscription_repository.get_by_stripe_id(stripe_subscription_id)
        if subscription is None:
            self.logger.info(
                f"invoice.payment_succeeded for unknown subscription {stripe_subscription_id}"
            )
            return None

        past_due = subscription.status == SubscriptionStatus.PAST_DUE.value
        if subscription.payment_retry_count or past_due:
            with self.transaction():
                self._reset_retry_state(subscription)
            self.logger.info(f"Reset retry count for subscription {subscription.id} after payment")

        # The first invoice pays for the booking made at creation
        if stripe_value(invoice, "billing_reason") == "subscription_create":
            return None

        today = self._local_today()
        last = subscription.last_booking_date or today
        next_date = next_occurrence(
            subscription.interval, last, day_of_month=subscription.day_of_month
        )
        horizon = today + timedelta(
            days=self.settings_service.get_platform_settings().max_advance_booking_days
        )
        if next_date > horizon:
            with self.transaction():
                self.notification_service.notify(
                    subscription.user_id,
                    NotificationType.RECURRING_BOOKING_PENDING,
                    "Recurring booking scheduled",
                    f"Your {subscription.interval} payment was successful. The booking will be "
                    f"created closer to {next_date.isoformat()}.",
                    {"subscription_id": subscription.id, "next_booking_date": next_date},
                )
            return None

        booking = self.create_booking_from_subscription(subscription.id, next_date)
        if booking is not None:
            with self.transaction():
                self.notification_service.notify(
                    subscription.user_id,
                    NotificationType.RECURRING_BOOKING_CHARGED,
                    "Recurring booking renewed",
                    f"Your {subscription.interval} booking has been renewed for "
                    f"{next_date.isoformat()} at {booking.time_slot}.",
                    {"subscription_id": subscription.id, "booking_id": booking.id},
                )
        return booking

    @BaseService.measure_operation("handle_invoice_payment_failed")
    def handle_invoice_payment_failed(
        self,
        stripe_subscription_id: str,
        failure_code: Optional[str] = None,
        failure_message: Optional[str] = None,
        invoice: Any = None,
    ) -> Optional[Subscription]:
        subscription = self.subscription_repository.get_by_stripe_id(stripe_subscription_id)
        if subscription is None:
            self.logger.info(
                f"invoice.payment_failed for unknown subscription {stripe_subscription_id}"
            )
            return None
        if subscription.status == SubscriptionStatus.CANCELED.value:
            return subscription

        max_retries = self.config.max_payment_retries
        attempt = (subscription.payment_retry_count or 0) + 1
        reason = extract_failure_reason(
            invoice, failure_code=failure_code, failure_message=failure_message
        )
        now = self.now()
        self.logger.info(
            f"Payment failed for subscription {subscription.id}: attempt {attempt}/{max_retries}"
        )

        if attempt >= max_retries:
            self._cancel_for_payment_failure(subscription, reason, attempt, now)
            return subscription

        next_retry = now + timedelta(days=1)
        remaining = max_retries - attempt
        with self.transaction():
            self.subscription_repository.update(
                subscription,
                status=SubscriptionStatus.PAST_DUE.value,
                payment_retry_count=attempt,
                last_payment_failed_at=now,
                next_retry_date=next_retry,
                failure_reason=reason,
            )
            self.notification_service.notify(
                subscription.user_id,
                NotificationType.SUBSCRIPTION_PAYMENT_FAILED,
                "Payment failed",
                f"Your recurring booking payment failed ({reason}). We will retry in 24 hours. "
                f"{remaining} attempt{'' if remaining == 1 else 's'} remaining before your "
                "subscription is cancelled.",
                {
                    "subscription_id": subscription.id,
                    "retry_count": attempt,
                    "remaining_attempts": remaining,
                    "next_retry_date": next_retry,
                    "failure_reason": reason,
                },
            )
        return subscription

    @BaseService.measure_operation("retry_failed_payments")
    def retry_failed_payments(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Pay the open invoice of every past_due subscription whose retry is due."""
        current = self.now(now)
        results = {"attempted": 0, "succeeded": 0, "failed": 0, "skipped": 0}
        due = self.subscription_repository.get_due_for_retry(
            current, self.config.max_payment_retries
        )
        self.logger.info(f"Found {len(due)} subscriptions due for payment retry")

        for subscription in due:
            if not is_stripe_subscription_id(subscription.stripe_subscription_id):
                results["skipped"] += 1
                continue
            results["attempted"] += 1
            try:
                invoices = self.stripe_service.list_open_invoices(
                    subscription.stripe_subscription_id
                )
                if not invoices:
                    self.logger.info(f"No open invoice for subscription {subscription.id}")
                    results["skipped"] += 1
                    continue
                paid = self.stripe_service.pay_invoice(stripe_value(invoices[0], "id"))
            except ExternalProcessorException as e:
                # The invoice.payment_failed webhook counts the attempt
                self.logger.warning(
                    f"Payment retry failed for subscription {subscription.id}: {e.message}"
                )
                results["failed"] += 1
                continue

            if stripe_value(paid, "status") == "paid":
                with self.transaction():
                    self._reset_retry_state(subscription)
                results["succeeded"] += 1
                self.logger.info(f"Payment retry succeeded for subscription {subscription.id}")
            else:
                results["failed"] += 1
        return results

    # ------------------------------------------------------------------ #
    # Cancellation and Stripe sync
    # ------------------------------------------------------------------ #

    @BaseService.measure_operation("cancel_subscription")
    def cancel_subscription(
        self,
        subscription_id: str,
        cancel_immediately: bool = False,
        user_id: Optional[str] = None,
    ) -> Subscription:
        subscription = self._get_subscription(subscription_id)
        if subscription.status == SubscriptionStatus.CANCELED.value:
            return subscription

        if is_stripe_subscription_id(subscription.stripe_subscription_id):
            try:
                if cancel_immediately:
                    self.stripe_service.cancel_subscription(subscription.stripe_subscription_id)
                else:
                    self.stripe_service.modify_subscription(
                        subscription.stripe_subscription_id, cancel_at_period_end=True
                    )
            except ExternalProcessorException as e:
                self.logger.error(
                    f"Stripe cancellation failed for subscription {subscription.id}: {e.message}"
                )

        now = self.now()
        with self.transaction():
            changes: Dict[str, Any] = {"cancel_at_period_end": not cancel_immediately}
            if cancel_immediately:
                changes.update(status=SubscriptionStatus.CANCELED.value, canceled_at=now)
            self.subscription_repository.update(subscription, **changes)
            cancelled = self._cancel_future_bookings(
                subscription, "Subscription cancelled by user", now, cancelled_by=user_id
            )
        self.logger.info(
            f"Cancelled subscription {subscription.id} (immediately={cancel_immediately}); "
            f"{cancelled} future bookings cancelled"
        )
        return subscription

    def handle_subscription_updated(self, stripe_subscription: Any) -> Optional[Subscription]:
        subscription = self.subscription_repository.get_by_stripe_id(
            stripe_value(stripe_subscription, "id")
        )
        if subscription is None:
            return None
        with self.transaction():
            self.subscription_repository.update(
                subscription,
                status=map_subscription_status(stripe_value(stripe_subscription, "status")).value,
                current_period_start=_from_timestamp(
                    stripe_value(stripe_subscription, "current_period_start")
                ),
                current_period_end=_from_timestamp(
                    stripe_value(stripe_subscription, "current_period_end")
                ),
                cancel_at_period_end=bool(
                    stripe_value(stripe_subscription, "cancel_at_period_end")
                ),
                canceled_at=_from_timestamp(stripe_value(stripe_subscription, "canceled_at")),
            )
        return subscription

    def handle_subscription_deleted(self, stripe_subscription_id: str) -> Optional[Subscription]:
        subscription = self.subscription_repository.get_by_stripe_id(stripe_subscription_id)
        if subscription is None:
            return None
        now = self.now()
        with self.transaction():
            self.subscription_repository.update(
                subscription, status=SubscriptionStatus.CANCELED.value, canceled_at=now
            )
            self._cancel_future_bookings(subscription, "Subscription ended", now)
        return subscription

    # ------------------------------------------------------------------ #
    # Daily materialization
    # ------------------------------------------------------------------ #

    @BaseService.measure_operation("materialize_upcoming_bookings")
    def materialize_upcoming_bookings(self, now: Optional[datetime] = None) -> Dict[str, int]:
        current = self.now(now)
        today = self._local_today(current)
        horizon = today + timedelta(
            days=self.settings_service.get_platform_settings().max_advance_booking_days
        )
        results = {"created": 0, "skipped": 0, "failed": 0, "cancelled": 0}
        subscriptions = self.subscription_repository.get_all_reserving()
        self.logger.info(f"Found {len(subscriptions)} active subscriptions")

        for subscription in subscriptions:
            try:
                outcome = self._materialize_next(subscription, today, horizon)
            except Exception as e:
                self.db.rollback()
                self.logger.error(f"Error materializing subscription {subscription.id}: {e}")
                results["failed"] += 1
                continue
            results[outcome] += 1

        self.logger.info(
            f"Recurring bookings: {results['created']} created, {results['skipped']} skipped, "
            f"{results['cancelled']} cancelled, {results['failed']} failed"
        )
        return results

    def _materialize_next(self, subscription: Subscription, today: date, horizon: date) -> str:
        last = subscription.last_booking_date or self._local_date(subscription.created_at) or today
        if last > today:
            return "skipped"

        next_date = next_occurrence(
            subscription.interval, last, day_of_month=subscription.day_of_month
        )
        if next_date < today:
            idle_days = (today - last).days
            if idle_days >= self.config.subscription_inactivity_cancel_days:
                self.cancel_subscription(subscription.id, cancel_immediately=True)
                with self.transaction():
                    self.notification_service.notify(
                        subscription.user_id,
                        NotificationType.SUBSCRIPTION_CANCELLED,
                        "Recurring booking cancelled",
                        f"Your {subscription.interval} recurring booking has been cancelled "
                        "due to inactivity.",
                        {"subscription_id": subscription.id, "reason": "inactive"},
                    )
                return "cancelled"
            next_date = first_occurrence_on_or_after(
                subscription.interval,
                today,
                day_of_week=subscription.day_of_week,
                day_of_month=subscription.day_of_month,
            )

        if next_date > horizon:
            return "skipped"
        if self.booking_repository.exists_for_subscription_on(subscription.id, next_date):
            return "skipped"
        field = self.field_repository.get_by_id(subscription.field_id)
        if field is None or not field.is_active or not field.is_approved:
            self.logger.info(
                f"Field {subscription.field_id} is not bookable for subscription {subscription.id}"
            )
            return "skipped"

        booking = self.create_booking_from_subscription(subscription.id, next_date)
        if booking is None:
            return "skipped"
        with self.transaction():
            self.notification_service.notify(
                subscription.user_id,
                NotificationType.RECURRING_BOOKING_CREATED,
                "Upcoming booking scheduled",
                f"Your {subscription.interval} booking at {field.name} has been scheduled for "
                f"{next_date.isoformat()} at {booking.time_slot}.",
                {"subscription_id": subscription.id, "booking_id": booking.id},
            )
        return "created"

    # ------------------------------------------------------------------ #
    # Queries
    # ------------------------------------------------------------------ #

    def get_user_subscriptions(self, user_id: str) -> List[Subscription]:
        return self.subscription_repository.get_for_user(user_id)

    def get_subscription(self, subscription_id: str) -> Subscription:
        return self._get_subscription(subscription_id)

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #

    def _get_subscription(self, subscription_id: str) -> Subscription:
        subscription = self.subscription_repository.get_by_id(subscription_id)
        if subscription is None:
            raise NotFoundException(f"Subscription {subscription_id} not found")
        return subscription

    def _reset_retry_state(self, subscription: Subscription) -> None:
        self.subscription_repository.update(
            subscription,
            status=SubscriptionStatus.ACTIVE.value,
            payment_retry_count=0,
            next_retry_date=None,
            failure_reason=None,
        )

    def _cancel_for_payment_failure(
        self, subscription: Subscription, reason: str, attempts: int, now: datetime
    ) -> None:
        summary = f"Auto-cancelled after {attempts} failed payment attempts. Last failure: {reason}"
        if is_stripe_subscription_id(subscription.stripe_subscription_id):
            try:
                self.stripe_service.cancel_subscription(subscription.stripe_subscription_id)
            except ExternalProcessorException as e:
                self.logger.error(
                    f"Stripe cancellation failed for subscription {subscription.id}: {e.message}"
                )

        field = self.field_repository.get_by_id(subscription.field_id)
        field_name = field.name if field else "the field"
        with self.transaction():
            self.subscription_repository.update(
                subscription,
                status=SubscriptionStatus.CANCELED.value,
                canceled_at=now,
                payment_retry_count=attempts,
                last_payment_failed_at=now,
                next_retry_date=None,
                failure_reason=summary,
            )
            cancelled = self._cancel_future_bookings(
                subscription, "Subscription cancelled due to payment failure", now
            )
            self.notification_service.notify(
                subscription.user_id,
                NotificationType.SUBSCRIPTION_CANCELLED,
                "Subscription cancelled",
                f"Your recurring booking for {field_name} has been cancelled after {attempts} "
                "failed payment attempts. Please update your payment method and book again.",
                {
                    "subscription_id": subscription.id,
                    "total_attempts": attempts,
                    "failure_reason": reason,
                },
            )
            if field is not None:
                self.notification_service.notify(
                    field.owner_id,
                    NotificationType.SUBSCRIPTION_CANCELLED,
                    "Recurring booking cancelled",
                    f"A recurring booking for {field.name} has been cancelled "
                    "due to payment failure.",
                    {"subscription_id": subscription.id, "user_id": subscription.user_id},
                )
        self.logger.info(
            f"Subscription {subscription.id} cancelled after {attempts} failed payments; "
            f"{cancelled} future bookings cancelled"
        )

    def _cancel_future_bookings(
        self,
        subscription: Subscription,
        reason: str,
        now: datetime,
        cancelled_by: Optional[str] = None,
    ) -> int:
        """Cancel not-yet-started bookings; runs inside the caller's transaction."""
        cancelled = 0
        for booking in self.booking_repository.get_future_open_for_subscription(
            subscription.id, self._local_today(now)
        ):
            try:
                starts_at = booking_start_instant(
                    booking.date, booking.start_time, self.config.booking_timezone
                )
            except TimeParseError:
                starts_at = None
            if starts_at is not None and starts_at <= now:
                continue

            booking.cancel(cancelled_by, reason, when=now)
            if booking.payment_status == PaymentStatus.PENDING.value:
                booking.payment_status = PaymentStatus.CANCELLED.value
            if booking.payout_status not in (
                PayoutStatus.REFUNDED.value,
                PayoutStatus.CANCELLED.value,
            ):
                assert_transition("payout_status", booking.payout_status, PayoutStatus.CANCELLED)
                booking.payout_status = PayoutStatus.CANCELLED.value
            cancelled += 1
        self.booking_repository.flush()
        return cancelled

    def _local_today(self, now: Optional[datetime] = None) -> date:
        current = now if now is not None else self.now()
        return current.astimezone(pytz.timezone(self.config.booking_timezone)).date()

    def _local_date(self, value: Optional[datetime]) -> Optional[date]:
        if value is None:
            return None
        return ensure_utc(value).astimezone(pytz.timezone(self.config.booking_timezone)).date()
