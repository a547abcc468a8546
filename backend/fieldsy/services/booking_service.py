# backend/fieldsy/services/booking_service.py
"""
Booking Service for the Fieldsy booking engine.

Owns the booking status axis (PENDING -> CONFIRMED -> COMPLETED, or
CANCELLED) and the checkout flow:

1. ``start_checkout``: availability across bookings, recurring holds and
   other users' locks, then a slot lock for the caller
2. the customer pays (outside this package)
3. ``create_booking``: final re-check, booking number, commission split,
   PAYMENT ledger row, lock release, owner notification

The partial unique index on (field, date, start_time) is the last line of
defence: if two checkouts still race past the re-check, the loser gets a
``BookingConflictException``.
"""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
import logging
from typing import TYPE_CHECKING, List, Optional

import pytz
from sqlalchemy.orm import Session

from ..core.clock import Clock
from ..core.config import Settings, settings as default_settings
from ..core.enums import (
    BookingDuration,
    BookingStatus,
    LifecycleStage,
    NotificationType,
    PaymentStatus,
    PayoutStatus,
    TransactionType,
)
from ..core.exceptions import (
    BookingConflictException,
    IntegrityViolationException,
    NotFoundException,
    SlotLockedException,
    TimeParseError,
    ValidationException,
)
from ..models.booking import Booking
from ..models.field import Field
from ..models.slot_lock import SlotLock
from ..repositories.factory import RepositoryFactory
from .availability_service import BOOKED_REASON, AvailabilityResult, AvailabilityService
from .base import BaseService
from .booking_state import (
    BOOKING_TRANSITIONS,
    PAYMENT_TRANSITIONS,
    PAYOUT_TRANSITIONS,
    assert_transition,
)
from .commission_service import CommissionService, to_money
from .notification_service import NotificationService
from .recurrence import weekday_name
from .slot_lock_service import SlotLockService
from .time_slots import booking_start_instant, duration_minutes, format_time_slot

if TYPE_CHECKING:  # pragma: no cover
    from .refund_service import RefundResult, RefundService

logger = logging.getLogger(__name__)

__all__ = [
    "BOOKING_TRANSITIONS",
    "PAYMENT_TRANSITIONS",
    "PAYOUT_TRANSITIONS",
    "BookingCancellation",
    "BookingService",
    "CheckoutHold",
    "assert_transition",
]


@dataclass(frozen=True)
class CheckoutHold:
    lock: SlotLock
    amount: Decimal

    @property
    def expires_at(self) -> datetime:
        return self.lock.expires_at


@dataclass(frozen=True)
class BookingCancellation:
    booking: Booking
    refund: Optional["RefundResult"] = None


class BookingService(BaseService):
    def __init__(
        self,
        db: Session,
        *,
        availability_service: AvailabilityService,
        slot_lock_service: SlotLockService,
        commission_service: CommissionService,
        notification_service: NotificationService,
        refund_service: "RefundService",
        config: Optional[Settings] = None,
        clock: Optional[Clock] = None,
    ):
        super().__init__(db, clock)
        self.config = config or default_settings
        self.availability_service = availability_service
        self.slot_lock_service = slot_lock_service
        self.commission_service = commission_service
        self.notification_service = notification_service
        self.refund_service = refund_service
        self.booking_repository = RepositoryFactory.create_booking_repository(db)
        self.field_repository = RepositoryFactory.create_field_repository(db)
        self.transaction_repository = RepositoryFactory.create_transaction_repository(db)
        self.slot_lock_repository = RepositoryFactory.create_slot_lock_repository(db)

    # ------------------------------------------------------------------ #
    # Lookups and pricing
    # ------------------------------------------------------------------ #

    def get_booking(self, booking_id: str) -> Booking:
        booking = self.booking_repository.get_by_id(booking_id)
        if booking is None:
            raise NotFoundException(f"Booking {booking_id} not found")
        return booking

    def _get_field(self, field_id: str) -> Field:
        field = self.field_repository.get_by_id(field_id)
        if field is None:
            raise NotFoundException(f"Field {field_id} not found")
        return field

    def quote_price(
        self, field: Field, start_time: str, end_time: str, number_of_dogs: int
    ) -> Decimal:
        """
        Price for a slot: per-dog unit price times units times dogs.

        Half-hour fields charge ``price_30min`` per 30 minutes; hourly fields
        charge ``price_1hr`` per hour. The legacy ``price`` is the hourly
        fallback.
        """
        if not field.is_bookable:
            raise ValidationException(
                "This field is not currently accepting bookings", code="FIELD_NOT_BOOKABLE"
            )
        if number_of_dogs < 1:
            raise ValidationException("At least one dog is required", code="INVALID_DOGS")
        if number_of_dogs > field.max_dogs:
            raise ValidationException(
                f"This field allows at most {field.max_dogs} dogs",
                code="TOO_MANY_DOGS",
                details={"max_dogs": field.max_dogs},
            )
        minutes = duration_minutes(start_time, end_time)
        if minutes <= 0:
            raise ValidationException(
                "End time must be after start time", code="INVALID_TIME_RANGE"
            )

        if field.booking_duration == BookingDuration.THIRTY_MINUTES.value and field.price_30min:
            unit_price, unit_minutes = to_money(field.price_30min), 30
        elif field.price_1hr:
            unit_price, unit_minutes = to_money(field.price_1hr), 60
        elif field.price_30min:
            unit_price, unit_minutes = to_money(field.price_30min), 30
        elif field.price:
            unit_price, unit_minutes = to_money(field.price), 60
        else:
            raise ValidationException("Field has no price configured", code="FIELD_NOT_PRICED")

        per_dog = to_money(unit_price * Decimal(minutes) / Decimal(unit_minutes))
        return to_money(per_dog * number_of_dogs)

    # ------------------------------------------------------------------ #
    # Checkout
    # ------------------------------------------------------------------ #

    def check_availability(
        self,
        field_id: str,
        on_date: date,
        start_time: str,
        end_time: str,
        user_id: Optional[str] = None,
        exclude_booking_id: Optional[str] = None,
    ) -> AvailabilityResult:
        return self.availability_service.is_available(
            field_id,
            on_date,
            start_time,
            end_time,
            exclude_booking_id=exclude_booking_id,
            user_id=user_id,
        )

    @BaseService.measure_operation("start_checkout")
    def start_checkout(
        self,
        user_id: str,
        field_id: str,
        on_date: date,
        start_time: str,
        end_time: str,
        number_of_dogs: int,
    ) -> CheckoutHold:
        """
        Reserve a slot for payment.

        Raises:
            BookingConflictException: booked or held by a recurring booking
            SlotLockedException: another user is checking out this slot
            ValidationException: bad times, dogs, date or field state
        """
        field = self._get_field(field_id)
        amount = self.quote_price(field, start_time, end_time, number_of_dogs)
        self._validate_schedule(field, on_date, start_time)

        result = self.availability_service.is_available(
            field_id, on_date, start_time, end_time, user_id=user_id
        )
        if not result.available:
            if result.conflict_type == "lock":
                raise SlotLockedException()
            raise BookingConflictException(result.reason, conflict_type=result.conflict_type)

        lock = self.slot_lock_service.acquire(user_id, field_id, on_date, start_time, end_time)
        return CheckoutHold(lock=lock, amount=amount)

    def abort_checkout(self, user_id: str, field_id: str, on_date: date) -> int:
        return self.slot_lock_service.release(user_id, field_id, on_date)

    @BaseService.measure_operation("create_booking")
    def create_booking(
        self,
        user_id: str,
        field_id: str,
        on_date: date,
        start_time: str,
        end_time: str,
        number_of_dogs: int,
        payment_intent_id: Optional[str] = None,
        stripe_charge_id: Optional[str] = None,
        total_price: Optional[Decimal] = None,
        subscription_id: Optional[str] = None,
    ) -> Booking:
        """
        Persist a paid booking once checkout completes.

        Raises:
            BookingConflictException: the slot was taken since checkout started
        """
        field = self._get_field(field_id)
        total = (
            to_money(total_price)
            if total_price is not None
            else self.quote_price(field, start_time, end_time, number_of_dogs)
        )

        # Own lock is irrelevant here; other users' soft locks must not void a captured payment
        result = self.availability_service.is_available(
            field_id,
            on_date,
            start_time,
            end_time,
            exclude_subscription_id=subscription_id,
            include_locks=False,
        )
        if not result.available:
            raise BookingConflictException(result.reason, conflict_type=result.conflict_type)

        split = self.commission_service.split_amount(total, field.owner_id)

        with self.transaction():
            booking_number = self.booking_repository.next_booking_number(
                self.config.booking_number_start
            )
            try:
                booking = self.booking_repository.create(
                    booking_number=booking_number,
                    field_id=field_id,
                    user_id=user_id,
                    subscription_id=subscription_id,
                    date=on_date,
                    start_time=start_time,
                    end_time=end_time,
                    time_slot=format_time_slot(start_time, end_time),
                    number_of_dogs=number_of_dogs,
                    total_price=total,
                    status=BookingStatus.CONFIRMED.value,
                    payment_status=PaymentStatus.PAID.value,
                    platform_commission=split.platform_fee,
                    field_owner_amount=split.field_owner_amount,
                    payment_intent_id=payment_intent_id,
                    stripe_charge_id=stripe_charge_id,
                )
            except IntegrityViolationException:
                raise BookingConflictException(BOOKED_REASON, conflict_type="booking")

            self.transaction_repository.append(
                booking_id=booking.id,
                user_id=user_id,
                type=TransactionType.PAYMENT,
                amount=total,
                lifecycle_stage=LifecycleStage.FUNDS_PENDING.value,
                description=f"Payment for booking #{booking_number}",
                stripe_payment_intent_id=payment_intent_id,
                stripe_charge_id=stripe_charge_id,
            )
            self.slot_lock_repository.delete_for_user(user_id, field_id, on_date)

            self.notification_service.notify(
                field.owner_id,
                NotificationType.BOOKING_RECEIVED,
                "New booking received",
                f"{field.name} was booked for {on_date.isoformat()} at {booking.time_slot}.",
                {
                    "booking_id": booking.id,
                    "booking_number": booking_number,
                    "field_id": field_id,
                    "date": on_date,
                    "amount": split.field_owner_amount,
                },
            )

        self.logger.info(
            f"Created booking {booking.id} #{booking_number} on field {field_id} "
            f"{on_date} {start_time}-{end_time} (£{total}, commission {split.rate}%)"
        )
        return booking

    # ------------------------------------------------------------------ #
    # Status transitions
    # ------------------------------------------------------------------ #

    def confirm_booking(self, booking_id: str) -> Booking:
        return self._move_status(booking_id, BookingStatus.CONFIRMED)

    def complete_booking(self, booking_id: str) -> Booking:
        return self._move_status(booking_id, BookingStatus.COMPLETED)

    def _move_status(self, booking_id: str, target: BookingStatus) -> Booking:
        booking = self.get_booking(booking_id)
        assert_transition("status", booking.status, target)
        with self.transaction():
            self.booking_repository.update(booking, status=target.value)
        return booking

    @BaseService.measure_operation("cancel_booking")
    def cancel_booking(
        self,
        booking_id: str,
        user_id: Optional[str],
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> BookingCancellation:
        """
        Cancel a booking, refunding first when it was paid.

        A failed customer refund propagates (``ExternalProcessorException``)
        and leaves the booking as it was. A paid booking is marked cancelled
        in the same commit that records its refund.
        """
        booking = self.get_booking(booking_id)
        assert_transition("status", booking.status, BookingStatus.CANCELLED)
        when = self.now(now)

        def mark_cancelled(target: Booking) -> None:
            target.cancel(user_id, reason, when=when)
            if target.payment_status == PaymentStatus.PENDING.value:
                target.payment_status = PaymentStatus.CANCELLED.value
            if target.payment_status == PaymentStatus.PAID.value and target.payout_status not in (
                PayoutStatus.REFUNDED.value,
                PayoutStatus.CANCELLED.value,
            ):
                assert_transition("payout_status", target.payout_status, PayoutStatus.CANCELLED)
                target.payout_status = PayoutStatus.CANCELLED.value
            self.booking_repository.flush()
            self.slot_lock_repository.delete_for_user(target.user_id, target.field_id, target.date)

        refund: Optional["RefundResult"] = None
        if booking.payment_status == PaymentStatus.PAID.value:
            refund = self.refund_service.process_refund(
                booking.id, reason, now, finalize=mark_cancelled
            )
        else:
            with self.transaction():
                mark_cancelled(booking)

        field = self.field_repository.get_by_id(booking.field_id)
        with self.transaction():
            data = {
                "booking_id": booking.id,
                "date": booking.date,
                "time_slot": booking.time_slot,
                "refund_amount": refund.refund_amount if refund else None,
            }
            if field is not None:
                self.notification_service.notify(
                    field.owner_id,
                    NotificationType.BOOKING_CANCELLED,
                    "Booking cancelled",
                    f"The booking for {field.name} on {booking.date.isoformat()} was cancelled.",
                    data,
                )
            refund_note = ""
            if refund and refund.refund_amount > 0:
                refund_note = f" A refund of £{refund.refund_amount} is on its way."
            self.notification_service.notify(
                booking.user_id,
                NotificationType.BOOKING_CANCELLED,
                "Booking cancelled",
                f"Your booking on {booking.date.isoformat()} has been cancelled.{refund_note}",
                data,
            )

        self.logger.info(
            f"Cancelled booking {booking.id} (refund={refund.percentage if refund else 'n/a'}%)"
        )
        return BookingCancellation(booking=booking, refund=refund)

    @BaseService.measure_operation("mark_past_bookings_completed")
    def mark_past_bookings_completed(self, now: Optional[datetime] = None) -> int:
        """CONFIRMED bookings whose end instant has passed become COMPLETED."""
        current = self.now(now)
        tz = pytz.timezone(self.config.booking_timezone)
        local_today = current.astimezone(tz).date()
        completed = 0
        with self.transaction():
            for booking in self.booking_repository.get_confirmed_on_or_before(local_today):
                try:
                    ends_at = booking_start_instant(
                        booking.date, booking.end_time, self.config.booking_timezone
                    )
                except TimeParseError:
                    self.logger.warning(
                        f"Booking {booking.id} has malformed end time {booking.end_time!r}"
                    )
                    continue
                if ends_at <= current:
                    booking.status = BookingStatus.COMPLETED.value
                    completed += 1
        if completed:
            self.logger.info(f"Marked {completed} bookings as completed")
        return completed

    def get_bookings_for_field(self, field_id: str, on_date: date) -> List[Booking]:
        return self.booking_repository.get_blocking_for_field_date(field_id, on_date)

    def _validate_schedule(self, field: Field, on_date: date, start_time: str) -> None:
        if not field.opens_on(weekday_name(on_date)):
            raise ValidationException(
                f"{field.name} is closed on {weekday_name(on_date)}", code="FIELD_CLOSED"
            )
        starts_at = booking_start_instant(on_date, start_time, self.config.booking_timezone)
        if starts_at <= self.now():
            raise ValidationException("Cannot book a slot in the past", code="SLOT_IN_PAST")
