# backend/fieldsy/services/refund_service.py
"""
Refund and reversal engine.

A customer refund is sized by the refund policy (notice given versus the
cancellation window). When the field owner's share has already been
transferred out, the owner's proportion of the refund is pulled back with a
transfer reversal so the platform is not left covering it.

Ordering:
1. Customer refund at the processor. Failure aborts everything and
   propagates, so the booking stays uncancelled.
2. Owner reversal (best effort). Failure alerts admins but never blocks
   the customer refund that already happened.
3. Ledger rows and status flips, committed together. A caller-supplied
   ``finalize`` hook (booking cancellation) joins that same commit.

The whole refund runs under the booking's payout mutex with the booking
re-read, so a payout sweep cannot transfer the owner share mid-refund.
"""

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
import logging
from typing import Callable, Iterator, Optional

from sqlalchemy.orm import Session

from ..core.clock import Clock
from ..core.config import Settings, settings as default_settings
from ..core.enums import (
    LifecycleStage,
    NotificationType,
    PaymentStatus,
    PayoutRecordStatus,
    PayoutStatus,
    TransactionType,
)
from ..core.exceptions import (
    AlreadyRefundedException,
    ConflictException,
    ExternalProcessorException,
    NotFoundException,
)
from ..core.payout_lock import payout_lock_sync
from ..models.booking import Booking
from ..repositories.factory import RepositoryFactory
from .base import BaseService
from .booking_state import assert_transition
from .commission_service import CommissionService, to_minor_units, to_money
from .notification_service import NotificationService
from .refund_policy import RefundPolicy, RefundQuote
from .settings_service import SettingsService
from .stripe_service import StripeService, stripe_value
from .time_slots import booking_start_instant

logger = logging.getLogger(__name__)

# Payout states in which the owner's share has already left the platform balance
TRANSFERRED_PAYOUT_STATUSES = frozenset(
    {PayoutStatus.PROCESSING.value, PayoutStatus.COMPLETED.value}
)

# Applied to the locked booking inside the refund's final commit
Finalizer = Callable[[Booking], None]


@dataclass(frozen=True)
class RefundResult:
    booking_id: str
    refund_amount: Decimal
    percentage: int
    stripe_refund_id: Optional[str] = None
    reversal_amount: Decimal = Decimal("0.00")
    reversal_id: Optional[str] = None
    policy_basis: str = ""


class RefundService(BaseService):
    def __init__(
        self,
        db: Session,
        *,
        stripe_service: StripeService,
        notification_service: NotificationService,
        settings_service: SettingsService,
        commission_service: CommissionService,
        policy: Optional[RefundPolicy] = None,
        config: Optional[Settings] = None,
        clock: Optional[Clock] = None,
    ):
        super().__init__(db, clock)
        self.config = config or default_settings
        self.stripe_service = stripe_service
        self.notification_service = notification_service
        self.settings_service = settings_service
        self.commission_service = commission_service
        self.policy = policy or RefundPolicy()
        self.booking_repository = RepositoryFactory.create_booking_repository(db)
        self.transaction_repository = RepositoryFactory.create_transaction_repository(db)
        self.payout_repository = RepositoryFactory.create_payout_repository(db)
        self.stripe_account_repository = RepositoryFactory.create_stripe_account_repository(db)
        self.field_repository = RepositoryFactory.create_field_repository(db)

    def quote_refund(self, booking: Booking, now: Optional[datetime] = None) -> RefundQuote:
        starts_at = booking_start_instant(
            booking.date, booking.start_time, self.config.booking_timezone
        )
        hours_until_start = (starts_at - self.now(now)).total_seconds() / 3600
        window = self.settings_service.get_platform_settings().cancellation_window_hours
        return self.policy.quote(booking.total_price, hours_until_start, window)

    @BaseService.measure_operation("process_refund")
    def process_refund(
        self,
        booking_id: str,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
        *,
        finalize: Optional[Finalizer] = None,
    ) -> RefundResult:
        """
        Refund a cancelled booking according to the notice given.

        ``finalize`` runs against the booking inside the commit that records
        the refund, so the caller's status change cannot be lost after the
        money has moved.

        Raises:
            NotFoundException: unknown booking
            AlreadyRefundedException: payment already refunded
            ConflictException: payment is not in PAID state, or a payout for
                the booking is in progress
            ExternalProcessorException: the customer refund failed
        """
        with self._payout_guard(booking_id):
            booking = self._get_refundable(booking_id)
            quote = self.quote_refund(booking, now)
            self.logger.info(
                f"Refund for booking {booking.id}: {quote.percentage}% "
                f"({quote.hours_until_start:.1f}h before start)"
            )

            if quote.amount <= 0:
                return self._close_without_refund(booking, quote, finalize)
            return self._refund(
                booking,
                quote.amount,
                quote.percentage,
                reason,
                quote.policy_basis,
                finalize=finalize,
            )

    @BaseService.measure_operation("refund_subscription_occurrence")
    def refund_subscription_occurrence(
        self, booking_id: str, reason: Optional[str] = None
    ) -> RefundResult:
        """Full refund of one materialized recurring occurrence, regardless of notice."""
        with self._payout_guard(booking_id):
            booking = self._get_refundable(booking_id)
            if not booking.subscription_id:
                raise ConflictException(
                    "Booking is not part of a recurring subscription",
                    code="NOT_SUBSCRIPTION_BOOKING",
                )
            return self._refund(
                booking,
                to_money(booking.total_price),
                100,
                reason or "Recurring occurrence refunded",
                "recurring occurrence: full refund",
            )

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #

    @contextmanager
    def _payout_guard(self, booking_id: str) -> Iterator[None]:
        with payout_lock_sync(booking_id) as acquired:
            if not acquired:
                raise ConflictException(
                    "A payout for this booking is in progress, try again shortly",
                    code="PAYOUT_IN_PROGRESS",
                    details={"booking_id": booking_id},
                )
            yield

    def _get_refundable(self, booking_id: str) -> Booking:
        # Fresh row: a payout may have committed since the caller last read it
        booking = self.booking_repository.get_for_update(booking_id)
        if booking is None:
            raise NotFoundException(f"Booking {booking_id} not found")
        if booking.payment_status == PaymentStatus.REFUNDED.value:
            raise AlreadyRefundedException(booking.id)
        if booking.payment_status != PaymentStatus.PAID.value:
            raise ConflictException(
                f"Booking payment is {booking.payment_status}, nothing to refund",
                code="NOT_REFUNDABLE",
                details={"payment_status": booking.payment_status},
            )
        return booking

    def _close_without_refund(
        self, booking: Booking, quote: RefundQuote, finalize: Optional[Finalizer] = None
    ) -> RefundResult:
        # No money moves; the owner payout must never go out for a cancelled booking
        with self.transaction():
            if booking.payout_status != PayoutStatus.CANCELLED.value:
                assert_transition("payout_status", booking.payout_status, PayoutStatus.CANCELLED)
                self.booking_repository.update(
                    booking,
                    payout_status=PayoutStatus.CANCELLED.value,
                    payout_held_reason="Cancelled inside the no-refund window",
                )
            if finalize is not None:
                finalize(booking)
        return RefundResult(
            booking_id=booking.id,
            refund_amount=to_money(0),
            percentage=quote.percentage,
            policy_basis=quote.policy_basis,
        )

    def _refund(
        self,
        booking: Booking,
        amount: Decimal,
        percentage: int,
        reason: Optional[str],
        policy_basis: str,
        *,
        finalize: Optional[Finalizer] = None,
    ) -> RefundResult:
        if not booking.payment_intent_id:
            raise ConflictException(
                "Booking has no payment to refund", code="NO_PAYMENT_INTENT"
            )

        try:
            refund = self.stripe_service.create_refund(
                payment_intent=booking.payment_intent_id,
                amount=to_minor_units(amount),
                reason="requested_by_customer",
                metadata={
                    "booking_id": booking.id,
                    "refund_percentage": str(percentage),
                    "cancellation_reason": reason or "",
                },
                idempotency_key=f"refund_{booking.id}",
            )
        except ExternalProcessorException as e:
            self.logger.error(f"Customer refund failed for booking {booking.id}: {e.message}")
            self.notification_service.notify_admins(
                NotificationType.REFUND_FAILED,
                "Refund failed",
                f"Refund of £{amount} for booking {booking.id} failed: {e.message}",
                {"booking_id": booking.id, "amount": amount, "error": e.message},
            )
            self.db.commit()
            raise
        refund_id = stripe_value(refund, "id")

        reversal_amount, reversal_id, transfer_id = self._reverse_owner_share(booking, amount)

        with self.transaction():
            self.transaction_repository.append(
                booking_id=booking.id,
                user_id=booking.user_id,
                type=TransactionType.REFUND,
                amount=-amount,
                lifecycle_stage=LifecycleStage.REFUNDED.value,
                description=f"{percentage}% refund: {reason or 'cancelled'}",
                stripe_refund_id=refund_id,
                stripe_payment_intent_id=booking.payment_intent_id,
            )
            if reversal_id:
                self.transaction_repository.append(
                    booking_id=booking.id,
                    user_id=booking.user_id,
                    type=TransactionType.REVERSAL,
                    amount=-reversal_amount,
                    lifecycle_stage=LifecycleStage.REVERSED.value,
                    description="Owner share reversed after refund",
                    stripe_transfer_id=transfer_id,
                )

            assert_transition("payment_status", booking.payment_status, PaymentStatus.REFUNDED)
            assert_transition("payout_status", booking.payout_status, PayoutStatus.REFUNDED)
            self.booking_repository.update(
                booking,
                payment_status=PaymentStatus.REFUNDED.value,
                payout_status=PayoutStatus.REFUNDED.value,
            )
            # A partial or failed reversal leaves the owner paid for the remainder
            if reversal_id and amount >= to_money(booking.total_price):
                self._cancel_covering_payouts(booking)
            if finalize is not None:
                finalize(booking)

            if reversal_id:
                self._notify_owner_of_reversal(booking, reversal_amount, reversal_id, reason)
            self.notification_service.notify(
                booking.user_id,
                NotificationType.REFUND_PROCESSED,
                "Refund processed",
                f"Your refund of £{amount} has been processed.",
                {
                    "booking_id": booking.id,
                    "amount": amount,
                    "percentage": percentage,
                    "refund_id": refund_id,
                },
            )

        self.logger.info(
            f"Refunded £{amount} ({percentage}%) for booking {booking.id}"
            + (f"; reversed £{reversal_amount} via {reversal_id}" if reversal_id else "")
        )
        return RefundResult(
            booking_id=booking.id,
            refund_amount=amount,
            percentage=percentage,
            stripe_refund_id=refund_id,
            reversal_amount=reversal_amount if reversal_id else to_money(0),
            reversal_id=reversal_id,
            policy_basis=policy_basis,
        )

    def _reverse_owner_share(
        self, booking: Booking, refund_amount: Decimal
    ) -> tuple[Decimal, Optional[str], Optional[str]]:
        if booking.payout_status not in TRANSFERRED_PAYOUT_STATUSES:
            return to_money(0), None, None
        transfer_id = self.transaction_repository.get_transfer_id(booking.id)
        if not transfer_id:
            self.logger.warning(
                f"Booking {booking.id} payout is {booking.payout_status} "
                "but no transfer is recorded"
            )
            return to_money(0), None, None

        total = to_money(booking.total_price)
        owner_amount = booking.field_owner_amount
        if owner_amount is None:
            field = self.field_repository.get_by_id(booking.field_id)
            owner_amount = self.commission_service.split_amount(
                total, field.owner_id if field else None
            ).field_owner_amount
        if total <= 0:
            return to_money(0), None, transfer_id
        reversal_amount = to_money(refund_amount * to_money(owner_amount) / total)
        if reversal_amount <= 0:
            return reversal_amount, None, transfer_id

        try:
            reversal = self.stripe_service.create_transfer_reversal(
                transfer_id,
                amount=to_minor_units(reversal_amount),
                metadata={"booking_id": booking.id, "reason": "customer_refund"},
                idempotency_key=f"reversal_{booking.id}",
            )
        except ExternalProcessorException as e:
            self.logger.error(
                f"Transfer reversal of £{reversal_amount} for booking {booking.id} "
                f"failed: {e.message}"
            )
            self.notification_service.notify_admins(
                NotificationType.REVERSAL_FAILED,
                "Transfer reversal failed",
                f"Could not recover £{reversal_amount} from the field owner for booking "
                f"{booking.id}. Manual recovery required.",
                {
                    "booking_id": booking.id,
                    "transfer_id": transfer_id,
                    "amount": reversal_amount,
                    "error": e.message,
                },
            )
            return reversal_amount, None, transfer_id
        return reversal_amount, stripe_value(reversal, "id"), transfer_id

    def _notify_owner_of_reversal(
        self,
        booking: Booking,
        reversal_amount: Decimal,
        reversal_id: str,
        reason: Optional[str],
    ) -> None:
        field = self.field_repository.get_by_id(booking.field_id)
        if field is None:
            return
        self.notification_service.notify(
            field.owner_id,
            NotificationType.PAYOUT_REVERSED,
            "Payout reversed due to refund",
            f"£{reversal_amount} has been deducted from your account because the "
            f"{field.name} booking on {booking.date.isoformat()} was refunded.",
            {
                "booking_id": booking.id,
                "reversal_amount": reversal_amount,
                "reversal_id": reversal_id,
                "refund_reason": reason,
            },
        )

    def _cancel_covering_payouts(self, booking: Booking) -> None:
        field = self.field_repository.get_by_id(booking.field_id)
        account = self.stripe_account_repository.get_by_user(field.owner_id) if field else None
        if account is None:
            return
        for payout in self.payout_repository.list_covering(account.id, booking.id):
            if payout.status != PayoutRecordStatus.CANCELED.value:
                self.payout_repository.update(payout, status=PayoutRecordStatus.CANCELED.value)
