# backend/fieldsy/services/payout_service.py
"""
Payout Engine for the Fieldsy booking engine.

Moves a paid booking's field-owner share to the owner's connected account
once the release policy allows it. Every step is driven by the persisted
``payout_status`` so a sweep can be re-run at any time:

- COMPLETED / PROCESSING / HELD / REFUNDED / CANCELLED: skipped
- no payable connected account: PENDING_ACCOUNT, owner nudged
- funds unsettled or platform balance short: PENDING with a held reason,
  picked up again by the next sweep
- processor failure: FAILED, admins alerted
- refunded or cancelled while the transfer was in flight: transfer reversed

A redis mutex keeps two workers from racing on the same booking; the status
checks above are re-run once the mutex is held.
"""

from dataclasses import dataclass, field as dataclass_field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
import logging
import math
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from ..core.clock import Clock
from ..core.config import Settings, settings as default_settings
from ..core.enums import (
    BookingStatus,
    LifecycleStage,
    NotificationType,
    PayoutRecordStatus,
    PayoutStatus,
    TransactionType,
)
from ..core.exceptions import (
    ConflictException,
    DeferredRetryException,
    ExternalProcessorException,
    NotFoundException,
    TimeParseError,
)
from ..core.payout_lock import payout_lock_sync
from ..models.booking import Booking
from ..models.field import Field
from ..models.payout import Payout
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from .balance_gate import FUNDS_PENDING_PREFIX, BalanceGate
from .base import BaseService
from .booking_state import assert_transition
from .commission_service import CommissionService, to_minor_units, to_money
from .notification_service import NotificationService
from .payout_policy import PayoutReleasePolicy
from .settings_service import SettingsService
from .stripe_service import StripeService, stripe_value
from .time_slots import booking_start_instant

logger = logging.getLogger(__name__)

SKIP_PAYOUT_STATUSES = frozenset(
    {
        PayoutStatus.COMPLETED.value,
        PayoutStatus.PROCESSING.value,
        PayoutStatus.HELD.value,
        PayoutStatus.REFUNDED.value,
        PayoutStatus.CANCELLED.value,
    }
)

# Stripe payout statuses -> Payout.status
_PROCESSOR_PAYOUT_STATUS = {
    "paid": PayoutRecordStatus.PAID.value,
    "pending": PayoutRecordStatus.PENDING.value,
    "in_transit": PayoutRecordStatus.PROCESSING.value,
    "failed": PayoutRecordStatus.FAILED.value,
    "canceled": PayoutRecordStatus.CANCELED.value,
}


@dataclass(frozen=True)
class PayoutOutcome:
    booking_id: str
    # completed | processing | deferred | pending_account | skipped | reversed | failed
    outcome: str
    payout_status: Optional[str]
    payout_id: Optional[str] = None
    reason: Optional[str] = None
    amount: Optional[Decimal] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "booking_id": self.booking_id,
            "outcome": self.outcome,
            "payout_status": self.payout_status,
            "payout_id": self.payout_id,
            "reason": self.reason,
            "amount": str(self.amount) if self.amount is not None else None,
        }


@dataclass
class PayoutSweepResult:
    processed: int = 0
    deferred: int = 0
    skipped: int = 0
    failed: int = 0
    details: List[Dict[str, Any]] = dataclass_field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "deferred": self.deferred,
            "skipped": self.skipped,
            "failed": self.failed,
            "details": self.details,
        }


@dataclass(frozen=True)
class PayoutHistoryEntry:
    id: str
    amount: Decimal
    currency: str
    status: str
    created_at: Optional[datetime]
    arrival_date: Optional[datetime]
    description: Optional[str]
    bookings: List[Dict[str, Any]]


@dataclass(frozen=True)
class PayoutHistoryPage:
    items: List[PayoutHistoryEntry]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


@dataclass(frozen=True)
class FieldEarnings:
    field_id: str
    field_name: str
    total_earnings: Decimal
    paid_bookings: int


@dataclass(frozen=True)
class PayoutSummary:
    total_earnings: Decimal
    pending_payouts: Decimal
    completed_payouts: Decimal
    upcoming_payouts: Decimal
    bookings_in_cancellation_window: List[Dict[str, Any]]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_earnings": str(self.total_earnings),
            "pending_payouts": str(self.pending_payouts),
            "completed_payouts": str(self.completed_payouts),
            "upcoming_payouts": str(self.upcoming_payouts),
            "bookings_in_cancellation_window": self.bookings_in_cancellation_window,
        }


def allocate_payout_amount(
    payout_amount: Any,
    covered_booking_ids: Iterable[str],
    target_booking_ids: Iterable[str],
) -> Decimal:
    """
    Share of a multi-booking payout attributable to ``target_booking_ids``.

    Each covered booking weighs the same; targets the payout doesn't cover
    contribute nothing.
    """
    covered = list(dict.fromkeys(covered_booking_ids))
    if not covered:
        return to_money(0)
    covered_set = set(covered)
    matched = len({booking_id for booking_id in target_booking_ids if booking_id in covered_set})
    return to_money(to_money(payout_amount) * Decimal(matched) / Decimal(len(covered)))


class PayoutService(BaseService):
    def __init__(
        self,
        db: Session,
        *,
        stripe_service: StripeService,
        balance_gate: BalanceGate,
        commission_service: CommissionService,
        settings_service: SettingsService,
        notification_service: NotificationService,
        policy: Optional[PayoutReleasePolicy] = None,
        config: Optional[Settings] = None,
        clock: Optional[Clock] = None,
    ):
        super().__init__(db, clock)
        self.config = config or default_settings
        self.stripe_service = stripe_service
        self.balance_gate = balance_gate
        self.commission_service = commission_service
        self.settings_service = settings_service
        self.notification_service = notification_service
        self.policy = policy or PayoutReleasePolicy(self.config.booking_timezone)
        self.booking_repository = RepositoryFactory.create_booking_repository(db)
        self.field_repository = RepositoryFactory.create_field_repository(db)
        self.transaction_repository = RepositoryFactory.create_transaction_repository(db)
        self.payout_repository = RepositoryFactory.create_payout_repository(db)
        self.stripe_account_repository = RepositoryFactory.create_stripe_account_repository(db)

    # ------------------------------------------------------------------ #
    # Single booking
    # ------------------------------------------------------------------ #

    @BaseService.measure_operation("process_booking_payout")
    def process_booking_payout(
        self, booking_id: str, now: Optional[datetime] = None
    ) -> PayoutOutcome:
        """
        Attempt the payout for one booking.

        Processor failures are recorded on the booking and returned as a
        ``failed`` outcome rather than raised.

        Raises:
            NotFoundException: unknown booking
        """
        booking = self._get_booking(booking_id)
        if booking.payout_status in SKIP_PAYOUT_STATUSES:
            return self._outcome(booking, "skipped", f"Payout already {booking.payout_status}")

        with payout_lock_sync(booking.id) as acquired:
            if not acquired:
                return self._outcome(booking, "skipped", "Payout already in progress elsewhere")
            # Another worker may have finished between the first read and the lock
            self.db.refresh(booking)
            if booking.payout_status in SKIP_PAYOUT_STATUSES:
                return self._outcome(booking, "skipped", f"Payout already {booking.payout_status}")
            return self._process_locked(booking, self.now(now))

    def _process_locked(self, booking: Booking, now: datetime) -> PayoutOutcome:
        decision = self.policy.evaluate(booking, self.settings_service.get_platform_settings(), now)
        if not decision.eligible:
            return self._outcome(booking, "skipped", decision.reason)

        field = self.field_repository.get_by_id(booking.field_id)
        if field is None:
            raise NotFoundException(f"Field {booking.field_id} not found")
        amount = self._owner_amount(booking, field)

        account = self.stripe_account_repository.get_by_user(field.owner_id)
        if account is None or not account.is_payable:
            return self._await_account(booking, field, amount, has_account=account is not None)

        amount_minor = to_minor_units(amount)
        charge_id = booking.stripe_charge_id
        if not charge_id:
            payment = self.transaction_repository.get_payment(booking.id)
            charge_id = payment.stripe_charge_id if payment else None

        try:
            self.balance_gate.ensure_transfer_allowed(charge_id, amount_minor, now)
        except DeferredRetryException as e:
            return self._defer(booking, e)
        except ExternalProcessorException as e:
            return self._fail(booking, field, e)

        with self.transaction():
            if charge_id:
                self._append_stage(
                    booking, LifecycleStage.FUNDS_AVAILABLE, description="Charge funds settled"
                )
            assert_transition("payout_status", booking.payout_status, PayoutStatus.PROCESSING)
            self.booking_repository.update(
                booking, payout_status=PayoutStatus.PROCESSING.value, payout_held_reason=None
            )

        description = f"Automatic payout for booking {booking.id} - {field.name}"
        metadata = {
            "booking_id": booking.id,
            "field_id": field.id,
            "field_owner_id": field.owner_id,
            "type": "automatic_booking_payout",
        }
        try:
            transfer = self.balance_gate.safe_transfer(
                amount=amount_minor,
                destination=account.stripe_account_id,
                transfer_group=f"booking_{booking.id}",
                metadata=metadata,
                description=description,
                idempotency_key=f"payout_transfer_{booking.id}",
            )
        except DeferredRetryException as e:
            if not self._still_processing(booking):
                return self._unwind_transfer(booking, field, amount, None)
            return self._defer(booking, e)
        except ExternalProcessorException as e:
            if not self._still_processing(booking):
                return self._unwind_transfer(booking, field, amount, None)
            return self._fail(booking, field, e)
        transfer_id = stripe_value(transfer, "id")

        if not self._still_processing(booking):
            return self._unwind_transfer(booking, field, amount, transfer_id)

        stripe_payout = None
        try:
            stripe_payout = self.stripe_service.create_payout(
                amount=amount_minor,
                stripe_account=account.stripe_account_id,
                description=description,
                metadata={**metadata, "transfer_id": transfer_id},
            )
        except ExternalProcessorException as e:
            # The transfer already landed; the owner's schedule will pay it out
            self.logger.warning(
                f"Connected-account payout for booking {booking.id} failed: {e.message}"
            )

        record_status = _PROCESSOR_PAYOUT_STATUS.get(
            stripe_value(stripe_payout, "status"), PayoutRecordStatus.PROCESSING.value
        )
        completed = record_status == PayoutRecordStatus.PAID.value
        arrival = stripe_value(stripe_payout, "arrival_date")

        with self.transaction():
            payout = self.payout_repository.create(
                stripe_account_id=account.id,
                stripe_payout_id=stripe_value(stripe_payout, "id") or transfer_id,
                stripe_transfer_id=transfer_id,
                amount=amount,
                currency=self.config.stripe_currency,
                status=record_status,
                booking_ids=[booking.id],
                description=description,
                arrival_date=(
                    datetime.fromtimestamp(int(arrival), tz=timezone.utc) if arrival else now
                ),
                failure_code=stripe_value(stripe_payout, "failure_code"),
                failure_message=stripe_value(stripe_payout, "failure_message"),
            )
            target = PayoutStatus.COMPLETED if completed else PayoutStatus.PROCESSING
            assert_transition("payout_status", booking.payout_status, target)
            self.booking_repository.update(
                booking, payout_status=target.value, payout_released_at=now
            )
            self.transaction_repository.append(
                booking_id=booking.id,
                user_id=field.owner_id,
                type=TransactionType.PAYOUT,
                amount=amount,
                lifecycle_stage=(
                    LifecycleStage.PAYOUT_COMPLETED.value
                    if completed
                    else LifecycleStage.PAYOUT_INITIATED.value
                ),
                description=description,
                stripe_transfer_id=transfer_id,
                stripe_payout_id=stripe_value(stripe_payout, "id"),
            )
            self.notification_service.notify(
                field.owner_id,
                NotificationType.PAYOUT_PROCESSED,
                "Payment received",
                f"£{amount} has been transferred to your account for the {field.name} booking.",
                {
                    "booking_id": booking.id,
                    "payout_id": payout.id,
                    "amount": amount,
                    "field_name": field.name,
                },
            )

        outcome = "completed" if completed else "processing"
        self.logger.info(f"Payout {outcome} for booking {booking.id}: £{amount} via {transfer_id}")
        return self._outcome(booking, outcome, payout_id=payout.id, amount=amount)

    # ------------------------------------------------------------------ #
    # Sweeps
    # ------------------------------------------------------------------ #

    @BaseService.measure_operation("process_eligible_payouts")
    def process_eligible_payouts(self, now: Optional[datetime] = None) -> PayoutSweepResult:
        """Run every candidate booking, isolating failures per booking."""
        current = self.now(now)
        result = PayoutSweepResult()
        candidates = [b.id for b in self.booking_repository.get_payout_candidates()]
        self.logger.info(f"Payout sweep found {len(candidates)} candidate bookings")

        for booking_id in candidates:
            try:
                outcome = self.process_booking_payout(booking_id, now=current)
            except Exception as e:
                self.db.rollback()
                self.logger.error(f"Unexpected error processing payout for {booking_id}: {e}")
                result.failed += 1
                result.details.append(
                    {"booking_id": booking_id, "outcome": "failed", "reason": str(e)}
                )
                continue

            if outcome.outcome in ("completed", "processing"):
                result.processed += 1
            elif outcome.outcome == "deferred":
                result.deferred += 1
            elif outcome.outcome == "failed":
                result.failed += 1
            else:
                result.skipped += 1
            result.details.append(outcome.to_dict())

        if result.failed:
            self.notification_service.notify_admins(
                NotificationType.PAYOUT_SWEEP_FAILURES,
                "Payout sweep had failures",
                f"{result.failed} payouts failed in the latest sweep.",
                {"failed": result.failed, "processed": result.processed},
            )
            self.db.commit()

        self.logger.info(
            f"Payout sweep complete. Processed: {result.processed}, Deferred: {result.deferred}, "
            f"Skipped: {result.skipped}, Failed: {result.failed}"
        )
        return result

    @BaseService.measure_operation("process_pending_payouts_for_owner")
    def process_pending_payouts_for_owner(
        self, owner_id: str, now: Optional[datetime] = None
    ) -> List[PayoutOutcome]:
        """Re-open bookings parked for account setup once the owner is payable."""
        outcomes: List[PayoutOutcome] = []
        for booking in self.booking_repository.get_awaiting_payout_for_owner(owner_id):
            if booking.payout_status == PayoutStatus.PENDING_ACCOUNT.value:
                with self.transaction():
                    self.booking_repository.update(
                        booking, payout_status=PayoutStatus.PENDING.value
                    )
            outcomes.append(self.process_booking_payout(booking.id, now=now))
        self.logger.info(f"Processed {len(outcomes)} pending payouts for owner {owner_id}")
        return outcomes

    # ------------------------------------------------------------------ #
    # Admin off-ramps
    # ------------------------------------------------------------------ #

    def hold_payout(self, booking_id: str, reason: str) -> Booking:
        booking = self._get_booking(booking_id)
        assert_transition("payout_status", booking.payout_status, PayoutStatus.HELD)
        with self.transaction():
            self.booking_repository.update(
                booking, payout_status=PayoutStatus.HELD.value, payout_held_reason=reason
            )
        self.logger.info(f"Payout for booking {booking.id} held: {reason}")
        return booking

    def release_held_payout(self, booking_id: str) -> Booking:
        booking = self._get_booking(booking_id)
        if booking.payout_status != PayoutStatus.HELD.value:
            raise ConflictException(
                f"Payout is {booking.payout_status}, not held", code="PAYOUT_NOT_HELD"
            )
        with self.transaction():
            self.booking_repository.update(
                booking, payout_status=PayoutStatus.PENDING.value, payout_held_reason=None
            )
        return booking

    def retry_failed_payout(self, booking_id: str, now: Optional[datetime] = None) -> PayoutOutcome:
        booking = self._get_booking(booking_id)
        if booking.payout_status != PayoutStatus.FAILED.value:
            raise ConflictException(
                f"Payout is {booking.payout_status}, not failed", code="PAYOUT_NOT_FAILED"
            )
        with self.transaction():
            self.booking_repository.update(booking, payout_status=PayoutStatus.PENDING.value)
        return self.process_booking_payout(booking.id, now=now)

    # ------------------------------------------------------------------ #
    # Webhook reconciliation
    # ------------------------------------------------------------------ #

    @BaseService.measure_operation("handle_payout_paid")
    def handle_payout_paid(self, stripe_payout_id: str) -> Optional[Payout]:
        payout = self.payout_repository.get_by_stripe_payout_id(stripe_payout_id)
        if payout is None:
            self.logger.info(f"payout.paid for unknown payout {stripe_payout_id}")
            return None
        with self.transaction():
            self.payout_repository.update(payout, status=PayoutRecordStatus.PAID.value)
            for booking in self._covered_bookings(payout):
                if booking.payout_status != PayoutStatus.PROCESSING.value:
                    continue
                self.booking_repository.update(booking, payout_status=PayoutStatus.COMPLETED.value)
                self._append_stage(
                    booking,
                    LifecycleStage.PAYOUT_COMPLETED,
                    description=f"Payout {stripe_payout_id} paid",
                    type=TransactionType.PAYOUT,
                    stripe_payout_id=stripe_payout_id,
                )
        return payout

    @BaseService.measure_operation("handle_payout_failed")
    def handle_payout_failed(
        self,
        stripe_payout_id: str,
        failure_code: Optional[str] = None,
        failure_message: Optional[str] = None,
    ) -> Optional[Payout]:
        payout = self.payout_repository.get_by_stripe_payout_id(stripe_payout_id)
        if payout is None:
            self.logger.info(f"payout.failed for unknown payout {stripe_payout_id}")
            return None
        message = failure_message or failure_code or "Payout failed"
        with self.transaction():
            self.payout_repository.update(
                payout,
                status=PayoutRecordStatus.FAILED.value,
                failure_code=failure_code,
                failure_message=failure_message,
            )
            booking_ids = []
            for booking in self._covered_bookings(payout):
                if booking.payout_status != PayoutStatus.PROCESSING.value:
                    continue
                self.booking_repository.update(
                    booking, payout_status=PayoutStatus.FAILED.value, payout_held_reason=message
                )
                booking_ids.append(booking.id)
            self.notification_service.notify_admins(
                NotificationType.PAYOUT_FAILED,
                "Bank payout failed",
                f"Payout {stripe_payout_id} of £{payout.amount} failed: {message}",
                {"payout_id": payout.id, "booking_ids": booking_ids, "failure_code": failure_code},
            )
        return payout

    # ------------------------------------------------------------------ #
    # Reporting
    # ------------------------------------------------------------------ #

    def get_payout_history(
        self, owner_id: str, page: int = 1, limit: int = 10
    ) -> PayoutHistoryPage:
        page, limit = max(page, 1), max(min(limit, 100), 1)
        account = self.stripe_account_repository.get_by_user(owner_id)
        if account is None:
            return PayoutHistoryPage(items=[], total=0, page=page, limit=limit)

        rows, total = self.payout_repository.page_for_account(account.id, page, limit)
        covered_ids = {booking_id for row in rows for booking_id in (row.booking_ids or [])}
        bookings = {
            b.id: b for b in (self.booking_repository.get_by_id(i) for i in covered_ids) if b
        }

        items = []
        for row in rows:
            covered = row.booking_ids or []
            items.append(
                PayoutHistoryEntry(
                    id=row.id,
                    amount=to_money(row.amount),
                    currency=row.currency,
                    status=row.status,
                    created_at=row.created_at,
                    arrival_date=row.arrival_date,
                    description=row.description,
                    bookings=[
                        {
                            "booking_id": booking_id,
                            "booking_number": bookings[booking_id].booking_number,
                            "field_id": bookings[booking_id].field_id,
                            "date": bookings[booking_id].date.isoformat(),
                            "amount": allocate_payout_amount(row.amount, covered, [booking_id]),
                        }
                        for booking_id in covered
                        if booking_id in bookings
                    ],
                )
            )
        return PayoutHistoryPage(items=items, total=total, page=page, limit=limit)

    def get_field_earnings(self, owner_id: str) -> List[FieldEarnings]:
        """Paid-out earnings per field, attributing multi-booking payouts pro rata."""
        fields = self.field_repository.get_for_owner(owner_id)
        account = self.stripe_account_repository.get_by_user(owner_id)
        payouts = (
            [
                p
                for p in self.payout_repository.list_for_account(account.id)
                if p.status == PayoutRecordStatus.PAID.value
            ]
            if account
            else []
        )
        field_of = self.booking_repository.get_field_ids(
            booking_id for p in payouts for booking_id in (p.booking_ids or [])
        )

        earnings = []
        for field in fields:
            total = to_money(0)
            paid_bookings = set()
            for payout in payouts:
                targets = [b for b in (payout.booking_ids or []) if field_of.get(b) == field.id]
                if not targets:
                    continue
                share = allocate_payout_amount(payout.amount, payout.booking_ids, targets)
                total = to_money(total + share)
                paid_bookings.update(targets)
            earnings.append(
                FieldEarnings(
                    field_id=field.id,
                    field_name=field.name,
                    total_earnings=total,
                    paid_bookings=len(paid_bookings),
                )
            )
        return earnings

    def get_payout_summary(self, owner_id: str, now: Optional[datetime] = None) -> PayoutSummary:
        """
        An owner's paid bookings bucketed by payout progress.

        Completed payouts make up total earnings. PROCESSING payouts and
        confirmed bookings the release policy would pay right now are pending.
        Confirmed bookings still held back by the policy are upcoming and are
        listed with the instant their cancellation window closes.
        """
        current = self.now(now)
        platform_settings = self.settings_service.get_platform_settings()
        window = timedelta(hours=platform_settings.cancellation_window_hours)
        completed = pending = upcoming = to_money(0)
        in_window: List[Dict[str, Any]] = []

        for booking in self.booking_repository.get_paid_for_owner(owner_id):
            if booking.field_owner_amount is not None:
                amount = to_money(booking.field_owner_amount)
            else:
                amount = self.commission_service.split_amount(
                    booking.total_price, owner_id
                ).field_owner_amount

            if booking.payout_status == PayoutStatus.COMPLETED.value:
                completed = to_money(completed + amount)
            elif booking.payout_status == PayoutStatus.PROCESSING.value:
                pending = to_money(pending + amount)
            elif booking.status == BookingStatus.CONFIRMED.value:
                if self.policy.evaluate(booking, platform_settings, current).eligible:
                    pending = to_money(pending + amount)
                    continue
                upcoming = to_money(upcoming + amount)
                try:
                    starts_at = booking_start_instant(
                        booking.date, booking.start_time, self.config.booking_timezone
                    )
                    available_at = (starts_at - window).isoformat()
                except TimeParseError:
                    available_at = None
                in_window.append(
                    {
                        "booking_id": booking.id,
                        "amount": amount,
                        "booking_date": booking.date.isoformat(),
                        "booking_time": booking.start_time,
                        "payout_available_at": available_at,
                    }
                )

        return PayoutSummary(
            total_earnings=completed,
            pending_payouts=pending,
            completed_payouts=completed,
            upcoming_payouts=upcoming,
            bookings_in_cancellation_window=in_window,
        )

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #

    def _get_booking(self, booking_id: str) -> Booking:
        booking = self.booking_repository.get_by_id(booking_id)
        if booking is None:
            raise NotFoundException(f"Booking {booking_id} not found")
        return booking

    def _owner_amount(self, booking: Booking, field: Field) -> Decimal:
        if booking.field_owner_amount is not None:
            return to_money(booking.field_owner_amount)
        split = self.commission_service.split_amount(booking.total_price, field.owner_id)
        with self.transaction():
            self.booking_repository.update(
                booking,
                field_owner_amount=split.field_owner_amount,
                platform_commission=split.platform_fee,
            )
        return split.field_owner_amount

    def _await_account(
        self, booking: Booking, field: Field, amount: Decimal, *, has_account: bool
    ) -> PayoutOutcome:
        title = (
            "Complete payment account setup"
            if has_account
            else "Set up payment account for automatic payouts"
        )
        with self.transaction():
            assert_transition("payout_status", booking.payout_status, PayoutStatus.PENDING_ACCOUNT)
            self.booking_repository.update(
                booking, payout_status=PayoutStatus.PENDING_ACCOUNT.value
            )
            self.notification_service.notify(
                field.owner_id,
                NotificationType.PAYOUT_PENDING,
                title,
                f"You have a pending payout of £{amount} for {field.name}. "
                "Set up your payment account to receive it automatically.",
                {"booking_id": booking.id, "amount": amount, "field_name": field.name},
            )
        self.logger.info(f"Booking {booking.id} payout waiting for owner {field.owner_id} account")
        return self._outcome(
            booking, "pending_account", "Owner has no payable account", amount=amount
        )

    def _defer(self, booking: Booking, error: DeferredRetryException) -> PayoutOutcome:
        with self.transaction():
            assert_transition("payout_status", booking.payout_status, PayoutStatus.PENDING)
            self.booking_repository.update(
                booking,
                payout_status=PayoutStatus.PENDING.value,
                payout_held_reason=error.retry_reason,
            )
            if error.retry_reason.startswith(FUNDS_PENDING_PREFIX):
                self._append_stage(
                    booking, LifecycleStage.FUNDS_PENDING, description=error.retry_reason
                )
        self.logger.info(f"Payout for booking {booking.id} deferred: {error.retry_reason}")
        return self._outcome(booking, "deferred", error.retry_reason)

    def _still_processing(self, booking: Booking) -> bool:
        # A refund or cancellation may have committed while the transfer was in flight
        self.db.refresh(booking)
        return booking.payout_status == PayoutStatus.PROCESSING.value

    def _unwind_transfer(
        self, booking: Booking, field: Field, amount: Decimal, transfer_id: Optional[str]
    ) -> PayoutOutcome:
        """Claw back a transfer made for a booking that was refunded or cancelled meanwhile."""
        reason = f"Booking payout became {booking.payout_status} during the transfer"
        if transfer_id is None:
            self.logger.warning(f"Payout for booking {booking.id} abandoned: {reason}")
            return self._outcome(booking, "skipped", reason)

        reversal_id = None
        try:
            reversal = self.stripe_service.create_transfer_reversal(
                transfer_id,
                amount=to_minor_units(amount),
                metadata={"booking_id": booking.id, "reason": "payout_superseded"},
                idempotency_key=f"payout_unwind_{booking.id}",
            )
            reversal_id = stripe_value(reversal, "id")
        except ExternalProcessorException as e:
            self.logger.error(
                f"Could not reverse transfer {transfer_id} for booking {booking.id}: {e.message}"
            )

        with self.transaction():
            self.transaction_repository.append(
                booking_id=booking.id,
                user_id=field.owner_id,
                type=TransactionType.PAYOUT,
                amount=amount,
                lifecycle_stage=LifecycleStage.PAYOUT_INITIATED.value,
                description=f"Transfer for booking {booking.id} superseded: {reason}",
                stripe_transfer_id=transfer_id,
            )
            if reversal_id:
                self.transaction_repository.append(
                    booking_id=booking.id,
                    user_id=field.owner_id,
                    type=TransactionType.REVERSAL,
                    amount=-amount,
                    lifecycle_stage=LifecycleStage.REVERSED.value,
                    description="Transfer reversed: booking closed during payout",
                    stripe_transfer_id=transfer_id,
                )
            else:
                self.notification_service.notify_admins(
                    NotificationType.REVERSAL_FAILED,
                    "Transfer reversal failed",
                    f"£{amount} went to the field owner for booking {booking.id} after it was "
                    f"{booking.payout_status.lower()}. Manual recovery required.",
                    {"booking_id": booking.id, "transfer_id": transfer_id, "amount": amount},
                )

        if reversal_id:
            self.logger.warning(
                f"Reversed transfer {transfer_id} for booking {booking.id} ({reason})"
            )
            return self._outcome(booking, "reversed", reason, amount=amount)
        return self._outcome(booking, "failed", reason, amount=amount)

    def _fail(
        self, booking: Booking, field: Field, error: ExternalProcessorException
    ) -> PayoutOutcome:
        with self.transaction():
            assert_transition("payout_status", booking.payout_status, PayoutStatus.FAILED)
            self.booking_repository.update(
                booking, payout_status=PayoutStatus.FAILED.value, payout_held_reason=error.message
            )
            self.notification_service.notify_admins(
                NotificationType.PAYOUT_FAILED,
                "Automatic payout failed",
                f"Failed to process automatic payout for booking {booking.id}. "
                f"Error: {error.message}",
                {
                    "booking_id": booking.id,
                    "field_owner_id": field.owner_id,
                    "error": error.message,
                    "processor_code": error.processor_code,
                },
            )
        self.logger.error(f"Payout for booking {booking.id} failed: {error.message}")
        return self._outcome(booking, "failed", error.message)

    def _append_stage(
        self,
        booking: Booking,
        stage: LifecycleStage,
        *,
        description: str,
        type: TransactionType = TransactionType.PAYMENT,
        **processor_ids: Any,
    ) -> bool:
        """Append a zero-amount stage marker unless the booking is already at ``stage``."""
        if self.transaction_repository.latest_stage(booking.id) == stage.value:
            return False
        self.transaction_repository.append(
            booking_id=booking.id,
            user_id=booking.user_id,
            type=type,
            amount=to_money(0),
            lifecycle_stage=stage.value,
            description=description,
            **processor_ids,
        )
        return True

    def _covered_bookings(self, payout: Payout) -> List[Booking]:
        return [
            b
            for b in (self.booking_repository.get_by_id(i) for i in (payout.booking_ids or []))
            if b is not None
        ]

    def _outcome(
        self,
        booking: Booking,
        outcome: str,
        reason: Optional[str] = None,
        *,
        payout_id: Optional[str] = None,
        amount: Optional[Decimal] = None,
    ) -> PayoutOutcome:
        prometheus_metrics.record_payout_outcome(outcome)
        return PayoutOutcome(
            booking_id=booking.id,
            outcome=outcome,
            payout_status=booking.payout_status,
            payout_id=payout_id,
            reason=reason,
            amount=amount,
        )
