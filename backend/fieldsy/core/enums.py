# backend/fieldsy/core/enums.py
"""
Core enums for the Fieldsy booking engine.

Stored values match the strings persisted by earlier versions of the
platform (upper-case booking axes, lower-case subscription and payout
record statuses), so they are safe to compare against raw column values.
"""

from enum import Enum


class UserRole(str, Enum):
    DOG_OWNER = "DOG_OWNER"
    FIELD_OWNER = "FIELD_OWNER"
    ADMIN = "ADMIN"


class BookingStatus(str, Enum):
    """Booking lifecycle statuses."""

    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    REFUNDED = "REFUNDED"
    CANCELLED = "CANCELLED"


class PayoutStatus(str, Enum):
    """
    Field-owner payout axis of a booking.

    ``None`` on the column means no payout work has started yet.
    """

    PENDING = "PENDING"
    PENDING_ACCOUNT = "PENDING_ACCOUNT"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    HELD = "HELD"
    REFUNDED = "REFUNDED"
    CANCELLED = "CANCELLED"


class RecurringInterval(str, Enum):
    EVERYDAY = "everyday"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class TransactionType(str, Enum):
    PAYMENT = "PAYMENT"
    REFUND = "REFUND"
    PAYOUT = "PAYOUT"
    REVERSAL = "REVERSAL"


class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class LifecycleStage(str, Enum):
    """Money-movement stages appended to a booking's transaction history."""

    FUNDS_PENDING = "FUNDS_PENDING"
    FUNDS_AVAILABLE = "FUNDS_AVAILABLE"
    PAYOUT_INITIATED = "PAYOUT_INITIATED"
    PAYOUT_COMPLETED = "PAYOUT_COMPLETED"
    REFUNDED = "REFUNDED"
    REVERSED = "REVERSED"


class PayoutRecordStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"
    CANCELED = "canceled"


class PayoutReleaseSchedule(str, Enum):
    AFTER_CANCELLATION_WINDOW = "after_cancellation_window"
    ON_WEEKEND = "on_weekend"


class BookingDuration(str, Enum):
    THIRTY_MINUTES = "30min"
    ONE_HOUR = "1hour"


class NotificationType(str, Enum):
    BOOKING_RECEIVED = "new_booking_received"
    BOOKING_CANCELLED = "booking_cancelled"
    PAYOUT_PENDING = "PAYOUT_PENDING"
    PAYOUT_PROCESSED = "PAYOUT_PROCESSED"
    PAYOUT_FAILED = "PAYOUT_FAILED"
    PAYOUT_REVERSED = "PAYOUT_REVERSED"
    PAYOUT_SWEEP_FAILURES = "PAYOUT_SWEEP_FAILURES"
    REFUND_PROCESSED = "refund_processed"
    REFUND_FAILED = "REFUND_FAILED"
    REVERSAL_FAILED = "TRANSFER_REVERSAL_FAILED"
    RECURRING_BOOKING_CREATED = "recurring_booking_created"
    RECURRING_BOOKING_CHARGED = "recurring_booking_charged"
    RECURRING_BOOKING_PENDING = "recurring_booking_pending"
    RECURRING_BOOKING_SKIPPED = "recurring_booking_skipped"
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    SUBSCRIPTION_PAYMENT_FAILED = "payment_failed"
