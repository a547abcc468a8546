# backend/fieldsy/models/booking.py
"""
Booking model for the Fieldsy platform.

A booking reserves one field for one dog owner on a calendar date between a
start and end time-of-day. It carries three orthogonal status axes:

- ``status``: PENDING -> CONFIRMED -> COMPLETED, or CANCELLED
- ``payment_status``: PENDING -> PAID -> REFUNDED
- ``payout_status``: NULL -> PENDING -> PROCESSING -> COMPLETED, with
  PENDING_ACCOUNT / HELD / FAILED off-ramps and REFUNDED / CANCELLED terminals

Transitions are owned by ``fieldsy.services.booking_service``; the payout
and refund services mutate the payout axis.
"""

from datetime import datetime, timezone
import logging
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from ..core.enums import BookingStatus, PaymentStatus
from ..core.ulid_helper import generate_ulid
from ..database import Base

logger = logging.getLogger(__name__)

_ACTIVE_SLOT_PREDICATE = text("status != 'CANCELLED'")


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(String(26), primary_key=True, default=generate_ulid)
    booking_number = Column(Integer, nullable=True, unique=True)

    field_id = Column(String(26), ForeignKey("fields.id"), nullable=False, index=True)
    user_id = Column(String(26), ForeignKey("users.id"), nullable=False, index=True)
    subscription_id = Column(
        String(26), ForeignKey("subscriptions.id"), nullable=True, index=True
    )

    date = Column(Date, nullable=False, index=True)
    start_time = Column(String(10), nullable=False)
    end_time = Column(String(10), nullable=False)
    time_slot = Column(String(32), nullable=True)
    number_of_dogs = Column(Integer, nullable=False, default=1)
    total_price = Column(Numeric(10, 2), nullable=False)

    status = Column(String(20), nullable=False, default=BookingStatus.PENDING.value)
    payment_status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value)
    payout_status = Column(String(20), nullable=True)
    payout_held_reason = Column(Text, nullable=True)
    payout_released_at = Column(DateTime(timezone=True), nullable=True)

    platform_commission = Column(Numeric(10, 2), nullable=True)
    field_owner_amount = Column(Numeric(10, 2), nullable=True)

    payment_intent_id = Column(String(255), nullable=True, index=True)
    stripe_charge_id = Column(String(255), nullable=True)

    cancellation_reason = Column(Text, nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_by_id = Column(String(26), ForeignKey("users.id"), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=True, onupdate=func.now())

    field = relationship("Field")
    user = relationship("User", foreign_keys=[user_id])
    subscription = relationship("Subscription", back_populates="bookings")

    __table_args__ = (
        # One live booking per (field, date, start time); cancelled rows free the slot
        Index(
            "uq_bookings_active_slot",
            "field_id",
            "date",
            "start_time",
            unique=True,
            postgresql_where=_ACTIVE_SLOT_PREDICATE,
            sqlite_where=_ACTIVE_SLOT_PREDICATE,
        ),
        Index("ix_bookings_payout_sweep", "payment_status", "status", "payout_status"),
        CheckConstraint(
            "status IN ('PENDING', 'CONFIRMED', 'COMPLETED', 'CANCELLED')",
            name="ck_bookings_status",
        ),
        CheckConstraint(
            "payment_status IN ('PENDING', 'PAID', 'REFUNDED', 'CANCELLED')",
            name="ck_bookings_payment_status",
        ),
        CheckConstraint(
            "payout_status IS NULL OR payout_status IN ('PENDING', 'PENDING_ACCOUNT', "
            "'PROCESSING', 'COMPLETED', 'FAILED', 'HELD', 'REFUNDED', 'CANCELLED')",
            name="ck_bookings_payout_status",
        ),
        CheckConstraint("number_of_dogs > 0", name="ck_bookings_dogs_positive"),
        CheckConstraint("total_price >= 0", name="ck_bookings_price_non_negative"),
    )

    @property
    def is_cancelled(self) -> bool:
        return self.status == BookingStatus.CANCELLED

    def cancel(
        self,
        cancelled_by_user_id: Optional[str],
        reason: Optional[str] = None,
        when: Optional[datetime] = None,
    ) -> None:
        """Cancel this booking. Transition validation happens in the service."""
        self.status = BookingStatus.CANCELLED.value
        self.cancelled_at = when or datetime.now(timezone.utc)
        self.cancelled_by_id = cancelled_by_user_id
        self.cancellation_reason = reason
        logger.info(f"Booking {self.id} cancelled by user {cancelled_by_user_id}")

    def __repr__(self) -> str:
        return (
            f"<Booking {self.id} #{self.booking_number}: field={self.field_id}, "
            f"date={self.date}, time={self.start_time}-{self.end_time}, status={self.status}, "
            f"payment={self.payment_status}, payout={self.payout_status}>"
        )
