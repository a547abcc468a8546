# backend/fieldsy/models/subscription.py
"""
Recurring booking contract.

A subscription seeds bookings on a cadence (everyday / weekly / monthly);
each generated booking points back here through ``Booking.subscription_id``.
The subscription never owns the lifecycle of those bookings.
"""

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from ..core.enums import SubscriptionStatus
from ..core.ulid_helper import generate_ulid
from ..database import Base


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(String(26), primary_key=True, default=generate_ulid)
    user_id = Column(String(26), ForeignKey("users.id"), nullable=False, index=True)
    field_id = Column(String(26), ForeignKey("fields.id"), nullable=False, index=True)

    stripe_subscription_id = Column(String(255), nullable=True, unique=True)
    stripe_customer_id = Column(String(255), nullable=True)
    stripe_price_id = Column(String(255), nullable=True)

    interval = Column(String(20), nullable=False)
    interval_count = Column(Integer, nullable=False, default=1)
    day_of_week = Column(String(10), nullable=True)
    day_of_month = Column(Integer, nullable=True)

    time_slot = Column(String(32), nullable=True)
    start_time = Column(String(10), nullable=False)
    end_time = Column(String(10), nullable=False)
    number_of_dogs = Column(Integer, nullable=False, default=1)
    total_price = Column(Numeric(10, 2), nullable=False)

    status = Column(String(20), nullable=False, default=SubscriptionStatus.ACTIVE.value)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    canceled_at = Column(DateTime(timezone=True), nullable=True)
    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)

    payment_retry_count = Column(Integer, nullable=False, default=0)
    next_retry_date = Column(DateTime(timezone=True), nullable=True)
    last_payment_failed_at = Column(DateTime(timezone=True), nullable=True)
    failure_reason = Column(Text, nullable=True)

    last_booking_date = Column(Date, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=True, onupdate=func.now())

    user = relationship("User")
    field = relationship("Field")
    bookings = relationship("Booking", back_populates="subscription")

    __table_args__ = (
        CheckConstraint(
            "interval IN ('everyday', 'weekly', 'monthly')",
            name="ck_subscriptions_interval",
        ),
        CheckConstraint(
            "status IN ('active', 'past_due', 'canceled')",
            name="ck_subscriptions_status",
        ),
        CheckConstraint(
            "payment_retry_count >= 0 AND payment_retry_count <= 3",
            name="ck_subscriptions_retry_bounds",
        ),
        CheckConstraint(
            "day_of_month IS NULL OR (day_of_month >= 1 AND day_of_month <= 31)",
            name="ck_subscriptions_day_of_month",
        ),
    )

    @property
    def is_reserving(self) -> bool:
        """Active and not winding down: its cadence still holds slots."""
        return self.status == SubscriptionStatus.ACTIVE and not self.cancel_at_period_end

    def __repr__(self) -> str:
        return (
            f"<Subscription {self.id} {self.interval} field={self.field_id} "
            f"{self.start_time}-{self.end_time} status={self.status}>"
        )
