# backend/fieldsy/models/field.py
"""
Field model.

A field is a bookable venue owned by a FIELD_OWNER user. Operating hours
are stored as time-of-day strings in the same formats bookings use.
"""

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from ..core.enums import BookingDuration
from ..core.ulid_helper import generate_ulid
from ..database import Base


class Field(Base):
    __tablename__ = "fields"

    id = Column(String(26), primary_key=True, default=generate_ulid)
    owner_id = Column(String(26), ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)

    # e.g. ["Monday", "Tuesday", ...]; empty/NULL means open every day
    operating_days = Column(JSON, nullable=True)
    opening_time = Column(String(10), nullable=True)
    closing_time = Column(String(10), nullable=True)

    # Pricing per dog; ``price`` is the legacy single price
    price = Column(Numeric(10, 2), nullable=True)
    price_30min = Column(Numeric(10, 2), nullable=True)
    price_1hr = Column(Numeric(10, 2), nullable=True)
    booking_duration = Column(
        String(10), nullable=False, default=BookingDuration.ONE_HOUR.value
    )
    max_dogs = Column(Integer, nullable=False, default=10)

    is_active = Column(Boolean, nullable=False, default=True)
    is_approved = Column(Boolean, nullable=False, default=False)
    is_blocked = Column(Boolean, nullable=False, default=False)
    is_claimed = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=True, onupdate=func.now())

    owner = relationship("User", back_populates="fields")

    __table_args__ = (
        CheckConstraint("max_dogs > 0", name="ck_fields_max_dogs_positive"),
        CheckConstraint(
            "booking_duration IN ('30min', '1hour')",
            name="ck_fields_booking_duration",
        ),
    )

    @property
    def is_bookable(self) -> bool:
        return bool(self.is_active and self.is_approved and not self.is_blocked)

    def opens_on(self, weekday_name: str) -> bool:
        days = self.operating_days or []
        return not days or weekday_name in days

    def __repr__(self) -> str:
        return f"<Field {self.id} {self.name!r} owner={self.owner_id}>"
