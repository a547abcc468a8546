"""Transfer-out-to-bank record; one payout may cover several bookings."""

from sqlalchemy import JSON, CheckConstraint, Column, DateTime, Numeric, String, Text
from sqlalchemy.sql import func

from ..core.enums import PayoutRecordStatus
from ..core.ulid_helper import generate_ulid
from ..database import Base


class Payout(Base):
    __tablename__ = "payouts"

    id = Column(String(26), primary_key=True, default=generate_ulid)
    stripe_account_id = Column(String(255), nullable=False, index=True)
    stripe_payout_id = Column(String(255), nullable=True, unique=True)
    stripe_transfer_id = Column(String(255), nullable=True)

    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="gbp")
    status = Column(String(20), nullable=False, default=PayoutRecordStatus.PENDING.value)
    booking_ids = Column(JSON, nullable=False, default=list)
    description = Column(Text, nullable=True)

    arrival_date = Column(DateTime(timezone=True), nullable=True)
    failure_code = Column(String(64), nullable=True)
    failure_message = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=True, onupdate=func.now())

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'paid', 'failed', 'canceled')",
            name="ck_payouts_status",
        ),
    )

    def covers(self, booking_id: str) -> bool:
        return booking_id in (self.booking_ids or [])

    def __repr__(self) -> str:
        return f"<Payout {self.id} {self.amount} {self.status} bookings={self.booking_ids}>"
