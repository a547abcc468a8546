"""Append-only money ledger tied to bookings."""

from datetime import datetime, timezone

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Numeric, String, Text

from ..core.enums import TransactionStatus
from ..core.ulid_helper import generate_ulid
from ..database import Base


class Transaction(Base):
    """
    One monetary event for a booking.

    Rows are never updated once written; a new lifecycle stage is a new row.
    Amounts are signed from the platform's point of view of the booking:
    payments positive, refunds and reversals negative.
    """

    __tablename__ = "transactions"

    id = Column(String(26), primary_key=True, default=generate_ulid)
    booking_id = Column(String(26), ForeignKey("bookings.id"), nullable=False, index=True)
    user_id = Column(String(26), ForeignKey("users.id"), nullable=False)

    type = Column(String(20), nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    status = Column(String(20), nullable=False, default=TransactionStatus.COMPLETED.value)
    lifecycle_stage = Column(String(32), nullable=True)
    description = Column(Text, nullable=True)

    stripe_payment_intent_id = Column(String(255), nullable=True)
    stripe_charge_id = Column(String(255), nullable=True)
    stripe_refund_id = Column(String(255), nullable=True)
    stripe_transfer_id = Column(String(255), nullable=True)
    stripe_payout_id = Column(String(255), nullable=True)

    # Client-side microsecond timestamp so stage order survives same-second inserts
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        index=True,
    )

    __table_args__ = (
        CheckConstraint(
            "type IN ('PAYMENT', 'REFUND', 'PAYOUT', 'REVERSAL')",
            name="ck_transactions_type",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<Transaction {self.id} booking={self.booking_id} {self.type} "
            f"{self.amount} stage={self.lifecycle_stage}>"
        )
