"""Append-only access to the booking transaction ledger."""

from decimal import Decimal
from typing import Any, List, Optional

from sqlalchemy.orm import Session

from ..core.enums import TransactionStatus, TransactionType
from ..models.transaction import Transaction
from .base_repository import BaseRepository


class TransactionRepository(BaseRepository[Transaction]):
    """
    Only inserts and reads. There is deliberately no update helper: a new
    money event is always a new row.
    """

    def __init__(self, db: Session):
        super().__init__(db, Transaction)

    def append(
        self,
        *,
        booking_id: str,
        user_id: str,
        type: TransactionType,
        amount: Decimal,
        lifecycle_stage: Optional[str] = None,
        status: TransactionStatus = TransactionStatus.COMPLETED,
        **processor_ids: Any,
    ) -> Transaction:
        return self.create(
            booking_id=booking_id,
            user_id=user_id,
            type=TransactionType(type).value,
            amount=amount,
            lifecycle_stage=lifecycle_stage,
            status=TransactionStatus(status).value,
            **processor_ids,
        )

    def list_for_booking(self, booking_id: str) -> List[Transaction]:
        return (
            self.db.query(Transaction)
            .filter(Transaction.booking_id == booking_id)
            .order_by(Transaction.created_at, Transaction.id)
            .all()
        )

    def latest_stage(self, booking_id: str) -> Optional[str]:
        row = (
            self.db.query(Transaction.lifecycle_stage)
            .filter(
                Transaction.booking_id == booking_id,
                Transaction.lifecycle_stage.isnot(None),
            )
            .order_by(Transaction.created_at.desc(), Transaction.id.desc())
            .first()
        )
        return row[0] if row else None

    def get_payment(self, booking_id: str) -> Optional[Transaction]:
        return (
            self.db.query(Transaction)
            .filter(
                Transaction.booking_id == booking_id,
                Transaction.type == TransactionType.PAYMENT.value,
            )
            .order_by(Transaction.created_at, Transaction.id)
            .first()
        )

    def get_transfer_id(self, booking_id: str) -> Optional[str]:
        row = (
            self.db.query(Transaction.stripe_transfer_id)
            .filter(
                Transaction.booking_id == booking_id,
                Transaction.type == TransactionType.PAYOUT.value,
                Transaction.stripe_transfer_id.isnot(None),
            )
            .order_by(Transaction.created_at.desc(), Transaction.id.desc())
            .first()
        )
        return row[0] if row else None
