"""Data access for payout records and connected accounts."""

from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from ..models.payout import Payout
from ..models.stripe_account import StripeAccount
from .base_repository import BaseRepository


class PayoutRepository(BaseRepository[Payout]):
    def __init__(self, db: Session):
        super().__init__(db, Payout)

    def get_by_stripe_payout_id(self, stripe_payout_id: str) -> Optional[Payout]:
        return self.find_one_by(stripe_payout_id=stripe_payout_id)

    def list_for_account(self, stripe_account_id: str) -> List[Payout]:
        return (
            self.db.query(Payout)
            .filter(Payout.stripe_account_id == stripe_account_id)
            .order_by(Payout.created_at.desc())
            .all()
        )

    def page_for_account(
        self, stripe_account_id: str, page: int, limit: int
    ) -> Tuple[List[Payout], int]:
        query = self.db.query(Payout).filter(Payout.stripe_account_id == stripe_account_id)
        total = query.count()
        rows = (
            query.order_by(Payout.created_at.desc())
            .offset(max(page - 1, 0) * limit)
            .limit(limit)
            .all()
        )
        return rows, total

    def list_covering(self, stripe_account_id: str, booking_id: str) -> List[Payout]:
        """
        Payout rows whose ``booking_ids`` include ``booking_id``.

        JSON containment differs by dialect, so membership is checked in
        Python over the owner's payouts.
        """
        return [p for p in self.list_for_account(stripe_account_id) if p.covers(booking_id)]


class StripeAccountRepository(BaseRepository[StripeAccount]):
    def __init__(self, db: Session):
        super().__init__(db, StripeAccount)

    def get_by_user(self, user_id: str) -> Optional[StripeAccount]:
        return self.find_one_by(user_id=user_id)

    def get_by_stripe_id(self, stripe_account_id: str) -> Optional[StripeAccount]:
        return self.find_one_by(stripe_account_id=stripe_account_id)
