"""Data access for recurring subscriptions."""

from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from ..core.enums import SubscriptionStatus
from ..models.subscription import Subscription
from .base_repository import BaseRepository


class SubscriptionRepository(BaseRepository[Subscription]):
    def __init__(self, db: Session):
        super().__init__(db, Subscription)

    def get_by_stripe_id(self, stripe_subscription_id: str) -> Optional[Subscription]:
        return self.find_one_by(stripe_subscription_id=stripe_subscription_id)

    def get_reserving_for_field(
        self, field_id: str, exclude_subscription_id: Optional[str] = None
    ) -> List[Subscription]:
        """Active subscriptions that are not winding down at period end."""
        query = self.db.query(Subscription).filter(
            Subscription.field_id == field_id,
            Subscription.status == SubscriptionStatus.ACTIVE.value,
            Subscription.cancel_at_period_end.is_(False),
        )
        if exclude_subscription_id:
            query = query.filter(Subscription.id != exclude_subscription_id)
        return query.all()

    def get_all_reserving(self) -> List[Subscription]:
        return (
            self.db.query(Subscription)
            .filter(
                Subscription.status == SubscriptionStatus.ACTIVE.value,
                Subscription.cancel_at_period_end.is_(False),
            )
            .all()
        )

    def get_due_for_retry(self, now: datetime, max_retries: int) -> List[Subscription]:
        return (
            self.db.query(Subscription)
            .filter(
                Subscription.status == SubscriptionStatus.PAST_DUE.value,
                Subscription.next_retry_date.isnot(None),
                Subscription.next_retry_date <= now,
                Subscription.payment_retry_count < max_retries,
            )
            .all()
        )

    def get_for_user(self, user_id: str) -> List[Subscription]:
        return (
            self.db.query(Subscription)
            .filter(Subscription.user_id == user_id)
            .order_by(Subscription.created_at.desc())
            .all()
        )
