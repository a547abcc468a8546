"""Stripe Connect account of a field owner (payout destination)."""

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from ..core.ulid_helper import generate_ulid
from ..database import Base


class StripeAccount(Base):
    __tablename__ = "stripe_accounts"

    id = Column(String(26), primary_key=True, default=generate_ulid)
    user_id = Column(String(26), ForeignKey("users.id"), nullable=False, unique=True)
    stripe_account_id = Column(String(255), nullable=False, unique=True)
    charges_enabled = Column(Boolean, nullable=False, default=False)
    payouts_enabled = Column(Boolean, nullable=False, default=False)
    details_submitted = Column(Boolean, nullable=False, default=False)
    requirements_due = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=True, onupdate=func.now())

    user = relationship("User", back_populates="stripe_account")

    @property
    def is_payable(self) -> bool:
        """Transfers and bank payouts both require the account to be fully enabled."""
        return bool(self.charges_enabled and self.payouts_enabled)

    def __repr__(self) -> str:
        return (
            f"<StripeAccount {self.stripe_account_id} user={self.user_id} "
            f"charges={self.charges_enabled} payouts={self.payouts_enabled}>"
        )
