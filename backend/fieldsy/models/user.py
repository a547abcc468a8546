# backend/fieldsy/models/user.py
"""User model: dog owners, field owners and admins share one table."""

from sqlalchemy import CheckConstraint, Column, DateTime, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from ..core.enums import UserRole
from ..core.ulid_helper import generate_ulid
from ..database import Base


class User(Base):
    __tablename__ = "users"

    id = Column(String(26), primary_key=True, default=generate_ulid)
    email = Column(String(255), nullable=False, unique=True, index=True)
    name = Column(String(255), nullable=True)
    role = Column(String(20), nullable=False, default=UserRole.DOG_OWNER.value)

    # Per-owner commission override (whole percent); NULL means use the platform default
    commission_rate = Column(Integer, nullable=True)

    stripe_customer_id = Column(String(255), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=True, onupdate=func.now())

    fields = relationship("Field", back_populates="owner")
    stripe_account = relationship("StripeAccount", back_populates="user", uselist=False)

    __table_args__ = (
        CheckConstraint(
            "role IN ('DOG_OWNER', 'FIELD_OWNER', 'ADMIN')",
            name="ck_users_role",
        ),
        CheckConstraint(
            "commission_rate IS NULL OR (commission_rate >= 1 AND commission_rate <= 50)",
            name="ck_users_commission_rate",
        ),
    )

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    @property
    def display_name(self) -> str:
        return self.name or self.email

    def __repr__(self) -> str:
        return f"<User {self.id} {self.email} role={self.role}>"
