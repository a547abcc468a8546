# backend/fieldsy/repositories/factory.py
"""
Repository Factory for the Fieldsy booking engine.

Centralizes repository creation so services never construct repositories
with ad-hoc arguments, and tests can patch a single seam.
"""

from sqlalchemy.orm import Session

from ..models.notification import Notification
from .base_repository import BaseRepository
from .booking_repository import BookingRepository
from .payout_repository import PayoutRepository, StripeAccountRepository
from .slot_lock_repository import SlotLockRepository
from .subscription_repository import SubscriptionRepository
from .system_settings_repository import SystemSettingsRepository
from .transaction_repository import TransactionRepository
from .user_repository import FieldRepository, UserRepository


class RepositoryFactory:
    @staticmethod
    def create_booking_repository(db: Session) -> BookingRepository:
        return BookingRepository(db)

    @staticmethod
    def create_field_repository(db: Session) -> FieldRepository:
        return FieldRepository(db)

    @staticmethod
    def create_user_repository(db: Session) -> UserRepository:
        return UserRepository(db)

    @staticmethod
    def create_subscription_repository(db: Session) -> SubscriptionRepository:
        return SubscriptionRepository(db)

    @staticmethod
    def create_slot_lock_repository(db: Session) -> SlotLockRepository:
        return SlotLockRepository(db)

    @staticmethod
    def create_transaction_repository(db: Session) -> TransactionRepository:
        return TransactionRepository(db)

    @staticmethod
    def create_payout_repository(db: Session) -> PayoutRepository:
        return PayoutRepository(db)

    @staticmethod
    def create_stripe_account_repository(db: Session) -> StripeAccountRepository:
        return StripeAccountRepository(db)

    @staticmethod
    def create_system_settings_repository(db: Session) -> SystemSettingsRepository:
        return SystemSettingsRepository(db)

    @staticmethod
    def create_notification_repository(db: Session) -> BaseRepository[Notification]:
        return BaseRepository(db, Notification)
