# backend/fieldsy/services/dependencies.py
"""
Service wiring for the Fieldsy booking engine.

``ServiceContainer`` builds every service for one database session and
shares collaborators between them (one StripeService, one SettingsService,
one clock). Celery tasks and tests build their own container; the FastAPI
providers below build one per request.
"""

from functools import lru_cache
import logging
from typing import Optional

from fastapi import Depends
from sqlalchemy.orm import Session

from ..core.clock import Clock, SystemClock
from ..core.config import Settings, settings as default_settings
from ..core.ttl_cache import TTLCache
from ..database import get_db
from .availability_service import AvailabilityService
from .balance_gate import BalanceGate
from .booking_service import BookingService
from .commission_service import CommissionService
from .notification_service import Dispatcher, NotificationService
from .payout_policy import PayoutReleasePolicy
from .payout_service import PayoutService
from .refund_service import RefundService
from .settings_service import SettingsService
from .slot_lock_service import SlotLockService
from .stripe_service import StripeService
from .subscription_service import SubscriptionService
from .webhook_service import WebhookService

logger = logging.getLogger(__name__)


class ServiceContainer:
    def __init__(
        self,
        db: Session,
        *,
        stripe_service: Optional[StripeService] = None,
        clock: Optional[Clock] = None,
        dispatcher: Optional[Dispatcher] = None,
        config: Optional[Settings] = None,
        settings_cache: Optional[TTLCache] = None,
    ):
        self.db = db
        self.config = config or default_settings
        self.clock = clock or SystemClock()

        self.settings_service = SettingsService(
            db,
            cache=settings_cache or TTLCache(self.clock),
            config=self.config,
            clock=self.clock,
        )
        self.notification_service = NotificationService(db, dispatcher=dispatcher, clock=self.clock)
        self.commission_service = CommissionService(
            db, settings_service=self.settings_service, clock=self.clock
        )
        self.stripe_service = stripe_service or StripeService(
            db, config=self.config, clock=self.clock
        )
        self.balance_gate = BalanceGate(self.stripe_service, currency=self.config.stripe_currency)

        self.slot_lock_service = SlotLockService(db, config=self.config, clock=self.clock)
        self.availability_service = AvailabilityService(
            db, slot_lock_service=self.slot_lock_service, config=self.config, clock=self.clock
        )
        self.refund_service = RefundService(
            db,
            stripe_service=self.stripe_service,
            notification_service=self.notification_service,
            settings_service=self.settings_service,
            commission_service=self.commission_service,
            config=self.config,
            clock=self.clock,
        )
        self.booking_service = BookingService(
            db,
            availability_service=self.availability_service,
            slot_lock_service=self.slot_lock_service,
            commission_service=self.commission_service,
            notification_service=self.notification_service,
            refund_service=self.refund_service,
            config=self.config,
            clock=self.clock,
        )
        self.payout_service = PayoutService(
            db,
            stripe_service=self.stripe_service,
            balance_gate=self.balance_gate,
            commission_service=self.commission_service,
            settings_service=self.settings_service,
            notification_service=self.notification_service,
            policy=PayoutReleasePolicy(self.config.booking_timezone),
            config=self.config,
            clock=self.clock,
        )
        self.subscription_service = SubscriptionService(
            db,
            stripe_service=self.stripe_service,
            booking_service=self.booking_service,
            availability_service=self.availability_service,
            notification_service=self.notification_service,
            settings_service=self.settings_service,
            config=self.config,
            clock=self.clock,
        )
        self.webhook_service = WebhookService(
            db,
            stripe_service=self.stripe_service,
            subscription_service=self.subscription_service,
            payout_service=self.payout_service,
            clock=self.clock,
        )


@lru_cache(maxsize=1)
def get_settings_cache() -> TTLCache:
    """Process-wide cache for the platform settings document."""
    return TTLCache(SystemClock())


def get_container(db: Session = Depends(get_db)) -> ServiceContainer:
    return ServiceContainer(db, settings_cache=get_settings_cache())


def get_booking_service(container: ServiceContainer = Depends(get_container)) -> BookingService:
    return container.booking_service


def get_availability_service(
    container: ServiceContainer = Depends(get_container),
) -> AvailabilityService:
    return container.availability_service


def get_payout_service(container: ServiceContainer = Depends(get_container)) -> PayoutService:
    return container.payout_service


def get_refund_service(container: ServiceContainer = Depends(get_container)) -> RefundService:
    return container.refund_service


def get_subscription_service(
    container: ServiceContainer = Depends(get_container),
) -> SubscriptionService:
    return container.subscription_service


def get_settings_service(container: ServiceContainer = Depends(get_container)) -> SettingsService:
    return container.settings_service


def get_commission_service(
    container: ServiceContainer = Depends(get_container),
) -> CommissionService:
    return container.commission_service


def get_webhook_service(container: ServiceContainer = Depends(get_container)) -> WebhookService:
    return container.webhook_service
