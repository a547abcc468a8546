# backend/fieldsy/core/config.py
"""
Process-level configuration for the Fieldsy booking engine.

Values come from the environment (or a local .env file). Admin-tunable
business settings such as the commission rate and payout release schedule
live in the database instead; see ``fieldsy.services.settings_service``.
"""

import logging
import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

if not os.getenv("CI"):
    load_dotenv()


class Settings(BaseSettings):
    """Environment-driven settings."""

    environment: str = Field(default="development", description="Deployment environment")

    database_url: str = Field(
        default="sqlite:///./fieldsy.db",
        description="SQLAlchemy database URL",
    )
    database_echo: bool = Field(default=False, description="Echo SQL statements")

    redis_url: str = "redis://localhost:6379"

    # Stripe Configuration
    stripe_secret_key: SecretStr = Field(
        default=SecretStr(""),
        description="Stripe secret key for backend API calls",
    )
    stripe_webhook_secret: SecretStr = Field(
        default=SecretStr(""),
        description="Stripe webhook signing secret",
    )
    stripe_currency: str = Field(default="gbp", description="Currency for charges and payouts")
    stripe_max_network_retries: int = Field(default=1, ge=0)

    booking_timezone: str = Field(
        default="Europe/London",
        description="Timezone the booking date/start time strings are expressed in",
    )
    booking_number_start: int = Field(default=1111, description="First human-readable booking id")

    # Slot locks
    slot_lock_ttl_minutes: int = Field(default=10, ge=1)

    # Cache TTL for the database-backed platform settings document
    system_settings_cache_seconds: int = Field(default=60, ge=0)

    # Cross-process payout mutex (redis)
    payout_lock_enabled: bool = True
    payout_lock_ttl_seconds: int = Field(default=90, ge=1)

    # Defaults used until an admin saves platform settings
    default_commission_rate: int = Field(default=20, ge=1, le=50)
    default_cancellation_window_hours: int = Field(default=24, ge=1)
    default_max_advance_booking_days: int = Field(default=30, ge=1)

    recurring_conflict_horizon_days: int = Field(default=60, ge=1)
    subscription_inactivity_cancel_days: int = Field(default=14, ge=1)
    max_payment_retries: int = Field(default=3, ge=1)

    model_config = SettingsConfigDict(
        env_file=".env" if not os.getenv("CI") else None,
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("stripe_currency")
    @classmethod
    def _lowercase_currency(cls, value: str) -> str:
        return value.strip().lower()

    @property
    def stripe_configured(self) -> bool:
        return bool(self.stripe_secret_key.get_secret_value())

    def webhook_secret_value(self) -> Optional[str]:
        secret = self.stripe_webhook_secret.get_secret_value()
        return secret or None


settings = Settings()
