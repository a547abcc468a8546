"""Service helpers for admin-editable platform settings."""

from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session

from ..core.clock import Clock
from ..core.config import Settings, settings as default_settings
from ..core.exceptions import ValidationException
from ..core.ttl_cache import TTLCache
from ..repositories.factory import RepositoryFactory
from ..schemas.system_settings import PlatformSettings, PlatformSettingsUpdate
from .base import BaseService

PLATFORM_SETTINGS_KEY = "platform"


class SettingsService(BaseService):
    """
    Reads the platform settings document through a TTL cache.

    The cache is injected so every service built for one process shares it,
    and tests can drive expiry with a fake clock.
    """

    def __init__(
        self,
        db: Session,
        *,
        cache: Optional[TTLCache] = None,
        config: Optional[Settings] = None,
        clock: Optional[Clock] = None,
    ):
        super().__init__(db, clock)
        self.config = config or default_settings
        self.cache = cache or TTLCache(self.clock)
        self.repository = RepositoryFactory.create_system_settings_repository(db)

    def defaults(self) -> PlatformSettings:
        return PlatformSettings(
            default_commission_rate=self.config.default_commission_rate,
            cancellation_window_hours=self.config.default_cancellation_window_hours,
            max_advance_booking_days=self.config.default_max_advance_booking_days,
        )

    def _load(self) -> PlatformSettings:
        record = self.repository.get_by_key(PLATFORM_SETTINGS_KEY)
        base = self.defaults().model_dump()
        if record is None or not record.value_json:
            return PlatformSettings(**base)
        base.update(record.value_json)
        return PlatformSettings(**base)

    def get_platform_settings(self) -> PlatformSettings:
        return self.cache.get_or_refresh(
            PLATFORM_SETTINGS_KEY,
            self.config.system_settings_cache_seconds,
            self._load,
        )

    @BaseService.measure_operation("update_platform_settings")
    def update_platform_settings(
        self, changes: Dict[str, Any], updated_by: Optional[str] = None
    ) -> PlatformSettings:
        try:
            patch = PlatformSettingsUpdate(**changes).model_dump(exclude_none=True)
            merged = self._load().model_dump()
            merged.update(patch)
            validated = PlatformSettings(**merged)
        except ValidationError as e:
            raise ValidationException(
                "Invalid platform settings",
                code="INVALID_SETTINGS",
                details={
                    "errors": [
                        {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
                        for err in e.errors()
                    ]
                },
            )

        with self.transaction():
            self.repository.upsert(
                key=PLATFORM_SETTINGS_KEY,
                value=validated.model_dump(mode="json"),
                updated_at=self.now(),
                updated_by_id=updated_by,
            )
        self.invalidate()
        self.logger.info(f"Platform settings updated by {updated_by or 'system'}: {patch}")
        return validated

    def invalidate(self) -> None:
        self.cache.invalidate(PLATFORM_SETTINGS_KEY)
