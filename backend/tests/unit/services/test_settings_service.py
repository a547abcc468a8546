"""Tests for the cached platform settings document."""

import pytest

from fieldsy.core.exceptions import ValidationException
from fieldsy.models.system_settings import SystemSettings
from fieldsy.services.settings_service import PLATFORM_SETTINGS_KEY


class TestSettingsService:
    def test_defaults_when_nothing_stored(self, container):
        settings = container.settings_service.get_platform_settings()
        assert settings.default_commission_rate == 20
        assert settings.cancellation_window_hours == 24
        assert settings.payout_release_schedule == "after_cancellation_window"
        assert settings.payout_release_days == ["Friday", "Saturday", "Sunday"]
        assert settings.max_advance_booking_days == 30

    def test_update_persists_and_invalidates(self, container, db):
        service = container.settings_service
        service.get_platform_settings()

        updated = service.update_platform_settings(
            {"default_commission_rate": 15, "payout_release_days": ["saturday"]}, updated_by="admin"
        )

        assert updated.default_commission_rate == 15
        assert updated.payout_release_days == ["Saturday"]
        assert service.get_platform_settings().default_commission_rate == 15
        record = db.get(SystemSettings, PLATFORM_SETTINGS_KEY)
        assert record.value_json["default_commission_rate"] == 15
        assert record.updated_by_id == "admin"

    def test_partial_update_keeps_other_values(self, container):
        service = container.settings_service
        service.update_platform_settings({"cancellation_window_hours": 48})
        service.update_platform_settings({"default_commission_rate": 10})

        settings = service.get_platform_settings()
        assert settings.cancellation_window_hours == 48
        assert settings.default_commission_rate == 10

    @pytest.mark.parametrize(
        "changes",
        [
            {"default_commission_rate": 0},
            {"default_commission_rate": 51},
            {"payout_release_days": ["Funday"]},
            {"payout_release_schedule": "monthly"},
            {"unknown_setting": True},
        ],
    )
    def test_invalid_updates_rejected(self, container, changes):
        with pytest.raises(ValidationException) as exc_info:
            container.settings_service.update_platform_settings(changes)
        assert exc_info.value.code == "INVALID_SETTINGS"

    def test_cached_value_served_until_ttl_expires(self, container, db, clock):
        service = container.settings_service
        assert service.get_platform_settings().default_commission_rate == 20

        # Another process writes behind this cache's back
        db.add(
            SystemSettings(key=PLATFORM_SETTINGS_KEY, value_json={"default_commission_rate": 30})
        )
        db.commit()

        assert service.get_platform_settings().default_commission_rate == 20
        clock.advance(61)
        assert service.get_platform_settings().default_commission_rate == 30
