"""Pydantic schemas for admin-editable platform settings."""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..core.enums import PayoutReleaseSchedule

WEEKDAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")


class PlatformSettings(BaseModel):
    """Settings document persisted under ``system_settings.key == 'platform'``."""

    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    default_commission_rate: int = Field(
        20, ge=1, le=50, description="Platform commission as a whole percentage"
    )
    cancellation_window_hours: int = Field(
        24, ge=1, description="Hours before start within which refunds shrink"
    )
    payout_release_schedule: PayoutReleaseSchedule = Field(
        PayoutReleaseSchedule.AFTER_CANCELLATION_WINDOW,
        description="When a paid booking becomes eligible for payout",
    )
    payout_release_days: List[str] = Field(
        default_factory=lambda: ["Friday", "Saturday", "Sunday"],
        description="Weekday names used by the on_weekend schedule",
    )
    max_advance_booking_days: int = Field(
        30, ge=1, description="How far ahead recurring bookings are materialized"
    )
    minimum_field_operating_hours: int = Field(4, ge=1)

    @field_validator("payout_release_days")
    @classmethod
    def _known_weekdays(cls, value: List[str]) -> List[str]:
        normalized = [day.strip().capitalize() for day in value]
        unknown = [day for day in normalized if day not in WEEKDAY_NAMES]
        if unknown:
            raise ValueError(f"Unknown weekday names: {', '.join(unknown)}")
        if not normalized:
            raise ValueError("At least one payout release day is required")
        return normalized


class PlatformSettingsUpdate(BaseModel):
    """Partial update; unset fields keep their stored value."""

    model_config = ConfigDict(extra="forbid")

    default_commission_rate: Optional[int] = None
    cancellation_window_hours: Optional[int] = None
    payout_release_schedule: Optional[PayoutReleaseSchedule] = None
    payout_release_days: Optional[List[str]] = None
    max_advance_booking_days: Optional[int] = None
    minimum_field_operating_hours: Optional[int] = None
