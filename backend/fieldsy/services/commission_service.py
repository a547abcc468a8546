"""
Commission resolution and gross-amount splitting.

Money is ``Decimal`` throughout and rounded to pence after each arithmetic
step (``ROUND_HALF_UP``), never deferred to the end.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

from sqlalchemy.orm import Session

from ..core.clock import Clock
from ..core.exceptions import NotFoundException, ValidationException
from ..models.user import User
from ..repositories.factory import RepositoryFactory
from .base import BaseService
from .settings_service import SettingsService

PENNY = Decimal("0.01")
MIN_COMMISSION_RATE = 1
MAX_COMMISSION_RATE = 50


def to_money(value: Any) -> Decimal:
    """Coerce to a pence-rounded Decimal (floats go through ``str`` first)."""
    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, float):
        amount = Decimal(str(value))
    else:
        amount = Decimal(value)
    return amount.quantize(PENNY, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Decimal) -> int:
    """Pounds to pence for the payment processor."""
    return int((to_money(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))


def from_minor_units(pence: int) -> Decimal:
    return to_money(Decimal(pence) / 100)


@dataclass(frozen=True)
class CommissionRate:
    rate: int
    is_custom: bool
    default_rate: int


@dataclass(frozen=True)
class CommissionSplit:
    gross: Decimal
    field_owner_amount: Decimal
    platform_fee: Decimal
    rate: int
    is_custom: bool = False


def validate_rate(rate: Any) -> int:
    """Commission rates are whole percentages in [1, 50]."""
    if isinstance(rate, bool) or not isinstance(rate, (int, Decimal, float)):
        raise ValidationException("Commission rate must be a whole number", code="INVALID_RATE")
    if Decimal(str(rate)) != Decimal(int(rate)):
        raise ValidationException(
            "Commission rate must be a whole percentage", code="INVALID_RATE"
        )
    value = int(rate)
    if not MIN_COMMISSION_RATE <= value <= MAX_COMMISSION_RATE:
        raise ValidationException(
            f"Commission rate must be between {MIN_COMMISSION_RATE} and {MAX_COMMISSION_RATE}",
            code="INVALID_RATE",
            details={"rate": value},
        )
    return value


def split_gross(gross: Any, rate: int, *, is_custom: bool = False) -> CommissionSplit:
    total = to_money(gross)
    platform_fee = to_money(total * Decimal(rate) / Decimal(100))
    field_owner_amount = to_money(total - platform_fee)
    return CommissionSplit(
        gross=total,
        field_owner_amount=field_owner_amount,
        platform_fee=platform_fee,
        rate=rate,
        is_custom=is_custom,
    )


class CommissionService(BaseService):
    def __init__(
        self,
        db: Session,
        *,
        settings_service: SettingsService,
        clock: Optional[Clock] = None,
    ):
        super().__init__(db, clock)
        self.settings_service = settings_service
        self.user_repository = RepositoryFactory.create_user_repository(db)

    def effective_rate(self, field_owner_id: Optional[str]) -> CommissionRate:
        default_rate = self.settings_service.get_platform_settings().default_commission_rate
        owner = self.user_repository.get_by_id(field_owner_id) if field_owner_id else None
        if owner is not None and owner.commission_rate is not None:
            return CommissionRate(
                rate=int(owner.commission_rate), is_custom=True, default_rate=default_rate
            )
        return CommissionRate(rate=default_rate, is_custom=False, default_rate=default_rate)

    def split_amount(self, gross: Any, field_owner_id: Optional[str]) -> CommissionSplit:
        resolved = self.effective_rate(field_owner_id)
        return split_gross(gross, resolved.rate, is_custom=resolved.is_custom)

    @BaseService.measure_operation("set_owner_commission_rate")
    def set_owner_rate(self, field_owner_id: str, rate: Optional[int]) -> User:
        """Set or clear (``None``) a field owner's commission override."""
        validated = validate_rate(rate) if rate is not None else None
        owner = self.user_repository.get_by_id(field_owner_id)
        if owner is None:
            raise NotFoundException(f"User {field_owner_id} not found")
        with self.transaction():
            self.user_repository.update(owner, commission_rate=validated)
        self.logger.info(f"Commission override for {field_owner_id} set to {validated}")
        return owner
