"""
Balance gate for platform-to-owner transfers.

Card payments settle into the platform balance days after the charge. A
transfer is only attempted once the charge's funds are available and the
platform's available balance covers the amount; otherwise the caller gets a
``DeferredRetryException`` and the payout stays PENDING for the next sweep.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
import logging
from typing import Any, Dict, Optional

from ..core.exceptions import DeferredRetryException, ExternalProcessorException
from .commission_service import from_minor_units
from .stripe_service import StripeService, stripe_value

logger = logging.getLogger(__name__)

BALANCE_ERROR_CODES = frozenset({"balance_insufficient", "insufficient_funds"})
FUNDS_PENDING_PREFIX = "Funds pending availability"


@dataclass(frozen=True)
class FundsCheck:
    available: bool
    available_on: Optional[datetime]
    status: str  # 'available' | 'pending'


@dataclass(frozen=True)
class BalanceCheck:
    sufficient: bool
    available: int
    required: int
    pending: int = 0


def _from_timestamp(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def format_pounds(minor_units: int) -> str:
    return f"£{from_minor_units(minor_units):.2f}"


class BalanceGate:
    def __init__(self, stripe_service: StripeService, currency: str = "gbp"):
        self.stripe_service = stripe_service
        self.currency = currency

    def check_charge_funds(self, charge_id: Optional[str], now: datetime) -> FundsCheck:
        """Have the funds from this charge settled into the platform balance?"""
        if not charge_id:
            return FundsCheck(available=True, available_on=None, status="available")

        charge = self.stripe_service.retrieve_charge(charge_id)
        balance_transaction = stripe_value(charge, "balance_transaction")
        if not balance_transaction:
            logger.info(
                f"Charge {charge_id} has no balance transaction; treating funds as available"
            )
            return FundsCheck(available=True, available_on=None, status="available")

        if isinstance(balance_transaction, str):
            balance_transaction = self.stripe_service.retrieve_balance_transaction(
                balance_transaction
            )

        available_on = _from_timestamp(stripe_value(balance_transaction, "available_on"))
        available = stripe_value(balance_transaction, "status") == "available" or (
            available_on is not None and now >= available_on
        )
        return FundsCheck(
            available=available,
            available_on=available_on,
            status="available" if available else "pending",
        )

    def check_platform_balance(self, amount: int) -> BalanceCheck:
        """Read the platform balance fresh and compare against ``amount`` pence."""
        balance = self.stripe_service.retrieve_balance()
        available = self._amount_for_currency(stripe_value(balance, "available", []))
        pending = self._amount_for_currency(stripe_value(balance, "pending", []))
        return BalanceCheck(
            sufficient=available >= amount,
            available=available,
            required=amount,
            pending=pending,
        )

    def ensure_transfer_allowed(
        self, charge_id: Optional[str], amount: int, now: datetime
    ) -> FundsCheck:
        """
        Raises:
            DeferredRetryException: funds not settled or balance too low
        """
        funds = self.check_charge_funds(charge_id, now)
        if not funds.available:
            when = funds.available_on.isoformat() if funds.available_on else "unknown"
            raise DeferredRetryException(
                f"{FUNDS_PENDING_PREFIX}: {when}", available_on=funds.available_on
            )

        balance = self.check_platform_balance(amount)
        if not balance.sufficient:
            raise DeferredRetryException(
                f"Insufficient platform balance: available {format_pounds(balance.available)}, "
                f"required {format_pounds(balance.required)}"
            )
        return funds

    def safe_transfer(
        self,
        *,
        amount: int,
        destination: str,
        transfer_group: str,
        metadata: Dict[str, Any],
        description: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> Any:
        """Create the transfer, deferring when the processor reports a balance shortfall."""
        try:
            transfer = self.stripe_service.create_transfer(
                amount=amount,
                destination=destination,
                transfer_group=transfer_group,
                description=description,
                metadata=metadata,
                idempotency_key=idempotency_key,
            )
        except ExternalProcessorException as e:
            if e.processor_code in BALANCE_ERROR_CODES:
                logger.info(f"Transfer to {destination} deferred: {e.message}")
                raise DeferredRetryException(
                    f"Insufficient platform balance: required {format_pounds(amount)}"
                ) from e
            raise
        logger.info(
            f"Transfer {stripe_value(transfer, 'id')} created: {Decimal(amount) / 100} "
            f"{self.currency.upper()} to {destination}"
        )
        return transfer

    def _amount_for_currency(self, entries: Any) -> int:
        for entry in entries or []:
            if stripe_value(entry, "currency") == self.currency:
                return int(stripe_value(entry, "amount", 0) or 0)
        return 0
