"""Refund policy evaluation for customer cancellations."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from .commission_service import to_money


@dataclass(frozen=True)
class RefundQuote:
    percentage: int
    amount: Decimal
    hours_until_start: float
    policy_basis: str = ""

    def to_payload(self) -> dict[str, object]:
        return {
            "percentage": self.percentage,
            "amount": str(self.amount),
            "hours_until_start": round(self.hours_until_start, 2),
            "policy_basis": self.policy_basis,
        }


class RefundPolicy:
    """
    Tiered refund by notice given:

    - at least ``window_hours`` before start: 100%
    - at least half the window: 50%
    - otherwise: nothing
    """

    def quote(self, total: Any, hours_until_start: float, window_hours: int) -> RefundQuote:
        total_amount = to_money(total)
        if hours_until_start >= window_hours:
            return RefundQuote(
                percentage=100,
                amount=total_amount,
                hours_until_start=hours_until_start,
                policy_basis=f">={window_hours} hours before start: full refund",
            )
        if hours_until_start >= window_hours / 2:
            return RefundQuote(
                percentage=50,
                amount=to_money(total_amount * Decimal("0.5")),
                hours_until_start=hours_until_start,
                policy_basis=f">={window_hours / 2:g} hours before start: 50% refund",
            )
        return RefundQuote(
            percentage=0,
            amount=to_money(0),
            hours_until_start=hours_until_start,
            policy_basis=f"<{window_hours / 2:g} hours before start: no refund",
        )
