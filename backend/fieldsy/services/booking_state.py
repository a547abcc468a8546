"""
Allowed transitions for the three booking status axes.

``None`` is the payout axis before any payout work has started. Staying in
the same state is always allowed (deferred payouts re-enter PENDING).
"""

from typing import Dict, FrozenSet, Optional, Union

from ..core.enums import BookingStatus, PaymentStatus, PayoutStatus
from ..core.exceptions import InvalidStateTransitionException

_B = BookingStatus
_P = PaymentStatus
_O = PayoutStatus

BOOKING_TRANSITIONS: Dict[Optional[str], FrozenSet[str]] = {
    _B.PENDING.value: frozenset({_B.CONFIRMED.value, _B.CANCELLED.value}),
    _B.CONFIRMED.value: frozenset({_B.COMPLETED.value, _B.CANCELLED.value}),
    _B.COMPLETED.value: frozenset(),
    _B.CANCELLED.value: frozenset(),
}

PAYMENT_TRANSITIONS: Dict[Optional[str], FrozenSet[str]] = {
    _P.PENDING.value: frozenset({_P.PAID.value, _P.CANCELLED.value}),
    _P.PAID.value: frozenset({_P.REFUNDED.value}),
    _P.REFUNDED.value: frozenset(),
    _P.CANCELLED.value: frozenset(),
}

_MONEY_RETURNED = {_O.REFUNDED.value, _O.CANCELLED.value}

PAYOUT_TRANSITIONS: Dict[Optional[str], FrozenSet[str]] = {
    None: frozenset(
        {
            _O.PENDING.value,
            _O.PENDING_ACCOUNT.value,
            _O.PROCESSING.value,
            _O.HELD.value,
            _O.FAILED.value,
            *_MONEY_RETURNED,
        }
    ),
    _O.PENDING.value: frozenset(
        {
            _O.PENDING_ACCOUNT.value,
            _O.PROCESSING.value,
            _O.HELD.value,
            _O.FAILED.value,
            *_MONEY_RETURNED,
        }
    ),
    _O.PENDING_ACCOUNT.value: frozenset(
        {
            _O.PENDING.value,
            _O.PROCESSING.value,
            _O.HELD.value,
            _O.FAILED.value,
            *_MONEY_RETURNED,
        }
    ),
    # PROCESSING -> PENDING: the transfer itself was deferred for balance
    _O.PROCESSING.value: frozenset(
        {_O.PENDING.value, _O.COMPLETED.value, _O.FAILED.value, *_MONEY_RETURNED}
    ),
    _O.COMPLETED.value: frozenset(_MONEY_RETURNED),
    _O.FAILED.value: frozenset({_O.PENDING.value, _O.HELD.value, *_MONEY_RETURNED}),
    _O.HELD.value: frozenset({_O.PENDING.value, *_MONEY_RETURNED}),
    _O.REFUNDED.value: frozenset(),
    _O.CANCELLED.value: frozenset(),
}

_TABLES = {
    "status": BOOKING_TRANSITIONS,
    "payment_status": PAYMENT_TRANSITIONS,
    "payout_status": PAYOUT_TRANSITIONS,
}

StatusValue = Union[str, BookingStatus, PaymentStatus, PayoutStatus, None]


def _value(state: StatusValue) -> Optional[str]:
    if state is None:
        return None
    return state.value if hasattr(state, "value") else str(state)


def can_transition(axis: str, current: StatusValue, target: StatusValue) -> bool:
    current_value, target_value = _value(current), _value(target)
    if current_value == target_value:
        return True
    return target_value in _TABLES[axis].get(current_value, frozenset())


def assert_transition(axis: str, current: StatusValue, target: StatusValue) -> None:
    """
    Raises:
        InvalidStateTransitionException: ``current -> target`` is not allowed on ``axis``
    """
    if not can_transition(axis, current, target):
        raise InvalidStateTransitionException(axis, _value(current), _value(target) or "unset")
