"""
Database models for the Fieldsy booking engine.

Importing this package registers every table on ``Base.metadata``.
"""

from .booking import Booking
from .counter import Counter
from .field import Field
from .notification import Notification
from .payout import Payout
from .slot_lock import SlotLock
from .stripe_account import StripeAccount
from .subscription import Subscription
from .system_settings import SystemSettings
from .transaction import Transaction
from .user import User

__all__ = [
    "Booking",
    "Counter",
    "Field",
    "Notification",
    "Payout",
    "SlotLock",
    "StripeAccount",
    "Subscription",
    "SystemSettings",
    "Transaction",
    "User",
]
