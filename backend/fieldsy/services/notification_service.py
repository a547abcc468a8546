# backend/fieldsy/services/notification_service.py
"""
Notification Service for the Fieldsy booking engine.

Writes in-app notification rows and hands them to an optional external
dispatcher (push / email delivery lives outside this package).

Notifications are fire-and-forget: every failure is logged and swallowed so
that a notification problem can never abort the booking, payout or refund
transaction that triggered it.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from ..core.clock import Clock
from ..core.enums import NotificationType
from ..models.notification import Notification
from ..repositories.factory import RepositoryFactory
from .base import BaseService

logger = logging.getLogger(__name__)

Dispatcher = Callable[[Notification], None]


class NotificationService(BaseService):
    def __init__(
        self,
        db: Session,
        *,
        dispatcher: Optional[Dispatcher] = None,
        clock: Optional[Clock] = None,
    ):
        super().__init__(db, clock)
        self.dispatcher = dispatcher
        self.notification_repository = RepositoryFactory.create_notification_repository(db)
        self.user_repository = RepositoryFactory.create_user_repository(db)

    def notify(
        self,
        user_id: Optional[str],
        type: NotificationType | str,
        title: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> Optional[Notification]:
        """Create and dispatch a notification; returns None if anything failed."""
        if not user_id:
            return None
        type_value = type.value if isinstance(type, NotificationType) else str(type)
        try:
            notification = self.notification_repository.create(
                user_id=user_id,
                type=type_value,
                title=title,
                message=message,
                data=_json_safe(data or {}),
            )
        except Exception as e:
            self.logger.error(f"Failed to create {type_value} notification for {user_id}: {e}")
            return None

        if self.dispatcher is not None:
            try:
                self.dispatcher(notification)
            except Exception as e:
                self.logger.warning(f"Notification dispatch failed for {notification.id}: {e}")
        return notification

    def notify_admins(
        self,
        type: NotificationType | str,
        title: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> List[Notification]:
        try:
            admins = self.user_repository.get_admins()
        except Exception as e:
            self.logger.error(f"Failed to load admins for {type} notification: {e}")
            return []
        sent = [self.notify(admin.id, type, title, message, data) for admin in admins]
        return [n for n in sent if n is not None]


def _json_safe(data: Dict[str, Any]) -> Dict[str, Any]:
    """Stringify values JSON columns can't hold (Decimal, date, datetime)."""
    safe: Dict[str, Any] = {}
    for key, value in data.items():
        if value is None or isinstance(value, (str, int, float, bool, list, dict)):
            safe[key] = value
        else:
            safe[key] = str(value)
    return safe
