"""Tests for in-app notifications."""

from datetime import date
from decimal import Decimal
from unittest.mock import MagicMock

from fieldsy.core.enums import NotificationType, UserRole
from fieldsy.models.notification import Notification
from fieldsy.services.notification_service import NotificationService


class TestNotificationService:
    def test_notify_stores_json_safe_payload(self, db, dog_owner):
        service = NotificationService(db)
        notification = service.notify(
            dog_owner.id,
            NotificationType.REFUND_PROCESSED,
            "Refund processed",
            "Your refund of £50.00 has been processed.",
            {"amount": Decimal("50.00"), "date": date(2025, 6, 10), "percentage": 50},
        )
        db.commit()

        stored = db.get(Notification, notification.id)
        assert stored.type == "refund_processed"
        assert stored.data == {"amount": "50.00", "date": "2025-06-10", "percentage": 50}
        assert stored.read is False

    def test_missing_user_is_a_no_op(self, db):
        assert NotificationService(db).notify(None, "x", "t", "m") is None

    def test_dispatcher_failure_is_swallowed(self, db, dog_owner):
        dispatcher = MagicMock(side_effect=RuntimeError("push gateway down"))
        service = NotificationService(db, dispatcher=dispatcher)

        notification = service.notify(dog_owner.id, NotificationType.BOOKING_CANCELLED, "t", "m")

        assert notification is not None
        dispatcher.assert_called_once_with(notification)

    def test_notify_admins_reaches_every_admin(self, db, make_user, dog_owner):
        first = make_user(UserRole.ADMIN)
        second = make_user(UserRole.ADMIN)

        sent = NotificationService(db).notify_admins(NotificationType.PAYOUT_FAILED, "t", "m")

        assert sorted(n.user_id for n in sent) == sorted([first.id, second.id])
