"""Tests for booking housekeeping tasks, run against the test database."""

from datetime import date
from unittest.mock import MagicMock

import pytest

from fieldsy.core.enums import BookingStatus
from fieldsy.models.booking import Booking
from fieldsy.models.slot_lock import SlotLock
from fieldsy.tasks import booking_tasks

# Far enough in the past that the real clock used by the tasks is later
LAST_SUMMER = date(2025, 6, 1)


@pytest.fixture
def task_session(monkeypatch, db):
    """Hand the tasks the test session; they close it themselves."""
    monkeypatch.setattr("fieldsy.database.SessionLocal", MagicMock(return_value=db))
    return db


def test_cleanup_expired_slot_locks(task_session, container, field, dog_owner):
    container.slot_lock_service.acquire(dog_owner.id, field.id, date(2025, 6, 10), "09:00", "10:00")

    assert booking_tasks.cleanup_expired_slot_locks() == {"removed": 1}
    assert task_session.query(SlotLock).count() == 0


def test_mark_completed_bookings(task_session, field, dog_owner, make_booking):
    booking_id = make_booking(field, dog_owner, LAST_SUMMER).id

    assert booking_tasks.mark_completed_bookings() == {"completed": 1}
    stored = task_session.query(Booking).filter(Booking.id == booking_id).one()
    assert stored.status == BookingStatus.COMPLETED.value


class TestCreateRecurringBookings:
    def test_returns_materialization_counts(self, monkeypatch, task_session):
        container = MagicMock()
        container.subscription_service.materialize_upcoming_bookings.return_value = {
            "created": 3,
            "skipped": 0,
            "failed": 0,
            "cancelled": 1,
        }
        monkeypatch.setattr(booking_tasks, "ServiceContainer", MagicMock(return_value=container))

        assert booking_tasks.create_recurring_bookings()["created"] == 3

    def test_failure_is_retried(self, monkeypatch, task_session):
        container = MagicMock()
        container.subscription_service.materialize_upcoming_bookings.side_effect = RuntimeError(
            "lost connection"
        )
        monkeypatch.setattr(booking_tasks, "ServiceContainer", MagicMock(return_value=container))

        with pytest.raises(RuntimeError, match="lost connection"):
            booking_tasks.create_recurring_bookings()
