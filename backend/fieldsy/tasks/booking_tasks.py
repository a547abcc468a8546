"""Celery tasks for booking housekeeping and recurring materialization."""

import logging
from typing import Any, Dict

from sqlalchemy.orm import Session

from fieldsy.services.dependencies import ServiceContainer, get_settings_cache
from fieldsy.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(name="fieldsy.tasks.booking_tasks.cleanup_expired_slot_locks")
def cleanup_expired_slot_locks() -> Dict[str, int]:
    from fieldsy.database import SessionLocal

    db: Session = SessionLocal()
    try:
        removed = ServiceContainer(db).slot_lock_service.cleanup_expired()
        return {"removed": removed}
    finally:
        db.close()


@celery_app.task(name="fieldsy.tasks.booking_tasks.mark_completed_bookings")
def mark_completed_bookings() -> Dict[str, int]:
    """CONFIRMED bookings that have ended become COMPLETED (a payout precondition)."""
    from fieldsy.database import SessionLocal

    db: Session = SessionLocal()
    try:
        completed = ServiceContainer(db).booking_service.mark_past_bookings_completed()
        return {"completed": completed}
    finally:
        db.close()


@celery_app.task(
    bind=True, max_retries=2, name="fieldsy.tasks.booking_tasks.create_recurring_bookings"
)
def create_recurring_bookings(self: Any) -> Dict[str, int]:
    from fieldsy.database import SessionLocal

    db: Session = SessionLocal()
    try:
        container = ServiceContainer(db, settings_cache=get_settings_cache())
        return dict(container.subscription_service.materialize_upcoming_bookings())
    except Exception as exc:
        logger.error(f"Recurring booking job failed: {exc}")
        raise self.retry(exc=exc, countdown=600)
    finally:
        db.close()
