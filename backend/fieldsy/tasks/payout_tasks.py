"""
Celery tasks for owner payouts and subscription billing retries.

Each run builds its own session and service container; nothing is shared
between runs except the process-wide settings cache.
"""

from datetime import datetime, timezone
import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from fieldsy.services.dependencies import ServiceContainer, get_settings_cache
from fieldsy.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


def _container(db: Session) -> ServiceContainer:
    return ServiceContainer(db, settings_cache=get_settings_cache())


@celery_app.task(
    bind=True, max_retries=3, name="fieldsy.tasks.payout_tasks.process_eligible_payouts"
)
def process_eligible_payouts(self: Any) -> Dict[str, Any]:
    """
    Hourly payout sweep.

    Per-booking failures are recorded on the booking by the payout engine;
    only an error outside the sweep (database down, etc.) retries the task.
    """
    from fieldsy.database import SessionLocal

    db: Session = SessionLocal()
    try:
        result = _container(db).payout_service.process_eligible_payouts()
        summary = result.to_dict()
        summary["processed_at"] = datetime.now(timezone.utc).isoformat()
        logger.info(
            f"Payout sweep: processed={result.processed} deferred={result.deferred} "
            f"skipped={result.skipped} failed={result.failed}"
        )
        return summary
    except Exception as exc:
        logger.error(f"Payout sweep failed: {exc}")
        raise self.retry(exc=exc, countdown=300)
    finally:
        db.close()


@celery_app.task(name="fieldsy.tasks.payout_tasks.process_booking_payout")
def process_booking_payout(booking_id: str) -> Dict[str, Any]:
    """One-off payout for a single booking (admin retry, post-onboarding)."""
    from fieldsy.database import SessionLocal

    db: Session = SessionLocal()
    try:
        return _container(db).payout_service.process_booking_payout(booking_id).to_dict()
    finally:
        db.close()


@celery_app.task(
    bind=True, max_retries=3, name="fieldsy.tasks.payout_tasks.retry_subscription_payments"
)
def retry_subscription_payments(self: Any, now: Optional[str] = None) -> Dict[str, Any]:
    """Daily retry of open invoices for past_due subscriptions."""
    from fieldsy.database import SessionLocal

    db: Session = SessionLocal()
    try:
        when = datetime.fromisoformat(now) if now else None
        results = _container(db).subscription_service.retry_failed_payments(now=when)
        logger.info(f"Subscription payment retries: {results}")
        return dict(results)
    except Exception as exc:
        logger.error(f"Subscription payment retry run failed: {exc}")
        raise self.retry(exc=exc, countdown=900)
    finally:
        db.close()
