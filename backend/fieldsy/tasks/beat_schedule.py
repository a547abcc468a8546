# backend/fieldsy/tasks/beat_schedule.py
"""
Celery Beat schedule for Fieldsy.

Times are in the booking timezone (``celery_app.conf.timezone``).
"""

from typing import Any, Dict

from celery.schedules import crontab

CELERYBEAT_SCHEDULE: Dict[str, Dict[str, Any]] = {
    # Pay out eligible bookings; deferred payouts are picked up on the next run
    "process-eligible-payouts": {
        "task": "fieldsy.tasks.payout_tasks.process_eligible_payouts",
        "schedule": crontab(minute=0),
        "options": {"queue": "payments", "priority": 8},
    },
    # Materialize the next occurrence of each subscription; also cancels idle ones
    "create-recurring-bookings": {
        "task": "fieldsy.tasks.booking_tasks.create_recurring_bookings",
        "schedule": crontab(hour=2, minute=0),
        "options": {"queue": "bookings"},
    },
    "retry-subscription-payments": {
        "task": "fieldsy.tasks.payout_tasks.retry_subscription_payments",
        "schedule": crontab(hour=8, minute=0),
        "options": {"queue": "payments"},
    },
    "cleanup-expired-slot-locks": {
        "task": "fieldsy.tasks.booking_tasks.cleanup_expired_slot_locks",
        "schedule": crontab(minute="*/5"),
        "options": {"queue": "bookings"},
    },
    "mark-completed-bookings": {
        "task": "fieldsy.tasks.booking_tasks.mark_completed_bookings",
        "schedule": crontab(minute=30),
        "options": {"queue": "bookings"},
    },
}


def get_beat_schedule() -> Dict[str, Dict[str, Any]]:
    return dict(CELERYBEAT_SCHEDULE)
