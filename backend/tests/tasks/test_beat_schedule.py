"""The beat schedule must only reference registered tasks."""

from fieldsy.tasks import booking_tasks, payout_tasks  # noqa: F401
from fieldsy.tasks.beat_schedule import get_beat_schedule
from fieldsy.tasks.celery_app import celery_app


def test_every_scheduled_task_is_registered():
    schedule = get_beat_schedule()
    assert set(schedule) == {
        "process-eligible-payouts",
        "create-recurring-bookings",
        "retry-subscription-payments",
        "cleanup-expired-slot-locks",
        "mark-completed-bookings",
    }
    for entry in schedule.values():
        assert entry["task"] in celery_app.tasks


def test_payment_tasks_route_to_payments_queue():
    routes = celery_app.conf.task_routes
    assert routes["fieldsy.tasks.payout_tasks.*"] == {"queue": "payments"}
    assert celery_app.conf.beat_schedule == get_beat_schedule()
