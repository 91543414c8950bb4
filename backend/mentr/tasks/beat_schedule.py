# backend/mentr/tasks/beat_schedule.py
"""
Celery Beat schedule for the settlement engine.

All times are UTC. The payout sweep runs hourly, and every 30 minutes during
business hours on weekdays. Overlapping passes are refused by the scheduler's
per-job lock, so the two sweep entries never run concurrently.
"""

from typing import Any, Dict

from celery.schedules import crontab

TASK_PREFIX = "mentr.tasks.settlement_tasks"

CELERYBEAT_SCHEDULE: Dict[str, Dict[str, Any]] = {
    # ==================== PAYOUTS ====================
    "payout-sweep-hourly": {
        "task": f"{TASK_PREFIX}.run_payout_sweep",
        "schedule": crontab(minute=0),  # Every hour at :00
        "options": {"queue": "payments", "priority": 9},
    },
    "payout-sweep-business-hours": {
        "task": f"{TASK_PREFIX}.run_payout_sweep",
        "schedule": crontab(minute="*/30", hour="9-17", day_of_week="1-5"),
        "options": {"queue": "payments", "priority": 9},
    },
    # ==================== BOOKINGS & REFUNDS ====================
    "auto-cancel-unpaid-bookings": {
        "task": f"{TASK_PREFIX}.auto_cancel_unpaid_bookings",
        "schedule": crontab(minute="*/30"),
        "options": {"queue": "payments", "priority": 7},
    },
    "refund-expiry-sweep": {
        "task": f"{TASK_PREFIX}.expire_stale_refunds",
        "schedule": crontab(minute=15),  # Hourly at :15, off the sweep's minute
        "options": {"queue": "payments", "priority": 7},
    },
    # ==================== HOUSEKEEPING ====================
    "dispatch-notifications": {
        "task": f"{TASK_PREFIX}.dispatch_notifications",
        "schedule": crontab(minute="*/5"),
        "options": {"queue": "notifications", "priority": 5},
    },
    "advance-commission-tiers": {
        "task": f"{TASK_PREFIX}.advance_commission_tiers",
        "schedule": crontab(hour=4, minute=0),  # Daily at 4 AM
        "options": {"queue": "payments", "priority": 3},
    },
}


def get_beat_schedule(environment: str = "production") -> Dict[str, Dict[str, Any]]:
    """
    Beat schedule for an environment.

    Queue routing is collapsed onto the default queue outside production,
    where a single worker consumes everything.
    """
    schedule = {name: dict(entry) for name, entry in CELERYBEAT_SCHEDULE.items()}
    if environment != "production":
        for entry in schedule.values():
            entry["options"] = {**entry.get("options", {}), "queue": "celery"}
    return schedule


__all__ = ["CELERYBEAT_SCHEDULE", "TASK_PREFIX", "get_beat_schedule"]
