# backend/mentr/tasks/__init__.py
"""
Celery tasks package for the Mentr settlement engine.

- Payout sweep (scheduled and manual) and forced single-booking payouts
- Auto-cancellation of unpaid bookings
- Refund expiry and retry
- Notification outbox dispatch
- Commission tier catch-up
"""

from mentr.tasks.celery_app import BaseTask, celery_app
from mentr.tasks.settlement_tasks import (
    advance_commission_tiers,
    auto_cancel_unpaid_bookings,
    dispatch_notifications,
    expire_stale_refunds,
    force_process_payout,
    run_manual_payout_check,
    run_payout_sweep,
)

__all__ = [
    "BaseTask",
    "advance_commission_tiers",
    "auto_cancel_unpaid_bookings",
    "celery_app",
    "dispatch_notifications",
    "expire_stale_refunds",
    "force_process_payout",
    "run_manual_payout_check",
    "run_payout_sweep",
]
