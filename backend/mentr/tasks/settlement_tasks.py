# backend/mentr/tasks/settlement_tasks.py
"""
Celery tasks for the settlement timer jobs and operator triggers.

Periodic tasks delegate to the process-wide SettlementScheduler, which owns
single-flight locking and shutdown. Operator tasks act on one booking.
"""

from datetime import datetime, timezone
import logging
from typing import Any, Callable, Dict, Optional, ParamSpec, Protocol, TypeVar, cast

from celery.result import AsyncResult
from celery.signals import worker_shutdown
from sqlalchemy.orm import Session

from mentr.integrations.transfer_gateway import build_transfer_gateway
from mentr.services.settlement_scheduler import (
    ADVANCE_TIERS,
    AUTO_CANCEL_UNPAID,
    DISPATCH_NOTIFICATIONS,
    PAYOUT_SWEEP,
    REFUND_EXPIRY,
    SettlementScheduler,
)
from mentr.services.settlement_service import SettlementService
from mentr.tasks.celery_app import celery_app

P = ParamSpec("P")
R = TypeVar("R", covariant=True)

logger = logging.getLogger(__name__)


class TaskWrapper(Protocol[P, R]):
    def __call__(self, *args: P.args, **kwargs: P.kwargs) -> R:
        ...

    delay: Callable[..., AsyncResult]
    apply_async: Callable[..., AsyncResult]


def typed_task(
    *task_args: Any, **task_kwargs: Any
) -> Callable[[Callable[P, R]], TaskWrapper[P, R]]:
    """Return a typed Celery task decorator for mypy."""

    return cast(
        Callable[[Callable[P, R]], TaskWrapper[P, R]],
        celery_app.task(*task_args, **task_kwargs),
    )


_scheduler: Optional[SettlementScheduler] = None


def get_scheduler() -> SettlementScheduler:
    global _scheduler
    if _scheduler is None:
        _scheduler = SettlementScheduler()
    return _scheduler


@worker_shutdown.connect  # type: ignore[misc]
def _stop_scheduler(*args: Any, **kwargs: Any) -> None:
    if _scheduler is not None:
        _scheduler.shutdown()


def _run(job: str) -> Dict[str, Any]:
    result = get_scheduler().run_job(job)
    return {
        "job": job,
        "ran": result is not None,
        "result": result,
        "finished_at": datetime.now(timezone.utc).isoformat(),
    }


@typed_task(name="mentr.tasks.settlement_tasks.run_payout_sweep")
def run_payout_sweep() -> Dict[str, Any]:
    """Settle every booking whose escrow window has elapsed."""
    return _run(PAYOUT_SWEEP)


@typed_task(name="mentr.tasks.settlement_tasks.auto_cancel_unpaid_bookings")
def auto_cancel_unpaid_bookings() -> Dict[str, Any]:
    return _run(AUTO_CANCEL_UNPAID)


@typed_task(name="mentr.tasks.settlement_tasks.expire_stale_refunds")
def expire_stale_refunds() -> Dict[str, Any]:
    return _run(REFUND_EXPIRY)


@typed_task(name="mentr.tasks.settlement_tasks.dispatch_notifications")
def dispatch_notifications() -> Dict[str, Any]:
    return _run(DISPATCH_NOTIFICATIONS)


@typed_task(name="mentr.tasks.settlement_tasks.advance_commission_tiers")
def advance_commission_tiers() -> Dict[str, Any]:
    return _run(ADVANCE_TIERS)


@typed_task(name="mentr.tasks.settlement_tasks.run_manual_payout_check")
def run_manual_payout_check() -> Dict[str, Any]:
    """Operator-triggered sweep; same lock as the scheduled one."""
    logger.info("Manual payout check requested")
    return _run(PAYOUT_SWEEP)


@typed_task(
    bind=True, max_retries=3, name="mentr.tasks.settlement_tasks.force_process_payout"
)
def force_process_payout(self: Any, booking_id: str) -> Dict[str, Any]:
    """
    Settle one booking now, bypassing the escrow window.

    Transient gateway failures are retried by Celery with the same idempotency
    key, so a transfer that reached the processor is not repeated.
    """
    from mentr.database import SessionLocal

    db: Session = SessionLocal()
    try:
        outcome = SettlementService(db, build_transfer_gateway()).force_process_payout(
            booking_id, include_failed=self.request.retries > 0
        )
    finally:
        db.close()

    if outcome.retryable and self.request.retries < self.max_retries:
        logger.warning(
            "Forced payout hit a transient failure; retrying",
            extra={"booking_id": booking_id, "reason": outcome.reason},
        )
        retry_kwargs = {"booking_id": booking_id}
        raise self.retry(kwargs=retry_kwargs, countdown=60 * (2**self.request.retries))
    return outcome.to_dict()
