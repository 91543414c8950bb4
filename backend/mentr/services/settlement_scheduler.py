# backend/mentr/services/settlement_scheduler.py
"""
Runs the engine's timer jobs.

Each job gets a fresh session, a single-flight lock keyed by job name, and a
run-state record. ``shutdown()`` stops new runs and asks a running payout
sweep to stop between bookings.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
import threading
import time
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from ..core.job_lock import LocalJobLock, RedisJobLock, build_job_lock, job_lock
from ..integrations.transfer_gateway import TransferGateway, build_transfer_gateway
from ..monitoring.prometheus_metrics import prometheus_metrics
from .booking_service import BookingService
from .commission_service import CommissionService
from .notification_service import NotificationSender, NotificationService
from .refund_service import RefundService
from .settlement_service import SettlementService

logger = logging.getLogger(__name__)

PAYOUT_SWEEP = "payout_sweep"
AUTO_CANCEL_UNPAID = "auto_cancel_unpaid"
REFUND_EXPIRY = "refund_expiry"
DISPATCH_NOTIFICATIONS = "dispatch_notifications"
ADVANCE_TIERS = "advance_tiers"

JOB_NAMES = (PAYOUT_SWEEP, AUTO_CANCEL_UNPAID, REFUND_EXPIRY, DISPATCH_NOTIFICATIONS, ADVANCE_TIERS)


@dataclass
class JobRunState:
    runs: int = 0
    skipped: int = 0
    failures: int = 0
    running: bool = False
    last_started_at: Optional[datetime] = None
    last_finished_at: Optional[datetime] = None
    last_duration_s: Optional[float] = None
    last_result: Optional[Dict[str, Any]] = None
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "runs": self.runs,
            "skipped": self.skipped,
            "failures": self.failures,
            "running": self.running,
            "last_started_at": self.last_started_at.isoformat() if self.last_started_at else None,
            "last_finished_at": self.last_finished_at.isoformat() if self.last_finished_at else None,
            "last_duration_s": self.last_duration_s,
            "last_result": self.last_result,
            "last_error": self.last_error,
        }


@dataclass
class _Job:
    name: str
    handler: Callable[[Session, datetime], Dict[str, Any]]
    state: JobRunState = field(default_factory=JobRunState)


class SettlementScheduler:
    """Single-flight, cancellable runner for the settlement timer jobs."""

    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        *,
        gateway: Optional[TransferGateway] = None,
        lock: Optional[LocalJobLock | RedisJobLock] = None,
        notification_sender: Optional[NotificationSender] = None,
    ) -> None:
        if session_factory is None:
            from ..database import SessionLocal

            session_factory = SessionLocal
        self._session_factory = session_factory
        self._gateway = gateway
        self._lock = lock or build_job_lock()
        self._sender = notification_sender
        self._shutdown = threading.Event()
        self._state_guard = threading.Lock()
        self._jobs: Dict[str, _Job] = {
            PAYOUT_SWEEP: _Job(PAYOUT_SWEEP, self._run_payout_sweep),
            AUTO_CANCEL_UNPAID: _Job(AUTO_CANCEL_UNPAID, self._run_auto_cancel),
            REFUND_EXPIRY: _Job(REFUND_EXPIRY, self._run_refund_expiry),
            DISPATCH_NOTIFICATIONS: _Job(DISPATCH_NOTIFICATIONS, self._run_notifications),
            ADVANCE_TIERS: _Job(ADVANCE_TIERS, self._run_tier_advance),
        }

    @property
    def gateway(self) -> TransferGateway:
        if self._gateway is None:
            self._gateway = build_transfer_gateway()
        return self._gateway

    @property
    def is_shutting_down(self) -> bool:
        return self._shutdown.is_set()

    def shutdown(self) -> None:
        if not self._shutdown.is_set():
            logger.info("Settlement scheduler shutting down")
        self._shutdown.set()

    def job_state(self, job: str) -> JobRunState:
        return self._get_job(job).state

    def states(self) -> Dict[str, Dict[str, Any]]:
        return {name: job.state.to_dict() for name, job in self._jobs.items()}

    def _get_job(self, job: str) -> _Job:
        try:
            return self._jobs[job]
        except KeyError:
            raise ValueError(f"Unknown scheduler job: {job}") from None

    def run_job(self, job: str, now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
        """
        Run one pass of ``job``.

        Returns:
            The job's result dict, or None if the pass was skipped because the
            scheduler is shutting down or another pass holds the job's lock
        """
        entry = self._get_job(job)
        if self.is_shutting_down:
            prometheus_metrics.record_job_run(job, "shutdown")
            return None

        with job_lock(self._lock, job) as acquired:
            if not acquired:
                with self._state_guard:
                    entry.state.skipped += 1
                prometheus_metrics.record_job_run(job, "locked")
                logger.info("Skipping %s: another pass is running", job)
                return None
            return self._execute(entry, now or datetime.now(timezone.utc))

    def _execute(self, entry: _Job, now: datetime) -> Dict[str, Any]:
        state = entry.state
        with self._state_guard:
            state.running = True
            state.last_started_at = now
        started = time.monotonic()
        session = self._session_factory()
        try:
            result = entry.handler(session, now)
        except Exception as exc:
            with self._state_guard:
                state.failures += 1
                state.last_error = f"{type(exc).__name__}: {exc}"
            prometheus_metrics.record_job_run(entry.name, "error")
            logger.error(
                f"Scheduler job {entry.name} failed: {exc}",
                exc_info=True,
                extra={"job": entry.name, "error_type": type(exc).__name__},
            )
            raise
        finally:
            session.close()
            with self._state_guard:
                state.running = False
                state.last_finished_at = datetime.now(timezone.utc)
                state.last_duration_s = round(time.monotonic() - started, 3)

        with self._state_guard:
            state.runs += 1
            state.last_result = result
            state.last_error = None
        prometheus_metrics.record_job_run(entry.name, "success")
        return result

    # Handlers

    def _run_payout_sweep(self, session: Session, now: datetime) -> Dict[str, Any]:
        service = SettlementService(session, self.gateway)
        return service.run_payout_sweep(now, should_stop=self._shutdown.is_set).to_dict()

    def _run_auto_cancel(self, session: Session, now: datetime) -> Dict[str, Any]:
        return BookingService(session, self.gateway).auto_cancel_unpaid_bookings(now)

    def _run_refund_expiry(self, session: Session, now: datetime) -> Dict[str, Any]:
        return RefundService(session, self.gateway).expire_stale_refunds(now)

    def _run_notifications(self, session: Session, now: datetime) -> Dict[str, Any]:
        return NotificationService(session).dispatch_pending(self._sender, now)

    def _run_tier_advance(self, session: Session, now: datetime) -> Dict[str, Any]:
        return {"advanced": CommissionService(session).advance_all_tiers(now)}


__all__ = [
    "ADVANCE_TIERS",
    "AUTO_CANCEL_UNPAID",
    "DISPATCH_NOTIFICATIONS",
    "JOB_NAMES",
    "JobRunState",
    "PAYOUT_SWEEP",
    "REFUND_EXPIRY",
    "SettlementScheduler",
]
