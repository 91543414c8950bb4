# backend/mentr/routes/admin_payouts.py
"""
Admin payout routes.

Operator controls for the settlement sweep: trigger a pass, force or retry
one booking, and inspect failed, pending and aggregate payout state.
"""

import logging
from typing import List

from fastapi import APIRouter, Depends, Query
from starlette.concurrency import run_in_threadpool

from ..api.dependencies.auth import require_admin_actor
from ..api.dependencies.services import get_job_lock, get_settlement_service
from ..core.exceptions import ConflictException
from ..core.job_lock import LocalJobLock, RedisJobLock, job_lock
from ..domain.actor import Actor
from ..domain.settlement_results import PayoutSweepResult
from ..schemas.settlement import (
    BookingPayoutSummary,
    PayoutStatsResponse,
    PayoutSweepResponse,
    PendingPayoutSummary,
    SettlementOutcomeResponse,
)
from ..services.settlement_scheduler import PAYOUT_SWEEP
from ..services.settlement_service import SettlementService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin/payouts", tags=["admin-payouts"])


def _sweep_under_lock(
    lock: LocalJobLock | RedisJobLock, service: SettlementService, limit: int, admin_id: str
) -> PayoutSweepResult:
    with job_lock(lock, PAYOUT_SWEEP) as acquired:
        if not acquired:
            raise ConflictException(
                "A payout sweep is already running", code="SWEEP_IN_PROGRESS"
            )
        logger.info("Manual payout sweep started", extra={"admin_id": admin_id})
        return service.run_payout_sweep(limit=limit)


@router.post("/run", response_model=PayoutSweepResponse)
async def run_payout_sweep(
    limit: int = Query(500, ge=1, le=5000),
    actor: Actor = Depends(require_admin_actor),
    service: SettlementService = Depends(get_settlement_service),
    lock: LocalJobLock | RedisJobLock = Depends(get_job_lock),
) -> PayoutSweepResponse:
    """Run one payout sweep now, unless a scheduled pass is already running."""
    result = await run_in_threadpool(_sweep_under_lock, lock, service, limit, actor.user_id)
    return PayoutSweepResponse(**result.to_dict())


@router.post("/{booking_id}/process", response_model=SettlementOutcomeResponse)
async def force_process_payout(
    booking_id: str,
    actor: Actor = Depends(require_admin_actor),
    service: SettlementService = Depends(get_settlement_service),
) -> SettlementOutcomeResponse:
    logger.warning(
        "Forced payout requested",
        extra={"booking_id": booking_id, "admin_id": actor.user_id},
    )
    outcome = await run_in_threadpool(service.force_process_payout, booking_id)
    return SettlementOutcomeResponse(**outcome.to_dict())


@router.post("/{booking_id}/retry", response_model=SettlementOutcomeResponse)
async def retry_failed_payout(
    booking_id: str,
    actor: Actor = Depends(require_admin_actor),
    service: SettlementService = Depends(get_settlement_service),
) -> SettlementOutcomeResponse:
    logger.info(
        "Payout retry requested",
        extra={"booking_id": booking_id, "admin_id": actor.user_id},
    )
    outcome = await run_in_threadpool(service.retry_failed_payout, booking_id)
    return SettlementOutcomeResponse(**outcome.to_dict())


@router.get("/failed", response_model=List[BookingPayoutSummary])
async def list_failed_payouts(
    limit: int = Query(100, ge=1, le=500),
    _: Actor = Depends(require_admin_actor),
    service: SettlementService = Depends(get_settlement_service),
) -> List[BookingPayoutSummary]:
    bookings = await run_in_threadpool(service.list_failed_payouts, limit)
    return [BookingPayoutSummary.model_validate(b) for b in bookings]


@router.get("/pending", response_model=List[PendingPayoutSummary])
async def list_pending_payouts(
    limit: int = Query(200, ge=1, le=1000),
    _: Actor = Depends(require_admin_actor),
    service: SettlementService = Depends(get_settlement_service),
) -> List[PendingPayoutSummary]:
    pending = await run_in_threadpool(service.list_pending_payouts, limit=limit)
    rows = []
    for row in pending:
        summary = BookingPayoutSummary.model_validate(row["booking"])
        rows.append(
            PendingPayoutSummary(
                **summary.model_dump(),
                ready=row["ready"],
                gated_by_dispute=row["gated_by_dispute"],
            )
        )
    return rows


@router.get("/stats", response_model=PayoutStatsResponse)
async def get_payout_stats(
    _: Actor = Depends(require_admin_actor),
    service: SettlementService = Depends(get_settlement_service),
) -> PayoutStatsResponse:
    stats = await run_in_threadpool(service.get_payout_stats)
    return PayoutStatsResponse(**stats)
