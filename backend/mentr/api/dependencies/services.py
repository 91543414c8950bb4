# backend/mentr/api/dependencies/services.py
"""
Service layer dependencies for dependency injection.
"""

from functools import lru_cache

from fastapi import Depends
from sqlalchemy.orm import Session

from ...core.job_lock import LocalJobLock, RedisJobLock, build_job_lock
from ...integrations.transfer_gateway import TransferGateway, build_transfer_gateway
from ...services.settlement_service import SettlementService
from .database import get_db


@lru_cache(maxsize=1)
def _gateway_singleton() -> TransferGateway:
    return build_transfer_gateway()


def get_transfer_gateway() -> TransferGateway:
    """Process-wide gateway; tests override this dependency."""
    return _gateway_singleton()


def get_settlement_service(
    db: Session = Depends(get_db),
    gateway: TransferGateway = Depends(get_transfer_gateway),
) -> SettlementService:
    return SettlementService(db, gateway)


@lru_cache(maxsize=1)
def _job_lock_singleton() -> LocalJobLock | RedisJobLock:
    return build_job_lock()


def get_job_lock() -> LocalJobLock | RedisJobLock:
    """Shared with the scheduler's lock keys, so a manual sweep never overlaps a timed one."""
    return _job_lock_singleton()
