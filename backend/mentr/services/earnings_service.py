# backend/mentr/services/earnings_service.py
"""
Mentor earnings ledger.

``add_earnings`` is the only writer of a mentor's cumulative earnings. It is
called by the settlement paths after a successful transfer and is safe to
repeat: the (type, source_id) ledger entry makes a second credit for the same
booking or message a no-op. Concurrent credits for the same mentor are
serialized by the aggregate's version column; the loser retries.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ..core.config import settings
from ..core.enums import EarningsType
from ..core.exceptions import ConflictException, ValidationException
from ..core.money import ZERO, round2
from ..models.earnings import MentorEarnings, MentorMonthlyEarnings
from ..repositories.factory import RepositoryFactory
from .base import BaseService
from .commission_service import CommissionService, MentorStats, normalize_tier, tier_progress

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EarningsEntry:
    amount: Decimal
    earnings_type: EarningsType
    source_id: str


class EarningsService(BaseService):
    def __init__(self, db: Session, commission_service: Optional[CommissionService] = None):
        super().__init__(db)
        self.earnings_repository = RepositoryFactory.create_earnings_repository(db)
        self.commission_service = commission_service or CommissionService(db)

    @BaseService.measure_operation("add_earnings")
    def add_earnings(
        self, mentor_id: str, entry: EarningsEntry, now: Optional[datetime] = None
    ) -> bool:
        """
        Credit a settled payout to the mentor's cumulative earnings.

        Increments the total, the type sub-total and count, and the current
        month's bucket, then advances the commission tier if the new stats
        qualify.

        Returns:
            True if applied, False if this source was already credited
        """
        amount = round2(entry.amount)
        if amount < ZERO:
            raise ValidationException("Earnings amount must not be negative")
        now = now or datetime.now(timezone.utc)
        max_attempts = settings.earnings_cas_max_attempts

        with self.transaction():
            for attempt in range(1, max_attempts + 1):
                savepoint = self.db.begin_nested()
                try:
                    if self.earnings_repository.has_ledger_entry(
                        entry.earnings_type.value, entry.source_id
                    ):
                        savepoint.commit()
                        return False
                    earnings = self.earnings_repository.get_or_create(mentor_id)
                    self._apply(earnings, amount, entry.earnings_type)
                    self._apply_month(mentor_id, amount, entry.earnings_type, now)
                    self.earnings_repository.add_ledger_entry(
                        mentor_id=mentor_id,
                        earnings_type=entry.earnings_type.value,
                        source_id=entry.source_id,
                        amount=amount,
                    )
                    self.commission_service.advance_tier(earnings, now)
                    self.db.flush()
                    savepoint.commit()
                except StaleDataError:
                    savepoint.rollback()
                    self.logger.info(
                        "Earnings update lost a concurrent write; retrying",
                        extra={"mentor_id": mentor_id, "attempt": attempt},
                    )
                    continue
                except IntegrityError:
                    savepoint.rollback()
                    if self.earnings_repository.has_ledger_entry(
                        entry.earnings_type.value, entry.source_id
                    ):
                        return False
                    raise
                self.logger.info(
                    "Mentor earnings credited",
                    extra={
                        "mentor_id": mentor_id,
                        "amount": str(amount),
                        "earnings_type": entry.earnings_type.value,
                        "source_id": entry.source_id,
                    },
                )
                return True

        raise ConflictException(
            "Could not update mentor earnings after concurrent modifications",
            code="EARNINGS_CONTENTION",
            details={"mentor_id": mentor_id, "attempts": max_attempts},
        )

    @staticmethod
    def _apply(earnings: MentorEarnings, amount: Decimal, earnings_type: EarningsType) -> None:
        earnings.total_earnings = (earnings.total_earnings or ZERO) + amount
        if earnings_type is EarningsType.SESSION:
            earnings.session_earnings = (earnings.session_earnings or ZERO) + amount
            earnings.completed_sessions = (earnings.completed_sessions or 0) + 1
        else:
            earnings.message_earnings = (earnings.message_earnings or ZERO) + amount
            earnings.cold_messages = (earnings.cold_messages or 0) + 1

    def _apply_month(
        self, mentor_id: str, amount: Decimal, earnings_type: EarningsType, now: datetime
    ) -> MentorMonthlyEarnings:
        bucket = self.earnings_repository.get_month_bucket(mentor_id, now.year, now.month)
        if bucket is None:
            bucket = MentorMonthlyEarnings(
                mentor_id=mentor_id,
                year=now.year,
                month=now.month,
                session_earnings=ZERO,
                message_earnings=ZERO,
                total_earnings=ZERO,
                sessions_completed=0,
                cold_messages=0,
            )
            self.db.add(bucket)
        bucket.total_earnings = (bucket.total_earnings or ZERO) + amount
        if earnings_type is EarningsType.SESSION:
            bucket.session_earnings = (bucket.session_earnings or ZERO) + amount
            bucket.sessions_completed = (bucket.sessions_completed or 0) + 1
        else:
            bucket.message_earnings = (bucket.message_earnings or ZERO) + amount
            bucket.cold_messages = (bucket.cold_messages or 0) + 1
        return bucket

    def get_earnings_summary(self, mentor_id: str) -> Dict[str, Any]:
        earnings = self.earnings_repository.get_by_mentor(mentor_id)
        if earnings is None:
            return {
                "mentor_id": mentor_id,
                "total_earnings": ZERO,
                "session_earnings": ZERO,
                "message_earnings": ZERO,
                "completed_sessions": 0,
                "cold_messages": 0,
                "commission_tier": normalize_tier(None),
                "tier_progress": tier_progress(MentorStats(0, ZERO), None),
            }
        return {
            "mentor_id": mentor_id,
            "total_earnings": earnings.total_earnings,
            "session_earnings": earnings.session_earnings,
            "message_earnings": earnings.message_earnings,
            "completed_sessions": earnings.completed_sessions,
            "cold_messages": earnings.cold_messages,
            "commission_tier": normalize_tier(earnings.commission_tier),
            "tier_progress": tier_progress(
                MentorStats(earnings.completed_sessions, earnings.total_earnings),
                earnings.commission_tier,
            ),
        }

    def get_monthly_earnings(self, mentor_id: str, months: int = 12) -> List[MentorMonthlyEarnings]:
        return self.earnings_repository.list_month_buckets(mentor_id, limit=months)


__all__ = ["EarningsEntry", "EarningsService"]
