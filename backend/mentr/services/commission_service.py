# backend/mentr/services/commission_service.py
"""
Commission tier calculator.

The module-level functions are pure: tier -> rate, (amount, tier) -> split,
stats -> tier. CommissionService applies them to a mentor's stored aggregate:
automatic advancement only moves forward, admins may set any tier.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from ..constants.commission_tiers import (
    COMMISSION_RATES,
    DEFAULT_TIER,
    TIER_ORDER,
    TIER_THRESHOLDS,
)
from ..core.exceptions import NotFoundException, ValidationException
from ..core.money import ZERO, round2, to_money
from ..models.earnings import MentorEarnings
from ..repositories.factory import RepositoryFactory
from .base import BaseService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommissionSplit:
    amount: Decimal
    tier: str
    rate: Decimal
    commission: Decimal
    payout: Decimal

    def to_payload(self) -> dict[str, object]:
        return {
            "amount": str(self.amount),
            "tier": self.tier,
            "rate": str(self.rate),
            "commission": str(self.commission),
            "payout": str(self.payout),
        }


@dataclass(frozen=True)
class MentorStats:
    completed_sessions: int
    total_earnings: Decimal


def normalize_tier(tier: Optional[str]) -> str:
    """Missing or unknown tiers fall back to tier1."""
    if tier and tier in COMMISSION_RATES:
        return tier
    return DEFAULT_TIER


def rate_for_tier(tier: Optional[str]) -> Decimal:
    return COMMISSION_RATES[normalize_tier(tier)]


def split(amount: Any, tier: Optional[str]) -> CommissionSplit:
    """
    Split a gross amount into platform commission and mentor payout.

    Commission is rounded to cents; payout is the remainder, so
    commission + payout == amount exactly.
    """
    gross = round2(amount)
    if gross < ZERO:
        raise ValidationException("Amount must not be negative", code="NEGATIVE_AMOUNT")
    resolved = normalize_tier(tier)
    rate = COMMISSION_RATES[resolved]
    commission = round2(gross * rate)
    return CommissionSplit(
        amount=gross,
        tier=resolved,
        rate=rate,
        commission=commission,
        payout=gross - commission,
    )


def _qualifies(stats: MentorStats, tier: str) -> bool:
    threshold = TIER_THRESHOLDS[tier]
    by_sessions = stats.completed_sessions >= threshold["min_sessions"]
    by_earnings = to_money(stats.total_earnings) >= threshold["min_earnings"]
    if threshold["require_both"]:
        return by_sessions and by_earnings
    return by_sessions or by_earnings


def calculate_tier(stats: MentorStats) -> str:
    """Highest tier whose thresholds the stats satisfy."""
    result = DEFAULT_TIER
    for tier in TIER_ORDER:
        if _qualifies(stats, tier):
            result = tier
    return result


def next_tier(tier: Optional[str]) -> Optional[str]:
    index = TIER_ORDER.index(normalize_tier(tier))
    if index + 1 >= len(TIER_ORDER):
        return None
    return TIER_ORDER[index + 1]


def tier_rank(tier: Optional[str]) -> int:
    return TIER_ORDER.index(normalize_tier(tier))


def tier_progress(stats: MentorStats, current_tier: Optional[str]) -> Dict[str, Any]:
    """Percent progress (0-100) toward the next tier on each criterion."""
    upcoming = next_tier(current_tier)
    if upcoming is None:
        return {"next_tier": None, "sessions_progress": 100, "earnings_progress": 100}
    threshold = TIER_THRESHOLDS[upcoming]
    sessions_needed = threshold["min_sessions"]
    earnings_needed = threshold["min_earnings"]
    sessions_pct = min(100, int(stats.completed_sessions * 100 / sessions_needed)) if sessions_needed else 100
    earnings_pct = (
        min(100, int(to_money(stats.total_earnings) * 100 / earnings_needed)) if earnings_needed else 100
    )
    return {
        "next_tier": upcoming,
        "next_rate": str(COMMISSION_RATES[upcoming]),
        "sessions_needed": max(0, sessions_needed - stats.completed_sessions),
        "earnings_needed": str(max(ZERO, round2(earnings_needed - to_money(stats.total_earnings)))),
        "sessions_progress": sessions_pct,
        "earnings_progress": earnings_pct,
        "requires_both": threshold["require_both"],
    }


class CommissionService(BaseService):
    """Applies tier rules to the stored mentor earnings aggregate."""

    def __init__(self, db: Session):
        super().__init__(db)
        self.earnings_repository = RepositoryFactory.create_earnings_repository(db)

    def current_tier(self, mentor_id: str) -> str:
        earnings = self.earnings_repository.get_by_mentor(mentor_id)
        return normalize_tier(earnings.commission_tier if earnings else None)

    def split_for_mentor(self, mentor_id: str, amount: Any) -> CommissionSplit:
        return split(amount, self.current_tier(mentor_id))

    def advance_tier(self, earnings: MentorEarnings, now: Optional[datetime] = None) -> bool:
        """
        Recompute the tier from cumulative stats and move it forward if higher.

        Never downgrades. Caller owns the transaction and the aggregate's CAS.
        """
        stats = MentorStats(
            completed_sessions=earnings.completed_sessions or 0,
            total_earnings=earnings.total_earnings or ZERO,
        )
        computed = calculate_tier(stats)
        if tier_rank(computed) <= tier_rank(earnings.commission_tier):
            return False
        previous = earnings.commission_tier
        earnings.commission_tier = computed
        earnings.last_tier_update = now or datetime.now(timezone.utc)
        self.logger.info(
            "Mentor commission tier advanced",
            extra={"mentor_id": earnings.mentor_id, "from_tier": previous, "to_tier": computed},
        )
        return True

    @BaseService.measure_operation("advance_all_tiers")
    def advance_all_tiers(self, now: Optional[datetime] = None) -> int:
        """Scheduled catch-up pass over every mentor aggregate."""
        advanced = 0
        with self.transaction():
            for mentor_id in self.earnings_repository.list_mentor_ids():
                earnings = self.earnings_repository.get_by_mentor(mentor_id)
                if earnings is not None and self.advance_tier(earnings, now):
                    advanced += 1
        return advanced

    @BaseService.measure_operation("set_tier")
    def set_tier(self, admin_id: str, mentor_id: str, tier: str, reason: str) -> MentorEarnings:
        """Administrative override; any tier, either direction."""
        if tier not in COMMISSION_RATES:
            raise ValidationException(
                f"Unknown commission tier: {tier}",
                code="INVALID_TIER",
                details={"allowed": TIER_ORDER},
            )
        if not reason or not reason.strip():
            raise ValidationException("A reason is required for a tier override")
        with self.transaction():
            earnings = self.earnings_repository.get_or_create(mentor_id)
            previous = earnings.commission_tier
            earnings.commission_tier = tier
            earnings.last_tier_update = datetime.now(timezone.utc)
            earnings.tier_overridden_by = admin_id
            earnings.tier_override_reason = reason.strip()
            self.db.flush()
        self.logger.warning(
            "Commission tier overridden by admin",
            extra={
                "mentor_id": mentor_id,
                "admin_id": admin_id,
                "from_tier": previous,
                "to_tier": tier,
                "reason": reason,
            },
        )
        return earnings

    def get_tier_info(self, mentor_id: str) -> Dict[str, Any]:
        earnings = self.earnings_repository.get_by_mentor(mentor_id)
        if earnings is None:
            raise NotFoundException("No earnings record for mentor", details={"mentor_id": mentor_id})
        tier = normalize_tier(earnings.commission_tier)
        stats = MentorStats(earnings.completed_sessions, earnings.total_earnings)
        return {
            "mentor_id": mentor_id,
            "tier": tier,
            "rate": str(rate_for_tier(tier)),
            "progress": tier_progress(stats, tier),
        }


__all__ = [
    "CommissionService",
    "CommissionSplit",
    "MentorStats",
    "calculate_tier",
    "next_tier",
    "normalize_tier",
    "rate_for_tier",
    "split",
    "tier_progress",
]
