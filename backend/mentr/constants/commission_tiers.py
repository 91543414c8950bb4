"""Commission tier table: platform cut and qualification thresholds per tier."""

from __future__ import annotations

from decimal import Decimal
from typing import Dict, List, TypedDict

DEFAULT_TIER = "tier1"

# Platform commission rate per tier; strictly decreasing with tier
COMMISSION_RATES: Dict[str, Decimal] = {
    "tier1": Decimal("0.25"),
    "tier2": Decimal("0.22"),
    "tier3": Decimal("0.20"),
    "tier4": Decimal("0.18"),
    "tier5": Decimal("0.16"),
    "tier6": Decimal("0.14"),
    "tier7": Decimal("0.12"),
    "tier8": Decimal("0.08"),
}

TIER_ORDER: List[str] = list(COMMISSION_RATES.keys())


class TierThreshold(TypedDict):
    min_sessions: int
    min_earnings: Decimal
    require_both: bool


# Tiers 1-7 qualify on either criterion; tier8 requires both
TIER_THRESHOLDS: Dict[str, TierThreshold] = {
    "tier1": {"min_sessions": 0, "min_earnings": Decimal("0"), "require_both": False},
    "tier2": {"min_sessions": 3, "min_earnings": Decimal("100"), "require_both": False},
    "tier3": {"min_sessions": 6, "min_earnings": Decimal("300"), "require_both": False},
    "tier4": {"min_sessions": 11, "min_earnings": Decimal("750"), "require_both": False},
    "tier5": {"min_sessions": 21, "min_earnings": Decimal("1500"), "require_both": False},
    "tier6": {"min_sessions": 36, "min_earnings": Decimal("3000"), "require_both": False},
    "tier7": {"min_sessions": 51, "min_earnings": Decimal("5000"), "require_both": False},
    "tier8": {"min_sessions": 100, "min_earnings": Decimal("10000"), "require_both": True},
}
