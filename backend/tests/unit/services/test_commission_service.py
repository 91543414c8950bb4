# backend/tests/unit/services/test_commission_service.py
"""Tests for commission tiers, splits and tier advancement."""

from decimal import Decimal

import pytest

from mentr.constants.commission_tiers import COMMISSION_RATES, TIER_ORDER
from mentr.core.exceptions import NotFoundException, ValidationException
from mentr.models.earnings import MentorEarnings
from mentr.services.commission_service import (
    CommissionService,
    MentorStats,
    calculate_tier,
    next_tier,
    rate_for_tier,
    split,
    tier_progress,
)


class TestRates:
    def test_rates_strictly_decrease_with_tier(self):
        rates = [COMMISSION_RATES[tier] for tier in TIER_ORDER]
        assert rates == sorted(rates, reverse=True)
        assert len(set(rates)) == len(rates)

    @pytest.mark.parametrize("tier", [None, "", "tier9", "gold"])
    def test_unknown_tier_falls_back_to_tier1(self, tier):
        assert rate_for_tier(tier) == Decimal("0.25")


class TestSplit:
    def test_tier1_on_100(self):
        result = split(Decimal("100.00"), "tier1")
        assert result.commission == Decimal("25.00")
        assert result.payout == Decimal("75.00")

    def test_tier8_on_100(self):
        result = split(Decimal("100.00"), "tier8")
        assert result.commission == Decimal("8.00")
        assert result.payout == Decimal("92.00")

    @pytest.mark.parametrize("amount", ["0.01", "33.33", "49.99", "123.45", "999.99"])
    @pytest.mark.parametrize("tier", TIER_ORDER)
    def test_commission_plus_payout_equals_amount(self, amount, tier):
        result = split(amount, tier)
        assert result.commission + result.payout == Decimal(amount)
        assert result.commission == result.commission.quantize(Decimal("0.01"))

    def test_commission_rounds_half_up(self):
        # 22% of 12.25 is 2.695
        result = split(Decimal("12.25"), "tier2")
        assert result.commission == Decimal("2.70")
        assert result.payout == Decimal("9.55")

    def test_zero_amount(self):
        result = split(Decimal("0"), "tier1")
        assert result.commission == Decimal("0.00")
        assert result.payout == Decimal("0.00")

    def test_negative_amount_rejected(self):
        with pytest.raises(ValidationException):
            split(Decimal("-1.00"), "tier1")


class TestTierCalculation:
    @pytest.mark.parametrize(
        "sessions,earnings,expected",
        [
            (0, "0", "tier1"),
            (3, "0", "tier2"),
            (0, "100", "tier2"),
            (6, "0", "tier3"),
            (10, "749.99", "tier3"),
            (11, "0", "tier4"),
            (0, "5000", "tier7"),
            (99, "20000", "tier7"),
            (150, "9999.99", "tier7"),
            (100, "10000", "tier8"),
        ],
    )
    def test_calculate_tier(self, sessions, earnings, expected):
        assert calculate_tier(MentorStats(sessions, Decimal(earnings))) == expected

    def test_next_tier(self):
        assert next_tier("tier1") == "tier2"
        assert next_tier("tier8") is None
        assert next_tier(None) == "tier2"

    def test_tier_progress_toward_next(self):
        progress = tier_progress(MentorStats(1, Decimal("50")), "tier1")
        assert progress["next_tier"] == "tier2"
        assert progress["sessions_needed"] == 2
        assert progress["earnings_needed"] == "50.00"
        assert progress["sessions_progress"] == 33
        assert progress["earnings_progress"] == 50

    def test_tier_progress_at_top(self):
        progress = tier_progress(MentorStats(500, Decimal("50000")), "tier8")
        assert progress["next_tier"] is None


class TestCommissionService:
    def test_current_tier_defaults_to_tier1(self, db, mentor_id):
        assert CommissionService(db).current_tier(mentor_id) == "tier1"

    def test_advance_tier_moves_forward(self, db, mentor_id, now):
        earnings = MentorEarnings(
            mentor_id=mentor_id, completed_sessions=6, total_earnings=Decimal("10.00")
        )
        db.add(earnings)
        db.commit()

        assert CommissionService(db).advance_tier(earnings, now) is True
        assert earnings.commission_tier == "tier3"
        assert earnings.last_tier_update == now

    def test_advance_tier_never_downgrades(self, db, mentor_id, now):
        earnings = MentorEarnings(
            mentor_id=mentor_id,
            completed_sessions=0,
            total_earnings=Decimal("0.00"),
            commission_tier="tier5",
        )
        db.add(earnings)
        db.commit()

        assert CommissionService(db).advance_tier(earnings, now) is False
        assert earnings.commission_tier == "tier5"

    def test_set_tier_override_is_recorded(self, db, mentor_id):
        service = CommissionService(db)

        earnings = service.set_tier("admin-1", mentor_id, "tier6", "Founding mentor")

        db.expire_all()
        assert service.current_tier(mentor_id) == "tier6"
        assert earnings.tier_overridden_by == "admin-1"
        assert earnings.tier_override_reason == "Founding mentor"

    def test_set_tier_can_downgrade(self, db, mentor_id):
        db.add(MentorEarnings(mentor_id=mentor_id, commission_tier="tier7"))
        db.commit()

        CommissionService(db).set_tier("admin-1", mentor_id, "tier2", "Policy breach")

        assert CommissionService(db).current_tier(mentor_id) == "tier2"

    def test_set_tier_rejects_unknown_tier_and_blank_reason(self, db, mentor_id):
        service = CommissionService(db)
        with pytest.raises(ValidationException):
            service.set_tier("admin-1", mentor_id, "tier9", "typo")
        with pytest.raises(ValidationException):
            service.set_tier("admin-1", mentor_id, "tier2", "   ")

    def test_advance_all_tiers(self, db, now):
        db.add_all(
            [
                MentorEarnings(mentor_id="m-ready", completed_sessions=11),
                MentorEarnings(mentor_id="m-new", completed_sessions=1),
            ]
        )
        db.commit()

        assert CommissionService(db).advance_all_tiers(now) == 1
        assert CommissionService(db).current_tier("m-ready") == "tier4"
        assert CommissionService(db).current_tier("m-new") == "tier1"

    def test_get_tier_info(self, db, mentor_id):
        service = CommissionService(db)
        with pytest.raises(NotFoundException):
            service.get_tier_info(mentor_id)

        db.add(MentorEarnings(mentor_id=mentor_id, completed_sessions=4, total_earnings=Decimal("120")))
        db.commit()

        info = service.get_tier_info(mentor_id)
        assert info["tier"] == "tier1"
        assert info["rate"] == "0.25"
        assert info["progress"]["next_tier"] == "tier2"
