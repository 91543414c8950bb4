# backend/tests/unit/services/test_earnings_service.py
"""Tests for the mentor earnings ledger."""

from datetime import timedelta
from decimal import Decimal

import pytest

from mentr.core.enums import EarningsType
from mentr.core.config import settings
from mentr.core.exceptions import ConflictException, ValidationException
from mentr.models.earnings import EarningsLedgerEntry, MentorEarnings, MentorMonthlyEarnings
from mentr.services.earnings_service import EarningsEntry, EarningsService


@pytest.fixture
def earnings_service(db):
    return EarningsService(db)


def _session(amount, source_id):
    return EarningsEntry(Decimal(amount), EarningsType.SESSION, source_id)


def test_first_credit_creates_aggregate_and_bucket(earnings_service, mentor_id, now):
    assert earnings_service.add_earnings(mentor_id, _session("75.00", "b-1"), now) is True

    summary = earnings_service.get_earnings_summary(mentor_id)
    assert summary["total_earnings"] == Decimal("75.00")
    assert summary["session_earnings"] == Decimal("75.00")
    assert summary["completed_sessions"] == 1
    assert summary["commission_tier"] == "tier1"

    months = earnings_service.get_monthly_earnings(mentor_id)
    assert len(months) == 1
    assert (months[0].year, months[0].month) == (now.year, now.month)
    assert months[0].total_earnings == Decimal("75.00")


def test_same_source_is_credited_once(db, earnings_service, mentor_id, now):
    earnings_service.add_earnings(mentor_id, _session("75.00", "b-1"), now)

    assert earnings_service.add_earnings(mentor_id, _session("75.00", "b-1"), now) is False

    earnings = db.query(MentorEarnings).filter_by(mentor_id=mentor_id).one()
    assert earnings.total_earnings == Decimal("75.00")
    assert earnings.completed_sessions == 1
    assert db.query(EarningsLedgerEntry).count() == 1


def test_session_and_message_are_tracked_separately(earnings_service, mentor_id, now):
    earnings_service.add_earnings(mentor_id, _session("60.00", "b-1"), now)
    earnings_service.add_earnings(
        mentor_id, EarningsEntry(Decimal("4.50"), EarningsType.MESSAGE, "m-1"), now
    )

    summary = earnings_service.get_earnings_summary(mentor_id)
    assert summary["total_earnings"] == Decimal("64.50")
    assert summary["message_earnings"] == Decimal("4.50")
    assert summary["cold_messages"] == 1
    assert summary["completed_sessions"] == 1


def test_same_source_id_under_other_type_is_distinct(earnings_service, mentor_id, now):
    assert earnings_service.add_earnings(mentor_id, _session("10.00", "x-1"), now) is True
    assert (
        earnings_service.add_earnings(
            mentor_id, EarningsEntry(Decimal("1.00"), EarningsType.MESSAGE, "x-1"), now
        )
        is True
    )


def test_credits_bucket_by_calendar_month(earnings_service, mentor_id, now):
    earnings_service.add_earnings(mentor_id, _session("10.00", "b-1"), now - timedelta(days=40))
    earnings_service.add_earnings(mentor_id, _session("20.00", "b-2"), now)

    months = earnings_service.get_monthly_earnings(mentor_id)

    assert [m.total_earnings for m in months] == [Decimal("20.00"), Decimal("10.00")]


def test_crossing_threshold_advances_tier(earnings_service, mentor_id, now):
    for index in range(3):
        earnings_service.add_earnings(mentor_id, _session("20.00", f"b-{index}"), now)

    summary = earnings_service.get_earnings_summary(mentor_id)

    assert summary["completed_sessions"] == 3
    assert summary["commission_tier"] == "tier2"


def test_negative_amount_rejected(earnings_service, mentor_id, now):
    with pytest.raises(ValidationException):
        earnings_service.add_earnings(mentor_id, _session("-1.00", "b-1"), now)


def test_summary_for_unknown_mentor_is_empty(earnings_service, mentor_id):
    summary = earnings_service.get_earnings_summary(mentor_id)

    assert summary["total_earnings"] == Decimal("0.00")
    assert summary["commission_tier"] == "tier1"
    assert summary["tier_progress"]["next_tier"] == "tier2"


class TestConcurrentWriters:
    """A second session commits between two credits from the first."""

    @pytest.fixture
    def other_session(self, session_factory):
        session = session_factory()
        yield session
        session.close()

    def _interleave(self, earnings_service, other_session, mentor_id, now):
        # The first session keeps the aggregate it loaded (version 1) cached
        earnings_service.add_earnings(mentor_id, _session("75.00", "b-1"), now)
        EarningsService(other_session).add_earnings(mentor_id, _session("40.00", "b-2"), now)
        return earnings_service.add_earnings(mentor_id, _session("25.00", "b-3"), now)

    def test_stale_aggregate_is_reloaded_and_both_amounts_land(
        self, session_factory, earnings_service, other_session, mentor_id, now
    ):
        assert self._interleave(earnings_service, other_session, mentor_id, now) is True

        with session_factory() as check:
            earnings = check.query(MentorEarnings).filter_by(mentor_id=mentor_id).one()
            bucket = check.query(MentorMonthlyEarnings).filter_by(mentor_id=mentor_id).one()
            assert earnings.total_earnings == Decimal("140.00")
            assert earnings.completed_sessions == 3
            assert bucket.total_earnings == Decimal("140.00")
            assert bucket.sessions_completed == 3
            assert check.query(EarningsLedgerEntry).filter_by(mentor_id=mentor_id).count() == 3

    def test_exhausted_attempts_raise_conflict_without_applying(
        self, monkeypatch, session_factory, earnings_service, other_session, mentor_id, now
    ):
        monkeypatch.setattr(settings, "earnings_cas_max_attempts", 1)

        with pytest.raises(ConflictException) as exc_info:
            self._interleave(earnings_service, other_session, mentor_id, now)

        assert exc_info.value.code == "EARNINGS_CONTENTION"
        with session_factory() as check:
            earnings = check.query(MentorEarnings).filter_by(mentor_id=mentor_id).one()
            assert earnings.total_earnings == Decimal("115.00")
            assert earnings.completed_sessions == 2
            assert check.query(EarningsLedgerEntry).filter_by(source_id="b-3").count() == 0
