# backend/tests/unit/services/test_wallet_service.py
"""Tests for token wallet credits, debits and reference idempotency."""

from decimal import Decimal

import pytest

from mentr.core.config import settings
from mentr.core.exceptions import (
    ConflictException,
    InsufficientTokenBalanceException,
    ValidationException,
)
from mentr.models.wallet import TokenTransaction, TokenWallet
from mentr.services.wallet_service import WalletService


@pytest.fixture
def wallet_service(db):
    return WalletService(db)


def test_credit_creates_wallet_and_transaction(db, wallet_service, student_id):
    txn = wallet_service.credit(
        user_id=student_id, amount="25.00", description="Top up", reference="topup:1"
    )

    assert txn.direction == "credit"
    assert txn.amount == Decimal("25.00")
    assert wallet_service.get_balance(student_id) == Decimal("25.00")
    assert db.query(TokenWallet).filter_by(user_id=student_id).count() == 1


def test_debit_reduces_balance(wallet_service, student_id):
    wallet_service.credit(user_id=student_id, amount=50, description="Top up", reference="t:1")

    wallet_service.debit(user_id=student_id, amount="20.50", description="Session", reference="d:1")

    assert wallet_service.get_balance(student_id) == Decimal("29.50")


def test_debit_rejects_overdraft_and_leaves_balance(db, wallet_service, student_id):
    wallet_service.credit(user_id=student_id, amount=10, description="Top up", reference="t:1")

    with pytest.raises(InsufficientTokenBalanceException) as exc_info:
        wallet_service.debit(user_id=student_id, amount=10.01, description="Session", reference="d:1")

    assert exc_info.value.code == "INSUFFICIENT_TOKENS"
    db.expire_all()
    assert wallet_service.get_balance(student_id) == Decimal("10.00")
    assert wallet_service.find_transaction("d:1") is None


def test_debit_without_wallet_is_insufficient(wallet_service, student_id):
    with pytest.raises(InsufficientTokenBalanceException):
        wallet_service.debit(user_id=student_id, amount=1, description="Session", reference="d:1")


def test_replayed_reference_applies_once(db, wallet_service, student_id):
    first = wallet_service.credit(user_id=student_id, amount=15, description="Refund", reference="r:1")
    second = wallet_service.credit(user_id=student_id, amount=15, description="Refund", reference="r:1")

    assert first.id == second.id
    assert wallet_service.get_balance(student_id) == Decimal("15.00")
    assert db.query(TokenTransaction).filter_by(reference="r:1").count() == 1


def test_reference_reuse_for_other_user_conflicts(wallet_service, student_id, mentor_id):
    wallet_service.credit(user_id=student_id, amount=15, description="Refund", reference="r:1")

    with pytest.raises(ConflictException) as exc_info:
        wallet_service.credit(user_id=mentor_id, amount=15, description="Refund", reference="r:1")

    assert exc_info.value.code == "REFERENCE_CONFLICT"


def test_reference_reuse_for_other_direction_conflicts(wallet_service, student_id):
    wallet_service.credit(user_id=student_id, amount=15, description="Refund", reference="r:1")

    with pytest.raises(ConflictException):
        wallet_service.debit(user_id=student_id, amount=5, description="Session", reference="r:1")


@pytest.mark.parametrize("amount", [0, "-1.00", "0.004"])
def test_non_positive_amounts_rejected(wallet_service, student_id, amount):
    with pytest.raises(ValidationException):
        wallet_service.credit(user_id=student_id, amount=amount, description="x", reference="bad")


def test_missing_reference_rejected(wallet_service, student_id):
    with pytest.raises(ValidationException):
        wallet_service.credit(user_id=student_id, amount=1, description="x", reference="")


def test_balance_matches_transaction_sum(wallet_service, student_id):
    wallet_service.credit(user_id=student_id, amount=40, description="Top up", reference="t:1")
    wallet_service.debit(user_id=student_id, amount=12.5, description="Session", reference="d:1")
    wallet_service.credit(user_id=student_id, amount=6.25, description="Refund", reference="r:1")

    report = wallet_service.verify_wallet_balance(student_id)

    assert report["stored_balance"] == Decimal("33.75")
    assert report["computed_balance"] == Decimal("33.75")
    assert report["consistent"] is True


def test_mismatch_is_reported(db, wallet_service, student_id):
    wallet_service.credit(user_id=student_id, amount=40, description="Top up", reference="t:1")
    wallet = db.query(TokenWallet).filter_by(user_id=student_id).one()
    wallet.balance = Decimal("41.00")
    db.commit()

    assert wallet_service.verify_wallet_balance(student_id)["consistent"] is False


def test_list_transactions_is_scoped_to_user(wallet_service, student_id, mentor_id):
    wallet_service.credit(user_id=student_id, amount=1, description="a", reference="a")
    wallet_service.credit(user_id=student_id, amount=2, description="b", reference="b")
    wallet_service.credit(user_id=mentor_id, amount=3, description="c", reference="c")

    rows = wallet_service.list_transactions(student_id)

    assert {row.reference for row in rows} == {"a", "b"}


class TestConcurrentWriters:
    """Another session commits a wallet change while this one holds a stale copy."""

    @pytest.fixture
    def other_session(self, session_factory):
        session = session_factory()
        yield session
        session.close()

    def test_stale_wallet_is_reloaded_before_debit(
        self, session_factory, wallet_service, other_session, student_id
    ):
        wallet_service.credit(user_id=student_id, amount=100, description="Top up", reference="t:1")
        WalletService(other_session).debit(
            user_id=student_id, amount=30, description="Session", reference="d:1"
        )

        wallet_service.debit(user_id=student_id, amount=60, description="Session", reference="d:2")

        with session_factory() as check:
            checker = WalletService(check)
            assert checker.get_balance(student_id) == Decimal("10.00")
            assert checker.verify_wallet_balance(student_id)["consistent"] is True

    def test_overdraft_detected_against_fresh_balance(
        self, session_factory, wallet_service, other_session, student_id
    ):
        wallet_service.credit(user_id=student_id, amount=100, description="Top up", reference="t:1")
        WalletService(other_session).debit(
            user_id=student_id, amount=80, description="Session", reference="d:1"
        )

        with pytest.raises(InsufficientTokenBalanceException):
            wallet_service.debit(user_id=student_id, amount=50, description="Session", reference="d:2")

        with session_factory() as check:
            checker = WalletService(check)
            assert checker.get_balance(student_id) == Decimal("20.00")
            assert checker.find_transaction("d:2") is None

    def test_exhausted_attempts_raise_conflict(
        self, monkeypatch, session_factory, wallet_service, other_session, student_id
    ):
        monkeypatch.setattr(settings, "wallet_cas_max_attempts", 1)
        wallet_service.credit(user_id=student_id, amount=100, description="Top up", reference="t:1")
        WalletService(other_session).credit(
            user_id=student_id, amount=5, description="Top up", reference="t:2"
        )

        with pytest.raises(ConflictException) as exc_info:
            wallet_service.credit(user_id=student_id, amount=5, description="Top up", reference="t:3")

        assert exc_info.value.code == "WALLET_CONTENTION"
        with session_factory() as check:
            assert WalletService(check).get_balance(student_id) == Decimal("105.00")
