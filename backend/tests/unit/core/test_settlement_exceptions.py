# backend/tests/unit/core/test_settlement_exceptions.py
"""Tests for domain exceptions and their HTTP mapping."""

from fastapi import HTTPException

from mentr.core.exceptions import (
    AccountNotReadyError,
    CancellationWindowException,
    ConflictException,
    DuplicateDisputeException,
    ForbiddenException,
    InsufficientFundsError,
    InsufficientTokenBalanceException,
    InvalidTransitionException,
    NotFoundException,
    ServiceException,
    TerminalTransferError,
    TransientTransferError,
    ValidationException,
)


class TestDomainExceptions:
    def test_status_codes(self):
        assert ValidationException("bad").status_code == 400
        assert ForbiddenException("no").status_code == 403
        assert NotFoundException("gone").status_code == 404
        assert ConflictException("busy").status_code == 409
        assert ServiceException("boom").status_code == 500

    def test_to_http_exception_carries_code_and_details(self):
        exc = NotFoundException("Booking not found", details={"booking_id": "b1"})

        http_exc = exc.to_http_exception()

        assert isinstance(http_exc, HTTPException)
        assert http_exc.status_code == 404
        assert http_exc.detail == {
            "message": "Booking not found",
            "code": "NotFoundException",
            "details": {"booking_id": "b1"},
        }

    def test_invalid_transition(self):
        exc = InvalidTransitionException("booking", "cancelled", "confirmed")
        assert exc.code == "INVALID_TRANSITION"
        assert exc.status_code == 422
        assert exc.details == {"entity": "booking", "current": "cancelled", "target": "confirmed"}

    def test_cancellation_window_message(self):
        exc = CancellationWindowException(24, 5.4321)
        assert exc.message == "Booking cannot be cancelled less than 24 hours before the session"
        assert exc.details["hours_until_session"] == 5.43

    def test_duplicate_dispute_is_a_conflict(self):
        exc = DuplicateDisputeException("b1")
        assert isinstance(exc, ConflictException)
        assert exc.code == "DISPUTE_EXISTS"

    def test_insufficient_tokens(self):
        exc = InsufficientTokenBalanceException("10.00", "25.00")
        assert exc.code == "INSUFFICIENT_TOKENS"
        assert exc.details == {"balance": "10.00", "required": "25.00"}


class TestTransferErrors:
    def test_retryability(self):
        assert TransientTransferError("timeout").retryable is True
        assert InsufficientFundsError("balance").retryable is True
        assert TerminalTransferError("rejected").retryable is False
        assert AccountNotReadyError("onboarding").retryable is False

    def test_failure_codes(self):
        assert TransientTransferError("x").failure_code == "network_error"
        assert InsufficientFundsError("x").failure_code == "insufficient_funds"
        assert AccountNotReadyError("x").failure_code == "account_not_ready"
        assert TerminalTransferError("x", failure_code="card_declined").failure_code == "card_declined"
