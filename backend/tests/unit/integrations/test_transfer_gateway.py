# backend/tests/unit/integrations/test_transfer_gateway.py
"""Tests for the Stripe adapter, its error mapping and the in-memory gateway."""

from types import SimpleNamespace
from unittest.mock import patch

import pytest
import stripe

from mentr.core.exceptions import (
    AccountNotReadyError,
    InsufficientFundsError,
    TerminalTransferError,
    TransientTransferError,
)
from mentr.integrations.transfer_gateway import (
    FakeTransferGateway,
    StripeTransferGateway,
    TransferGateway,
    build_transfer_gateway,
    map_stripe_error,
)


class TestMapStripeError:
    @pytest.mark.parametrize(
        "exc",
        [
            stripe.APIConnectionError("connection reset"),
            stripe.RateLimitError("slow down"),
        ],
    )
    def test_network_errors_are_transient(self, exc):
        mapped = map_stripe_error(exc)
        assert isinstance(mapped, TransientTransferError)
        assert mapped.retryable is True
        assert mapped.failure_code == "network_error"

    def test_insufficient_balance(self):
        mapped = map_stripe_error(
            stripe.InvalidRequestError("Insufficient funds", None, code="balance_insufficient")
        )
        assert isinstance(mapped, InsufficientFundsError)
        assert mapped.retryable is True

    @pytest.mark.parametrize(
        "message,code",
        [
            ("No such destination", "account_invalid"),
            ("No such account", "resource_missing"),
            ("Destination account lacks the transfers capability", None),
        ],
    )
    def test_account_problems_are_not_ready(self, message, code):
        mapped = map_stripe_error(stripe.InvalidRequestError(message, "destination", code=code))
        assert isinstance(mapped, AccountNotReadyError)
        assert mapped.retryable is False

    def test_other_invalid_requests_are_terminal(self):
        mapped = map_stripe_error(stripe.InvalidRequestError("Amount too small", "amount"))
        assert isinstance(mapped, TerminalTransferError)
        assert mapped.failure_code == "invalid_request"

    @pytest.mark.parametrize(
        "exc", [stripe.AuthenticationError("bad key"), stripe.PermissionError("forbidden")]
    )
    def test_auth_errors_are_terminal(self, exc):
        mapped = map_stripe_error(exc)
        assert isinstance(mapped, TerminalTransferError)
        assert mapped.failure_code == "processor_auth"

    def test_card_error_is_terminal(self):
        mapped = map_stripe_error(stripe.CardError("Card declined", None, "card_declined"))
        assert isinstance(mapped, TerminalTransferError)
        assert mapped.failure_code == "card_declined"

    def test_api_error_is_transient(self):
        mapped = map_stripe_error(stripe.APIError("Internal error"))
        assert isinstance(mapped, TransientTransferError)
        assert mapped.failure_code == "processor_error"

    def test_unknown_exception_is_transient(self):
        mapped = map_stripe_error(RuntimeError("socket closed"))
        assert isinstance(mapped, TransientTransferError)
        assert mapped.failure_code == "unexpected_error"
        assert mapped.message == "socket closed"


class TestStripeTransferGateway:
    def test_transfer_passes_idempotency_key(self):
        gateway = StripeTransferGateway()
        with patch.object(stripe.Transfer, "create", return_value=SimpleNamespace(id="tr_123")) as create:
            result = gateway.transfer("acct_1", 7500, "usd", "payout:booking:b1", {"booking_id": "b1"})

        assert result.transfer_id == "tr_123"
        create.assert_called_once_with(
            amount=7500,
            currency="usd",
            destination="acct_1",
            metadata={"booking_id": "b1"},
            idempotency_key="payout:booking:b1",
        )

    def test_transfer_failure_is_mapped(self):
        gateway = StripeTransferGateway()
        with patch.object(stripe.Transfer, "create", side_effect=stripe.APIConnectionError("reset")):
            with pytest.raises(TransientTransferError) as exc_info:
                gateway.transfer("acct_1", 7500, "usd", "k")

        assert isinstance(exc_info.value.__cause__, stripe.APIConnectionError)

    @pytest.mark.parametrize(
        "reference,param", [("pi_123", "payment_intent"), ("ch_123", "charge")]
    )
    def test_refund_targets_payment_or_charge(self, reference, param):
        gateway = StripeTransferGateway()
        with patch.object(stripe.Refund, "create", return_value=SimpleNamespace(id="re_1")) as create:
            result = gateway.refund(reference, 5000, "refund:booking:b1")

        assert result.refund_id == "re_1"
        create.assert_called_once_with(
            amount=5000, idempotency_key="refund:booking:b1", **{param: reference}
        )

    def test_account_readiness(self):
        gateway = StripeTransferGateway()
        ready = SimpleNamespace(details_submitted=True, charges_enabled=True, payouts_enabled=True)
        partial = SimpleNamespace(details_submitted=True, charges_enabled=True, payouts_enabled=False)

        with patch.object(stripe.Account, "retrieve", return_value=ready):
            assert gateway.is_account_ready_for_payouts("acct_1") is True
        with patch.object(stripe.Account, "retrieve", return_value=partial):
            assert gateway.is_account_ready_for_payouts("acct_1") is False
        with patch.object(
            stripe.Account, "retrieve", side_effect=stripe.InvalidRequestError("No such account", "id")
        ):
            assert gateway.is_account_ready_for_payouts("acct_missing") is False

    def test_readiness_lookup_outage_raises(self):
        gateway = StripeTransferGateway()
        with patch.object(stripe.Account, "retrieve", side_effect=stripe.APIConnectionError("reset")):
            with pytest.raises(TransientTransferError):
                gateway.is_account_ready_for_payouts("acct_1")


class TestFakeTransferGateway:
    def test_same_key_returns_same_transfer(self):
        gateway = FakeTransferGateway(ready_accounts={"acct_1"})

        first = gateway.transfer("acct_1", 100, "usd", "k1")
        second = gateway.transfer("acct_1", 100, "usd", "k1")
        third = gateway.transfer("acct_1", 100, "usd", "k2")

        assert first == second
        assert third != first
        assert set(gateway.transfers) == {"k1", "k2"}
        assert len(gateway.calls) == 3

    def test_fail_next_raises_once(self):
        gateway = FakeTransferGateway()
        gateway.fail_next = TerminalTransferError("nope")

        with pytest.raises(TerminalTransferError):
            gateway.refund("pi_1", 100, "r1")
        assert gateway.refund("pi_1", 100, "r1").refund_id.startswith("re_fake_")

    def test_readiness_follows_configured_accounts(self):
        gateway = FakeTransferGateway(ready_accounts={"acct_1"})
        assert gateway.is_account_ready_for_payouts("acct_1") is True
        assert gateway.is_account_ready_for_payouts("acct_2") is False

    def test_satisfies_protocol(self):
        assert isinstance(FakeTransferGateway(), TransferGateway)
        assert isinstance(StripeTransferGateway(), TransferGateway)


def test_build_without_key_uses_fake_gateway(monkeypatch):
    from mentr.core.config import settings

    monkeypatch.setattr(settings, "stripe_secret_key", None)
    monkeypatch.setattr(settings, "environment", "development")
    assert isinstance(build_transfer_gateway(), FakeTransferGateway)


@pytest.mark.parametrize("environment", ["production", "staging"])
def test_build_without_key_refuses_outside_development(monkeypatch, environment):
    from mentr.core.config import settings

    monkeypatch.setattr(settings, "stripe_secret_key", None)
    monkeypatch.setattr(settings, "environment", environment)

    with pytest.raises(RuntimeError, match="STRIPE_SECRET_KEY"):
        build_transfer_gateway()


def test_build_with_key_uses_stripe(monkeypatch):
    from pydantic import SecretStr

    from mentr.core.config import settings

    monkeypatch.setattr(settings, "stripe_secret_key", SecretStr("sk_test_123"))
    monkeypatch.setattr(settings, "environment", "production")
    monkeypatch.setattr(stripe, "api_key", None)

    assert isinstance(build_transfer_gateway(), StripeTransferGateway)
    assert stripe.api_key == "sk_test_123"
