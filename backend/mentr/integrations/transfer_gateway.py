"""External transfer gateway.

The settlement engine moves money only through ``TransferGateway``. Stripe
Connect is the production adapter; ``FakeTransferGateway`` is an in-memory
stand-in for local runs and tests that honours idempotency keys the way the
processor does.

Every failure surfaces as a ``TransferError`` subclass whose ``retryable``
flag tells the caller whether to fail fast or leave the record for retry.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any, Dict, List, Mapping, Optional, Protocol, runtime_checkable
from uuid import uuid4

from pydantic import SecretStr
import stripe

from ..core.exceptions import (
    AccountNotReadyError,
    InsufficientFundsError,
    TerminalTransferError,
    TransferError,
    TransientTransferError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransferResult:
    transfer_id: str


@dataclass(frozen=True)
class RefundResult:
    refund_id: str


@runtime_checkable
class TransferGateway(Protocol):
    def transfer(
        self,
        destination_account_id: str,
        amount_minor_units: int,
        currency: str,
        idempotency_key: str,
        metadata: Optional[Mapping[str, str]] = None,
    ) -> TransferResult:
        ...

    def refund(
        self,
        charge_reference: str,
        amount_minor_units: int,
        idempotency_key: Optional[str] = None,
    ) -> RefundResult:
        ...

    def is_account_ready_for_payouts(self, account_id: str) -> bool:
        ...


def map_stripe_error(exc: Exception) -> TransferError:
    """Translate a Stripe SDK exception into the engine's typed failures."""
    message = getattr(exc, "user_message", None) or str(exc) or type(exc).__name__
    code = getattr(exc, "code", None)

    if isinstance(exc, (stripe.APIConnectionError, stripe.RateLimitError)):
        return TransientTransferError(message, failure_code="network_error")
    if isinstance(exc, stripe.InvalidRequestError):
        if code == "balance_insufficient":
            return InsufficientFundsError(message)
        if code in {"account_invalid", "resource_missing"} or "capabilit" in message.lower():
            return AccountNotReadyError(message)
        return TerminalTransferError(message, failure_code=code or "invalid_request")
    if isinstance(exc, (stripe.AuthenticationError, stripe.PermissionError)):
        return TerminalTransferError(message, failure_code="processor_auth")
    if isinstance(exc, stripe.CardError):
        return TerminalTransferError(message, failure_code=code or "card_error")
    if isinstance(exc, stripe.StripeError):
        # APIError and anything unclassified: the idempotency key makes a retry safe
        return TransientTransferError(message, failure_code=code or "processor_error")
    return TransientTransferError(message, failure_code="unexpected_error")


class StripeTransferGateway:
    """Stripe Connect adapter."""

    def __init__(self, *, api_key: str | SecretStr | None = None) -> None:
        if api_key is not None:
            stripe.api_key = (
                api_key.get_secret_value() if isinstance(api_key, SecretStr) else api_key
            )
        self._logger = logging.getLogger(self.__class__.__name__)

    def transfer(
        self,
        destination_account_id: str,
        amount_minor_units: int,
        currency: str,
        idempotency_key: str,
        metadata: Optional[Mapping[str, str]] = None,
    ) -> TransferResult:
        try:
            transfer = stripe.Transfer.create(  # type: ignore[attr-defined]
                amount=amount_minor_units,
                currency=currency,
                destination=destination_account_id,
                metadata=dict(metadata or {}),
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as exc:
            mapped = map_stripe_error(exc)
            self._logger.error(
                "Stripe transfer failed",
                extra={
                    "destination": destination_account_id,
                    "idempotency_key": idempotency_key,
                    "failure_code": mapped.failure_code,
                    "retryable": mapped.retryable,
                },
            )
            raise mapped from exc

        self._logger.info(
            "Stripe transfer created",
            extra={
                "transfer_id": transfer.id,
                "destination": destination_account_id,
                "amount_cents": amount_minor_units,
                "idempotency_key": idempotency_key,
            },
        )
        return TransferResult(transfer_id=transfer.id)

    def refund(
        self,
        charge_reference: str,
        amount_minor_units: int,
        idempotency_key: Optional[str] = None,
    ) -> RefundResult:
        params: Dict[str, Any] = {"amount": amount_minor_units}
        if charge_reference.startswith("ch_"):
            params["charge"] = charge_reference
        else:
            params["payment_intent"] = charge_reference
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        try:
            refund = stripe.Refund.create(**params)  # type: ignore[attr-defined]
        except stripe.StripeError as exc:
            mapped = map_stripe_error(exc)
            self._logger.error(
                "Stripe refund failed",
                extra={
                    "charge_reference": charge_reference,
                    "failure_code": mapped.failure_code,
                    "retryable": mapped.retryable,
                },
            )
            raise mapped from exc
        return RefundResult(refund_id=refund.id)

    def is_account_ready_for_payouts(self, account_id: str) -> bool:
        try:
            account = stripe.Account.retrieve(account_id)
        except stripe.InvalidRequestError as exc:
            self._logger.warning(
                "Connected account lookup failed", extra={"account_id": account_id, "error": str(exc)}
            )
            return False
        except stripe.StripeError as exc:
            raise map_stripe_error(exc) from exc
        return bool(
            getattr(account, "details_submitted", False)
            and getattr(account, "charges_enabled", False)
            and getattr(account, "payouts_enabled", False)
        )


@dataclass
class _RecordedCall:
    kind: str
    key: Optional[str]
    payload: Dict[str, Any] = field(default_factory=dict)


class FakeTransferGateway:
    """In-memory gateway that de-duplicates by idempotency key like the processor."""

    def __init__(self, ready_accounts: Optional[set[str]] = None) -> None:
        self.ready_accounts: set[str] = set(ready_accounts or ())
        self.calls: List[_RecordedCall] = []
        self._transfers: Dict[str, TransferResult] = {}
        self._refunds: Dict[str, RefundResult] = {}
        self.fail_next: Optional[Exception] = None
        self._logger = logging.getLogger(self.__class__.__name__)

    @property
    def transfers(self) -> Dict[str, TransferResult]:
        return dict(self._transfers)

    def transfer(
        self,
        destination_account_id: str,
        amount_minor_units: int,
        currency: str,
        idempotency_key: str,
        metadata: Optional[Mapping[str, str]] = None,
    ) -> TransferResult:
        self.calls.append(
            _RecordedCall(
                "transfer",
                idempotency_key,
                {
                    "destination": destination_account_id,
                    "amount": amount_minor_units,
                    "currency": currency,
                    "metadata": dict(metadata or {}),
                },
            )
        )
        if self.fail_next is not None:
            error, self.fail_next = self.fail_next, None
            raise error
        if idempotency_key in self._transfers:
            return self._transfers[idempotency_key]
        result = TransferResult(transfer_id=f"tr_fake_{uuid4().hex[:16]}")
        self._transfers[idempotency_key] = result
        self._logger.debug("Fake transfer created", extra={"transfer_id": result.transfer_id})
        return result

    def refund(
        self,
        charge_reference: str,
        amount_minor_units: int,
        idempotency_key: Optional[str] = None,
    ) -> RefundResult:
        self.calls.append(
            _RecordedCall(
                "refund",
                idempotency_key,
                {"charge_reference": charge_reference, "amount": amount_minor_units},
            )
        )
        if self.fail_next is not None:
            error, self.fail_next = self.fail_next, None
            raise error
        key = idempotency_key or f"{charge_reference}:{amount_minor_units}"
        if key not in self._refunds:
            self._refunds[key] = RefundResult(refund_id=f"re_fake_{uuid4().hex[:16]}")
        return self._refunds[key]

    def is_account_ready_for_payouts(self, account_id: str) -> bool:
        return account_id in self.ready_accounts


_FAKE_GATEWAY_ENVIRONMENTS = {"development", "testing"}


def build_transfer_gateway() -> TransferGateway:
    """
    Stripe when a key is configured.

    Only development and test runs may fall back to the in-memory gateway;
    anywhere else a missing key would mark refunds processed with no money moved.
    """
    from ..core.config import settings

    if settings.stripe_secret_key is not None:
        return StripeTransferGateway(api_key=settings.stripe_secret_key)
    if settings.environment not in _FAKE_GATEWAY_ENVIRONMENTS:
        raise RuntimeError(
            f"Refusing to start: STRIPE_SECRET_KEY is required in {settings.environment}"
        )
    logger.warning("No stripe_secret_key configured; using FakeTransferGateway")
    return FakeTransferGateway()


__all__ = [
    "FakeTransferGateway",
    "RefundResult",
    "StripeTransferGateway",
    "TransferGateway",
    "TransferResult",
    "build_transfer_gateway",
    "map_stripe_error",
]
