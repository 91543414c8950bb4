# backend/mentr/services/refund_service.py
"""
Refund execution.

A refund is two steps. ``prepare_refund`` writes the booking's refund record
as ``pending`` inside the caller's transaction (cancellation or dispute
resolution), so the intent survives a crash. ``execute_refund`` then moves the
money in its own transaction: a gateway refund for the original payment
method, or a wallet credit for tokens. The record ends ``processed`` or
``failed`` with a reason; re-running it on a ``processed`` refund is a no-op.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
import logging
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.enums import BookingStatus, CancelledBy, PaymentStatus, RefundStatus, RefundType
from ..core.exceptions import NotFoundException, TransferError, ValidationException
from ..core.money import ZERO, round2, to_minor_units
from ..domain.settlement_results import ErrorKind, RefundOutcome
from ..integrations.transfer_gateway import TransferGateway
from ..models.booking import Booking, BookingRefund
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from .base import BaseService
from .notification_service import NotificationCategory, NotificationService
from .refund_policy_engine import RefundPolicyEngine, RefundQuote
from .wallet_service import WalletService

logger = logging.getLogger(__name__)


def refund_idempotency_key(booking_id: str, generation: int = 0) -> str:
    base = f"refund:booking:{booking_id}"
    return base if generation == 0 else f"{base}:{generation}"


class RefundService(BaseService):
    def __init__(
        self,
        db: Session,
        gateway: TransferGateway,
        wallet_service: Optional[WalletService] = None,
        notification_service: Optional[NotificationService] = None,
        policy_engine: Optional[RefundPolicyEngine] = None,
    ):
        super().__init__(db)
        self.gateway = gateway
        self.policy_engine = policy_engine or RefundPolicyEngine()
        self.booking_repository = RepositoryFactory.create_booking_repository(db)
        self.refund_repository = RepositoryFactory.create_refund_repository(db)
        self.wallet_service = wallet_service or WalletService(db)
        self.notification_service = notification_service or NotificationService(db)

    @staticmethod
    def _outcome(refund: BookingRefund, **overrides: Any) -> RefundOutcome:
        data: Dict[str, Any] = {
            "booking_id": refund.booking_id,
            "status": refund.status,
            "amount": refund.amount or ZERO,
            "refund_type": refund.refund_type,
            "percentage": refund.percentage,
            "external_refund_id": refund.external_refund_id,
            "wallet_transaction_id": refund.wallet_transaction_id,
            "reason": refund.failure_reason,
        }
        data.update(overrides)
        return RefundOutcome(**data)

    def prepare_refund(
        self,
        booking: Booking,
        *,
        amount: Decimal,
        refund_type: RefundType,
        reason: str,
        percentage: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> BookingRefund:
        """
        Record refund intent on the booking. Runs inside the caller's transaction.

        A zero amount records status ``none``. An existing ``processed`` refund is
        returned unchanged.
        """
        now = now or datetime.now(timezone.utc)
        amount = round2(amount)
        if amount < ZERO or amount > round2(booking.amount):
            raise ValidationException(
                "Refund amount must be between 0 and the booking amount",
                code="INVALID_REFUND_AMOUNT",
                details={"amount": str(amount), "booking_amount": str(booking.amount)},
            )

        refund = self.refund_repository.get_by_booking_id(booking.id, for_update=True)
        if refund is not None and refund.status == RefundStatus.PROCESSED.value:
            return refund
        if refund is None:
            refund = self.refund_repository.create(booking_id=booking.id)

        refund.refund_type = refund_type.value
        refund.amount = amount
        refund.percentage = percentage
        refund.reason = reason
        refund.failure_reason = None
        refund.failure_retryable = None
        refund.requested_at = now
        refund.idempotency_key = refund.idempotency_key or refund_idempotency_key(booking.id)
        refund.status = (
            RefundStatus.PENDING.value if amount > ZERO else RefundStatus.NONE.value
        )
        self.db.flush()
        return refund

    def prepare_cancellation_refund(
        self,
        booking: Booking,
        cancelled_by: CancelledBy,
        *,
        requested_route: Optional[RefundType] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[RefundQuote, Optional[BookingRefund]]:
        """Quote the cancellation refund and record it. Unpaid bookings record nothing."""
        now = now or datetime.now(timezone.utc)
        quote = self.policy_engine.quote(booking, cancelled_by, now)
        if not booking.is_paid:
            return quote, None
        route = self.policy_engine.resolve_route(booking, cancelled_by, requested_route)
        refund = self.prepare_refund(
            booking,
            amount=quote.amount,
            refund_type=route,
            reason=f"Cancellation refund ({quote.policy_basis})",
            percentage=quote.percentage,
            now=now,
        )
        return quote, refund

    @BaseService.measure_operation("process_cancellation_refund")
    def process_cancellation_refund(
        self,
        booking_id: str,
        cancelled_by: CancelledBy,
        *,
        requested_route: Optional[RefundType] = None,
        now: Optional[datetime] = None,
    ) -> RefundOutcome:
        """Refund a cancelled booking per its frozen cancellation policy."""
        now = now or datetime.now(timezone.utc)
        with self.transaction():
            booking = self.booking_repository.get_by_id(booking_id, for_update=True)
            if booking is None:
                raise NotFoundException("Booking not found", details={"booking_id": booking_id})
            if booking.status != BookingStatus.CANCELLED.value:
                raise ValidationException(
                    "Only cancelled bookings receive a cancellation refund",
                    details={"booking_id": booking_id, "status": booking.status},
                )
            _, refund = self.prepare_cancellation_refund(
                booking, cancelled_by, requested_route=requested_route, now=now
            )
        if refund is None:
            return RefundOutcome(booking_id=booking_id, status=RefundStatus.NONE.value, amount=ZERO)
        return self.execute_refund(booking_id, now)

    @BaseService.measure_operation("issue_refund")
    def issue_refund(
        self,
        booking_id: str,
        amount: Decimal,
        *,
        reason: str,
        route: Optional[RefundType] = None,
        now: Optional[datetime] = None,
    ) -> RefundOutcome:
        """Refund an explicit amount of a paid booking (dispute resolutions, operators)."""
        now = now or datetime.now(timezone.utc)
        with self.transaction():
            booking = self.booking_repository.get_by_id(booking_id, for_update=True)
            if booking is None:
                raise NotFoundException("Booking not found", details={"booking_id": booking_id})
            if not booking.is_paid:
                raise ValidationException(
                    "Booking has not been paid", details={"booking_id": booking_id}
                )
            self.prepare_refund(
                booking,
                amount=amount,
                refund_type=route or self.policy_engine.resolve_route(booking),
                reason=reason,
                percentage=int(round2(amount) * 100 / round2(booking.amount)) if booking.amount else None,
                now=now,
            )
        return self.execute_refund(booking_id, now)

    @BaseService.measure_operation("execute_refund")
    def execute_refund(self, booking_id: str, now: Optional[datetime] = None) -> RefundOutcome:
        """Move the money for a pending refund and record the result on the booking."""
        now = now or datetime.now(timezone.utc)
        with self.transaction():
            refund = self.refund_repository.get_by_booking_id(booking_id, for_update=True)
            if refund is None:
                raise NotFoundException(
                    "No refund recorded for booking", details={"booking_id": booking_id}
                )
            if refund.status == RefundStatus.PROCESSED.value:
                return self._outcome(refund, already_processed=True)
            if refund.status != RefundStatus.PENDING.value:
                return self._outcome(refund)

            booking = self.booking_repository.get_by_id(booking_id, for_update=True)
            if booking is None:
                raise NotFoundException("Booking not found", details={"booking_id": booking_id})

            refund.attempt_count = (refund.attempt_count or 0) + 1
            if refund.refund_type == RefundType.TOKENS.value:
                outcome = self._execute_token_refund(booking, refund, now)
            else:
                outcome = self._execute_external_refund(booking, refund, now)
            self.db.flush()

        prometheus_metrics.record_refund(refund.refund_type or "unknown", refund.status)
        return outcome

    def _mark_processed(self, booking: Booking, refund: BookingRefund, now: datetime) -> None:
        refund.status = RefundStatus.PROCESSED.value
        refund.processed_at = now
        refund.failure_reason = None
        refund.failure_retryable = None
        if round2(refund.amount) >= round2(booking.amount):
            booking.payment_status = PaymentStatus.REFUNDED.value
        self.notification_service.request(
            recipient_id=booking.student_id,
            category=NotificationCategory.REFUND_PROCESSED,
            booking_id=booking.id,
            payload={
                "amount": str(refund.amount),
                "refund_type": refund.refund_type,
                "percentage": refund.percentage,
            },
        )
        self.logger.info(
            "Refund processed",
            extra={
                "booking_id": booking.id,
                "amount": str(refund.amount),
                "refund_type": refund.refund_type,
            },
        )

    def _mark_failed(
        self, booking: Booking, refund: BookingRefund, reason: str, retryable: bool
    ) -> None:
        refund.status = RefundStatus.FAILED.value
        refund.failure_reason = reason
        refund.failure_retryable = retryable
        self.notification_service.request(
            recipient_id=booking.student_id,
            category=NotificationCategory.REFUND_FAILED,
            booking_id=booking.id,
            payload={"amount": str(refund.amount)},
            dedupe_key=f"{booking.id}:{refund.attempt_count}",
        )
        self.logger.error(
            "Refund failed",
            extra={
                "booking_id": booking.id,
                "reason": reason,
                "retryable": retryable,
                "attempt": refund.attempt_count,
            },
        )

    def _execute_token_refund(
        self, booking: Booking, refund: BookingRefund, now: datetime
    ) -> RefundOutcome:
        txn = self.wallet_service.credit(
            user_id=booking.student_id,
            amount=refund.amount,
            description=f"Refund for booking {booking.id}",
            reference=refund.idempotency_key or refund_idempotency_key(booking.id),
        )
        refund.wallet_transaction_id = txn.id
        self._mark_processed(booking, refund, now)
        return self._outcome(refund)

    def _execute_external_refund(
        self, booking: Booking, refund: BookingRefund, now: datetime
    ) -> RefundOutcome:
        if not booking.payment_reference:
            reason = "Booking has no payment reference to refund against"
            self._mark_failed(booking, refund, reason, retryable=False)
            return self._outcome(refund, error_kind=ErrorKind.TERMINAL)
        try:
            result = self.gateway.refund(
                booking.payment_reference,
                to_minor_units(refund.amount),
                refund.idempotency_key or refund_idempotency_key(booking.id),
            )
        except TransferError as exc:
            prometheus_metrics.record_transfer_failure(
                "transient" if exc.retryable else "terminal", exc.failure_code
            )
            self._mark_failed(booking, refund, f"{exc.failure_code}: {exc.message}", exc.retryable)
            return self._outcome(
                refund, error_kind=ErrorKind.TRANSIENT if exc.retryable else ErrorKind.TERMINAL
            )
        refund.external_refund_id = result.refund_id
        self._mark_processed(booking, refund, now)
        return self._outcome(refund)

    @BaseService.measure_operation("retry_refund")
    def retry_refund(self, booking_id: str, now: Optional[datetime] = None) -> RefundOutcome:
        """
        Re-drive a failed or stuck refund.

        After a terminal failure a fresh idempotency key is used, since the
        processor replays the stored error for a reused key.
        """
        with self.transaction():
            refund = self.refund_repository.get_by_booking_id(booking_id, for_update=True)
            if refund is None:
                raise NotFoundException(
                    "No refund recorded for booking", details={"booking_id": booking_id}
                )
            if refund.status == RefundStatus.PROCESSED.value:
                return self._outcome(refund, already_processed=True)
            if refund.status == RefundStatus.NONE.value:
                raise ValidationException("Booking has nothing to refund")
            if refund.status == RefundStatus.FAILED.value:
                if refund.failure_retryable is False and refund.refund_type == RefundType.EXTERNAL.value:
                    refund.idempotency_key = refund_idempotency_key(
                        booking_id, (refund.attempt_count or 0)
                    )
                refund.status = RefundStatus.PENDING.value
            self.db.flush()
        return self.execute_refund(booking_id, now)

    @BaseService.measure_operation("expire_stale_refunds")
    def expire_stale_refunds(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Sweep refunds left ``pending``.

        Older than the expiry window: marked failed for an operator. Older than
        the retry delay: re-driven with the same idempotency key.
        """
        now = now or datetime.now(timezone.utc)
        expiry_cutoff = now - timedelta(hours=settings.refund_pending_expiry_hours)
        retry_cutoff = now - timedelta(minutes=settings.refund_pending_retry_minutes)
        counts = {"expired": 0, "retried": 0, "processed": 0}

        with self.transaction():
            for refund in self.refund_repository.find_pending_before(expiry_cutoff):
                booking = self.booking_repository.get_by_id(refund.booking_id)
                if booking is None:
                    continue
                self._mark_failed(
                    booking,
                    refund,
                    f"Refund expired after {settings.refund_pending_expiry_hours}h pending",
                    retryable=True,
                )
                counts["expired"] += 1
            self.db.flush()

        stale_ids: List[str] = [
            refund.booking_id for refund in self.refund_repository.find_pending_before(retry_cutoff)
        ]
        for booking_id in stale_ids:
            outcome = self.execute_refund(booking_id, now)
            counts["retried"] += 1
            if outcome.status == RefundStatus.PROCESSED.value:
                counts["processed"] += 1
        return counts

    def get_refund_status(self, booking_id: str) -> RefundOutcome:
        refund = self.refund_repository.get_by_booking_id(booking_id)
        if refund is None:
            return RefundOutcome(booking_id=booking_id, status=RefundStatus.NONE.value, amount=ZERO)
        return self._outcome(refund)

    def list_failed_refunds(self, limit: int = 100) -> List[BookingRefund]:
        return self.refund_repository.find_failed(limit=limit)


__all__ = ["RefundService", "refund_idempotency_key"]
