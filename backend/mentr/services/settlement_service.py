# backend/mentr/services/settlement_service.py
"""
Settlement Service for the Mentr settlement engine.

Pays mentors for completed bookings once the escrow window has elapsed, and
for paid cold messages immediately. Each payout follows the same sequence:

    a. dispute gate: an active dispute moves the payout to ``disputed`` and stops
    b. split with the mentor's current tier and claim the row as ``processing``,
       persisting the split and the idempotency key before any external call
    c. payout account missing or not ready: ``failed``, not retryable
    d. gateway transfer of the mentor payout, keyed by the idempotency key
    e. success: ``completed``, transfer id stored, earnings credited, tier advanced
    f. failure: ``failed`` with the reason and whether a retry can help

Claims and results are compare-and-set updates on ``payout_status``, so a
dispute filed while the sweep runs and two overlapping sweeps both resolve to
exactly one writer.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.enums import EarningsType, PaymentStatus, PayoutStatus
from ..core.exceptions import (
    AccountNotReadyError,
    ConflictException,
    NotFoundException,
    TransferError,
    ValidationException,
)
from ..core.money import ZERO, round2, to_minor_units
from ..domain.settlement_results import (
    ErrorKind,
    PayoutSweepResult,
    SettlementOutcome,
    SettlementResult,
)
from ..integrations.transfer_gateway import TransferGateway
from ..models.booking import Booking
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from .base import BaseService
from .commission_service import CommissionService, CommissionSplit, split
from .earnings_service import EarningsEntry, EarningsService
from .notification_service import NotificationCategory, NotificationService

logger = logging.getLogger(__name__)


def booking_payout_key(booking_id: str, retry_marker: Optional[str] = None) -> str:
    base = f"payout:booking:{booking_id}"
    return base if retry_marker is None else f"{base}:retry:{retry_marker}"


def message_payout_key(message_id: str) -> str:
    return f"payout:message:{message_id}"


@dataclass
class _TransferAttempt:
    transfer_id: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    reason: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error_kind is None

    @property
    def retryable(self) -> bool:
        return self.error_kind is ErrorKind.TRANSIENT


class SettlementService(BaseService):
    def __init__(
        self,
        db: Session,
        gateway: TransferGateway,
        *,
        commission_service: Optional[CommissionService] = None,
        earnings_service: Optional[EarningsService] = None,
        notification_service: Optional[NotificationService] = None,
    ):
        super().__init__(db)
        self.gateway = gateway
        self.booking_repository = RepositoryFactory.create_booking_repository(db)
        self.dispute_repository = RepositoryFactory.create_dispute_repository(db)
        self.payout_account_repository = RepositoryFactory.create_payout_account_repository(db)
        self.cold_message_repository = RepositoryFactory.create_cold_message_payout_repository(db)
        self.commission_service = commission_service or CommissionService(db)
        self.earnings_service = earnings_service or EarningsService(db, self.commission_service)
        self.notification_service = notification_service or NotificationService(db)

    # Eligibility

    @staticmethod
    def escrow_elapsed(booking: Booking, now: datetime) -> bool:
        if booking.dispute_period_ends is not None:
            return booking.dispute_period_ends <= now
        if booking.updated_at is None:
            return False
        return booking.updated_at <= now - timedelta(hours=settings.escrow_window_hours)

    def find_ready_bookings(self, now: Optional[datetime] = None, limit: int = 500) -> List[Booking]:
        """Settleable bookings past the escrow window whose payout is unset or pending."""
        now = now or datetime.now(timezone.utc)
        escrow_cutoff = now - timedelta(hours=settings.escrow_window_hours)
        return self.booking_repository.find_ready_for_payout(now, escrow_cutoff, limit=limit)

    def split_for_booking(self, booking: Booking, tier: Optional[str]) -> CommissionSplit:
        """
        Commission split for a booking, net of any amount refunded by a dispute.

        With the ``gross`` basis commission is charged on the full amount and
        the refund comes out of the mentor's share.
        """
        refunded = round2(booking.refunded_amount or ZERO)
        if refunded <= ZERO:
            return split(booking.amount, tier)
        if settings.partial_refund_commission_basis == "gross":
            gross = split(booking.amount, tier)
            payout = gross.amount - refunded - gross.commission
            if payout < ZERO:
                raise ValidationException(
                    "Refund exceeds the mentor share under gross commission",
                    code="REFUND_EXCEEDS_PAYOUT",
                    details={"booking_id": booking.id, "refunded_amount": str(refunded)},
                )
            return CommissionSplit(
                amount=gross.amount,
                tier=gross.tier,
                rate=gross.rate,
                commission=gross.commission,
                payout=payout,
            )
        return split(round2(booking.amount) - refunded, tier)

    def _ineligible_reason(
        self, booking: Booking, now: datetime, force: bool, expected: Sequence[Optional[str]]
    ) -> Optional[str]:
        if not booking.is_settleable:
            return f"Booking is {booking.status}, not completed"
        if booking.payment_status != PaymentStatus.PAID.value:
            return f"Booking payment is {booking.payment_status}"
        if not force and not self.escrow_elapsed(booking, now):
            return "Escrow window has not elapsed"
        if booking.payout_status not in expected:
            return f"Payout is already {booking.payout_status}"
        return None

    # Booking settlement

    @BaseService.measure_operation("settle_booking")
    def settle_booking(
        self,
        booking_id: str,
        now: Optional[datetime] = None,
        *,
        force: bool = False,
        allow_failed: bool = False,
    ) -> SettlementOutcome:
        """
        Settle one booking.

        Args:
            booking_id: Booking to pay out
            now: Clock override
            force: Skip the escrow window check (the dispute gate still applies)
            allow_failed: Also claim a booking whose previous payout failed

        Returns:
            SettlementOutcome describing what happened
        """
        now = now or datetime.now(timezone.utc)
        expected: List[Optional[str]] = [None, PayoutStatus.PENDING.value]
        if allow_failed:
            expected.append(PayoutStatus.FAILED.value)

        with self.transaction():
            booking = self.booking_repository.get_by_id(booking_id, for_update=True)
            if booking is None:
                raise NotFoundException("Booking not found", details={"booking_id": booking_id})

            if booking.payout_status == PayoutStatus.DISPUTED.value:
                return SettlementOutcome(
                    booking_id,
                    SettlementResult.DISPUTED,
                    payout_status=booking.payout_status,
                    reason="Payout is held by a dispute",
                )
            skip_reason = self._ineligible_reason(booking, now, force, expected)
            if skip_reason is not None:
                return SettlementOutcome(
                    booking_id,
                    SettlementResult.SKIPPED,
                    payout_status=booking.payout_status,
                    error_kind=ErrorKind.VALIDATION,
                    reason=skip_reason,
                )

            # a. dispute gate
            if self.dispute_repository.get_active_for_booking(booking_id) is not None:
                return self._hold_for_dispute(booking, expected)

            # b. split and claim
            tier = self.commission_service.current_tier(booking.mentor_id)
            booking_split = self.split_for_booking(booking, tier)
            retry_marker = None
            if (
                booking.payout_status == PayoutStatus.FAILED.value
                and booking.payout_retryable is False
                and booking.payout_idempotency_key
            ):
                # The processor replays a stored terminal error for a reused key
                retry_marker = str(int(now.timestamp()))
            key = booking_payout_key(booking_id, retry_marker)
            claimed = self.booking_repository.compare_and_set_payout(
                booking_id,
                expected,
                PayoutStatus.PROCESSING.value,
                platform_commission=booking_split.commission,
                mentor_payout=booking_split.payout,
                commission_tier=booking_split.tier,
                payout_date=now,
                payout_idempotency_key=key,
                payout_failure_reason=None,
                payout_retryable=None,
                payout_transfer_id=None,
            )
            if not claimed:
                return SettlementOutcome(
                    booking_id,
                    SettlementResult.SKIPPED,
                    reason="Payout was claimed by another writer",
                )

        self.logger.info(
            "Booking payout claimed",
            extra={
                "booking_id": booking_id,
                "tier": booking_split.tier,
                "commission": str(booking_split.commission),
                "payout": str(booking_split.payout),
                "idempotency_key": key,
            },
        )
        return self._finish_claimed_booking(booking_id, now)

    def _hold_for_dispute(
        self, booking: Booking, expected: Sequence[Optional[str]]
    ) -> SettlementOutcome:
        booking_id = booking.id
        mentor_id = booking.mentor_id
        held = self.booking_repository.compare_and_set_payout(
            booking_id, expected, PayoutStatus.DISPUTED.value
        )
        if held:
            self.notification_service.request(
                recipient_id=mentor_id,
                category=NotificationCategory.PAYOUT_DISPUTED,
                booking_id=booking_id,
            )
            prometheus_metrics.record_payout(SettlementResult.DISPUTED.value)
            self.logger.info("Booking payout held by dispute", extra={"booking_id": booking_id})
        return SettlementOutcome(
            booking_id,
            SettlementResult.DISPUTED,
            payout_status=PayoutStatus.DISPUTED.value,
            reason="Payout is held by a dispute",
        )

    def _send_payout(
        self,
        *,
        mentor_id: str,
        amount: Any,
        idempotency_key: str,
        metadata: Dict[str, str],
    ) -> _TransferAttempt:
        """Steps c and d. Zero payouts complete without calling the gateway."""
        if round2(amount) <= ZERO:
            return _TransferAttempt()

        account = self.payout_account_repository.get_by_mentor(mentor_id)
        try:
            if account is None or not account.external_account_id:
                raise AccountNotReadyError("Mentor has no payout account")
            if not self.gateway.is_account_ready_for_payouts(account.external_account_id):
                raise AccountNotReadyError("Mentor payout account is not ready for payouts")
            result = self.gateway.transfer(
                account.external_account_id,
                to_minor_units(amount),
                settings.stripe_currency,
                idempotency_key,
                metadata,
            )
        except TransferError as exc:
            kind = ErrorKind.TRANSIENT if exc.retryable else ErrorKind.TERMINAL
            prometheus_metrics.record_transfer_failure(kind.value, exc.failure_code)
            self.logger.warning(
                "Payout transfer failed",
                extra={
                    "mentor_id": mentor_id,
                    "idempotency_key": idempotency_key,
                    "failure_code": exc.failure_code,
                    "retryable": exc.retryable,
                },
            )
            return _TransferAttempt(error_kind=kind, reason=f"{exc.failure_code}: {exc.message}")
        except Exception as exc:
            # Outcome unknown; the stored idempotency key makes a retry safe
            prometheus_metrics.record_transfer_failure(ErrorKind.TRANSIENT.value, "unexpected_error")
            self.logger.exception(
                "Unexpected error sending payout",
                extra={"mentor_id": mentor_id, "idempotency_key": idempotency_key},
            )
            return _TransferAttempt(
                error_kind=ErrorKind.TRANSIENT,
                reason=f"unexpected_error: {type(exc).__name__}: {exc}",
            )
        return _TransferAttempt(transfer_id=result.transfer_id)

    def _finish_claimed_booking(self, booking_id: str, now: datetime) -> SettlementOutcome:
        """Steps c-f for a booking already claimed as ``processing``."""
        booking = self.booking_repository.get_by_id(booking_id)
        if booking is None or booking.payout_status != PayoutStatus.PROCESSING.value:
            return SettlementOutcome(
                booking_id,
                SettlementResult.SKIPPED,
                payout_status=booking.payout_status if booking else None,
                reason="Payout is not in processing",
            )

        mentor_id = booking.mentor_id
        payout = booking.mentor_payout or ZERO
        key = booking.payout_idempotency_key or booking_payout_key(booking_id)
        attempt = self._send_payout(
            mentor_id=mentor_id,
            amount=payout,
            idempotency_key=key,
            metadata={"booking_id": booking_id, "mentor_id": mentor_id},
        )
        outcome = SettlementOutcome(
            booking_id,
            SettlementResult.COMPLETED if attempt.succeeded else SettlementResult.FAILED,
            commission=booking.platform_commission,
            payout=payout,
            tier=booking.commission_tier,
            transfer_id=attempt.transfer_id,
            idempotency_key=key,
            error_kind=attempt.error_kind,
            reason=attempt.reason,
        )

        with self.transaction():
            if attempt.succeeded:
                recorded = self.booking_repository.compare_and_set_payout(
                    booking_id,
                    [PayoutStatus.PROCESSING.value],
                    PayoutStatus.COMPLETED.value,
                    payout_transfer_id=attempt.transfer_id,
                    payout_date=now,
                    payout_failure_reason=None,
                    payout_retryable=None,
                )
                if recorded:
                    self.earnings_service.add_earnings(
                        mentor_id, EarningsEntry(payout, EarningsType.SESSION, booking_id), now
                    )
                    self.notification_service.request(
                        recipient_id=mentor_id,
                        category=NotificationCategory.PAYOUT_COMPLETED,
                        booking_id=booking_id,
                        payload={"amount": str(payout), "transfer_id": attempt.transfer_id},
                    )
            else:
                recorded = self.booking_repository.compare_and_set_payout(
                    booking_id,
                    [PayoutStatus.PROCESSING.value],
                    PayoutStatus.FAILED.value,
                    payout_failure_reason=attempt.reason,
                    payout_retryable=attempt.retryable,
                )
                if recorded:
                    self.notification_service.request(
                        recipient_id=mentor_id,
                        category=NotificationCategory.PAYOUT_FAILED,
                        booking_id=booking_id,
                        payload={"reason": attempt.reason, "retryable": attempt.retryable},
                        dedupe_key=key,
                    )

        if not recorded:
            return SettlementOutcome(
                booking_id,
                SettlementResult.SKIPPED,
                idempotency_key=key,
                reason="Payout result was recorded by another writer",
            )

        outcome.payout_status = (
            PayoutStatus.COMPLETED.value if attempt.succeeded else PayoutStatus.FAILED.value
        )
        prometheus_metrics.record_payout(outcome.outcome.value)
        log = self.logger.info if attempt.succeeded else self.logger.error
        log(
            f"Booking payout {outcome.outcome.value}",
            extra={
                "booking_id": booking_id,
                "mentor_id": mentor_id,
                "transfer_id": attempt.transfer_id,
                "idempotency_key": key,
                "reason": attempt.reason,
            },
        )
        return outcome

    # Sweep

    @BaseService.measure_operation("run_payout_sweep")
    def run_payout_sweep(
        self,
        now: Optional[datetime] = None,
        *,
        limit: int = 500,
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> PayoutSweepResult:
        """
        One scheduler pass: reconcile stuck claims, then settle every ready booking.

        A claim left in ``processing`` past the stale threshold (worker died
        between claim and result) is re-driven with its stored idempotency key,
        so a transfer that did reach the processor is not sent twice.
        """
        now = now or datetime.now(timezone.utc)
        result = PayoutSweepResult()

        stale_cutoff = now - timedelta(minutes=settings.payout_processing_stale_minutes)
        stuck_ids = [b.id for b in self.booking_repository.find_stuck_processing(stale_cutoff)]
        for booking_id in stuck_ids:
            if should_stop is not None and should_stop():
                break
            self.logger.warning("Reconciling stale payout claim", extra={"booking_id": booking_id})
            try:
                outcome = self._finish_claimed_booking(booking_id, now)
            except Exception as exc:
                self.logger.exception(
                    "Unexpected error reconciling payout", extra={"booking_id": booking_id}
                )
                outcome = SettlementOutcome(
                    booking_id,
                    SettlementResult.FAILED,
                    error_kind=ErrorKind.TRANSIENT,
                    reason=f"{type(exc).__name__}: {exc}",
                )
            result.record(outcome)
            result.reconciled += 1

        ready_ids = [b.id for b in self.find_ready_bookings(now, limit=limit)]
        for booking_id in ready_ids:
            if should_stop is not None and should_stop():
                self.logger.info("Payout sweep stopping early for shutdown")
                break
            try:
                outcome = self.settle_booking(booking_id, now)
            except Exception as exc:
                self.logger.exception(
                    "Unexpected error settling booking", extra={"booking_id": booking_id}
                )
                outcome = SettlementOutcome(
                    booking_id,
                    SettlementResult.FAILED,
                    error_kind=ErrorKind.TRANSIENT,
                    reason=f"{type(exc).__name__}: {exc}",
                )
            result.record(outcome)

        self.logger.info("Payout sweep finished", extra=result.to_dict())
        return result

    # Operator actions

    def force_process_payout(
        self, booking_id: str, now: Optional[datetime] = None, *, include_failed: bool = False
    ) -> SettlementOutcome:
        """
        Settle now regardless of the escrow window; the dispute gate still applies.

        ``include_failed`` also re-claims a payout left ``failed`` by an earlier
        attempt, which is how a retried task picks up its own transient failure.
        """
        return self.settle_booking(booking_id, now, force=True, allow_failed=include_failed)

    def retry_failed_payout(self, booking_id: str, now: Optional[datetime] = None) -> SettlementOutcome:
        booking = self.booking_repository.get_by_id(booking_id)
        if booking is None:
            raise NotFoundException("Booking not found", details={"booking_id": booking_id})
        if booking.payout_status != PayoutStatus.FAILED.value:
            raise ValidationException(
                "Only failed payouts can be retried",
                code="PAYOUT_NOT_FAILED",
                details={"booking_id": booking_id, "payout_status": booking.payout_status},
            )
        return self.settle_booking(booking_id, now, force=True, allow_failed=True)

    def list_failed_payouts(self, limit: int = 100) -> List[Booking]:
        return self.booking_repository.find_failed_payouts(limit=limit)

    def list_pending_payouts(
        self, now: Optional[datetime] = None, limit: int = 200
    ) -> List[Dict[str, Any]]:
        """Bookings awaiting payout with whether each is ready and whether a dispute holds it."""
        now = now or datetime.now(timezone.utc)
        rows = []
        for booking in self.booking_repository.find_awaiting_payout(limit=limit):
            rows.append(
                {
                    "booking": booking,
                    "ready": self.escrow_elapsed(booking, now),
                    "gated_by_dispute": self.dispute_repository.get_active_for_booking(booking.id)
                    is not None,
                }
            )
        return rows

    def get_payout_stats(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        totals = self.booking_repository.sum_completed_payouts()
        return {
            "by_status": self.booking_repository.count_by_payout_status(),
            "total_mentor_payouts": round2(totals["mentor_payouts"]),
            "total_platform_commission": round2(totals["platform_commission"]),
            "failed_retryable": self.booking_repository.count(
                payout_status=PayoutStatus.FAILED.value, payout_retryable=True
            ),
            "generated_at": now or datetime.now(timezone.utc),
        }

    def get_mentor_payout_history(
        self, mentor_id: str, limit: int = 50, offset: int = 0
    ) -> Dict[str, Any]:
        bookings = self.booking_repository.find_mentor_payout_history(
            mentor_id, limit=limit, offset=offset
        )
        return {
            "mentor_id": mentor_id,
            "payouts": [booking.settlement_snapshot() for booking in bookings],
            "earnings": self.earnings_service.get_earnings_summary(mentor_id),
        }

    # Cold messages

    @BaseService.measure_operation("settle_cold_message")
    def settle_cold_message(
        self,
        mentor_id: str,
        message_id: str,
        amount: Any,
        now: Optional[datetime] = None,
    ) -> SettlementOutcome:
        """
        Pay a mentor for a paid cold message. Not gated by the escrow window.

        Safe to call again for the same message: a completed payout is returned
        as skipped and a failed one is retried with the same key.
        """
        now = now or datetime.now(timezone.utc)
        gross = round2(amount)
        if gross < ZERO:
            raise ValidationException("Amount must not be negative", code="NEGATIVE_AMOUNT")
        key = message_payout_key(message_id)
        claimable = [PayoutStatus.PENDING.value, PayoutStatus.FAILED.value]

        with self.transaction():
            record = self.cold_message_repository.get_by_message_id(message_id)
            if record is None:
                record = self.cold_message_repository.create(
                    message_id=message_id,
                    mentor_id=mentor_id,
                    amount=gross,
                    payout_status=PayoutStatus.PENDING.value,
                )
            elif record.mentor_id != mentor_id or round2(record.amount) != gross:
                raise ConflictException(
                    "Message payout already recorded with different details",
                    code="MESSAGE_PAYOUT_CONFLICT",
                    details={"message_id": message_id},
                )
            if record.payout_status not in claimable:
                return SettlementOutcome(
                    message_id,
                    SettlementResult.SKIPPED,
                    payout_status=record.payout_status,
                    transfer_id=record.payout_transfer_id,
                    idempotency_key=record.payout_idempotency_key,
                    reason=f"Message payout is already {record.payout_status}",
                )

            message_split = split(gross, self.commission_service.current_tier(mentor_id))
            record_id = record.id
            claimed = self.cold_message_repository.compare_and_set_payout(
                record_id,
                claimable,
                PayoutStatus.PROCESSING.value,
                platform_commission=message_split.commission,
                mentor_payout=message_split.payout,
                commission_tier=message_split.tier,
                payout_date=now,
                payout_idempotency_key=key,
                payout_failure_reason=None,
                payout_retryable=None,
            )
            if not claimed:
                return SettlementOutcome(
                    message_id,
                    SettlementResult.SKIPPED,
                    reason="Payout was claimed by another writer",
                )

        attempt = self._send_payout(
            mentor_id=mentor_id,
            amount=message_split.payout,
            idempotency_key=key,
            metadata={"message_id": message_id, "mentor_id": mentor_id},
        )
        with self.transaction():
            if attempt.succeeded:
                self.cold_message_repository.compare_and_set_payout(
                    record_id,
                    [PayoutStatus.PROCESSING.value],
                    PayoutStatus.COMPLETED.value,
                    payout_transfer_id=attempt.transfer_id,
                    payout_date=now,
                )
                self.earnings_service.add_earnings(
                    mentor_id,
                    EarningsEntry(message_split.payout, EarningsType.MESSAGE, message_id),
                    now,
                )
            else:
                self.cold_message_repository.compare_and_set_payout(
                    record_id,
                    [PayoutStatus.PROCESSING.value],
                    PayoutStatus.FAILED.value,
                    payout_failure_reason=attempt.reason,
                    payout_retryable=attempt.retryable,
                )
                self.notification_service.request(
                    recipient_id=mentor_id,
                    category=NotificationCategory.PAYOUT_FAILED,
                    payload={"message_id": message_id, "reason": attempt.reason},
                    dedupe_key=f"{key}:{int(now.timestamp())}",
                )

        outcome = SettlementResult.COMPLETED if attempt.succeeded else SettlementResult.FAILED
        prometheus_metrics.record_payout(outcome.value, source="message")
        return SettlementOutcome(
            message_id,
            outcome,
            payout_status=(
                PayoutStatus.COMPLETED.value if attempt.succeeded else PayoutStatus.FAILED.value
            ),
            commission=message_split.commission,
            payout=message_split.payout,
            tier=message_split.tier,
            transfer_id=attempt.transfer_id,
            idempotency_key=key,
            error_kind=attempt.error_kind,
            reason=attempt.reason,
        )


__all__ = ["SettlementService", "booking_payout_key", "message_payout_key"]
