# backend/mentr/services/booking_service.py
"""
Booking Service for the Mentr settlement engine.

Owns the booking lifecycle:
pending -> confirmed -> completed -> reviewable -> reviewed, with pending and
confirmed also able to move to cancelled. Cancellation is the only path that
touches money here; it records the refund intent in the same transaction as
the status change and executes it once that transaction has committed.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.enums import (
    BookingStatus,
    CancelledBy,
    PaymentMethod,
    PaymentStatus,
    RefundStatus,
    RescheduleStatus,
)
from ..core.exceptions import (
    CancellationWindowException,
    ConflictException,
    ForbiddenException,
    InvalidTransitionException,
    NotFoundException,
    ValidationException,
)
from ..domain.actor import Actor
from ..domain.settlement_results import RefundOutcome
from ..integrations.transfer_gateway import TransferGateway
from ..models.booking import Booking
from ..repositories.factory import RepositoryFactory
from ..schemas.settlement import CancelBookingRequest, CreateBookingRequest
from .base import BaseService
from .notification_service import NotificationCategory, NotificationService
from .refund_policy_engine import RefundPolicyEngine, RefundQuote
from .refund_service import RefundService
from .wallet_service import WalletService

logger = logging.getLogger(__name__)

AUTO_CANCEL_NOTE = "Auto-cancelled due to incomplete payment after {hours} hours"
RESCHEDULE_REJECTED_REASON = "Booking was cancelled"


@dataclass
class CancellationResult:
    booking: Booking
    cancelled_by: CancelledBy
    quote: RefundQuote
    refund: Optional[RefundOutcome] = None
    rejected_reschedules: int = 0


class BookingService(BaseService):
    """
    Service layer for the booking state machine.

    Every transition checks the current status first and raises
    InvalidTransitionException without touching the row when it is not allowed.
    """

    def __init__(
        self,
        db: Session,
        gateway: TransferGateway,
        *,
        refund_service: Optional[RefundService] = None,
        wallet_service: Optional[WalletService] = None,
        notification_service: Optional[NotificationService] = None,
        policy_engine: Optional[RefundPolicyEngine] = None,
    ):
        super().__init__(db)
        self.booking_repository = RepositoryFactory.create_booking_repository(db)
        self.notification_service = notification_service or NotificationService(db)
        self.wallet_service = wallet_service or WalletService(db)
        self.policy_engine = policy_engine or RefundPolicyEngine()
        self.refund_service = refund_service or RefundService(
            db,
            gateway,
            wallet_service=self.wallet_service,
            notification_service=self.notification_service,
            policy_engine=self.policy_engine,
        )

    def get_booking(self, booking_id: str, for_update: bool = False) -> Booking:
        booking = self.booking_repository.get_by_id(booking_id, for_update=for_update)
        if booking is None:
            raise NotFoundException("Booking not found", details={"booking_id": booking_id})
        return booking

    @staticmethod
    def _require_transition(booking: Booking, target: BookingStatus) -> None:
        if not booking.can_transition_to(target.value):
            raise InvalidTransitionException("booking", booking.status, target.value)

    @BaseService.measure_operation("create_booking")
    def create_booking(
        self, request: CreateBookingRequest, now: Optional[datetime] = None
    ) -> Booking:
        """
        Create a pending booking.

        The mentor's cancellation policy is copied onto the booking so later
        policy edits never change the rules for this session.
        """
        now = now or datetime.now(timezone.utc)
        if request.scheduled_at_utc <= now:
            raise ValidationException(
                "Session must be scheduled in the future",
                code="SESSION_IN_PAST",
                details={"scheduled_at_utc": request.scheduled_at_utc.isoformat()},
            )

        with self.transaction():
            booking = self.booking_repository.create(
                service_id=request.service_id,
                mentor_id=request.mentor_id,
                student_id=request.student_id,
                scheduled_at=request.scheduled_at,
                scheduled_at_utc=request.scheduled_at_utc,
                mentor_timezone=request.mentor_timezone,
                student_timezone=request.student_timezone,
                duration_minutes=request.duration_minutes,
                amount=request.amount,
                status=BookingStatus.PENDING.value,
                payment_status=PaymentStatus.PENDING.value,
                policy_minimum_cancellation_hours=(
                    request.minimum_cancellation_hours
                    or settings.default_minimum_cancellation_hours
                ),
                policy_mentor_id=request.mentor_id,
                policy_set_at=now,
                created_at=now,
                updated_at=now,
            )

        self.logger.info(
            "Booking created",
            extra={
                "booking_id": booking.id,
                "mentor_id": booking.mentor_id,
                "student_id": booking.student_id,
                "amount": str(booking.amount),
            },
        )
        return booking

    @BaseService.measure_operation("confirm_payment")
    def confirm_payment(self, booking_id: str, payment_reference: str) -> Booking:
        """Record an external payment and confirm the booking."""
        if not payment_reference:
            raise ValidationException("A payment reference is required")
        with self.transaction():
            booking = self.get_booking(booking_id, for_update=True)
            if booking.is_paid:
                raise ConflictException(
                    "Booking is already paid", code="ALREADY_PAID", details={"booking_id": booking_id}
                )
            self._require_transition(booking, BookingStatus.CONFIRMED)
            booking.payment_status = PaymentStatus.PAID.value
            booking.payment_method = PaymentMethod.EXTERNAL.value
            booking.payment_reference = payment_reference
            booking.status = BookingStatus.CONFIRMED.value
            self.db.flush()
        return booking

    @BaseService.measure_operation("pay_with_tokens")
    def pay_with_tokens(self, actor: Actor, booking_id: str) -> Booking:
        """
        Pay for a pending booking from the student's token wallet.

        The wallet debit, its transaction record and the booking confirmation
        commit together or not at all.
        """
        with self.transaction():
            booking = self.get_booking(booking_id, for_update=True)
            if actor.user_id != booking.student_id:
                raise ForbiddenException(
                    "Only the booking's student can pay for it",
                    details={"booking_id": booking_id},
                )
            if booking.is_paid:
                raise ConflictException(
                    "Booking is already paid", code="ALREADY_PAID", details={"booking_id": booking_id}
                )
            self._require_transition(booking, BookingStatus.CONFIRMED)

            txn = self.wallet_service.debit(
                user_id=booking.student_id,
                amount=booking.amount,
                description=f"Payment for booking {booking.id}",
                reference=f"payment:booking:{booking.id}",
            )
            booking.payment_status = PaymentStatus.PAID.value
            booking.payment_method = PaymentMethod.TOKENS.value
            booking.payment_reference = txn.id
            booking.status = BookingStatus.CONFIRMED.value
            self.db.flush()

        self.logger.info(
            "Booking paid with tokens",
            extra={"booking_id": booking.id, "student_id": booking.student_id},
        )
        return booking

    @BaseService.measure_operation("complete_booking")
    def complete_booking(self, booking_id: str, completed_at: Optional[datetime] = None) -> Booking:
        """Mark the session held; starts the escrow and dispute windows."""
        completed_at = completed_at or datetime.now(timezone.utc)
        with self.transaction():
            booking = self.get_booking(booking_id, for_update=True)
            self._require_transition(booking, BookingStatus.COMPLETED)
            booking.complete(completed_at, settings.dispute_filing_window_hours)
            self.db.flush()
        return booking

    def open_review(self, booking_id: str) -> Booking:
        with self.transaction():
            booking = self.get_booking(booking_id, for_update=True)
            self._require_transition(booking, BookingStatus.REVIEWABLE)
            booking.status = BookingStatus.REVIEWABLE.value
            self.db.flush()
        return booking

    def record_review(self, booking_id: str) -> Booking:
        with self.transaction():
            booking = self.get_booking(booking_id, for_update=True)
            self._require_transition(booking, BookingStatus.REVIEWED)
            booking.status = BookingStatus.REVIEWED.value
            self.db.flush()
        return booking

    @BaseService.measure_operation("cancel_booking")
    def cancel_booking(
        self,
        actor: Actor,
        request: CancelBookingRequest,
        now: Optional[datetime] = None,
    ) -> CancellationResult:
        """
        Cancel a pending or confirmed booking on behalf of one of its parties.

        Transaction 1 cancels the booking, rejects open reschedule requests and
        records the refund as pending. Transaction 2 moves the money. A crash in
        between leaves a pending refund for the refund-expiry sweep.

        Raises:
            ForbiddenException: actor is neither the mentor nor the student
            InvalidTransitionException: booking is not pending or confirmed
            CancellationWindowException: student inside the policy window when
                late cancellations are configured to be rejected
        """
        now = now or datetime.now(timezone.utc)

        with self.transaction():
            booking = self.get_booking(request.booking_id, for_update=True)
            if actor.user_id == booking.mentor_id:
                cancelled_by = CancelledBy.MENTOR
            elif actor.user_id == booking.student_id:
                cancelled_by = CancelledBy.STUDENT
            else:
                raise ForbiddenException(
                    "Only the booking's mentor or student can cancel it",
                    details={"booking_id": booking.id},
                )
            self._require_transition(booking, BookingStatus.CANCELLED)

            if (
                cancelled_by is CancelledBy.STUDENT
                and settings.late_student_cancellation == "reject"
                and self.policy_engine.is_inside_window(booking, now)
            ):
                raise CancellationWindowException(
                    self.policy_engine.minimum_hours_for(booking), booking.hours_until_session(now)
                )

            booking.cancel(actor.user_id, cancelled_by.value, request.reason, now)
            rejected = self._reject_pending_reschedules(booking, actor.user_id, now)
            quote, refund = self.refund_service.prepare_cancellation_refund(
                booking, cancelled_by, requested_route=request.refund_route, now=now
            )

            counterparty = booking.student_id if cancelled_by is CancelledBy.MENTOR else booking.mentor_id
            self.notification_service.request(
                recipient_id=counterparty,
                category=NotificationCategory.BOOKING_CANCELLED,
                booking_id=booking.id,
                payload={
                    "cancelled_by": cancelled_by.value,
                    "reason": request.reason,
                    "scheduled_at_utc": booking.scheduled_at_utc,
                    "refund": quote.to_payload() if booking.is_paid else None,
                },
            )
            self.db.flush()
            needs_refund = refund is not None and refund.status == RefundStatus.PENDING.value

        self.logger.info(
            "Booking cancelled",
            extra={
                "booking_id": booking.id,
                "cancelled_by": cancelled_by.value,
                "refund_amount": str(quote.amount),
                "policy_basis": quote.policy_basis,
            },
        )

        result = CancellationResult(
            booking=booking,
            cancelled_by=cancelled_by,
            quote=quote,
            rejected_reschedules=rejected,
        )
        if needs_refund:
            result.refund = self.refund_service.execute_refund(booking.id, now)
        elif refund is not None:
            result.refund = self.refund_service.get_refund_status(booking.id)
        return result

    def _reject_pending_reschedules(self, booking: Booking, actor_id: str, now: datetime) -> int:
        pending = self.booking_repository.find_pending_reschedules(booking.id)
        for reschedule in pending:
            reschedule.status = RescheduleStatus.REJECTED.value
            reschedule.responded_by_id = actor_id
            reschedule.responded_at = now
            reschedule.response_reason = RESCHEDULE_REJECTED_REASON
            if reschedule.requested_by_id != actor_id:
                self.notification_service.request(
                    recipient_id=reschedule.requested_by_id,
                    category=NotificationCategory.RESCHEDULE_REJECTED,
                    booking_id=booking.id,
                    payload={"reason": RESCHEDULE_REJECTED_REASON},
                    dedupe_key=reschedule.id,
                )
        return len(pending)

    @BaseService.measure_operation("auto_cancel_unpaid_bookings")
    def auto_cancel_unpaid_bookings(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Cancel pending bookings still unpaid after the payment timeout.

        Each booking is claimed with a status compare-and-set, so a payment
        confirmed while the sweep runs wins and the booking is left alone.
        """
        now = now or datetime.now(timezone.utc)
        timeout_hours = settings.pending_payment_timeout_hours
        cutoff = now - timedelta(hours=timeout_hours)
        note = AUTO_CANCEL_NOTE.format(hours=timeout_hours)
        results: Dict[str, Any] = {"cancelled": 0, "skipped": 0, "booking_ids": []}

        candidates = [
            (b.id, b.mentor_id, b.student_id) for b in self.booking_repository.find_stale_unpaid(cutoff)
        ]
        for booking_id, mentor_id, student_id in candidates:
            with self.transaction():
                won = self.booking_repository.compare_and_set_status(
                    booking_id,
                    [BookingStatus.PENDING.value],
                    BookingStatus.CANCELLED.value,
                    cancelled_at=now,
                    cancelled_by_role=CancelledBy.SYSTEM.value,
                    cancellation_reason=note,
                    notes=note,
                    updated_at=now,
                )
                if not won:
                    results["skipped"] += 1
                    continue
                for recipient in (student_id, mentor_id):
                    self.notification_service.request(
                        recipient_id=recipient,
                        category=NotificationCategory.BOOKING_AUTO_CANCELLED,
                        booking_id=booking_id,
                        payload={"reason": note},
                    )
            results["cancelled"] += 1
            results["booking_ids"].append(booking_id)

        if results["cancelled"]:
            self.logger.info(
                f"Auto-cancelled {results['cancelled']} unpaid bookings",
                extra={"cutoff": cutoff.isoformat(), "skipped": results["skipped"]},
            )
        return results

    def get_pending_booking_stats(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(hours=settings.pending_payment_timeout_hours)
        stats = self.booking_repository.pending_stats(cutoff)
        oldest = stats.get("oldest_pending_at")
        stats["oldest_pending_hours"] = (
            round((now - oldest).total_seconds() / 3600, 2) if oldest is not None else None
        )
        stats["timeout_hours"] = settings.pending_payment_timeout_hours
        return stats


__all__ = ["AUTO_CANCEL_NOTE", "BookingService", "CancellationResult"]
