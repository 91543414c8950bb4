# backend/mentr/services/dispute_service.py
"""
Dispute gate for completed bookings.

A student may dispute a completed booking inside the filing window. Filing
moves the booking's payout to ``disputed`` with a compare-and-set, which is
what keeps the settlement sweep away from it. Only an admin decision releases
the hold:

- ``refund_mentee``: the student gets the full amount back, the mentor nothing
- ``pay_mentor``: the payout is reopened and settled immediately
- ``partial_refund``: the student gets the given amount back and the mentor is
  paid from the remainder
- dismissal: the payout is reopened and the normal sweep settles it

Resolved and dismissed disputes are immutable, so the decision's money moves
at most once.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.enums import (
    DisputeDecision,
    DisputeStatus,
    PayoutStatus,
    RefundStatus,
)
from ..core.exceptions import (
    BusinessRuleException,
    ConflictException,
    DisputeWindowExpiredException,
    DuplicateDisputeException,
    ForbiddenException,
    InvalidTransitionException,
    NotFoundException,
    ValidationException,
)
from ..core.money import ZERO, round2
from ..domain.actor import Actor, require_admin
from ..domain.settlement_results import RefundOutcome, SettlementOutcome
from ..integrations.transfer_gateway import TransferGateway
from ..models.booking import Booking
from ..models.dispute import Dispute
from ..repositories.factory import RepositoryFactory
from ..schemas.settlement import (
    DismissDisputeRequest,
    EvidenceItem,
    FileDisputeRequest,
    MentorResponseRequest,
    ResolveDisputeRequest,
)
from .base import BaseService
from .commission_service import rate_for_tier, split
from .notification_service import NotificationCategory, NotificationService
from .refund_policy_engine import RefundPolicyEngine
from .refund_service import RefundService
from .settlement_service import SettlementService

logger = logging.getLogger(__name__)

# Payout states a dispute may still claim; anything else means money already moved
DISPUTABLE_PAYOUT_STATES = (None, PayoutStatus.PENDING.value, PayoutStatus.FAILED.value)


@dataclass
class DisputeResolution:
    dispute: Dispute
    refund: Optional[RefundOutcome] = None
    settlement: Optional[SettlementOutcome] = None


class DisputeService(BaseService):
    def __init__(
        self,
        db: Session,
        gateway: TransferGateway,
        *,
        refund_service: Optional[RefundService] = None,
        settlement_service: Optional[SettlementService] = None,
        notification_service: Optional[NotificationService] = None,
    ):
        super().__init__(db)
        self.booking_repository = RepositoryFactory.create_booking_repository(db)
        self.dispute_repository = RepositoryFactory.create_dispute_repository(db)
        self.notification_service = notification_service or NotificationService(db)
        self.refund_service = refund_service or RefundService(
            db, gateway, notification_service=self.notification_service
        )
        self.settlement_service = settlement_service or SettlementService(
            db, gateway, notification_service=self.notification_service
        )

    def _get_dispute(self, dispute_id: str, for_update: bool = False) -> Dispute:
        dispute = self.dispute_repository.get_with_evidence(dispute_id, for_update=for_update)
        if dispute is None:
            raise NotFoundException("Dispute not found", details={"dispute_id": dispute_id})
        return dispute

    def _require_transition(self, dispute: Dispute, target: DisputeStatus) -> None:
        if not dispute.can_transition_to(target.value):
            raise InvalidTransitionException("dispute", dispute.status, target.value)

    def _add_evidence(self, dispute_id: str, submitted_by: str, items: List[EvidenceItem]) -> None:
        for item in items:
            self.dispute_repository.add_evidence(
                dispute_id,
                submitted_by=submitted_by,
                evidence_type=item.evidence_type.value,
                content=item.content,
                description=item.description,
            )

    def _notify_parties(self, dispute: Dispute, category: str, payload: Optional[dict] = None) -> None:
        for recipient in (dispute.mentee_id, dispute.mentor_id):
            self.notification_service.request(
                recipient_id=recipient,
                category=category,
                booking_id=dispute.booking_id,
                payload=payload or {"dispute_id": dispute.id, "status": dispute.status},
            )

    @staticmethod
    def filing_deadline(booking: Booking) -> Optional[datetime]:
        if booking.dispute_period_ends is not None:
            return booking.dispute_period_ends
        if booking.updated_at is None:
            return None
        return booking.updated_at + timedelta(hours=settings.dispute_filing_window_hours)

    @BaseService.measure_operation("file_dispute")
    def file_dispute(
        self, actor: Actor, request: FileDisputeRequest, now: Optional[datetime] = None
    ) -> Dispute:
        """
        Open a dispute on a completed booking and hold its payout.

        Raises:
            ForbiddenException: actor is not the booking's student
            BusinessRuleException: booking has not been completed
            DisputeWindowExpiredException: filing window has closed
            DuplicateDisputeException: booking already has a dispute
            ConflictException: settlement already claimed the payout
        """
        now = now or datetime.now(timezone.utc)
        with self.transaction():
            booking = self.booking_repository.get_by_id(request.booking_id, for_update=True)
            if booking is None:
                raise NotFoundException("Booking not found", details={"booking_id": request.booking_id})
            if actor.user_id != booking.student_id:
                raise ForbiddenException(
                    "Only the booking's student can file a dispute",
                    details={"booking_id": booking.id},
                )
            if not booking.is_settleable:
                raise BusinessRuleException(
                    "Only completed bookings can be disputed",
                    code="BOOKING_NOT_COMPLETED",
                    details={"booking_id": booking.id, "status": booking.status},
                )
            deadline = self.filing_deadline(booking)
            if deadline is None or now > deadline:
                raise DisputeWindowExpiredException(settings.dispute_filing_window_hours)
            if self.dispute_repository.get_by_booking_id(booking.id) is not None:
                raise DuplicateDisputeException(booking.id)

            booking_id, mentor_id, student_id = booking.id, booking.mentor_id, booking.student_id
            held = self.booking_repository.compare_and_set_payout(
                booking_id, DISPUTABLE_PAYOUT_STATES, PayoutStatus.DISPUTED.value
            )
            if not held:
                current = self.booking_repository.get_by_id(booking_id)
                raise ConflictException(
                    "Payout for this booking is already being processed",
                    code="PAYOUT_ALREADY_CLAIMED",
                    details={
                        "booking_id": booking_id,
                        "payout_status": current.payout_status if current else None,
                    },
                )

            dispute = self.dispute_repository.create(
                booking_id=booking_id,
                mentee_id=student_id,
                mentor_id=mentor_id,
                reason=request.reason.value,
                description=request.description,
                status=DisputeStatus.PENDING.value,
            )
            self._add_evidence(dispute.id, "mentee", request.evidence)
            self.notification_service.request(
                recipient_id=mentor_id,
                category=NotificationCategory.DISPUTE_FILED,
                booking_id=booking_id,
                payload={"dispute_id": dispute.id, "reason": dispute.reason},
            )

        self.logger.info(
            "Dispute filed",
            extra={"dispute_id": dispute.id, "booking_id": booking_id, "reason": dispute.reason},
        )
        return dispute

    @BaseService.measure_operation("respond_to_dispute")
    def respond(
        self, actor: Actor, request: MentorResponseRequest, now: Optional[datetime] = None
    ) -> Dispute:
        """The booking's mentor answers a pending dispute, once."""
        now = now or datetime.now(timezone.utc)
        with self.transaction():
            dispute = self._get_dispute(request.dispute_id, for_update=True)
            if actor.user_id != dispute.mentor_id:
                raise ForbiddenException(
                    "Only the booking's mentor can respond to this dispute",
                    details={"dispute_id": dispute.id},
                )
            if dispute.mentor_response is not None:
                raise ConflictException(
                    "Mentor has already responded to this dispute",
                    code="DISPUTE_ALREADY_RESPONDED",
                    details={"dispute_id": dispute.id},
                )
            if dispute.status != DisputeStatus.PENDING.value:
                raise InvalidTransitionException(
                    "dispute", dispute.status, DisputeStatus.MENTOR_RESPONDED.value
                )
            dispute.mentor_response = request.response
            dispute.mentor_responded_at = now
            dispute.status = DisputeStatus.MENTOR_RESPONDED.value
            self._add_evidence(dispute.id, "mentor", request.evidence)
            self.notification_service.request(
                recipient_id=dispute.mentee_id,
                category=NotificationCategory.DISPUTE_RESPONDED,
                booking_id=dispute.booking_id,
                payload={"dispute_id": dispute.id},
            )
            self.db.flush()
        return dispute

    @BaseService.measure_operation("escalate_dispute")
    def escalate(self, actor: Actor, dispute_id: str, now: Optional[datetime] = None) -> Dispute:
        require_admin(actor)
        now = now or datetime.now(timezone.utc)
        with self.transaction():
            dispute = self._get_dispute(dispute_id, for_update=True)
            self._require_transition(dispute, DisputeStatus.ADMIN_REVIEW)
            dispute.status = DisputeStatus.ADMIN_REVIEW.value
            dispute.escalated_at = now
            self._notify_parties(dispute, NotificationCategory.DISPUTE_ESCALATED)
            self.db.flush()
        return dispute

    @BaseService.measure_operation("resolve_dispute")
    def resolve(
        self, actor: Actor, request: ResolveDisputeRequest, now: Optional[datetime] = None
    ) -> DisputeResolution:
        """
        Apply an admin decision to a dispute that has not been closed yet.

        The dispute, the booking's payout state and the refund intent commit
        together; the refund and, where the mentor is owed money, the transfer
        run after that commit.
        """
        require_admin(actor)
        now = now or datetime.now(timezone.utc)
        decision = request.decision

        with self.transaction():
            dispute = self._get_dispute(request.dispute_id, for_update=True)
            self._require_transition(dispute, DisputeStatus.RESOLVED)
            booking = self.booking_repository.get_by_id(dispute.booking_id, for_update=True)
            if booking is None:
                raise NotFoundException("Booking not found", details={"booking_id": dispute.booking_id})
            if booking.payout_status != PayoutStatus.DISPUTED.value:
                raise ConflictException(
                    "Booking payout is not held by this dispute",
                    code="PAYOUT_NOT_DISPUTED",
                    details={"booking_id": booking.id, "payout_status": booking.payout_status},
                )

            amount = round2(booking.amount)
            refund_amount = ZERO
            if decision is DisputeDecision.REFUND_MENTEE:
                refund_amount = amount
                self.booking_repository.compare_and_set_payout(
                    booking.id,
                    [PayoutStatus.DISPUTED.value],
                    PayoutStatus.REFUNDED.value,
                    platform_commission=ZERO,
                    mentor_payout=ZERO,
                    refunded_amount=amount,
                )
            elif decision is DisputeDecision.PARTIAL_REFUND:
                refund_amount = round2(request.amount or ZERO)
                self._validate_partial_refund(booking, refund_amount)
                self.booking_repository.compare_and_set_payout(
                    booking.id,
                    [PayoutStatus.DISPUTED.value],
                    PayoutStatus.PENDING.value,
                    refunded_amount=refund_amount,
                )
            else:
                self.booking_repository.compare_and_set_payout(
                    booking.id, [PayoutStatus.DISPUTED.value], PayoutStatus.PENDING.value
                )

            if refund_amount > ZERO:
                self.refund_service.prepare_refund(
                    booking,
                    amount=refund_amount,
                    refund_type=RefundPolicyEngine.resolve_route(booking),
                    reason=f"Dispute {dispute.id}: {decision.value}",
                    percentage=int(refund_amount * 100 / amount) if amount else None,
                    now=now,
                )

            dispute.status = DisputeStatus.RESOLVED.value
            dispute.resolution_decision = decision.value
            dispute.resolution_amount = refund_amount if refund_amount > ZERO else None
            dispute.resolution_reason = request.reason
            dispute.resolved_by_id = actor.user_id
            dispute.resolved_at = now
            self._notify_parties(
                dispute,
                NotificationCategory.DISPUTE_RESOLVED,
                {"dispute_id": dispute.id, "decision": decision.value, "refund": str(refund_amount)},
            )
            self.db.flush()
            booking_id = booking.id

        self.logger.info(
            "Dispute resolved",
            extra={
                "dispute_id": dispute.id,
                "booking_id": booking_id,
                "decision": decision.value,
                "refund_amount": str(refund_amount),
                "admin_id": actor.user_id,
            },
        )

        resolution = DisputeResolution(dispute=dispute)
        if refund_amount > ZERO:
            status = self.refund_service.get_refund_status(booking_id)
            if status.status == RefundStatus.PENDING.value:
                resolution.refund = self.refund_service.execute_refund(booking_id, now)
            else:
                resolution.refund = status
        if decision is not DisputeDecision.REFUND_MENTEE:
            resolution.settlement = self.settlement_service.settle_booking(booking_id, now, force=True)
        return resolution

    def _validate_partial_refund(self, booking: Booking, refund_amount: Decimal) -> None:
        amount = round2(booking.amount)
        if not (ZERO < refund_amount < amount):
            raise ValidationException(
                "Partial refund must be greater than 0 and less than the booking amount",
                code="INVALID_PARTIAL_REFUND",
                details={"amount": str(refund_amount), "booking_amount": str(amount)},
            )
        if settings.partial_refund_commission_basis == "gross":
            tier = self.settlement_service.commission_service.current_tier(booking.mentor_id)
            commission = split(amount, tier).commission
            if refund_amount > amount - commission:
                raise ValidationException(
                    "Partial refund exceeds the mentor share",
                    code="REFUND_EXCEEDS_PAYOUT",
                    details={
                        "amount": str(refund_amount),
                        "max_refund": str(amount - commission),
                        "rate": str(rate_for_tier(tier)),
                    },
                )

    @BaseService.measure_operation("dismiss_dispute")
    def dismiss(
        self, actor: Actor, request: DismissDisputeRequest, now: Optional[datetime] = None
    ) -> Dispute:
        """Close a dispute without a decision and release the payout to the normal sweep."""
        require_admin(actor)
        now = now or datetime.now(timezone.utc)
        with self.transaction():
            dispute = self._get_dispute(request.dispute_id, for_update=True)
            self._require_transition(dispute, DisputeStatus.DISMISSED)
            dispute.status = DisputeStatus.DISMISSED.value
            dispute.resolution_reason = request.reason
            dispute.resolved_by_id = actor.user_id
            dispute.resolved_at = now
            self.booking_repository.compare_and_set_payout(
                dispute.booking_id, [PayoutStatus.DISPUTED.value], PayoutStatus.PENDING.value
            )
            self._notify_parties(
                dispute,
                NotificationCategory.DISPUTE_DISMISSED,
                {"dispute_id": dispute.id, "reason": request.reason},
            )
            self.db.flush()
        return dispute

    def get_active_dispute(self, booking_id: str) -> Optional[Dispute]:
        return self.dispute_repository.get_active_for_booking(booking_id)

    def get_dispute(self, dispute_id: str) -> Dispute:
        return self._get_dispute(dispute_id)

    def list_disputes(
        self, status: Optional[DisputeStatus] = None, limit: int = 100, offset: int = 0
    ) -> List[Dispute]:
        statuses = [status.value] if status is not None else None
        return self.dispute_repository.list_by_status(statuses, limit=limit, offset=offset)


__all__ = ["DISPUTABLE_PAYOUT_STATES", "DisputeResolution", "DisputeService"]
