# backend/tests/unit/services/test_dispute_service.py
"""Tests for filing, answering and resolving disputes."""

from datetime import timedelta
from decimal import Decimal

import pytest

from mentr.core.enums import ActorRole, DisputeDecision, DisputeReason, DisputeStatus, EvidenceType
from mentr.core.exceptions import (
    BusinessRuleException,
    ConflictException,
    DisputeWindowExpiredException,
    DuplicateDisputeException,
    ForbiddenException,
    InvalidTransitionException,
    ValidationException,
)
from mentr.domain.actor import Actor
from mentr.domain.settlement_results import SettlementResult
from mentr.models.booking import Booking
from mentr.models.notification_outbox import NotificationOutbox
from mentr.schemas.settlement import (
    DismissDisputeRequest,
    EvidenceItem,
    FileDisputeRequest,
    MentorResponseRequest,
    ResolveDisputeRequest,
)
from mentr.services.dispute_service import DisputeService
from mentr.services.settlement_service import SettlementService

ADMIN = Actor("01ADMIN0000000000000000000", ActorRole.ADMIN)


@pytest.fixture
def dispute_service(db, gateway):
    return DisputeService(db, gateway)


@pytest.fixture
def student(student_id):
    return Actor(student_id, ActorRole.STUDENT)


@pytest.fixture
def mentor(mentor_id):
    return Actor(mentor_id, ActorRole.MENTOR)


@pytest.fixture
def recent_booking(make_booking, now):
    """Completed ten hours ago, so the filing window is still open."""

    def _make(**overrides):
        values = {"completed_at": now - timedelta(hours=10)}
        values.update(overrides)
        return make_booking(**values)

    return _make


def _file(service, actor, booking, now, **overrides):
    values = {
        "booking_id": booking.id,
        "reason": DisputeReason.SESSION_NOT_CONDUCTED,
        "description": "Mentor never joined the call",
    }
    values.update(overrides)
    return service.file_dispute(actor, FileDisputeRequest(**values), now)


def _resolve(service, dispute, decision, amount=None, now=None):
    return service.resolve(
        ADMIN,
        ResolveDisputeRequest(
            dispute_id=dispute.id, decision=decision, amount=amount, reason="Reviewed the recording"
        ),
        now,
    )


def _stored(db, booking):
    db.expire_all()
    return db.get(Booking, booking.id)


class TestFiling:
    def test_files_and_holds_payout(self, db, dispute_service, recent_booking, student, now):
        booking = recent_booking()

        dispute = _file(
            dispute_service,
            student,
            booking,
            now,
            evidence=[EvidenceItem(evidence_type=EvidenceType.TEXT, content="Empty call log")],
        )

        assert dispute.status == "pending"
        assert dispute.mentee_id == booking.student_id
        assert dispute.mentor_id == booking.mentor_id
        assert _stored(db, booking).payout_status == "disputed"
        loaded = dispute_service.get_dispute(dispute.id)
        assert [(e.submitted_by, e.content) for e in loaded.evidence] == [("mentee", "Empty call log")]
        assert dispute_service.get_active_dispute(booking.id).id == dispute.id
        notice = db.query(NotificationOutbox).filter_by(category="dispute_filed").one()
        assert notice.recipient_id == booking.mentor_id

    def test_only_student_may_file(self, dispute_service, recent_booking, mentor, now):
        booking = recent_booking()
        with pytest.raises(ForbiddenException):
            _file(dispute_service, mentor, booking, now)

    def test_booking_must_be_completed(self, dispute_service, upcoming_booking, student, now):
        booking = upcoming_booking()

        with pytest.raises(BusinessRuleException) as exc_info:
            _file(dispute_service, student, booking, now)

        assert exc_info.value.code == "BOOKING_NOT_COMPLETED"

    def test_window_closed(self, db, dispute_service, make_booking, student, now):
        booking = make_booking()

        with pytest.raises(DisputeWindowExpiredException):
            _file(dispute_service, student, booking, now)

        assert _stored(db, booking).payout_status == "pending"

    def test_one_dispute_per_booking(self, dispute_service, recent_booking, student, now):
        booking = recent_booking()
        _file(dispute_service, student, booking, now)

        with pytest.raises(DuplicateDisputeException):
            _file(dispute_service, student, booking, now)

    @pytest.mark.parametrize("payout_status", ["processing", "completed"])
    def test_claimed_payout_cannot_be_disputed(self, dispute_service, recent_booking, student, now, payout_status):
        booking = recent_booking(payout_status=payout_status)

        with pytest.raises(ConflictException) as exc_info:
            _file(dispute_service, student, booking, now)

        assert exc_info.value.code == "PAYOUT_ALREADY_CLAIMED"

    def test_failed_payout_can_be_disputed(self, db, dispute_service, recent_booking, student, now):
        booking = recent_booking(payout_status="failed")

        _file(dispute_service, student, booking, now)

        assert _stored(db, booking).payout_status == "disputed"

    def test_sweep_skips_disputed_booking(self, db, gateway, dispute_service, recent_booking, student, payout_account, now):
        booking = recent_booking()
        _file(dispute_service, student, booking, now)

        result = SettlementService(db, gateway).run_payout_sweep(now + timedelta(days=3))

        assert result.processed == 0
        assert gateway.calls == []


class TestResponseAndEscalation:
    def test_mentor_responds_once(self, dispute_service, recent_booking, student, mentor, now):
        dispute = _file(dispute_service, student, recent_booking(), now)
        request = MentorResponseRequest(
            dispute_id=dispute.id,
            response="I was there, the student did not join",
            evidence=[EvidenceItem(evidence_type=EvidenceType.IMAGE, content="https://files/x.png")],
        )

        responded = dispute_service.respond(mentor, request, now)

        assert responded.status == "mentor_responded"
        assert responded.mentor_responded_at == now
        with pytest.raises(ConflictException) as exc_info:
            dispute_service.respond(mentor, request, now)
        assert exc_info.value.code == "DISPUTE_ALREADY_RESPONDED"

    def test_only_mentor_responds(self, dispute_service, recent_booking, student, now):
        dispute = _file(dispute_service, student, recent_booking(), now)

        with pytest.raises(ForbiddenException):
            dispute_service.respond(
                student, MentorResponseRequest(dispute_id=dispute.id, response="x"), now
            )

    def test_escalation_requires_admin(self, dispute_service, recent_booking, student, mentor, now):
        dispute = _file(dispute_service, student, recent_booking(), now)

        with pytest.raises(ForbiddenException):
            dispute_service.escalate(mentor, dispute.id, now)

        escalated = dispute_service.escalate(ADMIN, dispute.id, now)
        assert escalated.status == "admin_review"
        assert escalated.escalated_at == now

    def test_list_by_status(self, dispute_service, recent_booking, student, now):
        first = _file(dispute_service, student, recent_booking(), now)
        second = _file(dispute_service, student, recent_booking(), now)
        dispute_service.escalate(ADMIN, second.id, now)

        pending = dispute_service.list_disputes(DisputeStatus.PENDING)

        assert [d.id for d in pending] == [first.id]
        assert len(dispute_service.list_disputes()) == 2


class TestResolution:
    def test_refund_mentee(self, db, dispute_service, gateway, recent_booking, student, payout_account, now):
        booking = recent_booking()
        dispute = _file(dispute_service, student, booking, now)

        resolution = _resolve(dispute_service, dispute, DisputeDecision.REFUND_MENTEE, now=now)

        assert resolution.dispute.status == "resolved"
        assert resolution.refund.status == "processed"
        assert resolution.refund.amount == Decimal("100.00")
        assert resolution.settlement is None
        assert [call.kind for call in gateway.calls] == ["refund"]
        stored = _stored(db, booking)
        assert stored.payout_status == "refunded"
        assert stored.payment_status == "refunded"
        assert (stored.platform_commission, stored.mentor_payout) == (Decimal("0.00"), Decimal("0.00"))
        assert stored.refunded_amount == Decimal("100.00")

    def test_pay_mentor(self, db, dispute_service, gateway, recent_booking, student, payout_account, now):
        booking = recent_booking()
        dispute = _file(dispute_service, student, booking, now)

        resolution = _resolve(dispute_service, dispute, DisputeDecision.PAY_MENTOR, now=now)

        assert resolution.refund is None
        assert resolution.settlement.outcome is SettlementResult.COMPLETED
        assert resolution.settlement.payout == Decimal("75.00")
        assert [call.kind for call in gateway.calls] == ["transfer"]
        assert _stored(db, booking).payout_status == "completed"

    def test_partial_refund_charges_commission_on_remainder(
        self, db, dispute_service, gateway, recent_booking, student, payout_account, now
    ):
        booking = recent_booking()
        dispute = _file(dispute_service, student, booking, now)

        resolution = _resolve(
            dispute_service, dispute, DisputeDecision.PARTIAL_REFUND, amount=Decimal("40.00"), now=now
        )

        assert resolution.refund.amount == Decimal("40.00")
        assert resolution.settlement.commission == Decimal("15.00")
        assert resolution.settlement.payout == Decimal("45.00")
        stored = _stored(db, booking)
        assert stored.platform_commission + stored.mentor_payout + stored.refunded_amount == stored.amount
        assert stored.payment_status == "paid"
        transfer = next(call for call in gateway.calls if call.kind == "transfer")
        assert transfer.payload["amount"] == 4500

    @pytest.mark.parametrize("amount", ["100.00", "150.00"])
    def test_partial_refund_must_leave_something(self, dispute_service, recent_booking, student, now, amount):
        dispute = _file(dispute_service, student, recent_booking(), now)

        with pytest.raises(ValidationException) as exc_info:
            _resolve(dispute_service, dispute, DisputeDecision.PARTIAL_REFUND, amount=Decimal(amount), now=now)

        assert exc_info.value.code == "INVALID_PARTIAL_REFUND"
        assert dispute_service.get_dispute(dispute.id).status == "pending"

    def test_resolution_requires_admin(self, dispute_service, recent_booking, student, mentor, now):
        dispute = _file(dispute_service, student, recent_booking(), now)
        with pytest.raises(ForbiddenException):
            dispute_service.resolve(
                mentor,
                ResolveDisputeRequest(
                    dispute_id=dispute.id, decision=DisputeDecision.PAY_MENTOR, reason="x"
                ),
                now,
            )

    def test_resolved_dispute_is_final(self, dispute_service, gateway, recent_booking, student, payout_account, now):
        dispute = _file(dispute_service, student, recent_booking(), now)
        _resolve(dispute_service, dispute, DisputeDecision.REFUND_MENTEE, now=now)

        with pytest.raises(InvalidTransitionException):
            _resolve(dispute_service, dispute, DisputeDecision.PAY_MENTOR, now=now)
        with pytest.raises(InvalidTransitionException):
            dispute_service.dismiss(ADMIN, DismissDisputeRequest(dispute_id=dispute.id, reason="x"), now)
        assert len(gateway.calls) == 1


class TestDismissal:
    def test_dismiss_reopens_payout(self, db, dispute_service, gateway, recent_booking, student, payout_account, now):
        booking = recent_booking()
        dispute = _file(dispute_service, student, booking, now)

        dismissed = dispute_service.dismiss(
            ADMIN, DismissDisputeRequest(dispute_id=dispute.id, reason="No evidence"), now
        )

        assert dismissed.status == "dismissed"
        assert dismissed.resolved_by_id == ADMIN.user_id
        assert _stored(db, booking).payout_status == "pending"
        assert dispute_service.get_active_dispute(booking.id) is None

        result = SettlementService(db, gateway).run_payout_sweep(now + timedelta(days=2))
        assert result.completed == 1
