# backend/tests/unit/services/test_booking_service.py
"""Tests for the booking lifecycle, token payment and cancellation."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

from pydantic import ValidationError
import pytest
import ulid

from mentr.core.config import settings
from mentr.core.enums import ActorRole, RefundType
from mentr.core.exceptions import (
    CancellationWindowException,
    ConflictException,
    ForbiddenException,
    InsufficientTokenBalanceException,
    InvalidTransitionException,
    ValidationException,
)
from mentr.domain.actor import Actor
from mentr.models.booking import RescheduleRequest
from mentr.models.notification_outbox import NotificationOutbox
from mentr.schemas.settlement import CancelBookingRequest, CreateBookingRequest
from mentr.services.booking_service import AUTO_CANCEL_NOTE, BookingService
from mentr.services.wallet_service import WalletService

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def new_id():
    return str(ulid.ULID())


@pytest.fixture
def booking_service(db, gateway):
    return BookingService(db, gateway)


@pytest.fixture
def student(student_id):
    return Actor(student_id, ActorRole.STUDENT)


@pytest.fixture
def mentor(mentor_id):
    return Actor(mentor_id, ActorRole.MENTOR)


@pytest.fixture
def pending_booking(upcoming_booking):
    def _make(**overrides):
        values = {
            "status": "pending",
            "payment_status": "pending",
            "payment_method": None,
            "payment_reference": None,
        }
        values.update(overrides)
        return upcoming_booking(**values)

    return _make


def _create_request(mentor_id, student_id, **overrides):
    values = {
        "service_id": new_id(),
        "mentor_id": mentor_id,
        "student_id": student_id,
        "scheduled_at_utc": NOW + timedelta(days=2),
        "duration_minutes": 60,
        "amount": Decimal("80.00"),
    }
    values.update(overrides)
    return CreateBookingRequest(**values)


class TestCreateBooking:
    def test_creates_pending_booking_with_frozen_policy(self, booking_service, mentor_id, student_id, now):
        booking = booking_service.create_booking(
            _create_request(mentor_id, student_id, minimum_cancellation_hours=48), now
        )

        assert booking.status == "pending"
        assert booking.payment_status == "pending"
        assert booking.policy_minimum_cancellation_hours == 48
        assert booking.policy_mentor_id == mentor_id
        assert booking.policy_set_at == now

    def test_default_policy_applies(self, booking_service, mentor_id, student_id, now):
        booking = booking_service.create_booking(_create_request(mentor_id, student_id), now)
        assert booking.policy_minimum_cancellation_hours == settings.default_minimum_cancellation_hours

    def test_past_session_rejected(self, booking_service, mentor_id, student_id, now):
        request = _create_request(mentor_id, student_id, scheduled_at_utc=now - timedelta(minutes=1))

        with pytest.raises(ValidationException) as exc_info:
            booking_service.create_booking(request, now)

        assert exc_info.value.code == "SESSION_IN_PAST"

    def test_self_booking_rejected_by_schema(self, mentor_id):
        with pytest.raises(ValidationError):
            _create_request(mentor_id, mentor_id)


class TestPayment:
    def test_confirm_payment(self, booking_service, pending_booking):
        booking = pending_booking()

        confirmed = booking_service.confirm_payment(booking.id, "pi_123")

        assert confirmed.status == "confirmed"
        assert confirmed.payment_status == "paid"
        assert confirmed.payment_method == "external"
        assert confirmed.payment_reference == "pi_123"

    def test_confirm_twice_conflicts(self, booking_service, pending_booking):
        booking = pending_booking()
        booking_service.confirm_payment(booking.id, "pi_123")

        with pytest.raises(ConflictException):
            booking_service.confirm_payment(booking.id, "pi_456")

    def test_pay_with_tokens_debits_wallet(self, db, booking_service, pending_booking, student):
        wallet = WalletService(db)
        wallet.credit(user_id=student.user_id, amount=150, description="Top up", reference="t:1")
        booking = pending_booking()

        paid = booking_service.pay_with_tokens(student, booking.id)

        assert paid.status == "confirmed"
        assert paid.payment_method == "tokens"
        txn = wallet.find_transaction(f"payment:booking:{booking.id}")
        assert paid.payment_reference == txn.id
        assert wallet.get_balance(student.user_id) == Decimal("50.00")

    def test_insufficient_tokens_leave_booking_pending(self, db, booking_service, pending_booking, student):
        WalletService(db).credit(user_id=student.user_id, amount=20, description="Top up", reference="t:1")
        booking = pending_booking()

        with pytest.raises(InsufficientTokenBalanceException):
            booking_service.pay_with_tokens(student, booking.id)

        db.expire_all()
        assert booking_service.get_booking(booking.id).status == "pending"
        assert WalletService(db).get_balance(student.user_id) == Decimal("20.00")

    def test_only_student_pays(self, booking_service, pending_booking, mentor):
        booking = pending_booking()
        with pytest.raises(ForbiddenException):
            booking_service.pay_with_tokens(mentor, booking.id)

    def test_already_paid(self, booking_service, upcoming_booking, student):
        booking = upcoming_booking()
        with pytest.raises(ConflictException):
            booking_service.pay_with_tokens(student, booking.id)


class TestLifecycle:
    def test_complete_starts_dispute_window(self, booking_service, upcoming_booking, now):
        booking = upcoming_booking()

        completed = booking_service.complete_booking(booking.id, now)

        assert completed.status == "completed"
        assert completed.completed_at == now
        assert completed.dispute_period_ends == now + timedelta(
            hours=settings.dispute_filing_window_hours
        )
        assert completed.payout_status == "pending"

    def test_review_chain(self, booking_service, make_booking):
        booking = make_booking()

        assert booking_service.open_review(booking.id).status == "reviewable"
        assert booking_service.record_review(booking.id).status == "reviewed"

    @pytest.mark.parametrize(
        "status,operation",
        [
            ("pending", "complete_booking"),
            ("cancelled", "complete_booking"),
            ("confirmed", "open_review"),
            ("completed", "record_review"),
        ],
    )
    def test_invalid_transitions(self, booking_service, upcoming_booking, status, operation):
        booking = upcoming_booking(status=status)

        with pytest.raises(InvalidTransitionException) as exc_info:
            getattr(booking_service, operation)(booking.id)

        assert exc_info.value.code == "INVALID_TRANSITION"
        assert booking_service.get_booking(booking.id).status == status


class TestCancellation:
    def test_mentor_cancellation_refunds_in_full(self, db, booking_service, upcoming_booking, mentor, gateway, now):
        booking = upcoming_booking(hours_ahead=3)

        result = booking_service.cancel_booking(
            mentor, CancelBookingRequest(booking_id=booking.id, reason="Sick"), now
        )

        assert result.booking.status == "cancelled"
        assert result.booking.cancelled_by_role == "mentor"
        assert result.quote.policy_basis == "mentor_cancelled"
        assert result.refund.status == "processed"
        assert result.refund.amount == Decimal("100.00")
        assert gateway.calls[0].key == f"refund:booking:{booking.id}"
        notice = db.query(NotificationOutbox).filter_by(category="booking_cancelled").one()
        assert notice.recipient_id == booking.student_id

    def test_late_student_cancellation_refunds_half(self, booking_service, upcoming_booking, student, now):
        booking = upcoming_booking(hours_ahead=10)

        result = booking_service.cancel_booking(
            student, CancelBookingRequest(booking_id=booking.id), now
        )

        assert result.cancelled_by.value == "student"
        assert result.refund.amount == Decimal("50.00")
        assert result.booking.payment_status == "paid"

    def test_inside_floor_refunds_nothing(self, booking_service, upcoming_booking, student, gateway, now):
        booking = upcoming_booking(hours_ahead=1)

        result = booking_service.cancel_booking(
            student, CancelBookingRequest(booking_id=booking.id), now
        )

        assert result.quote.amount == Decimal("0.00")
        assert result.refund.status == "none"
        assert gateway.calls == []

    def test_reject_mode_blocks_late_student_cancellation(
        self, booking_service, upcoming_booking, student, monkeypatch, now
    ):
        monkeypatch.setattr(settings, "late_student_cancellation", "reject")
        booking = upcoming_booking(hours_ahead=10)

        with pytest.raises(CancellationWindowException) as exc_info:
            booking_service.cancel_booking(student, CancelBookingRequest(booking_id=booking.id), now)

        assert exc_info.value.code == "CANCELLATION_WINDOW"
        assert booking_service.get_booking(booking.id).status == "confirmed"

    def test_reject_mode_allows_early_cancellation(
        self, booking_service, upcoming_booking, student, monkeypatch, now
    ):
        monkeypatch.setattr(settings, "late_student_cancellation", "reject")
        booking = upcoming_booking(hours_ahead=30)

        result = booking_service.cancel_booking(
            student, CancelBookingRequest(booking_id=booking.id), now
        )

        assert result.refund.amount == Decimal("100.00")

    def test_token_credit_route(self, db, booking_service, upcoming_booking, student, gateway, now):
        booking = upcoming_booking(hours_ahead=72)

        result = booking_service.cancel_booking(
            student,
            CancelBookingRequest(booking_id=booking.id, refund_route=RefundType.TOKENS),
            now,
        )

        assert result.refund.refund_type == "tokens"
        assert gateway.calls == []
        assert WalletService(db).get_balance(student.user_id) == Decimal("100.00")

    def test_unpaid_cancellation_records_no_refund(self, booking_service, pending_booking, mentor, now):
        booking = pending_booking()

        result = booking_service.cancel_booking(mentor, CancelBookingRequest(booking_id=booking.id), now)

        assert result.refund is None
        assert result.booking.status == "cancelled"

    def test_outsider_cannot_cancel(self, booking_service, upcoming_booking, now):
        booking = upcoming_booking()
        with pytest.raises(ForbiddenException):
            booking_service.cancel_booking(
                Actor(new_id(), ActorRole.STUDENT), CancelBookingRequest(booking_id=booking.id), now
            )

    def test_completed_booking_cannot_be_cancelled(self, booking_service, make_booking, student, now):
        booking = make_booking()
        with pytest.raises(InvalidTransitionException):
            booking_service.cancel_booking(student, CancelBookingRequest(booking_id=booking.id), now)

    def test_pending_reschedules_are_rejected(self, db, booking_service, upcoming_booking, student, mentor, now):
        booking = upcoming_booking()
        db.add(
            RescheduleRequest(
                booking_id=booking.id,
                requested_by_id=mentor.user_id,
                new_scheduled_at_utc=now + timedelta(days=4),
            )
        )
        db.commit()

        result = booking_service.cancel_booking(
            student, CancelBookingRequest(booking_id=booking.id), now
        )

        assert result.rejected_reschedules == 1
        reschedule = db.query(RescheduleRequest).one()
        assert reschedule.status == "rejected"
        assert reschedule.responded_by_id == student.user_id
        assert (
            db.query(NotificationOutbox)
            .filter_by(category="reschedule_rejected", recipient_id=mentor.user_id)
            .count()
            == 1
        )


class TestAutoCancel:
    def test_cancels_stale_unpaid_bookings(self, db, booking_service, pending_booking, now):
        stale = pending_booking(created_at=now - timedelta(hours=5))
        fresh = pending_booking(created_at=now - timedelta(hours=1))

        results = booking_service.auto_cancel_unpaid_bookings(now)

        assert results["cancelled"] == 1
        assert results["booking_ids"] == [stale.id]
        db.expire_all()
        cancelled = booking_service.get_booking(stale.id)
        assert cancelled.status == "cancelled"
        assert cancelled.cancelled_by_role == "system"
        assert cancelled.notes == AUTO_CANCEL_NOTE.format(hours=settings.pending_payment_timeout_hours)
        assert booking_service.get_booking(fresh.id).status == "pending"
        assert db.query(NotificationOutbox).filter_by(category="booking_auto_cancelled").count() == 2

    def test_paid_bookings_are_left_alone(self, booking_service, upcoming_booking, now):
        upcoming_booking(created_at=now - timedelta(hours=10))

        assert booking_service.auto_cancel_unpaid_bookings(now)["cancelled"] == 0

    def test_pending_stats(self, booking_service, pending_booking, now):
        pending_booking(created_at=now - timedelta(hours=6))
        pending_booking(created_at=now - timedelta(hours=1))

        stats = booking_service.get_pending_booking_stats(now)

        assert stats["total_pending"] == 2
        assert stats["past_timeout"] == 1
        assert stats["oldest_pending_hours"] == 6.0
        assert stats["timeout_hours"] == settings.pending_payment_timeout_hours
