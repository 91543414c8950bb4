# backend/mentr/models/booking.py
"""
Booking model for the Mentr settlement engine.

A booking is one scheduled paid session between a mentor and a student. It
carries its own settlement state (commission split, payout status, transfer
reference) and a frozen copy of the mentor's cancellation policy so later
policy edits cannot change the rules for an existing booking.

Bookings are never hard-deleted; they are retained for audit.
"""

from datetime import datetime, timedelta
from decimal import Decimal
import logging
from typing import Any, Dict, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship
import ulid

from ..core.enums import (
    SETTLEABLE_BOOKING_STATUSES,
    BookingStatus,
    PaymentStatus,
    PayoutStatus,
    RefundStatus,
    RescheduleStatus,
)
from ..database import Base
from .types import Money, UTCDateTime, now_utc

logger = logging.getLogger(__name__)

# Allowed booking status transitions; cancelled is terminal
BOOKING_TRANSITIONS: Dict[str, tuple[str, ...]] = {
    BookingStatus.PENDING.value: (BookingStatus.CONFIRMED.value, BookingStatus.CANCELLED.value),
    BookingStatus.CONFIRMED.value: (BookingStatus.COMPLETED.value, BookingStatus.CANCELLED.value),
    BookingStatus.COMPLETED.value: (BookingStatus.REVIEWABLE.value,),
    BookingStatus.REVIEWABLE.value: (BookingStatus.REVIEWED.value,),
    BookingStatus.REVIEWED.value: (),
    BookingStatus.CANCELLED.value: (),
}


class Booking(Base):
    """
    Booking with lifecycle and settlement state.

    Invariant: once both platform_commission and mentor_payout are set,
    platform_commission + mentor_payout + refunded_amount == amount.
    """

    __tablename__ = "bookings"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    service_id = Column(String(26), nullable=False, index=True)
    mentor_id = Column(String(26), nullable=False, index=True)
    student_id = Column(String(26), nullable=False, index=True)

    # Timing: mentor-local wall clock plus the canonical UTC instant
    scheduled_at = Column(DateTime(timezone=False), nullable=True)
    scheduled_at_utc = Column(UTCDateTime, nullable=False, index=True)
    mentor_timezone = Column(String(64), nullable=True)
    student_timezone = Column(String(64), nullable=True)
    duration_minutes = Column(Integer, nullable=False)

    status = Column(String(20), nullable=False, default=BookingStatus.PENDING.value, index=True)

    # Payment
    payment_status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value)
    payment_method = Column(String(20), nullable=True)
    payment_reference = Column(String(255), nullable=True)
    amount = Column(Money, nullable=False)

    # Settlement
    platform_commission = Column(Money, nullable=True)
    mentor_payout = Column(Money, nullable=True)
    refunded_amount = Column(Money, nullable=False, default=Decimal("0.00"))
    commission_tier = Column(String(10), nullable=True)
    payout_status = Column(String(20), nullable=True, index=True)
    payout_date = Column(UTCDateTime, nullable=True)
    payout_failure_reason = Column(Text, nullable=True)
    payout_retryable = Column(Boolean, nullable=True)
    payout_transfer_id = Column(String(255), nullable=True)
    payout_idempotency_key = Column(String(255), nullable=True)

    completed_at = Column(UTCDateTime, nullable=True)
    dispute_period_ends = Column(UTCDateTime, nullable=True, index=True)

    # Cancellation
    cancelled_at = Column(UTCDateTime, nullable=True)
    cancelled_by_id = Column(String(26), nullable=True)
    cancelled_by_role = Column(String(20), nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)

    # Cancellation policy snapshot, frozen at booking time
    policy_minimum_cancellation_hours = Column(Integer, nullable=False, default=24)
    policy_mentor_id = Column(String(26), nullable=True)
    policy_set_at = Column(UTCDateTime, nullable=True)

    created_at = Column(UTCDateTime, nullable=False, default=now_utc, index=True)
    updated_at = Column(UTCDateTime, nullable=False, default=now_utc, onupdate=now_utc)

    refund = relationship(
        "BookingRefund",
        back_populates="booking",
        uselist=False,
        cascade="all, delete-orphan",
    )
    dispute = relationship("Dispute", back_populates="booking", uselist=False)
    reschedule_requests = relationship(
        "RescheduleRequest", back_populates="booking", cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint(
            "duration_minutes >= 15 AND duration_minutes <= 480",
            name="check_duration_range",
        ),
        CheckConstraint("amount >= 0", name="check_amount_non_negative"),
        CheckConstraint(
            "policy_minimum_cancellation_hours >= 1 AND policy_minimum_cancellation_hours <= 168",
            name="check_policy_hours_range",
        ),
        Index("ix_bookings_settlement_scan", "status", "payout_status", "dispute_period_ends"),
    )

    def __repr__(self) -> str:
        return (
            f"<Booking {self.id} status={self.status} payout={self.payout_status} "
            f"amount={self.amount}>"
        )

    def can_transition_to(self, target: str) -> bool:
        return target in BOOKING_TRANSITIONS.get(self.status, ())

    @property
    def is_settleable(self) -> bool:
        """Session happened; reviewable/reviewed are cosmetic successors of completed."""
        return self.status in SETTLEABLE_BOOKING_STATUSES

    @property
    def is_paid(self) -> bool:
        return self.payment_status == PaymentStatus.PAID.value

    def is_party(self, user_id: str) -> bool:
        return user_id in (self.mentor_id, self.student_id)

    def hours_until_session(self, now: datetime) -> float:
        return (self.scheduled_at_utc - now).total_seconds() / 3600

    def complete(self, completed_at: datetime, dispute_window_hours: int) -> None:
        self.status = BookingStatus.COMPLETED.value
        self.completed_at = completed_at
        self.dispute_period_ends = completed_at + timedelta(hours=dispute_window_hours)
        if self.payout_status is None:
            self.payout_status = PayoutStatus.PENDING.value

    def cancel(
        self,
        cancelled_by_user_id: Optional[str],
        role: str,
        reason: Optional[str],
        cancelled_at: datetime,
    ) -> None:
        self.status = BookingStatus.CANCELLED.value
        self.cancelled_at = cancelled_at
        self.cancelled_by_id = cancelled_by_user_id
        self.cancelled_by_role = role
        self.cancellation_reason = reason

    def settlement_snapshot(self) -> Dict[str, Any]:
        return {
            "booking_id": self.id,
            "amount": str(self.amount),
            "platform_commission": (
                str(self.platform_commission) if self.platform_commission is not None else None
            ),
            "mentor_payout": str(self.mentor_payout) if self.mentor_payout is not None else None,
            "refunded_amount": str(self.refunded_amount or Decimal("0.00")),
            "commission_tier": self.commission_tier,
            "payout_status": self.payout_status,
            "payout_transfer_id": self.payout_transfer_id,
            "payout_failure_reason": self.payout_failure_reason,
        }


class BookingRefund(Base):
    """Refund state for a single booking (one row per booking)."""

    __tablename__ = "booking_refunds"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    booking_id = Column(
        String(26),
        ForeignKey("bookings.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        index=True,
    )
    status = Column(String(20), nullable=False, default=RefundStatus.NONE.value, index=True)
    refund_type = Column(String(20), nullable=True)
    amount = Column(Money, nullable=False, default=Decimal("0.00"))
    percentage = Column(Integer, nullable=True)
    external_refund_id = Column(String(255), nullable=True)
    wallet_transaction_id = Column(String(26), nullable=True)
    idempotency_key = Column(String(255), nullable=True)
    reason = Column(Text, nullable=True)
    failure_reason = Column(Text, nullable=True)
    failure_retryable = Column(Boolean, nullable=True)
    attempt_count = Column(Integer, nullable=False, default=0)
    requested_at = Column(UTCDateTime, nullable=True)
    processed_at = Column(UTCDateTime, nullable=True)
    updated_at = Column(UTCDateTime, nullable=False, default=now_utc, onupdate=now_utc)

    booking = relationship("Booking", back_populates="refund")

    def __repr__(self) -> str:
        return f"<BookingRefund booking={self.booking_id} status={self.status} amount={self.amount}>"


class RescheduleRequest(Base):
    """A request by either party to move a booking to a new time."""

    __tablename__ = "reschedule_requests"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    booking_id = Column(
        String(26), ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, index=True
    )
    requested_by_id = Column(String(26), nullable=False)
    new_scheduled_at_utc = Column(UTCDateTime, nullable=False)
    reason = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default=RescheduleStatus.PENDING.value, index=True)
    responded_by_id = Column(String(26), nullable=True)
    responded_at = Column(UTCDateTime, nullable=True)
    response_reason = Column(Text, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=now_utc)

    booking = relationship("Booking", back_populates="reschedule_requests")
