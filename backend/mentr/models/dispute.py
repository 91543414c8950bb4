"""Dispute records for contested completed bookings."""

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, List, Optional

from sqlalchemy import CheckConstraint, ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship
import ulid

from ..core.enums import ACTIVE_DISPUTE_STATUSES, DisputeStatus
from ..database import Base
from .types import Money, TimestampMixin, UTCDateTime, now_utc

if TYPE_CHECKING:
    from .booking import Booking


DISPUTE_TRANSITIONS = {
    DisputeStatus.PENDING.value: (
        DisputeStatus.MENTOR_RESPONDED.value,
        DisputeStatus.ADMIN_REVIEW.value,
        DisputeStatus.RESOLVED.value,
        DisputeStatus.DISMISSED.value,
    ),
    DisputeStatus.MENTOR_RESPONDED.value: (
        DisputeStatus.ADMIN_REVIEW.value,
        DisputeStatus.RESOLVED.value,
        DisputeStatus.DISMISSED.value,
    ),
    DisputeStatus.ADMIN_REVIEW.value: (
        DisputeStatus.RESOLVED.value,
        DisputeStatus.DISMISSED.value,
    ),
    DisputeStatus.RESOLVED.value: (),
    DisputeStatus.DISMISSED.value: (),
}


class Dispute(TimestampMixin, Base):
    """At most one dispute exists per booking; resolved and dismissed are final."""

    __tablename__ = "disputes"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    booking_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("bookings.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        index=True,
    )
    mentee_id: Mapped[str] = mapped_column(String(26), nullable=False, index=True)
    mentor_id: Mapped[str] = mapped_column(String(26), nullable=False, index=True)
    reason: Mapped[str] = mapped_column(String(40), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=DisputeStatus.PENDING.value, index=True
    )

    # Mentor response, settable once while pending
    mentor_response: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    mentor_responded_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    escalated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    # Admin resolution
    resolution_decision: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    resolution_amount: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    resolution_reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    resolved_by_id: Mapped[Optional[str]] = mapped_column(String(26), nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    booking: Mapped["Booking"] = relationship("Booking", back_populates="dispute")
    evidence: Mapped[List["DisputeEvidence"]] = relationship(
        "DisputeEvidence",
        back_populates="dispute",
        cascade="all, delete-orphan",
        order_by="DisputeEvidence.uploaded_at",
    )

    __table_args__ = (
        CheckConstraint("length(description) <= 1000", name="check_dispute_description_length"),
    )

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_DISPUTE_STATUSES

    def can_transition_to(self, target: str) -> bool:
        return target in DISPUTE_TRANSITIONS.get(self.status, ())

    def __repr__(self) -> str:
        return f"<Dispute {self.id} booking={self.booking_id} status={self.status}>"


class DisputeEvidence(Base):
    __tablename__ = "dispute_evidence"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    dispute_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("disputes.id", ondelete="CASCADE"), nullable=False, index=True
    )
    submitted_by: Mapped[str] = mapped_column(String(10), nullable=False)
    evidence_type: Mapped[str] = mapped_column(String(20), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False, comment="URL or inline text")
    description: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    uploaded_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=now_utc)

    dispute: Mapped["Dispute"] = relationship("Dispute", back_populates="evidence")
