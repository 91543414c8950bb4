"""Payout destinations and non-booking (cold message) payouts."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import Boolean, String, Text
from sqlalchemy.orm import Mapped, mapped_column
import ulid

from ..core.enums import PayoutStatus
from ..database import Base
from .types import Money, TimestampMixin, UTCDateTime


class MentorPayoutAccount(TimestampMixin, Base):
    """Where a mentor's money goes. Readiness is asked of the gateway, not stored."""

    __tablename__ = "mentor_payout_accounts"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    mentor_id: Mapped[str] = mapped_column(String(26), nullable=False, unique=True, index=True)
    external_account_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    onboarding_completed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<MentorPayoutAccount(mentor_id={self.mentor_id}, "
            f"completed={self.onboarding_completed})>"
        )


class ColdMessagePayout(TimestampMixin, Base):
    """Settlement state for a paid cold message; not gated by the escrow window."""

    __tablename__ = "cold_message_payouts"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    message_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)
    mentor_id: Mapped[str] = mapped_column(String(26), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    platform_commission: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    mentor_payout: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    commission_tier: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    payout_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PayoutStatus.PENDING.value, index=True
    )
    payout_date: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    payout_transfer_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    payout_idempotency_key: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    payout_failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    payout_retryable: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
