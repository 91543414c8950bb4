"""
Mentor earnings aggregate.

MentorEarnings is versioned (``version_id_col``) so two concurrent writers for
the same mentor cannot both commit a read-modify-write; the loser gets a
StaleDataError and retries. EarningsLedgerEntry is unique per
(earnings_type, source_id) so a single booking or message is credited once.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
import ulid

from ..database import Base
from .types import Money, TimestampMixin, UTCDateTime, now_utc


class MentorEarnings(TimestampMixin, Base):
    __tablename__ = "mentor_earnings"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    mentor_id: Mapped[str] = mapped_column(String(26), nullable=False, unique=True, index=True)

    total_earnings: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0.00"))
    session_earnings: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0.00"))
    message_earnings: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0.00"))
    completed_sessions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cold_messages: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    commission_tier: Mapped[str] = mapped_column(String(10), nullable=False, default="tier1")
    last_tier_update: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    tier_overridden_by: Mapped[Optional[str]] = mapped_column(String(26), nullable=True)
    tier_override_reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return (
            f"<MentorEarnings mentor={self.mentor_id} total={self.total_earnings} "
            f"tier={self.commission_tier}>"
        )


class MentorMonthlyEarnings(Base):
    """One bucket per mentor per calendar month (UTC)."""

    __tablename__ = "mentor_monthly_earnings"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    mentor_id: Mapped[str] = mapped_column(String(26), nullable=False, index=True)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    session_earnings: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0.00"))
    message_earnings: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0.00"))
    total_earnings: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0.00"))
    sessions_completed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cold_messages: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("mentor_id", "year", "month", name="uq_mentor_monthly_earnings_period"),
    )


class EarningsLedgerEntry(Base):
    __tablename__ = "earnings_ledger_entries"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    mentor_id: Mapped[str] = mapped_column(String(26), nullable=False, index=True)
    earnings_type: Mapped[str] = mapped_column(String(20), nullable=False)
    source_id: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=now_utc)

    __table_args__ = (
        UniqueConstraint("earnings_type", "source_id", name="uq_earnings_ledger_source"),
    )
