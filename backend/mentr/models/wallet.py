"""Token wallet and its transaction log."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import CheckConstraint, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column
import ulid

from ..database import Base
from .types import Money, TimestampMixin, UTCDateTime, now_utc


class TokenWallet(TimestampMixin, Base):
    """Balance always equals the signed sum of the user's TokenTransaction rows."""

    __tablename__ = "token_wallets"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    user_id: Mapped[str] = mapped_column(String(26), nullable=False, unique=True, index=True)
    balance: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0.00"))
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (CheckConstraint("balance >= 0", name="ck_token_wallets_balance_non_negative"),)

    def __repr__(self) -> str:
        return f"<TokenWallet user={self.user_id} balance={self.balance}>"


class TokenTransaction(Base):
    __tablename__ = "token_transactions"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    user_id: Mapped[str] = mapped_column(String(26), nullable=False, index=True)
    direction: Mapped[str] = mapped_column(String(10), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    reference: Mapped[str] = mapped_column(
        String(255), nullable=False, unique=True, comment="Idempotency reference"
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=now_utc)

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_token_transactions_amount_positive"),
        CheckConstraint("direction IN ('credit', 'debit')", name="ck_token_transactions_direction"),
    )

    @property
    def signed_amount(self) -> Decimal:
        return self.amount if self.direction == "credit" else -self.amount
