"""Token wallet mutations, each paired with its transaction record."""

from __future__ import annotations

from decimal import Decimal
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ..core.config import settings
from ..core.enums import TransactionDirection
from ..core.exceptions import (
    ConflictException,
    InsufficientTokenBalanceException,
    ValidationException,
)
from ..core.money import ZERO, round2
from ..models.wallet import TokenTransaction
from ..repositories.factory import RepositoryFactory
from ..repositories.wallet_repository import WalletRepository
from .base import BaseService

logger = logging.getLogger(__name__)


class WalletService(BaseService):
    """
    Credits and debits token wallets.

    Every balance change writes a TokenTransaction in the same unit of work,
    keyed by a caller-supplied reference. Replaying a reference returns the
    original transaction instead of applying it twice.
    """

    def __init__(self, db: Session):
        super().__init__(db)
        self.wallet_repository: WalletRepository = RepositoryFactory.create_wallet_repository(db)

    def _apply(
        self,
        *,
        user_id: str,
        amount: Any,
        direction: TransactionDirection,
        description: str,
        reference: str,
    ) -> TokenTransaction:
        value = round2(amount)
        if value <= ZERO:
            raise ValidationException("Amount must be positive", code="INVALID_AMOUNT")
        if not reference:
            raise ValidationException("A transaction reference is required")

        with self.transaction():
            existing = self.wallet_repository.get_transaction_by_reference(reference)
            if existing is not None:
                if existing.user_id != user_id or existing.direction != direction.value:
                    raise ConflictException(
                        "Transaction reference already used for a different operation",
                        code="REFERENCE_CONFLICT",
                        details={"reference": reference},
                    )
                logger.info(
                    "Wallet transaction replay ignored",
                    extra={"reference": reference, "user_id": user_id},
                )
                return existing

            for attempt in range(1, settings.wallet_cas_max_attempts + 1):
                savepoint = self.db.begin_nested()
                try:
                    wallet = self.wallet_repository.get_or_create(user_id)
                    balance = wallet.balance or ZERO
                    if direction is TransactionDirection.DEBIT:
                        if balance < value:
                            raise InsufficientTokenBalanceException(balance, value)
                        wallet.balance = balance - value
                    else:
                        wallet.balance = balance + value

                    txn = self.wallet_repository.add_transaction(
                        user_id=user_id,
                        direction=direction.value,
                        amount=value,
                        description=description,
                        reference=reference,
                    )
                    savepoint.commit()
                except StaleDataError:
                    savepoint.rollback()
                    logger.info(
                        "Wallet update lost a concurrent write; retrying",
                        extra={"user_id": user_id, "attempt": attempt},
                    )
                    continue
                except Exception:
                    savepoint.rollback()
                    raise
                return txn

        raise ConflictException(
            "Wallet is being updated concurrently; try again",
            code="WALLET_CONTENTION",
            details={"user_id": user_id},
        )

    @BaseService.measure_operation("wallet.credit")
    def credit(
        self, *, user_id: str, amount: Any, description: str, reference: str
    ) -> TokenTransaction:
        return self._apply(
            user_id=user_id,
            amount=amount,
            direction=TransactionDirection.CREDIT,
            description=description,
            reference=reference,
        )

    @BaseService.measure_operation("wallet.debit")
    def debit(
        self, *, user_id: str, amount: Any, description: str, reference: str
    ) -> TokenTransaction:
        """Debit after a balance pre-check; the wallet never goes negative."""
        return self._apply(
            user_id=user_id,
            amount=amount,
            direction=TransactionDirection.DEBIT,
            description=description,
            reference=reference,
        )

    def get_balance(self, user_id: str) -> Decimal:
        wallet = self.wallet_repository.get_by_user(user_id)
        return wallet.balance if wallet is not None else ZERO

    def list_transactions(self, user_id: str, limit: int = 50, offset: int = 0) -> List[TokenTransaction]:
        return self.wallet_repository.list_transactions(user_id, limit=limit, offset=offset)

    def verify_wallet_balance(self, user_id: str) -> Dict[str, Any]:
        """Compare the stored balance with the signed sum of transactions."""
        stored = self.get_balance(user_id)
        computed = round2(self.wallet_repository.signed_transaction_sum(user_id))
        consistent = stored == computed
        if not consistent:
            logger.error(
                "Wallet balance mismatch",
                extra={"user_id": user_id, "stored": str(stored), "computed": str(computed)},
            )
        return {
            "user_id": user_id,
            "stored_balance": stored,
            "computed_balance": computed,
            "consistent": consistent,
        }

    def find_transaction(self, reference: str) -> Optional[TokenTransaction]:
        return self.wallet_repository.get_transaction_by_reference(reference)


__all__ = ["WalletService"]
