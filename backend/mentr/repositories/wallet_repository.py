# backend/mentr/repositories/wallet_repository.py
"""Token wallet and transaction queries."""

from decimal import Decimal
from typing import List, Optional

from sqlalchemy import case, func
from sqlalchemy.orm import Session

from ..core.enums import TransactionDirection
from ..models.wallet import TokenTransaction, TokenWallet
from .base_repository import BaseRepository


class WalletRepository(BaseRepository[TokenWallet]):
    def __init__(self, db: Session):
        super().__init__(db, TokenWallet)

    def get_by_user(self, user_id: str, for_update: bool = False) -> Optional[TokenWallet]:
        query = self.db.query(TokenWallet).filter(TokenWallet.user_id == user_id)
        if for_update:
            query = self._lock(query)
        return query.first()

    def get_or_create(self, user_id: str) -> TokenWallet:
        wallet = self.get_by_user(user_id, for_update=True)
        if wallet is not None:
            return wallet
        savepoint = self.db.begin_nested()
        try:
            wallet = TokenWallet(user_id=user_id, balance=Decimal("0.00"))
            self.db.add(wallet)
            self.db.flush()
            savepoint.commit()
            return wallet
        except Exception:
            savepoint.rollback()
            wallet = self.get_by_user(user_id, for_update=True)
            if wallet is None:
                raise
            return wallet

    def get_transaction_by_reference(self, reference: str) -> Optional[TokenTransaction]:
        return (
            self.db.query(TokenTransaction).filter(TokenTransaction.reference == reference).first()
        )

    def add_transaction(self, **kwargs) -> TokenTransaction:
        txn = TokenTransaction(**kwargs)
        self.db.add(txn)
        self.db.flush()
        return txn

    def list_transactions(self, user_id: str, limit: int = 50, offset: int = 0) -> List[TokenTransaction]:
        return self._execute_query(
            self.db.query(TokenTransaction)
            .filter(TokenTransaction.user_id == user_id)
            .order_by(TokenTransaction.created_at.desc())
            .offset(offset)
            .limit(limit)
        )

    def signed_transaction_sum(self, user_id: str) -> Decimal:
        signed = case(
            (TokenTransaction.direction == TransactionDirection.CREDIT.value, TokenTransaction.amount),
            else_=-TokenTransaction.amount,
        )
        total = (
            self.db.query(func.coalesce(func.sum(signed), 0))
            .filter(TokenTransaction.user_id == user_id)
            .scalar()
        )
        return Decimal(str(total or 0))
