"""
Earnings Repository.

Reads and writes the per-mentor earnings aggregate, its monthly buckets and
the ledger entries that make crediting a payout idempotent.
"""

from typing import List, Optional

from sqlalchemy.orm import Session

from ..models.earnings import EarningsLedgerEntry, MentorEarnings, MentorMonthlyEarnings
from .base_repository import BaseRepository


class EarningsRepository(BaseRepository[MentorEarnings]):
    def __init__(self, db: Session):
        super().__init__(db, MentorEarnings)

    def get_by_mentor(self, mentor_id: str) -> Optional[MentorEarnings]:
        return self.db.query(MentorEarnings).filter(MentorEarnings.mentor_id == mentor_id).first()

    def get_or_create(self, mentor_id: str) -> MentorEarnings:
        """
        Fetch the mentor's aggregate, creating an empty tier1 row on first use.

        A concurrent first-insert loses on the unique mentor_id and re-reads.
        """
        existing = self.get_by_mentor(mentor_id)
        if existing is not None:
            return existing
        savepoint = self.db.begin_nested()
        try:
            created = MentorEarnings(mentor_id=mentor_id)
            self.db.add(created)
            self.db.flush()
            savepoint.commit()
            return created
        except Exception:
            savepoint.rollback()
            existing = self.get_by_mentor(mentor_id)
            if existing is None:
                raise
            return existing

    def has_ledger_entry(self, earnings_type: str, source_id: str) -> bool:
        return (
            self.db.query(EarningsLedgerEntry.id)
            .filter(
                EarningsLedgerEntry.earnings_type == earnings_type,
                EarningsLedgerEntry.source_id == source_id,
            )
            .first()
            is not None
        )

    def add_ledger_entry(self, **kwargs) -> EarningsLedgerEntry:
        entry = EarningsLedgerEntry(**kwargs)
        self.db.add(entry)
        self.db.flush()
        return entry

    def get_month_bucket(self, mentor_id: str, year: int, month: int) -> Optional[MentorMonthlyEarnings]:
        return (
            self.db.query(MentorMonthlyEarnings)
            .filter(
                MentorMonthlyEarnings.mentor_id == mentor_id,
                MentorMonthlyEarnings.year == year,
                MentorMonthlyEarnings.month == month,
            )
            .first()
        )

    def list_month_buckets(self, mentor_id: str, limit: int = 24) -> List[MentorMonthlyEarnings]:
        return self._execute_query(
            self.db.query(MentorMonthlyEarnings)
            .filter(MentorMonthlyEarnings.mentor_id == mentor_id)
            .order_by(MentorMonthlyEarnings.year.desc(), MentorMonthlyEarnings.month.desc())
            .limit(limit)
        )

    def list_mentor_ids(self) -> List[str]:
        return [row[0] for row in self.db.query(MentorEarnings.mentor_id).all()]
