"""Payout destinations and cold-message payouts."""

from typing import Any, Optional, Sequence

from sqlalchemy.orm import Session

from ..models.payout import ColdMessagePayout, MentorPayoutAccount
from .base_repository import BaseRepository


class PayoutAccountRepository(BaseRepository[MentorPayoutAccount]):
    def __init__(self, db: Session):
        super().__init__(db, MentorPayoutAccount)

    def get_by_mentor(self, mentor_id: str) -> Optional[MentorPayoutAccount]:
        return (
            self.db.query(MentorPayoutAccount)
            .filter(MentorPayoutAccount.mentor_id == mentor_id)
            .first()
        )


class ColdMessagePayoutRepository(BaseRepository[ColdMessagePayout]):
    def __init__(self, db: Session):
        super().__init__(db, ColdMessagePayout)

    def get_by_message_id(self, message_id: str) -> Optional[ColdMessagePayout]:
        return (
            self.db.query(ColdMessagePayout)
            .filter(ColdMessagePayout.message_id == message_id)
            .first()
        )

    def compare_and_set_payout(
        self, payout_id: str, expected: Sequence[str], new_status: str, **values: Any
    ) -> bool:
        updated = (
            self.db.query(ColdMessagePayout)
            .filter(
                ColdMessagePayout.id == payout_id,
                ColdMessagePayout.payout_status.in_(list(expected)),
            )
            .update({"payout_status": new_status, **values}, synchronize_session=False)
        )
        cached = self.db.identity_map.get(self.db.identity_key(ColdMessagePayout, payout_id))
        if cached is not None:
            self.db.expire(cached)
        return bool(updated)
