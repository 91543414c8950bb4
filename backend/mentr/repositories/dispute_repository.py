"""Dispute data access."""

from typing import List, Optional

from sqlalchemy.orm import Session, selectinload

from ..core.enums import ACTIVE_DISPUTE_STATUSES
from ..models.dispute import Dispute, DisputeEvidence
from .base_repository import BaseRepository


class DisputeRepository(BaseRepository[Dispute]):
    def __init__(self, db: Session):
        super().__init__(db, Dispute)

    def get_by_booking_id(self, booking_id: str) -> Optional[Dispute]:
        return self.db.query(Dispute).filter(Dispute.booking_id == booking_id).first()

    def get_active_for_booking(self, booking_id: str) -> Optional[Dispute]:
        """The non-terminal dispute gating this booking's payout, if any."""
        return (
            self.db.query(Dispute)
            .filter(
                Dispute.booking_id == booking_id,
                Dispute.status.in_(ACTIVE_DISPUTE_STATUSES),
            )
            .first()
        )

    def get_with_evidence(self, dispute_id: str, for_update: bool = False) -> Optional[Dispute]:
        query = (
            self.db.query(Dispute)
            .options(selectinload(Dispute.evidence))
            .filter(Dispute.id == dispute_id)
        )
        if for_update:
            query = self._lock(query)
        return query.first()

    def list_by_status(
        self, statuses: Optional[List[str]] = None, limit: int = 100, offset: int = 0
    ) -> List[Dispute]:
        query = self.db.query(Dispute)
        if statuses:
            query = query.filter(Dispute.status.in_(statuses))
        return self._execute_query(
            query.order_by(Dispute.created_at.desc()).offset(offset).limit(limit)
        )

    def add_evidence(
        self,
        dispute_id: str,
        submitted_by: str,
        evidence_type: str,
        content: str,
        description: Optional[str] = None,
    ) -> DisputeEvidence:
        evidence = DisputeEvidence(
            dispute_id=dispute_id,
            submitted_by=submitted_by,
            evidence_type=evidence_type,
            content=content,
            description=description,
        )
        self.db.add(evidence)
        self.db.flush()
        return evidence
