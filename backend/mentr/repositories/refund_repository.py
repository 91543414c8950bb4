"""Refund records, one per booking."""

from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from ..core.enums import RefundStatus
from ..models.booking import BookingRefund
from .base_repository import BaseRepository


class RefundRepository(BaseRepository[BookingRefund]):
    def __init__(self, db: Session):
        super().__init__(db, BookingRefund)

    def get_by_booking_id(self, booking_id: str, for_update: bool = False) -> Optional[BookingRefund]:
        query = self.db.query(BookingRefund).filter(BookingRefund.booking_id == booking_id)
        if for_update:
            query = self._lock(query)
        return query.first()

    def find_pending_before(self, cutoff: datetime, limit: int = 200) -> List[BookingRefund]:
        return self._execute_query(
            self.db.query(BookingRefund)
            .filter(
                BookingRefund.status == RefundStatus.PENDING.value,
                BookingRefund.requested_at <= cutoff,
            )
            .order_by(BookingRefund.requested_at.asc())
            .limit(limit)
        )

    def find_failed(self, limit: int = 100) -> List[BookingRefund]:
        return self._execute_query(
            self.db.query(BookingRefund)
            .filter(BookingRefund.status == RefundStatus.FAILED.value)
            .order_by(BookingRefund.updated_at.desc())
            .limit(limit)
        )
