# backend/mentr/repositories/booking_repository.py
"""
Booking Repository for the Mentr settlement engine.

Holds every query the settlement, cancellation and dispute flows run against
bookings, including the compare-and-set used to claim a booking's payout.
A CAS update only succeeds when the row is still in one of the expected
payout states; a zero rowcount means another writer got there first.
"""

from datetime import datetime
import logging
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import and_, func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.enums import (
    SETTLEABLE_BOOKING_STATUSES,
    BookingStatus,
    PaymentStatus,
    PayoutStatus,
    RescheduleStatus,
)
from ..core.exceptions import RepositoryException
from ..models.booking import Booking, RescheduleRequest
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class BookingRepository(BaseRepository[Booking]):
    """Repository for booking lifecycle and settlement queries."""

    def __init__(self, db: Session):
        super().__init__(db, Booking)

    # Settlement scan

    def find_ready_for_payout(
        self, now: datetime, escrow_cutoff: datetime, limit: int = 500
    ) -> List[Booking]:
        """
        Bookings whose escrow window has elapsed and whose payout is unset or pending.

        ``dispute_period_ends`` is the primary clock. Rows without it (completed
        before the column was populated) fall back to ``updated_at <= escrow_cutoff``.

        Args:
            now: Current instant
            escrow_cutoff: now minus the escrow window
            limit: Batch size for a single sweep

        Returns:
            Bookings eligible for settlement, oldest first
        """
        try:
            return (
                self.db.query(Booking)
                .filter(
                    Booking.status.in_(SETTLEABLE_BOOKING_STATUSES),
                    or_(
                        Booking.payout_status.is_(None),
                        Booking.payout_status == PayoutStatus.PENDING.value,
                    ),
                    or_(
                        Booking.dispute_period_ends <= now,
                        and_(
                            Booking.dispute_period_ends.is_(None),
                            Booking.updated_at <= escrow_cutoff,
                        ),
                    ),
                )
                .order_by(Booking.dispute_period_ends.asc(), Booking.id.asc())
                .limit(limit)
                .all()
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Error finding bookings ready for payout: {str(e)}")
            raise RepositoryException(f"Failed to find bookings ready for payout: {str(e)}")

    def find_stuck_processing(self, cutoff: datetime, limit: int = 100) -> List[Booking]:
        """Bookings left in ``processing`` since before ``cutoff`` (crash between claim and result)."""
        return self._execute_query(
            self.db.query(Booking)
            .filter(
                Booking.payout_status == PayoutStatus.PROCESSING.value,
                Booking.payout_date <= cutoff,
            )
            .order_by(Booking.payout_date.asc())
            .limit(limit)
        )

    def compare_and_set_payout(
        self,
        booking_id: str,
        expected: Sequence[Optional[str]],
        new_status: str,
        **values: Any,
    ) -> bool:
        """
        Move ``payout_status`` to ``new_status`` only if it is currently one of ``expected``.

        ``None`` in ``expected`` matches an unset payout status.

        Returns:
            True if this call won the update, False if the row had already moved
        """
        known = [status for status in expected if status is not None]
        conditions = []
        if known:
            conditions.append(Booking.payout_status.in_(known))
        if None in expected:
            conditions.append(Booking.payout_status.is_(None))

        try:
            updated = (
                self.db.query(Booking)
                .filter(Booking.id == booking_id, or_(*conditions))
                .update({"payout_status": new_status, **values}, synchronize_session=False)
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Payout CAS failed for booking {booking_id}: {str(e)}")
            raise RepositoryException(f"Failed to update payout state: {str(e)}")

        # Drop any stale in-memory copy so the next read sees the new row
        cached = self.db.identity_map.get(self.db.identity_key(Booking, booking_id))
        if cached is not None:
            self.db.expire(cached)
        return bool(updated)

    def compare_and_set_status(
        self, booking_id: str, expected: Sequence[str], new_status: str, **values: Any
    ) -> bool:
        """Lifecycle CAS used by cancellation and the auto-cancel sweep."""
        try:
            updated = (
                self.db.query(Booking)
                .filter(Booking.id == booking_id, Booking.status.in_(list(expected)))
                .update({"status": new_status, **values}, synchronize_session=False)
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Status CAS failed for booking {booking_id}: {str(e)}")
            raise RepositoryException(f"Failed to update booking status: {str(e)}")
        cached = self.db.identity_map.get(self.db.identity_key(Booking, booking_id))
        if cached is not None:
            self.db.expire(cached)
        return bool(updated)

    # Operator views

    def find_failed_payouts(self, limit: int = 100) -> List[Booking]:
        return self._execute_query(
            self.db.query(Booking)
            .filter(Booking.payout_status == PayoutStatus.FAILED.value)
            .order_by(Booking.payout_date.desc())
            .limit(limit)
        )

    def find_awaiting_payout(self, limit: int = 200) -> List[Booking]:
        """Completed bookings still inside (or just past) the escrow window."""
        return self._execute_query(
            self.db.query(Booking)
            .filter(
                Booking.status.in_(SETTLEABLE_BOOKING_STATUSES),
                or_(
                    Booking.payout_status.is_(None),
                    Booking.payout_status == PayoutStatus.PENDING.value,
                ),
            )
            .order_by(Booking.dispute_period_ends.asc())
            .limit(limit)
        )

    def count_by_payout_status(self) -> Dict[str, int]:
        try:
            rows = (
                self.db.query(Booking.payout_status, func.count(Booking.id))
                .filter(Booking.status.in_(SETTLEABLE_BOOKING_STATUSES))
                .group_by(Booking.payout_status)
                .all()
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Error counting payouts: {str(e)}")
            raise RepositoryException(f"Failed to count payouts: {str(e)}")
        return {(status or PayoutStatus.PENDING.value): count for status, count in rows}

    def sum_completed_payouts(self) -> Dict[str, Any]:
        row = (
            self.db.query(
                func.coalesce(func.sum(Booking.mentor_payout), 0),
                func.coalesce(func.sum(Booking.platform_commission), 0),
            )
            .filter(Booking.payout_status == PayoutStatus.COMPLETED.value)
            .one()
        )
        return {"mentor_payouts": row[0], "platform_commission": row[1]}

    def find_mentor_payout_history(
        self, mentor_id: str, limit: int = 50, offset: int = 0
    ) -> List[Booking]:
        return self._execute_query(
            self.db.query(Booking)
            .filter(
                Booking.mentor_id == mentor_id,
                Booking.payout_status.isnot(None),
            )
            .order_by(Booking.payout_date.desc().nullslast(), Booking.created_at.desc())
            .offset(offset)
            .limit(limit)
        )

    # Pending-payment sweep

    def find_stale_unpaid(self, cutoff: datetime, limit: int = 500) -> List[Booking]:
        return self._execute_query(
            self.db.query(Booking)
            .filter(
                Booking.status == BookingStatus.PENDING.value,
                Booking.payment_status == PaymentStatus.PENDING.value,
                Booking.created_at < cutoff,
            )
            .order_by(Booking.created_at.asc())
            .limit(limit)
        )

    def pending_stats(self, cutoff: datetime) -> Dict[str, Any]:
        base = self.db.query(Booking).filter(
            Booking.status == BookingStatus.PENDING.value,
            Booking.payment_status == PaymentStatus.PENDING.value,
        )
        oldest = base.with_entities(func.min(Booking.created_at)).scalar()
        return {
            "total_pending": base.count(),
            "past_timeout": base.filter(Booking.created_at < cutoff).count(),
            "oldest_pending_at": oldest,
        }

    # Reschedule requests

    def find_pending_reschedules(self, booking_id: str) -> List[RescheduleRequest]:
        return (
            self.db.query(RescheduleRequest)
            .filter(
                RescheduleRequest.booking_id == booking_id,
                RescheduleRequest.status == RescheduleStatus.PENDING.value,
            )
            .all()
        )
