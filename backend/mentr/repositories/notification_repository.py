"""Notification outbox queries."""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..core.enums import NotificationStatus
from ..models.notification_outbox import NotificationOutbox
from .base_repository import BaseRepository


class NotificationOutboxRepository(BaseRepository[NotificationOutbox]):
    def __init__(self, db: Session):
        super().__init__(db, NotificationOutbox)

    def get_by_key(self, idempotency_key: str) -> Optional[NotificationOutbox]:
        return (
            self.db.query(NotificationOutbox)
            .filter(NotificationOutbox.idempotency_key == idempotency_key)
            .first()
        )

    def fetch_due(self, now: datetime, limit: int) -> List[NotificationOutbox]:
        query = (
            self.db.query(NotificationOutbox)
            .filter(
                NotificationOutbox.status == NotificationStatus.PENDING.value,
                or_(
                    NotificationOutbox.next_attempt_at.is_(None),
                    NotificationOutbox.next_attempt_at <= now,
                ),
            )
            .order_by(NotificationOutbox.created_at.asc())
            .limit(limit)
        )
        if self.dialect_name == "postgresql":
            query = query.with_for_update(skip_locked=True)
        return self._execute_query(query)
