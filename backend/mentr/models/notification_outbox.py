# backend/mentr/models/notification_outbox.py
"""
Notification outbox.

Settlement, dispute and refund transitions write a row here; a separate
dispatcher delivers it. Delivery failure never touches the financial record.
"""

from __future__ import annotations

from sqlalchemy import Column, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.types import JSON
import ulid

from ..core.enums import NotificationStatus
from ..database import Base
from .types import UTCDateTime, now_utc


class NotificationOutbox(Base):
    """Pending notification request awaiting delivery."""

    __tablename__ = "notification_outbox"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    booking_id = Column(String(26), nullable=True, index=True)
    recipient_id = Column(String(26), nullable=False, index=True)
    category = Column(String(100), nullable=False, index=True)
    idempotency_key = Column(String(255), nullable=False, unique=True)
    payload = Column(
        JSONB(astext_type=Text()).with_variant(JSON(), "sqlite"),
        nullable=False,
        default=dict,
    )
    status = Column(
        String(20), nullable=False, default=NotificationStatus.PENDING.value, index=True
    )
    attempt_count = Column(Integer, nullable=False, default=0)
    next_attempt_at = Column(UTCDateTime, nullable=True, index=True)
    last_error = Column(Text, nullable=True)
    sent_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=now_utc)
    updated_at = Column(UTCDateTime, nullable=False, default=now_utc, onupdate=now_utc)

    def __repr__(self) -> str:
        return f"<NotificationOutbox {self.category} to={self.recipient_id} status={self.status}>"
