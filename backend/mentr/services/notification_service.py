# backend/mentr/services/notification_service.py
"""
Notification requests for settlement, dispute and refund transitions.

``request`` writes an outbox row inside a SAVEPOINT and swallows its own
failures, so a broken notification can never roll back or block the financial
transition that triggered it. ``dispatch_pending`` delivers due rows through a
NotificationSender with exponential backoff.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
import json
import logging
from typing import Any, Dict, Mapping, Optional, Protocol

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.enums import NotificationStatus
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from .base import BaseService

logger = logging.getLogger(__name__)

BACKOFF_SECONDS = [30, 120, 600, 1800, 7200]


class NotificationCategory:
    PAYOUT_COMPLETED = "payout_completed"
    PAYOUT_FAILED = "payout_failed"
    PAYOUT_DISPUTED = "payout_disputed"
    BOOKING_CANCELLED = "booking_cancelled"
    BOOKING_AUTO_CANCELLED = "booking_auto_cancelled"
    REFUND_PROCESSED = "refund_processed"
    REFUND_FAILED = "refund_failed"
    DISPUTE_FILED = "dispute_filed"
    DISPUTE_RESPONDED = "dispute_responded"
    DISPUTE_ESCALATED = "dispute_escalated"
    DISPUTE_RESOLVED = "dispute_resolved"
    DISPUTE_DISMISSED = "dispute_dismissed"
    RESCHEDULE_REJECTED = "reschedule_rejected"


class NotificationSenderTemporaryError(RuntimeError):
    """Delivery failed in a way worth retrying."""


class NotificationSender(Protocol):
    def send(
        self, *, recipient_id: str, category: str, payload: Mapping[str, Any], idempotency_key: str
    ) -> None:
        ...


class LoggingNotificationSender:
    """Default sender: records the request in the log. Delivery channels live elsewhere."""

    def send(
        self, *, recipient_id: str, category: str, payload: Mapping[str, Any], idempotency_key: str
    ) -> None:
        logger.info(
            "notification %s -> %s",
            category,
            recipient_id,
            extra={"category": category, "recipient_id": recipient_id, "idempotency_key": idempotency_key},
        )


def _next_backoff(attempt_number: int) -> int:
    """Return backoff delay for the given attempt (1-indexed)."""
    index = max(0, min(attempt_number - 1, len(BACKOFF_SECONDS) - 1))
    return BACKOFF_SECONDS[index]


def _jsonable(payload: Mapping[str, Any]) -> Dict[str, Any]:
    return json.loads(json.dumps(dict(payload), default=str))


class NotificationService(BaseService):
    def __init__(self, db: Session):
        super().__init__(db)
        self.outbox_repository = RepositoryFactory.create_notification_outbox_repository(db)

    def request(
        self,
        *,
        recipient_id: str,
        category: str,
        booking_id: Optional[str] = None,
        payload: Optional[Mapping[str, Any]] = None,
        dedupe_key: Optional[str] = None,
    ) -> bool:
        """
        Enqueue a notification. Never raises.

        Args:
            recipient_id: User to notify
            category: NotificationCategory value
            booking_id: Booking the notification is about, if any
            payload: Template data
            dedupe_key: Suffix making the request idempotent; defaults to booking id

        Returns:
            True if a new outbox row was written
        """
        key = f"{category}:{recipient_id}:{dedupe_key or booking_id or 'none'}"
        try:
            savepoint = self.db.begin_nested()
            try:
                if self.outbox_repository.get_by_key(key) is not None:
                    savepoint.commit()
                    return False
                self.outbox_repository.create(
                    booking_id=booking_id,
                    recipient_id=recipient_id,
                    category=category,
                    idempotency_key=key,
                    payload=_jsonable(payload or {}),
                )
                savepoint.commit()
                return True
            except Exception:
                savepoint.rollback()
                raise
        except Exception as exc:
            self.logger.warning(
                "Failed to enqueue notification",
                extra={
                    "category": category,
                    "recipient_id": recipient_id,
                    "booking_id": booking_id,
                    "error": str(exc),
                    "error_type": type(exc).__name__,
                },
            )
            return False

    @BaseService.measure_operation("dispatch_notifications")
    def dispatch_pending(
        self, sender: Optional[NotificationSender] = None, now: Optional[datetime] = None
    ) -> Dict[str, int]:
        """Deliver due outbox rows; returns sent/retrying/failed counts."""
        sender = sender or LoggingNotificationSender()
        now = now or datetime.now(timezone.utc)
        counts = {"sent": 0, "retrying": 0, "failed": 0}

        with self.transaction():
            due = self.outbox_repository.fetch_due(now, settings.notification_batch_size)
            for row in due:
                attempt = (row.attempt_count or 0) + 1
                row.attempt_count = attempt
                try:
                    sender.send(
                        recipient_id=row.recipient_id,
                        category=row.category,
                        payload=row.payload or {},
                        idempotency_key=row.idempotency_key,
                    )
                except NotificationSenderTemporaryError as exc:
                    row.last_error = str(exc)
                    if attempt >= settings.notification_max_attempts:
                        row.status = NotificationStatus.FAILED.value
                        counts["failed"] += 1
                        prometheus_metrics.record_notification(row.category, "failed")
                        self.logger.error(
                            "Notification %s failed after %s attempts", row.id, attempt
                        )
                    else:
                        row.next_attempt_at = now + timedelta(seconds=_next_backoff(attempt))
                        counts["retrying"] += 1
                        prometheus_metrics.record_notification(row.category, "retry")
                    continue
                except Exception as exc:
                    row.status = NotificationStatus.FAILED.value
                    row.last_error = str(exc)
                    counts["failed"] += 1
                    prometheus_metrics.record_notification(row.category, "failed")
                    self.logger.exception("Notification %s failed permanently", row.id)
                    continue
                row.status = NotificationStatus.SENT.value
                row.sent_at = now
                row.last_error = None
                counts["sent"] += 1
                prometheus_metrics.record_notification(row.category, "sent")
            self.db.flush()

        if any(counts.values()):
            self.logger.info("Notification dispatch finished", extra=counts)
        return counts


__all__ = [
    "LoggingNotificationSender",
    "NotificationCategory",
    "NotificationSender",
    "NotificationSenderTemporaryError",
    "NotificationService",
]
