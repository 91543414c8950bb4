"""Status vocabularies shared by models, services and schemas."""

from enum import Enum


class BookingStatus(str, Enum):
    """Enumeration of booking lifecycle states."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REVIEWABLE = "reviewable"
    REVIEWED = "reviewed"


# Statuses that count as "session happened" for settlement and disputes
SETTLEABLE_BOOKING_STATUSES = (
    BookingStatus.COMPLETED.value,
    BookingStatus.REVIEWABLE.value,
    BookingStatus.REVIEWED.value,
)


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    REFUNDED = "refunded"


class PaymentMethod(str, Enum):
    EXTERNAL = "external"
    TOKENS = "tokens"


class PayoutStatus(str, Enum):
    """Mentor payout state of a booking or cold message."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    DISPUTED = "disputed"
    REFUNDED = "refunded"


class RefundStatus(str, Enum):
    NONE = "none"
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


class RefundType(str, Enum):
    EXTERNAL = "external"
    TOKENS = "tokens"


class DisputeStatus(str, Enum):
    PENDING = "pending"
    MENTOR_RESPONDED = "mentor_responded"
    ADMIN_REVIEW = "admin_review"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"


ACTIVE_DISPUTE_STATUSES = (
    DisputeStatus.PENDING.value,
    DisputeStatus.MENTOR_RESPONDED.value,
    DisputeStatus.ADMIN_REVIEW.value,
)


class DisputeReason(str, Enum):
    SESSION_NOT_CONDUCTED = "session_not_conducted"
    POOR_QUALITY = "poor_quality"
    INAPPROPRIATE_BEHAVIOR = "inappropriate_behavior"
    TECHNICAL_ISSUES = "technical_issues"
    MISLEADING_DESCRIPTION = "misleading_description"
    OTHER = "other"


class DisputeDecision(str, Enum):
    REFUND_MENTEE = "refund_mentee"
    PAY_MENTOR = "pay_mentor"
    PARTIAL_REFUND = "partial_refund"


class EvidenceType(str, Enum):
    IMAGE = "image"
    VIDEO = "video"
    DOCUMENT = "document"
    TEXT = "text"


class TransactionDirection(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class EarningsType(str, Enum):
    SESSION = "session"
    MESSAGE = "message"


class RescheduleStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class CancelledBy(str, Enum):
    MENTOR = "mentor"
    STUDENT = "student"
    SYSTEM = "system"


class ActorRole(str, Enum):
    STUDENT = "student"
    MENTOR = "mentor"
    ADMIN = "admin"
    SYSTEM = "system"


class NotificationStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
