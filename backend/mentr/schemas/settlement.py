# backend/mentr/schemas/settlement.py
"""
Request and response models for the booking, dispute and payout operations.

Services accept the request models directly; the operator routes return the
response models.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import ConfigDict, Field, field_validator, model_validator

from ..core.enums import (
    DisputeDecision,
    DisputeReason,
    EvidenceType,
    RefundType,
)
from .base import MoneyAmount, StrictModel, StrictRequestModel


class CreateBookingRequest(StrictRequestModel):
    service_id: str = Field(..., min_length=1, max_length=26)
    mentor_id: str = Field(..., min_length=1, max_length=26)
    student_id: str = Field(..., min_length=1, max_length=26)
    scheduled_at_utc: datetime
    scheduled_at: Optional[datetime] = Field(
        None, description="Session start on the mentor's wall clock"
    )
    mentor_timezone: Optional[str] = Field(None, max_length=64)
    student_timezone: Optional[str] = Field(None, max_length=64)
    duration_minutes: int = Field(..., ge=15, le=480)
    amount: MoneyAmount = Field(..., ge=0)
    minimum_cancellation_hours: Optional[int] = Field(
        None, ge=1, le=168, description="Mentor's cancellation policy at booking time"
    )

    @field_validator("scheduled_at_utc")
    @classmethod
    def require_timezone(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            raise ValueError("scheduled_at_utc must be timezone-aware")
        return value

    @model_validator(mode="after")
    def distinct_parties(self) -> "CreateBookingRequest":
        if self.mentor_id == self.student_id:
            raise ValueError("A mentor cannot book their own session")
        return self


class CancelBookingRequest(StrictRequestModel):
    booking_id: str
    reason: Optional[str] = Field(None, max_length=500)
    refund_route: Optional[RefundType] = Field(
        None, description="Students may ask for token credit instead of the original method"
    )


class EvidenceItem(StrictRequestModel):
    evidence_type: EvidenceType
    content: str = Field(..., min_length=1, description="URL or inline text")
    description: Optional[str] = Field(None, max_length=200)


class FileDisputeRequest(StrictRequestModel):
    booking_id: str
    reason: DisputeReason
    description: str = Field(..., min_length=1, max_length=1000)
    evidence: List[EvidenceItem] = Field(default_factory=list)


class MentorResponseRequest(StrictRequestModel):
    dispute_id: str
    response: str = Field(..., min_length=1, max_length=2000)
    evidence: List[EvidenceItem] = Field(default_factory=list)


class ResolveDisputeRequest(StrictRequestModel):
    dispute_id: str
    decision: DisputeDecision
    amount: Optional[MoneyAmount] = Field(None, description="Refund to the student; partial_refund only")
    reason: str = Field(..., min_length=1, max_length=500)

    @model_validator(mode="after")
    def amount_matches_decision(self) -> "ResolveDisputeRequest":
        if self.decision is DisputeDecision.PARTIAL_REFUND and (self.amount is None or self.amount <= 0):
            raise ValueError("partial_refund requires a positive amount")
        if self.decision is not DisputeDecision.PARTIAL_REFUND and self.amount is not None:
            raise ValueError("amount is only accepted for partial_refund")
        return self


class DismissDisputeRequest(StrictRequestModel):
    dispute_id: str
    reason: str = Field(..., min_length=1, max_length=500)


# Responses


class SettlementOutcomeResponse(StrictModel):
    source_id: str
    outcome: str
    payout_status: Optional[str] = None
    commission: Optional[MoneyAmount] = None
    payout: Optional[MoneyAmount] = None
    tier: Optional[str] = None
    transfer_id: Optional[str] = None
    idempotency_key: Optional[str] = None
    error_kind: Optional[str] = None
    reason: Optional[str] = None


class PayoutSweepResponse(StrictModel):
    processed: int
    completed: int
    failed: int
    disputed: int
    skipped: int
    reconciled: int
    failures: List[Dict[str, Any]] = Field(default_factory=list)


class BookingPayoutSummary(StrictModel):
    model_config = ConfigDict(from_attributes=True, extra="ignore")

    id: str
    mentor_id: str
    student_id: str
    status: str
    amount: MoneyAmount
    platform_commission: Optional[MoneyAmount] = None
    mentor_payout: Optional[MoneyAmount] = None
    refunded_amount: Optional[MoneyAmount] = None
    commission_tier: Optional[str] = None
    payout_status: Optional[str] = None
    payout_date: Optional[datetime] = None
    payout_failure_reason: Optional[str] = None
    payout_retryable: Optional[bool] = None
    payout_transfer_id: Optional[str] = None
    dispute_period_ends: Optional[datetime] = None


class PendingPayoutSummary(BookingPayoutSummary):
    ready: bool = False
    gated_by_dispute: bool = False


class PayoutStatsResponse(StrictModel):
    by_status: Dict[str, int]
    total_mentor_payouts: MoneyAmount
    total_platform_commission: MoneyAmount
    failed_retryable: int
    generated_at: datetime


__all__ = [
    "BookingPayoutSummary",
    "CancelBookingRequest",
    "CreateBookingRequest",
    "DismissDisputeRequest",
    "EvidenceItem",
    "FileDisputeRequest",
    "MentorResponseRequest",
    "PayoutStatsResponse",
    "PayoutSweepResponse",
    "PendingPayoutSummary",
    "ResolveDisputeRequest",
    "SettlementOutcomeResponse",
]
