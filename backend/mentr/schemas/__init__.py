from .settlement import (
    BookingPayoutSummary,
    CancelBookingRequest,
    CreateBookingRequest,
    DismissDisputeRequest,
    EvidenceItem,
    FileDisputeRequest,
    MentorResponseRequest,
    PayoutStatsResponse,
    PayoutSweepResponse,
    PendingPayoutSummary,
    ResolveDisputeRequest,
    SettlementOutcomeResponse,
)

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
