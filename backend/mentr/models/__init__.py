"""
Database models for the Mentr settlement engine.

- Booking lifecycle, refund and reschedule state
- Disputes and evidence
- Mentor earnings aggregate, monthly buckets and ledger entries
- Token wallets and transactions
- Payout destinations and cold-message payouts
- Notification outbox
"""

from .booking import BOOKING_TRANSITIONS, Booking, BookingRefund, RescheduleRequest
from .dispute import DISPUTE_TRANSITIONS, Dispute, DisputeEvidence
from .earnings import EarningsLedgerEntry, MentorEarnings, MentorMonthlyEarnings
from .notification_outbox import NotificationOutbox
from .payout import ColdMessagePayout, MentorPayoutAccount
from .wallet import TokenTransaction, TokenWallet

__all__ = [
    "BOOKING_TRANSITIONS",
    "DISPUTE_TRANSITIONS",
    "Booking",
    "BookingRefund",
    "ColdMessagePayout",
    "Dispute",
    "DisputeEvidence",
    "EarningsLedgerEntry",
    "MentorEarnings",
    "MentorMonthlyEarnings",
    "MentorPayoutAccount",
    "NotificationOutbox",
    "RescheduleRequest",
    "TokenTransaction",
    "TokenWallet",
]
