# backend/mentr/repositories/__init__.py
"""
Repository layer for the Mentr settlement engine.

Key Components:
- BaseRepository: generic CRUD with RepositoryException wrapping
- RepositoryFactory: single construction point used by services
- BookingRepository: settlement scan and payout compare-and-set
- RefundRepository, DisputeRepository, EarningsRepository, WalletRepository
- PayoutAccountRepository, ColdMessagePayoutRepository
- NotificationOutboxRepository

Usage:
    from mentr.repositories import RepositoryFactory

    booking_repo = RepositoryFactory.create_booking_repository(db)
    ready = booking_repo.find_ready_for_payout(now, escrow_cutoff)
"""

from .base_repository import BaseRepository, IRepository
from .booking_repository import BookingRepository
from .dispute_repository import DisputeRepository
from .earnings_repository import EarningsRepository
from .factory import RepositoryFactory
from .notification_repository import NotificationOutboxRepository
from .payout_repository import ColdMessagePayoutRepository, PayoutAccountRepository
from .refund_repository import RefundRepository
from .wallet_repository import WalletRepository

__all__ = [
    "BaseRepository",
    "IRepository",
    "RepositoryFactory",
    "BookingRepository",
    "ColdMessagePayoutRepository",
    "DisputeRepository",
    "EarningsRepository",
    "NotificationOutboxRepository",
    "PayoutAccountRepository",
    "RefundRepository",
    "WalletRepository",
]
