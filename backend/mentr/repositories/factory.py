# backend/mentr/repositories/factory.py
"""
Repository Factory for the Mentr settlement engine.

Provides centralized creation of repository instances, ensuring consistent
initialization and dependency injection.
"""

from typing import TYPE_CHECKING

from sqlalchemy.orm import Session

from .base_repository import BaseRepository

# Avoid circular imports
if TYPE_CHECKING:
    from .booking_repository import BookingRepository
    from .dispute_repository import DisputeRepository
    from .earnings_repository import EarningsRepository
    from .notification_repository import NotificationOutboxRepository
    from .payout_repository import ColdMessagePayoutRepository, PayoutAccountRepository
    from .refund_repository import RefundRepository
    from .wallet_repository import WalletRepository


class RepositoryFactory:
    """
    Factory class for creating repository instances.

    Centralizes repository creation so services never construct repositories directly.
    """

    @staticmethod
    def create_base_repository(db: Session, model) -> BaseRepository:
        """Create a generic base repository for any model."""
        return BaseRepository(db, model)

    @staticmethod
    def create_booking_repository(db: Session) -> "BookingRepository":
        """Create repository for booking lifecycle and settlement queries."""
        from .booking_repository import BookingRepository

        return BookingRepository(db)

    @staticmethod
    def create_refund_repository(db: Session) -> "RefundRepository":
        from .refund_repository import RefundRepository

        return RefundRepository(db)

    @staticmethod
    def create_dispute_repository(db: Session) -> "DisputeRepository":
        from .dispute_repository import DisputeRepository

        return DisputeRepository(db)

    @staticmethod
    def create_earnings_repository(db: Session) -> "EarningsRepository":
        """Create repository for the per-mentor earnings aggregate."""
        from .earnings_repository import EarningsRepository

        return EarningsRepository(db)

    @staticmethod
    def create_wallet_repository(db: Session) -> "WalletRepository":
        from .wallet_repository import WalletRepository

        return WalletRepository(db)

    @staticmethod
    def create_payout_account_repository(db: Session) -> "PayoutAccountRepository":
        from .payout_repository import PayoutAccountRepository

        return PayoutAccountRepository(db)

    @staticmethod
    def create_cold_message_payout_repository(db: Session) -> "ColdMessagePayoutRepository":
        from .payout_repository import ColdMessagePayoutRepository

        return ColdMessagePayoutRepository(db)

    @staticmethod
    def create_notification_outbox_repository(db: Session) -> "NotificationOutboxRepository":
        from .notification_repository import NotificationOutboxRepository

        return NotificationOutboxRepository(db)
