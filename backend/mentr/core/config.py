# backend/mentr/core/config.py
from decimal import Decimal
import logging
import os
from pathlib import Path
from typing import Literal, Optional

from dotenv import load_dotenv
from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


def is_running_tests() -> bool:
    """
    Detect if code is running under pytest.

    PYTEST_CURRENT_TEST is set automatically by pytest during test runs.
    """
    return os.getenv("PYTEST_CURRENT_TEST") is not None


# Load .env file only if not in CI
if not os.getenv("CI"):
    env_path = Path(__file__).parent.parent.parent / ".env"  # Goes up to backend/.env
    logger.debug(f"[CONFIG] Looking for .env at: {env_path}")
    load_dotenv(env_path)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=None,
        case_sensitive=False,
        extra="ignore",
    )

    environment: str = Field(default="development", description="Deployment environment")

    # Persistence
    database_url: str = Field(
        default="sqlite+pysqlite:///./mentr.db",
        description="SQLAlchemy URL for the settlement database",
    )
    redis_url: str = Field(default="redis://localhost:6379/0")
    celery_broker_url: Optional[str] = Field(
        default=None, description="Broker URL; falls back to redis_url"
    )

    # Payment processor
    stripe_secret_key: SecretStr | None = Field(default=None)
    stripe_currency: str = Field(default="usd")

    # Settlement timing (hours)
    escrow_window_hours: int = Field(
        default=48, ge=1, description="Hours after completion before a booking may be paid out"
    )
    dispute_filing_window_hours: int = Field(default=48, ge=1)
    pending_payment_timeout_hours: int = Field(
        default=4, ge=1, description="Unpaid pending bookings older than this are auto-cancelled"
    )

    # Cancellation policy
    default_minimum_cancellation_hours: int = Field(default=24, ge=1, le=168)
    late_cancellation_floor_hours: int = Field(
        default=2, ge=0, description="Below this many hours a student cancellation refunds nothing"
    )
    late_cancellation_refund_rate: Decimal = Field(default=Decimal("0.50"), ge=0, le=1)
    late_student_cancellation: Literal["partial_refund", "reject"] = Field(
        default="partial_refund",
        description="Whether a student cancelling inside the policy window is refunded partially or rejected",
    )

    # Dispute partial refunds: commission on the net (amount - refund) or on the gross amount
    partial_refund_commission_basis: Literal["net", "gross"] = Field(default="net")

    # Reconciliation
    payout_processing_stale_minutes: int = Field(default=30, ge=1)
    refund_pending_retry_minutes: int = Field(default=15, ge=1)
    refund_pending_expiry_hours: int = Field(default=24, ge=1)

    # Scheduler
    scheduler_lock_backend: Literal["redis", "local"] = Field(default="redis")
    scheduler_lock_ttl_seconds: int = Field(default=900, ge=30)

    # Notification outbox
    notification_max_attempts: int = Field(default=5, ge=1)
    notification_batch_size: int = Field(default=100, ge=1)

    # Optimistic concurrency retries for earnings and wallet updates
    earnings_cas_max_attempts: int = Field(default=3, ge=1)
    wallet_cas_max_attempts: int = Field(default=3, ge=1)

    @field_validator("environment")
    @classmethod
    def _normalize_environment(cls, value: str) -> str:
        return (value or "development").strip().lower()

    @property
    def broker_url(self) -> str:
        return self.celery_broker_url or self.redis_url

    @property
    def is_testing(self) -> bool:
        return self.environment == "testing" or is_running_tests()


settings = Settings()

__all__ = ["Settings", "settings", "is_running_tests"]
