# backend/tests/conftest.py
"""
Shared fixtures for the settlement engine tests.

Every test gets its own SQLite database file, so services can commit freely
and separate sessions (scheduler jobs, route handlers) see each other's work.
The transfer gateway is the in-memory fake, which records every call and
de-duplicates idempotency keys the way the processor does.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
import os
from typing import Any, Callable, Dict, List, Mapping

# Must be set before mentr.core.config is imported
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("SCHEDULER_LOCK_BACKEND", "local")
os.environ.pop("STRIPE_SECRET_KEY", None)

import pytest
from sqlalchemy.orm import Session, sessionmaker
import ulid

from mentr.core.enums import BookingStatus, PaymentMethod, PaymentStatus, PayoutStatus
from mentr.database import Base, build_engine
from mentr.integrations.transfer_gateway import FakeTransferGateway
import mentr.models  # noqa: F401
from mentr.models.booking import Booking
from mentr.models.payout import MentorPayoutAccount
from mentr.services.notification_service import NotificationSenderTemporaryError

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
MENTOR_ACCOUNT = "acct_mentor_ready"


def new_id() -> str:
    return str(ulid.ULID())


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture(scope="function")
def engine(tmp_path):
    test_engine = build_engine(f"sqlite+pysqlite:///{tmp_path / 'settlement.db'}")
    Base.metadata.create_all(bind=test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture
def session_factory(engine) -> Callable[[], Session]:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)


@pytest.fixture(scope="function")
def db(session_factory):
    """Database session for one test; rolled back and closed afterwards."""
    session = session_factory()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def mentor_id() -> str:
    return new_id()


@pytest.fixture
def student_id() -> str:
    return new_id()


@pytest.fixture
def gateway() -> FakeTransferGateway:
    return FakeTransferGateway(ready_accounts={MENTOR_ACCOUNT})


@pytest.fixture
def payout_account(db: Session, mentor_id: str) -> MentorPayoutAccount:
    account = MentorPayoutAccount(
        mentor_id=mentor_id,
        external_account_id=MENTOR_ACCOUNT,
        onboarding_completed=True,
    )
    db.add(account)
    db.commit()
    return account


@pytest.fixture
def make_booking(db: Session, mentor_id: str, student_id: str) -> Callable[..., Booking]:
    """
    Build and commit a booking.

    Defaults describe a paid session completed three days before NOW whose
    dispute window closed a day ago, i.e. ready for settlement.
    """

    def _make(**overrides: Any) -> Booking:
        completed_at = overrides.pop("completed_at", NOW - timedelta(hours=72))
        anchor = completed_at or NOW
        values: Dict[str, Any] = {
            "service_id": new_id(),
            "mentor_id": mentor_id,
            "student_id": student_id,
            "scheduled_at_utc": anchor - timedelta(hours=1),
            "duration_minutes": 60,
            "status": BookingStatus.COMPLETED.value,
            "payment_status": PaymentStatus.PAID.value,
            "payment_method": PaymentMethod.EXTERNAL.value,
            "payment_reference": f"pi_{new_id().lower()}",
            "amount": Decimal("100.00"),
            "payout_status": PayoutStatus.PENDING.value,
            "completed_at": completed_at,
            "dispute_period_ends": completed_at + timedelta(hours=48) if completed_at else None,
            "policy_minimum_cancellation_hours": 24,
            "policy_mentor_id": mentor_id,
            "created_at": anchor - timedelta(days=7),
        }
        values.update(overrides)
        booking = Booking(**values)
        db.add(booking)
        db.commit()
        return booking

    return _make


@pytest.fixture
def upcoming_booking(make_booking: Callable[..., Booking]) -> Callable[..., Booking]:
    """A confirmed, paid booking scheduled ``hours_ahead`` hours after NOW."""

    def _make(hours_ahead: float = 48, **overrides: Any) -> Booking:
        values: Dict[str, Any] = {
            "status": BookingStatus.CONFIRMED.value,
            "scheduled_at_utc": NOW + timedelta(hours=hours_ahead),
            "completed_at": None,
            "dispute_period_ends": None,
            "payout_status": None,
        }
        values.update(overrides)
        return make_booking(**values)

    return _make


class RecordingSender:
    """NotificationSender that keeps what it was asked to deliver."""

    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []
        self.fail_with: Exception | None = None

    def send(
        self, *, recipient_id: str, category: str, payload: Mapping[str, Any], idempotency_key: str
    ) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append(
            {
                "recipient_id": recipient_id,
                "category": category,
                "payload": dict(payload),
                "idempotency_key": idempotency_key,
            }
        )

    def fail_temporarily(self, message: str = "smtp timeout") -> None:
        self.fail_with = NotificationSenderTemporaryError(message)


@pytest.fixture
def recording_sender() -> RecordingSender:
    return RecordingSender()
