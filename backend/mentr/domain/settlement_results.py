"""Result types returned by the settlement and refund paths.

Callers branch on ``outcome`` / ``error_kind`` rather than on exception text.
"""

from dataclasses import asdict, dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    TRANSIENT = "transient"
    TERMINAL = "terminal"


class SettlementResult(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    DISPUTED = "disputed"
    SKIPPED = "skipped"


@dataclass
class SettlementOutcome:
    """Fired back to the caller for one booking or message."""

    source_id: str
    outcome: SettlementResult
    payout_status: Optional[str] = None
    commission: Optional[Decimal] = None
    payout: Optional[Decimal] = None
    tier: Optional[str] = None
    transfer_id: Optional[str] = None
    idempotency_key: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    reason: Optional[str] = None

    @property
    def retryable(self) -> bool:
        return self.error_kind is ErrorKind.TRANSIENT

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["outcome"] = self.outcome.value
        data["error_kind"] = self.error_kind.value if self.error_kind else None
        for key in ("commission", "payout"):
            if data[key] is not None:
                data[key] = str(data[key])
        return data


@dataclass
class PayoutSweepResult:
    processed: int = 0
    completed: int = 0
    failed: int = 0
    disputed: int = 0
    skipped: int = 0
    reconciled: int = 0
    failures: List[Dict[str, Any]] = field(default_factory=list)

    def record(self, outcome: SettlementOutcome) -> None:
        self.processed += 1
        if outcome.outcome is SettlementResult.COMPLETED:
            self.completed += 1
        elif outcome.outcome is SettlementResult.FAILED:
            self.failed += 1
            self.failures.append(
                {
                    "booking_id": outcome.source_id,
                    "reason": outcome.reason,
                    "retryable": outcome.retryable,
                }
            )
        elif outcome.outcome is SettlementResult.DISPUTED:
            self.disputed += 1
        else:
            self.skipped += 1

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RefundOutcome:
    booking_id: str
    status: str
    amount: Decimal
    refund_type: Optional[str] = None
    percentage: Optional[int] = None
    external_refund_id: Optional[str] = None
    wallet_transaction_id: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    reason: Optional[str] = None
    already_processed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["amount"] = str(self.amount)
        data["error_kind"] = self.error_kind.value if self.error_kind else None
        return data
