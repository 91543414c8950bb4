"""Refund amount and routing for cancelled bookings."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from ..core.config import settings
from ..core.enums import CancelledBy, PaymentMethod, RefundType
from ..core.money import ZERO, round2
from ..models.booking import Booking


@dataclass(frozen=True)
class RefundQuote:
    amount: Decimal
    percentage: int
    policy_basis: str
    hours_until_session: float
    minimum_cancellation_hours: int

    @property
    def is_refundable(self) -> bool:
        return self.amount > ZERO

    def to_payload(self) -> dict[str, object]:
        return {
            "amount": str(self.amount),
            "percentage": self.percentage,
            "policy_basis": self.policy_basis,
            "hours_until_session": round(self.hours_until_session, 2),
            "minimum_cancellation_hours": self.minimum_cancellation_hours,
        }


class RefundPolicyEngine:
    """
    Applies the cancellation policy frozen on the booking.

    Mentor cancellations always refund in full. Student cancellations refund in
    full at or beyond the policy minimum, at the late rate between the floor
    and the minimum, and nothing inside the floor.
    """

    def __init__(
        self,
        *,
        late_refund_rate: Optional[Decimal] = None,
        floor_hours: Optional[int] = None,
        default_minimum_hours: Optional[int] = None,
    ) -> None:
        self.late_refund_rate = (
            late_refund_rate
            if late_refund_rate is not None
            else settings.late_cancellation_refund_rate
        )
        self.floor_hours = floor_hours if floor_hours is not None else settings.late_cancellation_floor_hours
        self.default_minimum_hours = (
            default_minimum_hours or settings.default_minimum_cancellation_hours
        )

    def minimum_hours_for(self, booking: Booking) -> int:
        return booking.policy_minimum_cancellation_hours or self.default_minimum_hours

    def quote(self, booking: Booking, cancelled_by: CancelledBy, now: datetime) -> RefundQuote:
        minimum_hours = self.minimum_hours_for(booking)
        remaining = booking.scheduled_at_utc - now
        hours = remaining.total_seconds() / 3600
        gross = round2(booking.amount)

        if cancelled_by is CancelledBy.MENTOR:
            return RefundQuote(gross, 100, "mentor_cancelled", hours, minimum_hours)
        if cancelled_by is CancelledBy.SYSTEM:
            return RefundQuote(gross, 100, "system_cancelled", hours, minimum_hours)

        if remaining >= timedelta(hours=minimum_hours):
            return RefundQuote(gross, 100, "student_outside_window", hours, minimum_hours)
        if remaining >= timedelta(hours=self.floor_hours):
            percentage = int(self.late_refund_rate * 100)
            return RefundQuote(
                round2(gross * self.late_refund_rate),
                percentage,
                "student_late_cancellation",
                hours,
                minimum_hours,
            )
        return RefundQuote(ZERO, 0, "student_inside_floor", hours, minimum_hours)

    def is_inside_window(self, booking: Booking, now: datetime) -> bool:
        return booking.scheduled_at_utc - now < timedelta(hours=self.minimum_hours_for(booking))

    @staticmethod
    def resolve_route(
        booking: Booking,
        cancelled_by: Optional[CancelledBy] = None,
        requested: Optional[RefundType] = None,
    ) -> RefundType:
        """
        Token-paid bookings always go back to the wallet. Otherwise the original
        payment method, unless the student asked for token credit instead.
        """
        if booking.payment_method == PaymentMethod.TOKENS.value:
            return RefundType.TOKENS
        if requested is RefundType.TOKENS and cancelled_by is CancelledBy.STUDENT:
            return RefundType.TOKENS
        return RefundType.EXTERNAL


__all__ = ["RefundPolicyEngine", "RefundQuote"]
