# backend/mentr/core/exceptions.py
"""
Domain-specific exceptions for the Mentr settlement engine.

Validation problems (bad input, wrong actor, wrong state) are raised as
DomainException subclasses and mapped to HTTP responses at the API edge.
Payment processor failures are raised as TransferError subclasses; callers
branch on ``retryable`` rather than on message text.
"""

from typing import Any, Dict, Optional

from fastapi import HTTPException, status

HTTP_422_UNPROCESSABLE: int = getattr(status, "HTTP_422_UNPROCESSABLE_CONTENT", 422)


class DomainException(Exception):
    """Base exception for all domain-specific errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=self.status_code,
            detail={
                "message": self.message,
                "code": self.code,
                "details": self.details,
            },
        )


class ValidationException(DomainException):
    """Raised when business validation fails."""

    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundException(DomainException):
    """Raised when a requested resource is not found."""

    status_code = status.HTTP_404_NOT_FOUND


class ConflictException(DomainException):
    """Raised when the target record changed state underneath the caller."""

    status_code = status.HTTP_409_CONFLICT


class BusinessRuleException(DomainException):
    """Raised when a business rule is violated."""

    status_code = HTTP_422_UNPROCESSABLE


class UnauthorizedException(DomainException):
    status_code = status.HTTP_401_UNAUTHORIZED


class ForbiddenException(DomainException):
    """Raised when the acting user is not a party to the record."""

    status_code = status.HTTP_403_FORBIDDEN


class ServiceException(DomainException):
    """Raised when a service operation fails."""

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=self.status_code,
            detail={
                "message": self.message or "An error occurred processing your request",
                "code": self.code,
                "details": self.details,
            },
        )


# Specific business exceptions


class InvalidTransitionException(BusinessRuleException):
    """Raised when a booking or dispute is asked to move to a state it cannot reach."""

    def __init__(self, entity: str, current: str, target: str):
        super().__init__(
            message=f"Cannot move {entity} from {current} to {target}",
            code="INVALID_TRANSITION",
            details={"entity": entity, "current": current, "target": target},
        )


class CancellationWindowException(BusinessRuleException):
    """Raised when a student cancels inside the booking's minimum notice window."""

    def __init__(self, minimum_hours: int, hours_until_session: float):
        super().__init__(
            message=(
                f"Booking cannot be cancelled less than {minimum_hours} hours before the session"
            ),
            code="CANCELLATION_WINDOW",
            details={
                "minimum_cancellation_hours": minimum_hours,
                "hours_until_session": round(hours_until_session, 2),
            },
        )


class DisputeWindowExpiredException(BusinessRuleException):
    def __init__(self, window_hours: int):
        super().__init__(
            message=f"Disputes must be filed within {window_hours} hours of session completion",
            code="DISPUTE_WINDOW_EXPIRED",
            details={"window_hours": window_hours},
        )


class DuplicateDisputeException(ConflictException):
    def __init__(self, booking_id: str):
        super().__init__(
            message="A dispute already exists for this booking",
            code="DISPUTE_EXISTS",
            details={"booking_id": booking_id},
        )


class InsufficientTokenBalanceException(BusinessRuleException):
    def __init__(self, balance: Any, required: Any):
        super().__init__(
            message="Insufficient token balance",
            code="INSUFFICIENT_TOKENS",
            details={"balance": str(balance), "required": str(required)},
        )


class RepositoryException(Exception):
    """
    Exception raised for repository layer errors.

    Used when data access operations fail, such as connection issues,
    query failures, or constraint violations.
    """


# Payment processor failures


class TransferError(Exception):
    """Base class for failures reported by the external transfer gateway."""

    retryable: bool = False
    failure_code: str = "transfer_failed"

    def __init__(self, message: str, *, failure_code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if failure_code:
            self.failure_code = failure_code


class TransientTransferError(TransferError):
    """Network, rate limit or processor-side fault. Safe to retry with the same key."""

    retryable = True
    failure_code = "network_error"


class InsufficientFundsError(TransientTransferError):
    """Platform balance cannot cover the transfer yet."""

    failure_code = "insufficient_funds"


class TerminalTransferError(TransferError):
    """Failure that will not resolve without human action."""

    retryable = False
    failure_code = "transfer_rejected"


class AccountNotReadyError(TerminalTransferError):
    """Destination account is missing or has not finished onboarding."""

    failure_code = "account_not_ready"
