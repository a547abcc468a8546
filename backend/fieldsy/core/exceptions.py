# backend/fieldsy/core/exceptions.py
"""
Domain-specific exceptions for the Fieldsy booking engine.

Services raise these; the HTTP layer converts them with
``to_http_exception``. Payout and refund code also uses
``DeferredRetryException`` internally to separate "try again on the next
sweep" from a real processor failure.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import HTTPException, status


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
    """Raised when there's a conflict with existing data."""

    status_code = status.HTTP_409_CONFLICT


class ServiceException(DomainException):
    """Raised when a service operation fails."""

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=self.status_code,
            detail={
                "message": self.message or "An error occurred processing your request",
                "code": self.code,
                "details": self.details if self.details else {},
            },
        )


# Specific business exceptions


class TimeParseError(ValidationException):
    """Raised when a time-of-day string cannot be parsed."""

    def __init__(self, value: Any):
        super().__init__(
            message=f"Invalid time format: {value!r}",
            code="INVALID_TIME",
            details={"value": value if isinstance(value, str) else repr(value)},
        )
        self.value = value


class InvalidStateTransitionException(ValidationException):
    """Raised when a booking status change is not allowed."""

    def __init__(self, axis: str, current: Optional[str], target: str):
        super().__init__(
            message=f"Cannot change {axis} from {current or 'unset'} to {target}",
            code="INVALID_STATE_TRANSITION",
            details={"axis": axis, "current": current, "target": target},
        )


class BookingConflictException(ConflictException):
    """Raised when a booking conflicts with existing bookings or recurring holds."""

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        conflict_type: Optional[str] = None,
        conflicting_dates: Optional[List[str]] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        payload: Dict[str, Any] = dict(details or {})
        if conflict_type:
            payload["conflict_type"] = conflict_type
        if conflicting_dates is not None:
            payload["conflicting_dates"] = conflicting_dates
        super().__init__(
            message=message or "This time slot conflicts with an existing booking",
            code="BOOKING_CONFLICT",
            details=payload,
        )
        self.conflict_type = conflict_type
        self.conflicting_dates = conflicting_dates or []


class SlotLockedException(ConflictException):
    """Raised when another user holds an unexpired checkout lock for the slot."""

    def __init__(self, expires_at: Optional[datetime] = None):
        super().__init__(
            message="This time slot is currently being booked by another user",
            code="SLOT_LOCKED",
            details={
                "locked": True,
                "expires_at": expires_at.isoformat() if expires_at else None,
            },
        )
        self.expires_at = expires_at


class AlreadyRefundedException(ConflictException):
    """Raised when a refund is requested for a booking that was already refunded."""

    def __init__(self, booking_id: str):
        super().__init__(
            message="Booking has already been refunded",
            code="ALREADY_REFUNDED",
            details={"booking_id": booking_id},
        )


class DeferredRetryException(DomainException):
    """
    Money movement cannot happen yet (funds unsettled or balance too low).

    Not a failure. Callers record the reason, leave the payout PENDING and let
    the next scheduled sweep try again.
    """

    status_code = status.HTTP_202_ACCEPTED

    def __init__(self, reason: str, *, available_on: Optional[datetime] = None):
        super().__init__(
            message=reason,
            code="DEFERRED_RETRY",
            details={"available_on": available_on.isoformat() if available_on else None},
        )
        self.retry_reason = reason
        self.available_on = available_on


class ExternalProcessorException(ServiceException):
    """Raised when a payment processor call fails."""

    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(
        self,
        message: str,
        *,
        processor_code: Optional[str] = None,
        operation: Optional[str] = None,
    ):
        super().__init__(
            message=message,
            code="PAYMENT_PROCESSOR_ERROR",
            details={"processor_code": processor_code, "operation": operation},
        )
        self.processor_code = processor_code
        self.operation = operation


class RepositoryException(Exception):
    """
    Exception raised for repository layer errors.

    Used when data access operations fail, such as database connection
    issues, query failures, or constraint violations.
    """


class IntegrityViolationException(RepositoryException):
    """A write was rejected by a uniqueness or check constraint."""
