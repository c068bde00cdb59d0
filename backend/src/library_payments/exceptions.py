"""Exception hierarchy for the payment subsystem.

Services raise these; the exception handlers in main.py turn them into
structured ErrorResponse bodies with the matching HTTP status.
"""
from typing import Any, Optional

from library_payments.schemas.error import ErrorCode


class PaymentServiceError(Exception):
    """Base class for all payment subsystem errors."""

    status_code = 500
    default_code = ErrorCode.INTERNAL_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        field: Optional[str] = None,
        value: Any = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.field = field
        self.value = value
        self.details = details or {}

    @property
    def error_type(self) -> str:
        return type(self).__name__

    def __str__(self) -> str:
        return self.message


class ValidationError(PaymentServiceError):
    """Bad request shape or values."""

    status_code = 400
    default_code = ErrorCode.VALIDATION_ERROR


class NotFoundError(PaymentServiceError):
    """Unknown payment, card, receipt or invoice ID."""

    status_code = 404
    default_code = ErrorCode.PAYMENT_NOT_FOUND


class UnauthorizedError(PaymentServiceError):
    """Ownership or role check failed."""

    status_code = 403
    default_code = ErrorCode.INSUFFICIENT_PERMISSIONS


class InvalidStateError(PaymentServiceError):
    """Status transition or status precondition violated."""

    status_code = 409
    default_code = ErrorCode.INVALID_STATE_TRANSITION

    def __init__(self, message: str, current_status: Optional[str] = None, **kwargs: Any):
        kwargs.setdefault("field", "status")
        kwargs.setdefault("value", current_status)
        super().__init__(message, **kwargs)
        self.current_status = current_status


class ExternalServiceError(PaymentServiceError):
    """The payment gateway call failed."""

    status_code = 502
    default_code = ErrorCode.GATEWAY_ERROR

    def __init__(
        self,
        message: str,
        provider_code: Optional[str] = None,
        http_status: Optional[int] = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.provider_code = provider_code
        self.http_status = http_status


class GatewayAuthenticationError(ExternalServiceError):
    """OAuth client-credentials exchange with the gateway failed."""

    default_code = ErrorCode.GATEWAY_AUTHENTICATION_FAILED


class DatabaseError(PaymentServiceError):
    """Persistence failure. Callers may retry later."""

    status_code = 503
    default_code = ErrorCode.DATABASE_ERROR


class InternalError(PaymentServiceError):
    """Unexpected condition."""

    status_code = 500
    default_code = ErrorCode.INTERNAL_ERROR
