"""Structured error response schemas."""
from datetime import datetime, timezone
from typing import Any
from pydantic import BaseModel, ConfigDict, Field


class ErrorDetail(BaseModel):
    """Detailed error information."""

    code: str = Field(..., description="Machine-readable error code")
    message: str = Field(..., description="Human-readable error message")
    field: str | None = Field(default=None, description="Field that caused the error (for validation errors)")
    value: Any | None = Field(default=None, description="Invalid value (for validation errors)")


class ErrorResponse(BaseModel):
    """Standard error response structure.

    Every error body carries a machine-readable code in `details`, a remediation
    hint and the request ID so support can correlate it with the logs.
    """

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "error": "InvalidStateError",
                "message": "Payment is already cancelled",
                "details": [
                    {
                        "code": "payment_already_cancelled",
                        "message": "Payment is already cancelled",
                        "field": "status",
                        "value": "cancelled",
                    }
                ],
                "remediation": "The payment has already been cancelled. No further action is required.",
                "request_id": "req_1234567890",
                "timestamp": "2025-01-15T10:30:00Z",
            }
        }
    )

    error: str = Field(..., description="Error type (e.g., 'ValidationError', 'NotFoundError')")
    message: str = Field(..., description="Primary error message")
    details: list[ErrorDetail] | None = Field(
        default=None, description="Detailed error information"
    )
    remediation: str | None = Field(default=None, description="Suggestion for fixing the error")
    request_id: str | None = Field(default=None, description="Request ID for tracing")
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), description="Error timestamp"
    )


# Error codes enum for consistency
class ErrorCode:
    """Standard error codes used across the API."""

    # Validation errors (400)
    VALIDATION_ERROR = "validation_error"
    INVALID_CURRENCY = "invalid_currency"
    INVALID_AMOUNT = "invalid_amount"
    INVALID_PAYMENT_TYPE = "invalid_payment_type"
    INVALID_REFUND_AMOUNT = "invalid_refund_amount"
    MISSING_REQUIRED_FIELD = "missing_required_field"
    CALLBACK_MISMATCH = "callback_mismatch"
    CARD_NOT_USABLE = "card_not_usable"
    SAVED_CARD_LIMIT_REACHED = "saved_card_limit_reached"

    # Invalid state errors (409)
    INVALID_STATE_TRANSITION = "invalid_state_transition"
    INVALID_PAYMENT_STATUS = "invalid_payment_status"
    PAYMENT_ALREADY_CANCELLED = "payment_already_cancelled"
    PAYMENT_MUST_BE_REFUNDED = "payment_must_be_refunded"

    # Not found errors (404)
    PAYMENT_NOT_FOUND = "payment_not_found"
    SAVED_CARD_NOT_FOUND = "saved_card_not_found"
    RECEIPT_NOT_FOUND = "receipt_not_found"

    # Authorization errors (401, 403)
    UNAUTHORIZED = "unauthorized"
    INSUFFICIENT_PERMISSIONS = "insufficient_permissions"

    # External service errors (502, 503)
    GATEWAY_ERROR = "gateway_error"
    GATEWAY_AUTHENTICATION_FAILED = "gateway_authentication_failed"
    DATABASE_ERROR = "database_error"
    EXTERNAL_SERVICE_ERROR = "external_service_error"

    # Internal errors (500)
    INTERNAL_ERROR = "internal_error"


# Remediation hints for common errors
REMEDIATION_HINTS = {
    ErrorCode.INVALID_CURRENCY: "Use one of the supported currencies: KZT, USD, EUR, RUB",
    ErrorCode.INVALID_AMOUNT: "Provide a positive amount in the smallest currency unit, at most 10000000",
    ErrorCode.INVALID_REFUND_AMOUNT: "Refund amount must be positive and not exceed the original payment amount",
    ErrorCode.PAYMENT_NOT_FOUND: "Verify the payment ID is correct and belongs to you",
    ErrorCode.PAYMENT_ALREADY_CANCELLED: "The payment has already been cancelled. No further action is required.",
    ErrorCode.PAYMENT_MUST_BE_REFUNDED: "Completed payments cannot be cancelled. Request a refund instead.",
    ErrorCode.INVALID_STATE_TRANSITION: "Refresh the payment status and retry the operation if it still applies",
    ErrorCode.CARD_NOT_USABLE: "The saved card is inactive or expired. Use a different card.",
    ErrorCode.SAVED_CARD_LIMIT_REACHED: "Delete an existing saved card before adding a new one",
    ErrorCode.GATEWAY_ERROR: "The payment gateway is temporarily unavailable. Please try again later.",
    ErrorCode.GATEWAY_AUTHENTICATION_FAILED: "The payment gateway rejected our credentials. Please try again later.",
    ErrorCode.DATABASE_ERROR: "Database temporarily unavailable. Please try again in a few moments.",
    ErrorCode.INTERNAL_ERROR: "Please contact support with the request ID",
}
