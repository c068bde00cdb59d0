"""Pydantic schemas for payment entities."""
from pydantic import BaseModel, Field, ConfigDict, field_validator
from uuid import UUID
from datetime import datetime
from typing import Optional, List

from library_payments.models.payment import PaymentMethod, PaymentStatus, PaymentType
from library_payments.utils.currency import MAX_PAYMENT_AMOUNT, MIN_PAYMENT_AMOUNT


class PaymentResponse(BaseModel):
    """Schema for payment response."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    invoice_id: str
    member_id: str
    amount: int = Field(..., description="Amount in the smallest currency unit")
    currency: str
    status: PaymentStatus
    payment_method: PaymentMethod
    payment_type: PaymentType
    related_entity_id: Optional[str] = None
    description: Optional[str] = None
    gateway_transaction_id: Optional[str] = None
    card_mask: Optional[str] = None
    approval_code: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    refunded_amount: Optional[int] = None
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None
    expires_at: datetime


class PaymentList(BaseModel):
    """Schema for paginated list of payments."""

    items: List[PaymentResponse]
    total: int
    page: int
    page_size: int


class InitiatePaymentRequest(BaseModel):
    """Schema for starting a card payment through the gateway widget."""

    amount: int = Field(
        ...,
        ge=MIN_PAYMENT_AMOUNT,
        le=MAX_PAYMENT_AMOUNT,
        description="Amount in the smallest currency unit",
    )
    currency: str = Field(default="KZT", min_length=3, max_length=3)
    payment_type: PaymentType
    related_entity_id: Optional[str] = Field(default=None, max_length=64)
    description: Optional[str] = Field(default=None, max_length=255)

    @field_validator("currency")
    @classmethod
    def uppercase_currency(cls, v: str) -> str:
        return v.upper()


class InitiatePaymentResponse(BaseModel):
    """Everything the client needs to open the gateway payment widget."""

    payment_id: UUID
    invoice_id: str
    auth_token: str = Field(..., description="Gateway access token for the widget")
    terminal: str
    amount: int
    currency: str
    back_link: str
    failure_back_link: str
    post_link: str
    widget_url: str
    expires_at: datetime


class CancelPaymentRequest(BaseModel):
    """Schema for cancelling a payment."""

    reason: Optional[str] = Field(default=None, max_length=500)


class RefundPaymentRequest(BaseModel):
    """Schema for refunding a completed payment. Omit amount for a full refund."""

    amount: Optional[int] = Field(default=None, description="Partial refund amount in the smallest currency unit")
    reason: Optional[str] = Field(default=None, max_length=500)


class RefundPaymentResponse(BaseModel):
    """Result of a refund."""

    payment_id: UUID
    status: PaymentStatus
    refunded_amount: int
    original_amount: int
    currency: str
    is_partial: bool
    refunded_at: datetime


class CallbackRetryBatchResponse(BaseModel):
    """Counts from one callback retry batch."""

    processed: int
    succeeded: int
    failed: int
    errors: List[str] = Field(default_factory=list)
