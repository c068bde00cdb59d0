"""Pydantic schemas for saved cards."""
from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from library_payments.models.payment import PaymentStatus, PaymentType


class SavedCardCreate(BaseModel):
    """Schema for saving a gateway card token."""

    card_token: str = Field(..., min_length=1, max_length=255, description="Gateway card ID")
    card_mask: str = Field(..., min_length=4, max_length=32, examples=["440043******0011"])
    card_type: Optional[str] = Field(default=None, max_length=32)
    expiry_month: Optional[int] = Field(default=None, ge=1, le=12)
    expiry_year: Optional[int] = Field(default=None, ge=2000, le=2100)


class SavedCardResponse(BaseModel):
    """Schema for saved card response. The card token is never returned."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    member_id: str
    card_mask: str
    card_type: Optional[str] = None
    expiry_month: Optional[int] = None
    expiry_year: Optional[int] = None
    is_default: bool
    is_active: bool
    last_used_at: Optional[datetime] = None
    created_at: datetime


class SavedCardList(BaseModel):
    """Schema for the member's saved cards."""

    items: List[SavedCardResponse]
    total: int


class PayWithSavedCardRequest(BaseModel):
    """Schema for charging a saved card."""

    amount: int = Field(..., gt=0, description="Amount in the smallest currency unit")
    currency: str = Field(default="KZT", min_length=3, max_length=3)
    payment_type: PaymentType
    related_entity_id: Optional[str] = Field(default=None, max_length=64)
    description: Optional[str] = Field(default=None, max_length=255)


class PayWithSavedCardResponse(BaseModel):
    """Result of a saved card charge."""

    payment_id: UUID
    invoice_id: str
    status: PaymentStatus
    amount: int
    currency: str
    card_mask: str
    gateway_transaction_id: Optional[str] = None
    approval_code: Optional[str] = None
    message: str
