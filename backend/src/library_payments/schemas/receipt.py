"""Pydantic schemas for receipts."""
from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, computed_field

from library_payments.utils.currency import format_amount_for_currency


class ReceiptCreate(BaseModel):
    """Schema for requesting a receipt."""

    payment_id: UUID
    notes: Optional[str] = Field(default=None, max_length=1000)


class ReceiptItem(BaseModel):
    """Line item on a receipt."""

    description: str
    quantity: int = 1
    unit_price: int
    total: int


class ReceiptResponse(BaseModel):
    """Schema for receipt response."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    receipt_number: str
    payment_id: UUID
    member_id: str
    amount: int
    tax_amount: int
    total_amount: int
    currency: str
    payment_type: str
    payment_method: str
    transaction_id: Optional[str] = None
    card_mask: Optional[str] = None
    status: str
    description: str
    items: List[ReceiptItem]
    notes: Optional[str] = None
    payment_date: datetime
    receipt_date: datetime

    @computed_field
    @property
    def formatted_total(self) -> str:
        return format_amount_for_currency(self.total_amount, self.currency)


class ReceiptList(BaseModel):
    """Schema for the member's receipts."""

    items: List[ReceiptResponse]
    total: int
