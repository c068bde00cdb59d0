"""Schemas for inbound epayment.kz webhook callbacks."""
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from library_payments.models.payment import PaymentStatus


class PaymentCallback(BaseModel):
    """
    Callback body posted by the gateway to the post link.

    Field names follow the gateway's camelCase; they can also be populated by
    their snake_case names.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    code: str = Field(..., description='"ok" or "error"')
    invoice_id: str = Field(..., alias="invoiceId", min_length=1)
    amount: int = Field(..., description="Amount in the smallest currency unit")
    currency: str = Field(..., min_length=3, max_length=3)
    reason: str = ""
    reason_code: Optional[str] = Field(default=None, alias="reasonCode")
    card_mask: Optional[str] = Field(default=None, alias="cardMask")
    transaction_id: Optional[str] = Field(default=None, alias="transactionId")
    reference: Optional[str] = None
    approval_code: Optional[str] = Field(default=None, alias="approvalCode")
    terminal: Optional[str] = None
    extra: Optional[dict[str, Any]] = None

    def provider_status(self) -> str:
        """Gateway outcome in provider vocabulary: "success" or "failed"."""
        if self.code == "ok" and self.reason == "success":
            return "success"
        return "failed"

    def is_success(self) -> bool:
        return self.provider_status() == "success"


class CallbackResponse(BaseModel):
    """Body returned to the gateway for every handled callback."""

    payment_id: Optional[UUID] = None
    status: Optional[PaymentStatus] = None
    message: str
