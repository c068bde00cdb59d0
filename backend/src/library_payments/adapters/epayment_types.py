"""Typed payloads exchanged with the epayment.kz gateway."""
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class _GatewayModel(BaseModel):
    """Gateway JSON uses camelCase; unknown keys are ignored."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class TokenResponse(_GatewayModel):
    """OAuth client-credentials token response."""

    access_token: str = Field(..., min_length=1)
    token_type: str = "Bearer"
    expires_in: int = Field(..., description="Token lifetime in seconds")
    scope: Optional[str] = None


class TransactionDetails(_GatewayModel):
    """Transaction as reported by the status-check endpoint."""

    id: Optional[str] = None
    invoice_id: Optional[str] = Field(default=None, alias="invoiceId")
    amount: Optional[float] = None
    currency: Optional[str] = None
    status: str = ""
    card_mask: Optional[str] = Field(default=None, alias="cardMask")
    approval_code: Optional[str] = Field(default=None, alias="approvalCode")
    reference: Optional[str] = None


class TransactionStatusResponse(_GatewayModel):
    """Response of GET /check-status/payment/transaction/{invoiceId}."""

    result_code: str = Field(default="", alias="resultCode")
    result_message: str = Field(default="", alias="resultMessage")
    transaction: TransactionDetails = Field(default_factory=TransactionDetails)


class OperationResponse(_GatewayModel):
    """Response of the refund and cancel operation endpoints."""

    code: Optional[int] = None
    message: Optional[str] = None


class CardPaymentResponse(_GatewayModel):
    """Response of POST /payments/cards/auth."""

    id: Optional[str] = None
    transaction_id: Optional[str] = Field(default=None, alias="transactionId")
    status: str = ""
    reference: Optional[str] = None
    approval_code: Optional[str] = Field(default=None, alias="approvalCode")
    error_code: Optional[str] = Field(default=None, alias="errorCode")
    error_message: Optional[str] = Field(default=None, alias="errorMessage")


class GatewayErrorBody(_GatewayModel):
    """Error body the gateway returns with non-200 responses."""

    code: Optional[str | int] = None
    message: Optional[str] = None
    error: Optional[str] = None
    error_description: Optional[str] = None

    def describe(self) -> str:
        return self.message or self.error_description or self.error or "gateway request failed"


class WidgetParams(BaseModel):
    """Merchant parameters the payment widget needs on the client side."""

    terminal: str
    back_link: str
    failure_back_link: str
    post_link: str
    widget_url: str
