"""Payment domain rules: validation, status state machine and gateway status mapping.

Everything here is pure. Every code path that changes a payment status goes
through `transition`, so callbacks, verification, cancellation and refunds
all obey the same graph.
"""
import json
import secrets
import time
from datetime import datetime, timedelta
from typing import Any, Optional

from library_payments.config import settings
from library_payments.exceptions import InvalidStateError, ValidationError
from library_payments.metrics import payment_status_transitions_total
from library_payments.models.base import utcnow
from library_payments.models.payment import Payment, PaymentMethod, PaymentStatus, PaymentType
from library_payments.schemas.error import ErrorCode
from library_payments.utils.currency import MAX_PAYMENT_AMOUNT, validate_currency

ALLOWED_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset(
        {PaymentStatus.PROCESSING, PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.CANCELLED}
    ),
    PaymentStatus.PROCESSING: frozenset(
        {PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.CANCELLED}
    ),
    PaymentStatus.COMPLETED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.CANCELLED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}

FINAL_STATUSES = frozenset(
    {PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.CANCELLED, PaymentStatus.REFUNDED}
)

GATEWAY_STATUS_MAP: dict[str, PaymentStatus] = {
    "success": PaymentStatus.COMPLETED,
    "approved": PaymentStatus.COMPLETED,
    "completed": PaymentStatus.COMPLETED,
    "failed": PaymentStatus.FAILED,
    "declined": PaymentStatus.FAILED,
    "cancelled": PaymentStatus.CANCELLED,
    "voided": PaymentStatus.CANCELLED,
    "processing": PaymentStatus.PROCESSING,
    "auth": PaymentStatus.PROCESSING,
    "pending": PaymentStatus.PENDING,
    "refunded": PaymentStatus.REFUNDED,
}


class PaymentDomainService:
    """Stateless payment rules shared by every use case."""

    def __init__(self, expiration_minutes: Optional[int] = None):
        """Initialize with the lifetime of a pending payment (default from settings)."""
        if expiration_minutes is None:
            expiration_minutes = settings.payment_expiration_minutes
        self.expiration = timedelta(minutes=expiration_minutes)

    def generate_invoice_id(self, member_id: str, payment_type: PaymentType) -> str:
        """
        Generate a gateway-facing invoice ID.

        The random suffix keeps IDs unique for concurrent requests by the same
        member within one second.

        Args:
            member_id: Paying member
            payment_type: What the payment is for

        Returns:
            Invoice ID such as "fine-42-1736935800-9f1c2a7b"
        """
        type_name = getattr(payment_type, "value", payment_type)
        return f"{type_name}-{member_id}-{int(time.time())}-{secrets.token_hex(4)}"

    def new_payment(
        self,
        member_id: str,
        amount: int,
        currency: str,
        payment_type: PaymentType,
        payment_method: PaymentMethod = PaymentMethod.CARD,
        related_entity_id: Optional[str] = None,
        description: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Payment:
        """
        Build a validated pending payment with its expiry set.

        Raises:
            ValidationError: If any field is invalid
        """
        now = now or utcnow()
        payment = Payment(
            invoice_id=self.generate_invoice_id(member_id, payment_type),
            member_id=member_id,
            amount=amount,
            currency=currency.upper() if currency else currency,
            status=PaymentStatus.PENDING,
            payment_method=payment_method,
            payment_type=payment_type,
            related_entity_id=related_entity_id,
            description=description,
            created_at=now,
            updated_at=now,
            expires_at=now + self.expiration,
        )
        self.validate_payment(payment)
        return payment

    def validate_payment(self, payment: Payment) -> None:
        """
        Validate the fields of a payment.

        Raises:
            ValidationError: Naming the offending field
        """
        if not payment.member_id:
            raise ValidationError("member_id is required", code=ErrorCode.MISSING_REQUIRED_FIELD, field="member_id")

        if not payment.invoice_id:
            raise ValidationError("invoice_id is required", code=ErrorCode.MISSING_REQUIRED_FIELD, field="invoice_id")

        if payment.amount is None or payment.amount <= 0:
            raise ValidationError(
                "amount must be greater than 0",
                code=ErrorCode.INVALID_AMOUNT,
                field="amount",
                value=payment.amount,
            )

        if payment.amount > MAX_PAYMENT_AMOUNT:
            raise ValidationError(
                f"amount must not exceed {MAX_PAYMENT_AMOUNT}",
                code=ErrorCode.INVALID_AMOUNT,
                field="amount",
                value=payment.amount,
            )

        if not payment.currency or len(payment.currency) != 3 or not validate_currency(payment.currency):
            raise ValidationError(
                f"unsupported currency: {payment.currency}",
                code=ErrorCode.INVALID_CURRENCY,
                field="currency",
                value=payment.currency,
            )

        if not isinstance(payment.payment_type, PaymentType):
            raise ValidationError(
                f"unknown payment type: {payment.payment_type}",
                code=ErrorCode.INVALID_PAYMENT_TYPE,
                field="payment_type",
                value=str(payment.payment_type),
            )

    def validate_transition(self, current: PaymentStatus, new: PaymentStatus) -> None:
        """
        Check that `current -> new` is an edge of the status graph.

        Raises:
            InvalidStateError: If the transition is not allowed
        """
        if new not in ALLOWED_TRANSITIONS.get(current, frozenset()):
            raise InvalidStateError(
                f"status transition from {current.value} to {new.value} is not allowed",
                current_status=current.value,
                code=ErrorCode.INVALID_STATE_TRANSITION,
                details={"from": current.value, "to": new.value},
            )

    def can_transition(self, current: PaymentStatus, new: PaymentStatus) -> bool:
        return new in ALLOWED_TRANSITIONS.get(current, frozenset())

    def map_gateway_status(self, provider_status: Optional[str]) -> PaymentStatus:
        """Map gateway vocabulary to a PaymentStatus. Unknown values map to FAILED."""
        return GATEWAY_STATUS_MAP.get((provider_status or "").strip().lower(), PaymentStatus.FAILED)

    def is_final_status(self, status: PaymentStatus) -> bool:
        return status in FINAL_STATUSES

    def is_expired(self, payment: Payment, now: Optional[datetime] = None) -> bool:
        """Whether a pending payment is past its expiry."""
        if payment.status != PaymentStatus.PENDING or payment.expires_at is None:
            return False
        return (now or utcnow()) > payment.expires_at

    def transition(self, payment: Payment, new_status: PaymentStatus, now: Optional[datetime] = None) -> None:
        """
        Move a payment to a new status after validating the edge.

        Sets `completed_at` the first time the payment becomes completed.

        Raises:
            InvalidStateError: If the transition is not allowed
        """
        current = payment.status
        self.validate_transition(current, new_status)

        now = now or utcnow()
        payment.status = new_status
        payment.updated_at = now
        if new_status == PaymentStatus.COMPLETED and payment.completed_at is None:
            payment.completed_at = now

        payment_status_transitions_total.labels(from_status=current.value, to_status=new_status.value).inc()

    def apply_gateway_fields(
        self,
        payment: Payment,
        transaction_id: Optional[str] = None,
        card_mask: Optional[str] = None,
        approval_code: Optional[str] = None,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
        raw_response: Optional[Any] = None,
    ) -> None:
        """Copy gateway-supplied details onto the payment, keeping known values when absent."""
        if transaction_id:
            payment.gateway_transaction_id = transaction_id
        if card_mask:
            payment.card_mask = card_mask
        if approval_code:
            payment.approval_code = approval_code
        if error_code is not None:
            payment.error_code = error_code or None
        if error_message is not None:
            payment.error_message = error_message or None
        if raw_response is not None:
            payment.gateway_response = (
                raw_response if isinstance(raw_response, str) else json.dumps(raw_response, default=str)
            )

    def mark_failed(
        self,
        payment: Payment,
        error_code: str,
        error_message: str,
        now: Optional[datetime] = None,
    ) -> None:
        """Transition to FAILED and record why."""
        self.transition(payment, PaymentStatus.FAILED, now=now)
        payment.error_code = error_code
        payment.error_message = error_message
