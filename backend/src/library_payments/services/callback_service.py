"""Service for applying gateway webhook callbacks to payments."""
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from library_payments.database import commit_or_raise
from library_payments.exceptions import DatabaseError, NotFoundError, ValidationError
from library_payments.models.payment import Payment, PaymentStatus
from library_payments.schemas.callback import PaymentCallback
from library_payments.schemas.error import ErrorCode
from library_payments.services.payment_domain import PaymentDomainService

logger = structlog.get_logger(__name__)


@dataclass
class CallbackResult:
    """Outcome of applying a callback. `processed` is False for replays against final payments."""

    payment_id: UUID
    status: PaymentStatus
    processed: bool


class CallbackService:
    """Validates inbound callbacks and applies them to the matching payment, idempotently."""

    def __init__(self, db: AsyncSession, domain: Optional[PaymentDomainService] = None):
        """Initialize callback service with database session."""
        self.db = db
        self.domain = domain or PaymentDomainService()

    async def apply_callback(self, callback: PaymentCallback) -> CallbackResult:
        """
        Apply a gateway callback to its payment.

        Args:
            callback: Parsed webhook body

        Returns:
            Payment ID, resulting status and whether anything changed

        Raises:
            NotFoundError: If no payment has the callback's invoice ID
            ValidationError: If amount or currency differ from the stored payment
            InvalidStateError: If the reported status is not reachable from the current one
            DatabaseError: If the payment cannot be loaded or the update persisted
        """
        try:
            result = await self.db.execute(select(Payment).where(Payment.invoice_id == callback.invoice_id))
        except SQLAlchemyError as e:
            logger.error("callback_payment_lookup_failed", invoice_id=callback.invoice_id, error=str(e))
            raise DatabaseError(
                "Failed to load payment for callback", details={"invoice_id": callback.invoice_id}
            ) from e
        payment = result.scalar_one_or_none()

        if not payment:
            logger.warning("callback_payment_not_found", invoice_id=callback.invoice_id)
            raise NotFoundError(
                f"No payment for invoice {callback.invoice_id}",
                details={"invoice_id": callback.invoice_id},
            )

        if callback.amount != payment.amount or callback.currency != payment.currency:
            logger.warning(
                "callback_amount_mismatch",
                payment_id=str(payment.id),
                invoice_id=callback.invoice_id,
                expected_amount=payment.amount,
                received_amount=callback.amount,
                expected_currency=payment.currency,
                received_currency=callback.currency,
            )
            raise ValidationError(
                "Callback amount or currency does not match the payment",
                code=ErrorCode.CALLBACK_MISMATCH,
                details={"payment_id": str(payment.id)},
            )

        if self.domain.is_final_status(payment.status):
            logger.info(
                "callback_already_processed",
                payment_id=str(payment.id),
                status=payment.status.value,
            )
            return CallbackResult(payment_id=payment.id, status=payment.status, processed=False)

        new_status = self.domain.map_gateway_status(callback.provider_status())
        old_status = payment.status
        self.domain.transition(payment, new_status)

        failed = not callback.is_success()
        self.domain.apply_gateway_fields(
            payment,
            transaction_id=callback.transaction_id,
            card_mask=callback.card_mask,
            approval_code=callback.approval_code,
            error_code=(callback.reason_code or callback.code) if failed else None,
            error_message=callback.reason if failed else None,
            raw_response=callback.model_dump(by_alias=True, exclude_none=True),
        )
        await commit_or_raise(self.db, "payment_callback", payment_id=payment.id, invoice_id=payment.invoice_id)

        logger.info(
            "callback_applied",
            payment_id=str(payment.id),
            invoice_id=payment.invoice_id,
            old_status=old_status.value,
            new_status=new_status.value,
        )
        return CallbackResult(payment_id=payment.id, status=payment.status, processed=True)
