"""Payment service for the initiate, verify, cancel and refund use cases."""
from typing import List, Optional, Tuple
from uuid import UUID

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from library_payments.adapters.epayment_adapter import EPaymentClient
from library_payments.adapters.epayment_types import TransactionDetails
from library_payments.database import commit_or_raise
from library_payments.exceptions import (
    ExternalServiceError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from library_payments.metrics import (
    payment_refund_amount_total,
    payment_refunds_total,
    payments_expired_total,
    payments_initiated_total,
)
from library_payments.models.base import utcnow
from library_payments.models.payment import Payment, PaymentStatus
from library_payments.schemas.error import ErrorCode
from library_payments.schemas.payment import (
    InitiatePaymentRequest,
    InitiatePaymentResponse,
    RefundPaymentResponse,
)
from library_payments.services.payment_domain import PaymentDomainService
from library_payments.utils.currency import minor_to_major

logger = structlog.get_logger(__name__)

PAYMENT_EXPIRED_CODE = "payment_expired"


class PaymentService:
    """Service for the payment lifecycle against the epayment.kz gateway."""

    def __init__(
        self,
        db: AsyncSession,
        gateway: Optional[EPaymentClient] = None,
        domain: Optional[PaymentDomainService] = None,
    ):
        """Initialize payment service."""
        self.db = db
        self.gateway = gateway
        self.domain = domain or PaymentDomainService()

    async def get_payment(self, payment_id: UUID) -> Optional[Payment]:
        """
        Get payment by ID.

        Args:
            payment_id: Payment UUID

        Returns:
            Payment if found, None otherwise
        """
        result = await self.db.execute(select(Payment).where(Payment.id == payment_id))
        return result.scalar_one_or_none()

    async def get_payment_by_invoice_id(self, invoice_id: str) -> Optional[Payment]:
        result = await self.db.execute(select(Payment).where(Payment.invoice_id == invoice_id))
        return result.scalar_one_or_none()

    async def get_member_payment(self, payment_id: UUID, member_id: str, is_admin: bool = False) -> Payment:
        """
        Get a payment the requester is allowed to see.

        Payments owned by another member are reported as not found.

        Raises:
            NotFoundError: If the payment does not exist or is not visible
        """
        payment = await self.get_payment(payment_id)
        if not payment or (payment.member_id != member_id and not is_admin):
            if payment:
                logger.warning(
                    "payment_access_denied",
                    payment_id=str(payment_id),
                    requesting_member_id=member_id,
                )
            raise NotFoundError(f"Payment {payment_id} not found", details={"payment_id": str(payment_id)})
        return payment

    async def list_member_payments(
        self,
        member_id: str,
        status: Optional[PaymentStatus] = None,
        page: int = 1,
        page_size: int = 50,
    ) -> Tuple[List[Payment], int]:
        """
        List a member's payments, newest first.

        Args:
            member_id: Member whose payments to list
            status: Filter by payment status
            page: Page number
            page_size: Results per page

        Returns:
            Page of payments and the total count
        """
        conditions = [Payment.member_id == member_id]
        if status:
            conditions.append(Payment.status == status)

        total = await self.db.scalar(select(func.count()).select_from(Payment).where(*conditions))

        query = (
            select(Payment)
            .where(*conditions)
            .order_by(Payment.created_at.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        result = await self.db.execute(query)
        return list(result.scalars().all()), total or 0

    async def initiate_payment(self, member_id: str, request: InitiatePaymentRequest) -> InitiatePaymentResponse:
        """
        Create a pending payment and return the widget parameters.

        If the gateway token cannot be obtained the payment is marked failed
        before the error is raised, so no orphan pending record is left.

        Args:
            member_id: Paying member
            request: Amount, currency and payment type

        Returns:
            Widget parameters including the gateway access token

        Raises:
            ValidationError: If the request is invalid
            ExternalServiceError: If the gateway token cannot be obtained
            DatabaseError: If the payment cannot be persisted
        """
        payment = self.domain.new_payment(
            member_id=member_id,
            amount=request.amount,
            currency=request.currency,
            payment_type=request.payment_type,
            related_entity_id=request.related_entity_id,
            description=request.description,
        )

        self.db.add(payment)
        await commit_or_raise(self.db, "payment_initiation", invoice_id=payment.invoice_id)

        payments_initiated_total.labels(
            payment_type=payment.payment_type.value,
            currency=payment.currency,
            method=payment.payment_method.value,
        ).inc()
        logger.info(
            "payment_created",
            payment_id=str(payment.id),
            invoice_id=payment.invoice_id,
            member_id=member_id,
            amount=payment.amount,
            currency=payment.currency,
            payment_type=payment.payment_type.value,
        )

        try:
            token = await self.gateway.get_token()
        except ExternalServiceError as e:
            self.domain.mark_failed(payment, ErrorCode.GATEWAY_AUTHENTICATION_FAILED, str(e))
            await commit_or_raise(self.db, "payment_failure", payment_id=payment.id)
            logger.error(
                "payment_initiation_failed",
                payment_id=str(payment.id),
                invoice_id=payment.invoice_id,
                error=str(e),
            )
            raise

        widget = self.gateway.widget_params()
        return InitiatePaymentResponse(
            payment_id=payment.id,
            invoice_id=payment.invoice_id,
            auth_token=token,
            terminal=widget.terminal,
            amount=payment.amount,
            currency=payment.currency,
            back_link=widget.back_link,
            failure_back_link=widget.failure_back_link,
            post_link=widget.post_link,
            widget_url=widget.widget_url,
            expires_at=payment.expires_at,
        )

    async def verify_payment(
        self,
        payment_id: UUID,
        member_id: Optional[str] = None,
        is_admin: bool = False,
    ) -> Payment:
        """
        Reconcile a payment with the gateway.

        Expired pending payments are failed first. Non-final payments are then
        checked against the gateway; gateway errors are logged and the last
        known state is returned.

        Args:
            payment_id: Payment UUID
            member_id: Requesting member, None for internal callers
            is_admin: Whether the requester may see other members' payments

        Returns:
            The payment in its latest known state

        Raises:
            NotFoundError: If the payment does not exist or is not visible
        """
        if member_id is None:
            payment = await self.get_payment(payment_id)
            if not payment:
                raise NotFoundError(f"Payment {payment_id} not found", details={"payment_id": str(payment_id)})
        else:
            payment = await self.get_member_payment(payment_id, member_id, is_admin=is_admin)

        if self.domain.is_expired(payment):
            await self._expire(payment)
            return payment

        if self.domain.is_final_status(payment.status):
            return payment

        try:
            status_response = await self.gateway.check_status(payment.invoice_id)
        except ExternalServiceError as e:
            logger.warning(
                "payment_verification_gateway_error",
                payment_id=str(payment.id),
                invoice_id=payment.invoice_id,
                error=str(e),
            )
            return payment

        if self._apply_transaction(payment, status_response.transaction):
            await commit_or_raise(self.db, "payment_verification", payment_id=payment.id)

        logger.info("payment_verified", payment_id=str(payment.id), status=payment.status.value)
        return payment

    def _apply_transaction(self, payment: Payment, transaction: TransactionDetails) -> bool:
        changed = False

        # Fill in details the payment does not have yet
        for attr, value in (
            ("gateway_transaction_id", transaction.id),
            ("card_mask", transaction.card_mask),
            ("approval_code", transaction.approval_code),
        ):
            if value and not getattr(payment, attr):
                setattr(payment, attr, value)
                changed = True

        if not transaction.status:
            # No transaction on the gateway side yet
            return changed

        new_status = self.domain.map_gateway_status(transaction.status)
        if new_status == payment.status:
            return changed

        if not self.domain.can_transition(payment.status, new_status):
            logger.warning(
                "payment_verification_transition_rejected",
                payment_id=str(payment.id),
                current_status=payment.status.value,
                gateway_status=transaction.status,
            )
            return changed

        old_status = payment.status
        self.domain.transition(payment, new_status)
        logger.info(
            "payment_status_updated_from_gateway",
            payment_id=str(payment.id),
            old_status=old_status.value,
            new_status=new_status.value,
        )
        return True

    async def _expire(self, payment: Payment) -> None:
        self.domain.mark_failed(payment, PAYMENT_EXPIRED_CODE, "Payment expired before completion")
        await commit_or_raise(self.db, "payment_expiry", payment_id=payment.id)
        payments_expired_total.inc()
        logger.info("payment_expired", payment_id=str(payment.id), invoice_id=payment.invoice_id)

    async def cancel_payment(self, payment_id: UUID, member_id: str, reason: Optional[str] = None) -> Payment:
        """
        Cancel a pending or processing payment owned by the member.

        Args:
            payment_id: Payment UUID
            member_id: Requesting member
            reason: Optional cancellation reason

        Returns:
            Cancelled payment

        Raises:
            NotFoundError: If the payment does not exist or belongs to another member
            InvalidStateError: If the payment can no longer be cancelled
            ExternalServiceError: If the gateway rejects the cancellation
        """
        payment = await self.get_member_payment(payment_id, member_id)

        if payment.status == PaymentStatus.COMPLETED:
            raise InvalidStateError(
                "Completed payments cannot be cancelled, use refund instead",
                current_status=payment.status.value,
                code=ErrorCode.PAYMENT_MUST_BE_REFUNDED,
            )
        if payment.status == PaymentStatus.CANCELLED:
            raise InvalidStateError(
                "Payment is already cancelled",
                current_status=payment.status.value,
                code=ErrorCode.PAYMENT_ALREADY_CANCELLED,
            )
        if payment.status == PaymentStatus.REFUNDED:
            raise InvalidStateError(
                "Refunded payments cannot be cancelled",
                current_status=payment.status.value,
                code=ErrorCode.INVALID_PAYMENT_STATUS,
            )
        self.domain.validate_transition(payment.status, PaymentStatus.CANCELLED)

        if payment.status == PaymentStatus.PROCESSING and payment.gateway_transaction_id:
            await self.gateway.cancel(payment.gateway_transaction_id)

        self.domain.transition(payment, PaymentStatus.CANCELLED)
        if reason:
            payment.error_message = reason
        await commit_or_raise(self.db, "payment_cancellation", payment_id=payment.id)

        logger.info("payment_cancelled", payment_id=str(payment.id), member_id=member_id, reason=reason)
        return payment

    async def refund_payment(
        self,
        payment_id: UUID,
        member_id: str,
        is_admin: bool = False,
        amount: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> RefundPaymentResponse:
        """
        Refund a completed payment, fully or partially.

        Args:
            payment_id: Payment UUID
            member_id: Requesting member
            is_admin: Whether the requester may refund other members' payments
            amount: Partial amount in the smallest unit, None for a full refund
            reason: Optional refund reason

        Returns:
            Refund result with the exact refunded amount

        Raises:
            NotFoundError: If the payment does not exist or is not visible
            InvalidStateError: If the payment is not completed
            ValidationError: If the amount is out of bounds
            ExternalServiceError: If the gateway refund fails; status is unchanged
        """
        payment = await self.get_member_payment(payment_id, member_id, is_admin=is_admin)

        if payment.status != PaymentStatus.COMPLETED:
            raise InvalidStateError(
                f"Only completed payments can be refunded (status: {payment.status.value})",
                current_status=payment.status.value,
                code=ErrorCode.INVALID_PAYMENT_STATUS,
            )

        if amount is None:
            refund_amount = payment.amount
        elif amount <= 0 or amount > payment.amount:
            raise ValidationError(
                f"Refund amount must be between 1 and {payment.amount}",
                code=ErrorCode.INVALID_REFUND_AMOUNT,
                field="amount",
                value=amount,
            )
        else:
            refund_amount = amount
        is_partial = refund_amount < payment.amount

        if payment.gateway_transaction_id:
            await self.gateway.refund(
                payment.gateway_transaction_id,
                amount=minor_to_major(refund_amount) if is_partial else None,
                external_id=str(payment.id),
            )
        else:
            logger.warning("payment_refund_without_transaction", payment_id=str(payment.id))

        self.domain.transition(payment, PaymentStatus.REFUNDED)
        payment.refunded_amount = refund_amount
        await commit_or_raise(self.db, "payment_refund", payment_id=payment.id)

        payment_refunds_total.labels(kind="partial" if is_partial else "full", currency=payment.currency).inc()
        payment_refund_amount_total.labels(currency=payment.currency).inc(refund_amount)
        logger.info(
            "payment_refunded",
            payment_id=str(payment.id),
            refunded_amount=refund_amount,
            is_partial=is_partial,
            requested_by=member_id,
            reason=reason,
        )

        return RefundPaymentResponse(
            payment_id=payment.id,
            status=payment.status,
            refunded_amount=refund_amount,
            original_amount=payment.amount,
            currency=payment.currency,
            is_partial=is_partial,
            refunded_at=payment.updated_at,
        )

    async def expire_payments(self, batch_size: int = 100) -> int:
        """
        Fail pending payments that are past their expiry.

        Args:
            batch_size: Maximum payments to expire in one call

        Returns:
            Number of payments expired
        """
        result = await self.db.execute(
            select(Payment)
            .where(
                Payment.status == PaymentStatus.PENDING,
                Payment.expires_at < utcnow(),
            )
            .order_by(Payment.expires_at)
            .limit(batch_size)
        )
        expired = 0
        for payment in result.scalars().all():
            await self._expire(payment)
            expired += 1
        return expired
