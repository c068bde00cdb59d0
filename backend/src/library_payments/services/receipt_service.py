"""Service for issuing and reading payment receipts."""
from typing import List, Optional, Tuple
from uuid import UUID

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from library_payments.database import commit_or_raise
from library_payments.exceptions import NotFoundError, UnauthorizedError, ValidationError
from library_payments.models.base import utcnow
from library_payments.models.payment import Payment, PaymentStatus, PaymentType
from library_payments.models.receipt import Receipt
from library_payments.schemas.error import ErrorCode

logger = structlog.get_logger(__name__)

ITEM_DESCRIPTIONS = {
    PaymentType.FINE: "Library Fine",
    PaymentType.SUBSCRIPTION: "Library Subscription",
    PaymentType.DEPOSIT: "Library Deposit",
}


class ReceiptService:
    """Service for receipt operations."""

    def __init__(self, db: AsyncSession):
        """Initialize receipt service with database session."""
        self.db = db

    async def generate_receipt_number(self) -> str:
        """
        Generate the next receipt number for the current year.

        Format: RCP-{year}-{sequence} (e.g., RCP-2025-00001)

        Returns:
            Receipt number string
        """
        prefix = f"RCP-{utcnow().year}-"
        count = await self.db.scalar(
            select(func.count()).select_from(Receipt).where(Receipt.receipt_number.like(f"{prefix}%"))
        ) or 0
        return f"{prefix}{count + 1:05d}"

    async def generate_receipt(self, payment_id: UUID, member_id: str, notes: Optional[str] = None) -> Receipt:
        """
        Issue a receipt for a completed payment.

        Calling this again for the same payment returns the receipt already issued.

        Args:
            payment_id: Paid payment
            member_id: Requesting member, must own the payment
            notes: Optional free text printed on the receipt

        Returns:
            Receipt for the payment

        Raises:
            NotFoundError: If the payment does not exist
            UnauthorizedError: If the payment belongs to another member
            ValidationError: If the payment is not completed
        """
        payment = await self.db.get(Payment, payment_id)
        if not payment:
            raise NotFoundError(f"Payment {payment_id} not found", details={"payment_id": str(payment_id)})

        if payment.member_id != member_id:
            logger.warning(
                "receipt_generation_denied",
                payment_id=str(payment_id),
                payment_member_id=payment.member_id,
                requesting_member_id=member_id,
            )
            raise UnauthorizedError("Payment belongs to another member")

        if payment.status != PaymentStatus.COMPLETED:
            raise ValidationError(
                "Payment must be completed to generate a receipt",
                code=ErrorCode.INVALID_PAYMENT_STATUS,
                field="payment_status",
                value=payment.status.value,
            )

        result = await self.db.execute(select(Receipt).where(Receipt.payment_id == payment_id))
        existing = result.scalar_one_or_none()
        if existing:
            logger.info("receipt_already_exists", receipt_id=str(existing.id), receipt_number=existing.receipt_number)
            return existing

        description = ITEM_DESCRIPTIONS.get(payment.payment_type, "Library Service")
        now = utcnow()
        receipt = Receipt(
            payment_id=payment.id,
            receipt_number=await self.generate_receipt_number(),
            member_id=payment.member_id,
            amount=payment.amount,
            currency=payment.currency,
            tax_amount=0,
            total_amount=payment.amount,
            payment_type=payment.payment_type.value,
            payment_method=payment.payment_method.value,
            transaction_id=payment.gateway_transaction_id,
            card_mask=payment.card_mask,
            status="issued",
            description=payment.description or description,
            items=[
                {
                    "description": description,
                    "quantity": 1,
                    "unit_price": payment.amount,
                    "total": payment.amount,
                }
            ],
            notes=notes,
            payment_date=payment.completed_at or payment.updated_at or now,
            receipt_date=now,
        )
        self.db.add(receipt)
        await commit_or_raise(self.db, "receipt", payment_id=payment.id)

        logger.info(
            "receipt_generated",
            receipt_id=str(receipt.id),
            receipt_number=receipt.receipt_number,
            payment_id=str(payment.id),
        )
        return receipt

    async def get_receipt(self, receipt_id: UUID, member_id: str, is_admin: bool = False) -> Receipt:
        """
        Get a receipt by ID.

        Raises:
            NotFoundError: If the receipt does not exist
            UnauthorizedError: If the receipt belongs to another member
        """
        receipt = await self.db.get(Receipt, receipt_id)
        if not receipt:
            raise NotFoundError(
                f"Receipt {receipt_id} not found",
                code=ErrorCode.RECEIPT_NOT_FOUND,
                details={"receipt_id": str(receipt_id)},
            )
        if receipt.member_id != member_id and not is_admin:
            raise UnauthorizedError("Receipt belongs to another member")
        return receipt

    async def list_member_receipts(
        self,
        member_id: str,
        page: int = 1,
        page_size: int = 50,
    ) -> Tuple[List[Receipt], int]:
        """
        List a member's receipts, newest first.

        Returns:
            Tuple of (receipts, total_count)
        """
        query = select(Receipt).where(Receipt.member_id == member_id)
        total = await self.db.scalar(select(func.count()).select_from(query.subquery())) or 0

        query = query.order_by(Receipt.receipt_date.desc()).offset((page - 1) * page_size).limit(page_size)
        result = await self.db.execute(query)
        return list(result.scalars().all()), total
