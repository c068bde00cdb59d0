"""Service for saved cards and charging them through the gateway."""
from typing import List, Optional
from uuid import UUID

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from library_payments.adapters.epayment_adapter import EPaymentClient
from library_payments.config import settings
from library_payments.database import commit_or_raise
from library_payments.exceptions import DatabaseError, ExternalServiceError, NotFoundError, ValidationError
from library_payments.metrics import payments_initiated_total
from library_payments.models.base import utcnow
from library_payments.models.payment import PaymentMethod
from library_payments.models.saved_card import SavedCard
from library_payments.schemas.error import ErrorCode
from library_payments.schemas.saved_card import (
    PayWithSavedCardRequest,
    PayWithSavedCardResponse,
    SavedCardCreate,
)
from library_payments.services.payment_domain import PaymentDomainService

logger = structlog.get_logger(__name__)


class SavedCardService:
    """Service for managing a member's saved cards."""

    def __init__(
        self,
        db: AsyncSession,
        gateway: Optional[EPaymentClient] = None,
        domain: Optional[PaymentDomainService] = None,
    ):
        """Initialize saved card service."""
        self.db = db
        self.gateway = gateway
        self.domain = domain or PaymentDomainService()

    async def get_member_card(self, card_id: UUID, member_id: str) -> SavedCard:
        """
        Get a card owned by the member.

        Raises:
            NotFoundError: If the card does not exist or belongs to another member
        """
        card = await self.db.get(SavedCard, card_id)
        if not card or card.member_id != member_id:
            if card:
                logger.warning("saved_card_access_denied", card_id=str(card_id), requesting_member_id=member_id)
            raise NotFoundError(
                f"Saved card {card_id} not found",
                code=ErrorCode.SAVED_CARD_NOT_FOUND,
                details={"card_id": str(card_id)},
            )
        return card

    async def list_cards(self, member_id: str) -> List[SavedCard]:
        """
        List the member's active cards, default first.

        Args:
            member_id: Card owner

        Returns:
            Active saved cards
        """
        result = await self.db.execute(
            select(SavedCard)
            .where(SavedCard.member_id == member_id, SavedCard.is_active.is_(True))
            .order_by(SavedCard.is_default.desc(), SavedCard.created_at.desc())
        )
        return list(result.scalars().all())

    async def save_card(self, member_id: str, card_data: SavedCardCreate) -> SavedCard:
        """
        Save a gateway card token for the member.

        Saving a token that is already stored returns the existing card. The
        member's first card becomes the default.

        Args:
            member_id: Card owner
            card_data: Token, mask and expiry

        Returns:
            Saved card

        Raises:
            ValidationError: If the member already has the maximum number of cards
        """
        result = await self.db.execute(select(SavedCard).where(SavedCard.card_token == card_data.card_token))
        existing = result.scalar_one_or_none()
        if existing and existing.member_id == member_id:
            logger.info("saved_card_already_exists", card_id=str(existing.id), member_id=member_id)
            return existing
        if existing:
            # Tokens are unique per card; never attach another member's token
            raise ValidationError(
                "Card token is already registered",
                code=ErrorCode.VALIDATION_ERROR,
                field="card_token",
            )

        active_count = await self.db.scalar(
            select(func.count())
            .select_from(SavedCard)
            .where(SavedCard.member_id == member_id, SavedCard.is_active.is_(True))
        ) or 0
        if active_count >= settings.max_saved_cards_per_member:
            raise ValidationError(
                f"A member can save at most {settings.max_saved_cards_per_member} cards",
                code=ErrorCode.SAVED_CARD_LIMIT_REACHED,
                field="card_token",
            )

        card = SavedCard(
            member_id=member_id,
            card_token=card_data.card_token,
            card_mask=card_data.card_mask,
            card_type=card_data.card_type,
            expiry_month=card_data.expiry_month,
            expiry_year=card_data.expiry_year,
            is_default=active_count == 0,
            is_active=True,
        )
        self.db.add(card)
        await commit_or_raise(self.db, "saved_card", member_id=member_id)

        logger.info("saved_card_created", card_id=str(card.id), member_id=member_id, is_default=card.is_default)
        return card

    async def set_default_card(self, card_id: UUID, member_id: str) -> SavedCard:
        """
        Make a usable card the member's default.

        Raises:
            NotFoundError: If the card is not the member's
            ValidationError: If the card is inactive or expired
        """
        card = await self.get_member_card(card_id, member_id)
        if not card.is_usable(utcnow()):
            raise ValidationError(
                "Card is inactive or expired",
                code=ErrorCode.CARD_NOT_USABLE,
                field="card_id",
                value=str(card_id),
            )

        await self.db.execute(
            update(SavedCard)
            .where(SavedCard.member_id == member_id, SavedCard.id != card.id)
            .values(is_default=False)
        )
        card.is_default = True
        await commit_or_raise(self.db, "default_card", card_id=card_id)

        logger.info("saved_card_set_default", card_id=str(card_id), member_id=member_id)
        return card

    async def delete_card(self, card_id: UUID, member_id: str) -> None:
        """
        Deactivate a saved card.

        If the default card is removed, the most recent remaining card becomes
        the default.

        Raises:
            NotFoundError: If the card is not the member's
        """
        card = await self.get_member_card(card_id, member_id)
        was_default = card.is_default
        card.is_active = False
        card.is_default = False

        if was_default:
            result = await self.db.execute(
                select(SavedCard)
                .where(
                    SavedCard.member_id == member_id,
                    SavedCard.is_active.is_(True),
                    SavedCard.id != card.id,
                )
                .order_by(SavedCard.created_at.desc())
                .limit(1)
            )
            replacement = result.scalar_one_or_none()
            if replacement:
                replacement.is_default = True

        await commit_or_raise(self.db, "saved_card_deletion", card_id=card_id)
        logger.info("saved_card_deactivated", card_id=str(card_id), member_id=member_id)

    async def pay_with_saved_card(
        self,
        card_id: UUID,
        member_id: str,
        request: PayWithSavedCardRequest,
    ) -> PayWithSavedCardResponse:
        """
        Charge a saved card and record the payment.

        Args:
            card_id: Saved card to charge
            member_id: Paying member
            request: Amount, currency and payment type

        Returns:
            Payment outcome as reported by the gateway

        Raises:
            NotFoundError: If the card is not the member's
            ValidationError: If the card is not usable or the request is invalid
            ExternalServiceError: If the charge fails; the payment is marked failed
        """
        card = await self.get_member_card(card_id, member_id)
        if not card.is_usable(utcnow()):
            logger.warning(
                "saved_card_not_usable",
                card_id=str(card_id),
                is_active=card.is_active,
                is_expired=card.is_expired(utcnow()),
            )
            raise ValidationError(
                "Card is inactive or expired",
                code=ErrorCode.CARD_NOT_USABLE,
                field="card_id",
                value=str(card_id),
            )

        payment = self.domain.new_payment(
            member_id=member_id,
            amount=request.amount,
            currency=request.currency,
            payment_type=request.payment_type,
            payment_method=PaymentMethod.SAVED_CARD,
            related_entity_id=request.related_entity_id,
            description=request.description,
        )
        payment.card_mask = card.card_mask
        self.db.add(payment)
        await commit_or_raise(self.db, "saved_card_payment", invoice_id=payment.invoice_id)

        payments_initiated_total.labels(
            payment_type=payment.payment_type.value,
            currency=payment.currency,
            method=payment.payment_method.value,
        ).inc()

        try:
            charge = await self.gateway.charge_card(
                invoice_id=payment.invoice_id,
                amount=payment.amount,
                currency=payment.currency,
                card_token=card.card_token,
                description=request.description or payment.payment_type.value,
            )
        except ExternalServiceError as e:
            self.domain.mark_failed(payment, e.provider_code or ErrorCode.GATEWAY_ERROR, str(e))
            await commit_or_raise(self.db, "saved_card_payment_failure", payment_id=payment.id)
            logger.error("saved_card_charge_failed", payment_id=str(payment.id), card_id=str(card_id), error=str(e))
            raise

        self.domain.apply_gateway_fields(
            payment,
            transaction_id=charge.transaction_id or charge.id,
            approval_code=charge.approval_code,
            error_code=charge.error_code,
            error_message=charge.error_message,
            raw_response=charge.model_dump(by_alias=True, exclude_none=True),
        )
        new_status = self.domain.map_gateway_status(charge.status)
        if new_status != payment.status:
            if self.domain.can_transition(payment.status, new_status):
                self.domain.transition(payment, new_status)
            else:
                logger.warning(
                    "saved_card_charge_status_ignored",
                    payment_id=str(payment.id),
                    gateway_status=charge.status,
                )
        await commit_or_raise(self.db, "saved_card_payment_result", payment_id=payment.id)

        await self._touch_card(card)

        logger.info(
            "saved_card_payment_processed",
            payment_id=str(payment.id),
            card_id=str(card_id),
            status=payment.status.value,
        )
        return PayWithSavedCardResponse(
            payment_id=payment.id,
            invoice_id=payment.invoice_id,
            status=payment.status,
            amount=payment.amount,
            currency=payment.currency,
            card_mask=card.card_mask,
            gateway_transaction_id=payment.gateway_transaction_id,
            approval_code=payment.approval_code,
            message=charge.error_message or "Payment processed",
        )

    async def _touch_card(self, card: SavedCard) -> None:
        card.last_used_at = utcnow()
        try:
            await commit_or_raise(self.db, "saved_card_last_used", card_id=card.id)
        except DatabaseError:
            # The charge already succeeded; the timestamp is informational
            logger.warning("saved_card_last_used_update_failed", card_id=str(card.id))
