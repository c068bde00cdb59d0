"""Payment model for gateway card transactions."""
from sqlalchemy import Column, DateTime, Integer, String, Enum as SQLEnum, Text
import enum

from library_payments.models.base import Base


class PaymentStatus(enum.Enum):
    """Payment lifecycle status."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentMethod(enum.Enum):
    """How the member paid."""

    CARD = "card"
    SAVED_CARD = "saved_card"


class PaymentType(enum.Enum):
    """What the payment is for."""

    FINE = "fine"
    SUBSCRIPTION = "subscription"
    DEPOSIT = "deposit"
    RESERVATION = "reservation"


class Payment(Base):
    """
    Card payment made by a library member.

    Amounts are stored in the smallest currency unit. Rows are never deleted;
    status only moves along the transition graph enforced by PaymentDomainService.
    """

    __tablename__ = "payments"

    invoice_id = Column(String(128), nullable=False, unique=True, index=True)  # Gateway-facing ID
    member_id = Column(String(64), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="KZT")
    status = Column(SQLEnum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING, index=True)
    payment_method = Column(SQLEnum(PaymentMethod), nullable=False, default=PaymentMethod.CARD)
    payment_type = Column(SQLEnum(PaymentType), nullable=False)
    related_entity_id = Column(String(64), nullable=True)  # e.g. reservation or fine ID
    description = Column(String(255), nullable=True)

    gateway_transaction_id = Column(String(128), nullable=True, index=True)
    gateway_response = Column(Text, nullable=True)  # Raw provider payload (JSON)
    card_mask = Column(String(32), nullable=True)
    approval_code = Column(String(32), nullable=True)
    error_code = Column(String(64), nullable=True)
    error_message = Column(Text, nullable=True)
    refunded_amount = Column(Integer, nullable=True)

    completed_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=False, index=True)

    def __repr__(self) -> str:
        """String representation."""
        return f"<Payment(id={self.id}, invoice_id={self.invoice_id}, status={self.status.value}, amount={self.amount})>"
