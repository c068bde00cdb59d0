"""Receipt model: immutable snapshot of a completed payment."""
from sqlalchemy import Column, DateTime, Integer, JSON, String, Text, Uuid

from library_payments.models.base import Base


class Receipt(Base):
    """
    Receipt issued for a completed payment.

    At most one receipt exists per payment. Numbers look like RCP-2025-00001
    and are sequential within a year.
    """

    __tablename__ = "receipts"

    payment_id = Column(Uuid(as_uuid=True), nullable=False, unique=True, index=True)
    receipt_number = Column(String(32), nullable=False, unique=True, index=True)
    member_id = Column(String(64), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)
    tax_amount = Column(Integer, nullable=False, default=0)
    total_amount = Column(Integer, nullable=False)
    payment_type = Column(String(32), nullable=False)
    payment_method = Column(String(32), nullable=False)
    transaction_id = Column(String(128), nullable=True)
    card_mask = Column(String(32), nullable=True)
    status = Column(String(32), nullable=False, default="issued")
    description = Column(String(255), nullable=False)
    items = Column(JSON, nullable=False, default=list)
    notes = Column(Text, nullable=True)
    payment_date = Column(DateTime, nullable=False)
    receipt_date = Column(DateTime, nullable=False)

    def __repr__(self) -> str:
        """String representation."""
        return f"<Receipt(number={self.receipt_number}, payment_id={self.payment_id})>"
