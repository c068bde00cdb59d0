"""Saved card model for tokenized, reusable payment methods."""
from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, Integer, String

from library_payments.models.base import Base


class SavedCard(Base):
    """
    Gateway-issued card token saved by a member.

    Only the token and the masked number are stored, never the card number.
    Deleting a card deactivates it.
    """

    __tablename__ = "saved_cards"

    member_id = Column(String(64), nullable=False, index=True)
    card_token = Column(String(255), nullable=False, unique=True)  # Gateway card ID
    card_mask = Column(String(32), nullable=False)
    card_type = Column(String(32), nullable=True)  # visa, mastercard
    expiry_month = Column(Integer, nullable=True)
    expiry_year = Column(Integer, nullable=True)
    is_default = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    last_used_at = Column(DateTime, nullable=True)

    def is_expired(self, now: datetime) -> bool:
        """Whether the card expiry month is before the month of `now`."""
        if not self.expiry_year or not self.expiry_month:
            return False
        return (self.expiry_year, self.expiry_month) < (now.year, now.month)

    def is_usable(self, now: datetime) -> bool:
        return bool(self.is_active) and not self.is_expired(now)

    def __repr__(self) -> str:
        """String representation."""
        return f"<SavedCard(id={self.id}, member_id={self.member_id}, mask={self.card_mask})>"
