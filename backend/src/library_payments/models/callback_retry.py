"""Callback retry model: durable queue of webhook applications awaiting replay."""
from sqlalchemy import Column, DateTime, Integer, String, Enum as SQLEnum, Text, Uuid
import enum

from library_payments.models.base import Base


class CallbackRetryStatus(enum.Enum):
    """Callback retry status. COMPLETED and FAILED are terminal."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class CallbackRetry(Base):
    """
    Webhook payload that could not be applied and is waiting for replay.

    Records are never removed, only transitioned.
    """

    __tablename__ = "callback_retries"

    payment_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    callback_data = Column(Text, nullable=False)  # Serialized inbound webhook JSON
    status = Column(
        SQLEnum(CallbackRetryStatus), nullable=False, default=CallbackRetryStatus.PENDING, index=True
    )
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=5)
    last_error = Column(Text, nullable=True)
    next_retry_at = Column(DateTime, nullable=True, index=True)

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"<CallbackRetry(id={self.id}, payment_id={self.payment_id}, "
            f"status={self.status.value}, retries={self.retry_count})>"
        )
