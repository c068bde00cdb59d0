"""SQLAlchemy ORM models for the payment subsystem."""
# Import all models here so they are registered on Base.metadata

from library_payments.models.base import Base, utcnow
from library_payments.models.payment import Payment, PaymentMethod, PaymentStatus, PaymentType
from library_payments.models.saved_card import SavedCard
from library_payments.models.callback_retry import CallbackRetry, CallbackRetryStatus
from library_payments.models.receipt import Receipt

__all__ = [
    "Base",
    "utcnow",
    "Payment",
    "PaymentMethod",
    "PaymentStatus",
    "PaymentType",
    "SavedCard",
    "CallbackRetry",
    "CallbackRetryStatus",
    "Receipt",
]
