"""epayment.kz webhook handler for payment callbacks."""
import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError

from library_payments.api.deps import get_callback_retry_service, get_callback_service
from library_payments.exceptions import (
    DatabaseError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from library_payments.metrics import callbacks_received_total
from library_payments.schemas.callback import CallbackResponse, PaymentCallback
from library_payments.services.callback_retry_service import CallbackRetryService
from library_payments.services.callback_service import CallbackService
from library_payments.services.payment_service import PaymentService

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/webhooks/epayment", tags=["webhooks"])

PROCESSED_MESSAGE = "Payment callback processed successfully"
DUPLICATE_MESSAGE = "Payment callback already processed"


@router.post("", response_model=CallbackResponse)
async def handle_epayment_webhook(
    request: Request,
    callback_service: CallbackService = Depends(get_callback_service),
    retry_service: CallbackRetryService = Depends(get_callback_retry_service),
):
    """
    Handle a payment callback posted by the gateway.

    Responses:
    - 200 when the callback was applied, was a replay, or was rejected
      (unknown invoice, amount mismatch, impossible transition). The gateway
      gains nothing from redelivering those.
    - 400 when the body cannot be parsed.
    - 503 when the update could not be persisted. The callback is queued for
      replay when its payment is known.
    """
    body = await request.body()
    try:
        callback = PaymentCallback.model_validate_json(body)
    except PydanticValidationError as e:
        callbacks_received_total.labels(outcome="invalid").inc()
        logger.error("epayment_webhook_invalid_body", error_count=e.error_count())
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid callback body")

    logger.info(
        "epayment_webhook_received",
        invoice_id=callback.invoice_id,
        code=callback.code,
        reason=callback.reason,
        transaction_id=callback.transaction_id,
    )

    try:
        result = await callback_service.apply_callback(callback)
    except NotFoundError as e:
        callbacks_received_total.labels(outcome="unknown_invoice").inc()
        return CallbackResponse(message=f"Callback rejected: {e.message}")
    except ValidationError as e:
        callbacks_received_total.labels(outcome="mismatch").inc()
        return CallbackResponse(message=f"Callback rejected: {e.message}")
    except InvalidStateError as e:
        callbacks_received_total.labels(outcome="invalid_transition").inc()
        logger.warning("epayment_webhook_transition_rejected", invoice_id=callback.invoice_id, error=e.message)
        return CallbackResponse(message=f"Callback rejected: {e.message}")
    except DatabaseError as e:
        callbacks_received_total.labels(outcome="deferred").inc()
        await _enqueue_retry(callback, retry_service, str(e))
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=CallbackResponse(message="Callback could not be processed, it will be retried").model_dump(
                mode="json"
            ),
            headers={"Retry-After": "60"},
        )

    callbacks_received_total.labels(outcome="processed" if result.processed else "duplicate").inc()
    return CallbackResponse(
        payment_id=result.payment_id,
        status=result.status,
        message=PROCESSED_MESSAGE if result.processed else DUPLICATE_MESSAGE,
    )


async def _enqueue_retry(callback: PaymentCallback, retry_service: CallbackRetryService, error: str) -> None:
    try:
        payment = await PaymentService(retry_service.db).get_payment_by_invoice_id(callback.invoice_id)
        if payment is None:
            logger.warning("epayment_webhook_retry_skipped", invoice_id=callback.invoice_id)
            return
        await retry_service.enqueue(callback, payment.id, error)
    except (DatabaseError, SQLAlchemyError) as e:
        logger.error("epayment_webhook_retry_enqueue_failed", invoice_id=callback.invoice_id, error=str(e))
