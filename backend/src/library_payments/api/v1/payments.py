"""Payment endpoints for the widget flow, verification, cancellation and refunds."""
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from library_payments.api.deps import (
    CurrentMember,
    get_callback_retry_service,
    get_current_user,
    get_payment_service,
    require_admin,
)
from library_payments.models.payment import PaymentStatus
from library_payments.schemas.payment import (
    CallbackRetryBatchResponse,
    CancelPaymentRequest,
    InitiatePaymentRequest,
    InitiatePaymentResponse,
    PaymentList,
    PaymentResponse,
    RefundPaymentRequest,
    RefundPaymentResponse,
)
from library_payments.services.callback_retry_service import CallbackRetryService
from library_payments.services.payment_service import PaymentService

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("", response_model=InitiatePaymentResponse, status_code=status.HTTP_201_CREATED)
async def initiate_payment(
    request: InitiatePaymentRequest,
    user: CurrentMember = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
) -> InitiatePaymentResponse:
    """
    Start a card payment.

    Creates a pending payment and returns the invoice ID, gateway token and
    merchant links the client passes to the payment widget.
    """
    return await service.initiate_payment(user.member_id, request)


@router.get("", response_model=PaymentList)
async def list_payments(
    status_filter: Optional[PaymentStatus] = Query(None, alias="status", description="Filter by payment status"),
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(50, ge=1, le=200, description="Results per page"),
    user: CurrentMember = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
) -> PaymentList:
    """List the caller's payments, newest first."""
    payments, total = await service.list_member_payments(
        user.member_id,
        status=status_filter,
        page=page,
        page_size=page_size,
    )
    return PaymentList(
        items=[PaymentResponse.model_validate(p) for p in payments],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.post("/callback-retries/process", response_model=CallbackRetryBatchResponse)
async def process_callback_retries(
    batch_size: Optional[int] = Query(None, ge=1, le=500),
    _admin: CurrentMember = Depends(require_admin),
    service: CallbackRetryService = Depends(get_callback_retry_service),
) -> CallbackRetryBatchResponse:
    """Replay one batch of queued gateway callbacks (administrators only)."""
    result = await service.process_batch(batch_size)
    return CallbackRetryBatchResponse(
        processed=result.processed,
        succeeded=result.succeeded,
        failed=result.failed,
        errors=result.errors,
    )


@router.get("/{payment_id}", response_model=PaymentResponse)
async def get_payment(
    payment_id: UUID,
    user: CurrentMember = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
) -> PaymentResponse:
    """Get payment details by ID."""
    payment = await service.get_member_payment(payment_id, user.member_id, is_admin=user.is_admin)
    return PaymentResponse.model_validate(payment)


@router.post("/{payment_id}/verify", response_model=PaymentResponse)
async def verify_payment(
    payment_id: UUID,
    user: CurrentMember = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
) -> PaymentResponse:
    """
    Reconcile a payment with the gateway.

    Used when the webhook has not arrived yet. Expired pending payments are
    failed; gateway outages return the last known state.
    """
    payment = await service.verify_payment(payment_id, member_id=user.member_id, is_admin=user.is_admin)
    return PaymentResponse.model_validate(payment)


@router.post("/{payment_id}/cancel", response_model=PaymentResponse)
async def cancel_payment(
    payment_id: UUID,
    request: Optional[CancelPaymentRequest] = None,
    user: CurrentMember = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
) -> PaymentResponse:
    """Cancel a pending or processing payment."""
    payment = await service.cancel_payment(payment_id, user.member_id, reason=request.reason if request else None)
    return PaymentResponse.model_validate(payment)


@router.post("/{payment_id}/refund", response_model=RefundPaymentResponse)
async def refund_payment(
    payment_id: UUID,
    request: Optional[RefundPaymentRequest] = None,
    user: CurrentMember = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
) -> RefundPaymentResponse:
    """
    Refund a completed payment.

    Omit the amount for a full refund. Partial amounts must not exceed the
    original payment.
    """
    request = request or RefundPaymentRequest()
    return await service.refund_payment(
        payment_id,
        user.member_id,
        is_admin=user.is_admin,
        amount=request.amount,
        reason=request.reason,
    )
