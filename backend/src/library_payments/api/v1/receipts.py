"""Receipt endpoints."""
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from library_payments.api.deps import CurrentMember, get_current_user, get_receipt_service
from library_payments.schemas.receipt import ReceiptCreate, ReceiptList, ReceiptResponse
from library_payments.services.receipt_service import ReceiptService

router = APIRouter(prefix="/receipts", tags=["receipts"])


@router.post("", response_model=ReceiptResponse, status_code=status.HTTP_201_CREATED)
async def generate_receipt(
    request: ReceiptCreate,
    user: CurrentMember = Depends(get_current_user),
    service: ReceiptService = Depends(get_receipt_service),
) -> ReceiptResponse:
    """Issue a receipt for a completed payment, or return the one already issued."""
    receipt = await service.generate_receipt(request.payment_id, user.member_id, notes=request.notes)
    return ReceiptResponse.model_validate(receipt)


@router.get("", response_model=ReceiptList)
async def list_receipts(
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    user: CurrentMember = Depends(get_current_user),
    service: ReceiptService = Depends(get_receipt_service),
) -> ReceiptList:
    receipts, total = await service.list_member_receipts(user.member_id, page=page, page_size=page_size)
    return ReceiptList(items=[ReceiptResponse.model_validate(r) for r in receipts], total=total)


@router.get("/{receipt_id}", response_model=ReceiptResponse)
async def get_receipt(
    receipt_id: UUID,
    user: CurrentMember = Depends(get_current_user),
    service: ReceiptService = Depends(get_receipt_service),
) -> ReceiptResponse:
    receipt = await service.get_receipt(receipt_id, user.member_id, is_admin=user.is_admin)
    return ReceiptResponse.model_validate(receipt)
