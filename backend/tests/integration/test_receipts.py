"""Integration tests for receipt generation."""
import re
from uuid import uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from library_payments.exceptions import NotFoundError, UnauthorizedError, ValidationError
from library_payments.models.base import utcnow
from library_payments.models.payment import Payment, PaymentStatus, PaymentType
from library_payments.schemas.receipt import ReceiptResponse
from library_payments.services.receipt_service import ReceiptService
from utils.factories import PaymentFactory


async def _completed_payment(db: AsyncSession, **overrides) -> Payment:
    payment = PaymentFactory.create(
        {
            "member_id": "member-1",
            "amount": 250000,
            "status": PaymentStatus.COMPLETED,
            "completed_at": utcnow(),
            "gateway_transaction_id": "tx-1",
            "card_mask": "440043******0011",
            **overrides,
        }
    )
    db.add(payment)
    await db.commit()
    return payment


@pytest.mark.asyncio
async def test_receipt_for_completed_payment(db_session: AsyncSession) -> None:
    payment = await _completed_payment(db_session, payment_type=PaymentType.DEPOSIT, description=None)

    receipt = await ReceiptService(db_session).generate_receipt(payment.id, "member-1", notes="Thank you")

    assert re.fullmatch(rf"RCP-{utcnow().year}-00001", receipt.receipt_number)
    assert receipt.amount == 250000
    assert receipt.total_amount == 250000
    assert receipt.transaction_id == "tx-1"
    assert receipt.card_mask == "440043******0011"
    assert receipt.description == "Library Deposit"
    assert receipt.items == [{"description": "Library Deposit", "quantity": 1, "unit_price": 250000, "total": 250000}]
    assert receipt.notes == "Thank you"
    assert receipt.payment_date == payment.completed_at

    response = ReceiptResponse.model_validate(receipt)
    assert response.formatted_total == "₸2,500.00 KZT"


@pytest.mark.asyncio
async def test_receipt_generation_is_idempotent(db_session: AsyncSession) -> None:
    payment = await _completed_payment(db_session)
    service = ReceiptService(db_session)

    first = await service.generate_receipt(payment.id, "member-1")
    second = await service.generate_receipt(payment.id, "member-1")

    assert second.id == first.id
    assert second.receipt_number == first.receipt_number


@pytest.mark.asyncio
async def test_receipt_numbers_are_sequential(db_session: AsyncSession) -> None:
    service = ReceiptService(db_session)
    numbers = []
    for _ in range(3):
        payment = await _completed_payment(db_session)
        numbers.append((await service.generate_receipt(payment.id, "member-1")).receipt_number)

    year = utcnow().year
    assert numbers == [f"RCP-{year}-00001", f"RCP-{year}-00002", f"RCP-{year}-00003"]


@pytest.mark.asyncio
async def test_receipt_requires_completed_payment(db_session: AsyncSession) -> None:
    payment = await _completed_payment(db_session, status=PaymentStatus.PENDING, completed_at=None)

    with pytest.raises(ValidationError) as exc_info:
        await ReceiptService(db_session).generate_receipt(payment.id, "member-1")

    assert exc_info.value.field == "payment_status"


@pytest.mark.asyncio
async def test_receipt_for_another_members_payment_is_unauthorized(db_session: AsyncSession) -> None:
    payment = await _completed_payment(db_session)

    with pytest.raises(UnauthorizedError):
        await ReceiptService(db_session).generate_receipt(payment.id, "member-2")


@pytest.mark.asyncio
async def test_receipt_for_unknown_payment_is_not_found(db_session: AsyncSession) -> None:
    with pytest.raises(NotFoundError):
        await ReceiptService(db_session).generate_receipt(uuid4(), "member-1")


@pytest.mark.asyncio
async def test_get_and_list_receipts(db_session: AsyncSession) -> None:
    service = ReceiptService(db_session)
    receipt = await service.generate_receipt((await _completed_payment(db_session)).id, "member-1")

    assert (await service.get_receipt(receipt.id, "member-1")).id == receipt.id
    assert (await service.get_receipt(receipt.id, "librarian-1", is_admin=True)).id == receipt.id
    with pytest.raises(UnauthorizedError):
        await service.get_receipt(receipt.id, "member-2")

    receipts, total = await service.list_member_receipts("member-1")
    assert total == 1
    assert receipts[0].id == receipt.id
    assert await service.list_member_receipts("member-2") == ([], 0)
