"""Integration tests for saved cards and saved card payments."""
from uuid import uuid4

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from library_payments.adapters.epayment_adapter import EPaymentClient
from library_payments.exceptions import ExternalServiceError, NotFoundError, ValidationError
from library_payments.models.payment import Payment, PaymentMethod, PaymentStatus, PaymentType
from library_payments.models.saved_card import SavedCard
from library_payments.schemas.error import ErrorCode
from library_payments.schemas.saved_card import PayWithSavedCardRequest, SavedCardCreate
from library_payments.services.saved_card_service import SavedCardService
from utils.factories import SavedCardFactory
from utils.gateway_stub import GatewayStub

CHARGE_PATH = "/payments/cards/auth"


async def _card(db: AsyncSession, **overrides) -> SavedCard:
    card = SavedCardFactory.create({"member_id": "member-1", **overrides})
    db.add(card)
    await db.commit()
    return card


def _pay_request(amount: int = 3000) -> PayWithSavedCardRequest:
    return PayWithSavedCardRequest(amount=amount, currency="KZT", payment_type=PaymentType.FINE)


@pytest.mark.asyncio
async def test_first_saved_card_becomes_default(db_session: AsyncSession) -> None:
    service = SavedCardService(db_session)

    first = await service.save_card(
        "member-1",
        SavedCardCreate(card_token="tok-1", card_mask="440043******0011", expiry_month=12, expiry_year=2099),
    )
    second = await service.save_card("member-1", SavedCardCreate(card_token="tok-2", card_mask="510000******0022"))

    assert first.is_default is True
    assert second.is_default is False


@pytest.mark.asyncio
async def test_saving_same_token_returns_existing_card(db_session: AsyncSession) -> None:
    service = SavedCardService(db_session)
    data = SavedCardCreate(card_token="tok-1", card_mask="440043******0011")

    first = await service.save_card("member-1", data)
    again = await service.save_card("member-1", data)

    assert again.id == first.id
    assert len(await service.list_cards("member-1")) == 1


@pytest.mark.asyncio
async def test_token_of_another_member_is_rejected(db_session: AsyncSession) -> None:
    await _card(db_session, card_token="tok-shared")

    with pytest.raises(ValidationError):
        await SavedCardService(db_session).save_card(
            "member-2", SavedCardCreate(card_token="tok-shared", card_mask="440043******0011")
        )


@pytest.mark.asyncio
async def test_saved_card_limit(db_session: AsyncSession) -> None:
    for _ in range(10):
        await _card(db_session)

    with pytest.raises(ValidationError) as exc_info:
        await SavedCardService(db_session).save_card(
            "member-1", SavedCardCreate(card_token="tok-11", card_mask="440043******0011")
        )

    assert exc_info.value.code == ErrorCode.SAVED_CARD_LIMIT_REACHED


@pytest.mark.asyncio
async def test_set_default_moves_the_flag(db_session: AsyncSession) -> None:
    old_default = await _card(db_session, is_default=True)
    card = await _card(db_session)
    service = SavedCardService(db_session)

    await service.set_default_card(card.id, "member-1")

    await db_session.refresh(old_default)
    assert card.is_default is True
    assert old_default.is_default is False
    assert (await service.list_cards("member-1"))[0].id == card.id


@pytest.mark.asyncio
async def test_set_default_rejects_expired_card(db_session: AsyncSession) -> None:
    card = await _card(db_session, expiry_month=1, expiry_year=2020)

    with pytest.raises(ValidationError) as exc_info:
        await SavedCardService(db_session).set_default_card(card.id, "member-1")

    assert exc_info.value.code == ErrorCode.CARD_NOT_USABLE


@pytest.mark.asyncio
async def test_delete_default_card_promotes_another(db_session: AsyncSession) -> None:
    default = await _card(db_session, is_default=True)
    other = await _card(db_session)
    service = SavedCardService(db_session)

    await service.delete_card(default.id, "member-1")

    assert default.is_active is False
    assert other.is_default is True
    assert [c.id for c in await service.list_cards("member-1")] == [other.id]


@pytest.mark.asyncio
async def test_cards_of_other_members_are_not_found(db_session: AsyncSession) -> None:
    card = await _card(db_session)
    service = SavedCardService(db_session)

    with pytest.raises(NotFoundError):
        await service.delete_card(card.id, "member-2")
    with pytest.raises(NotFoundError):
        await service.set_default_card(uuid4(), "member-1")


@pytest.mark.asyncio
async def test_pay_with_saved_card_completes_payment(
    db_session: AsyncSession,
    gateway_stub: GatewayStub,
    gateway: EPaymentClient,
) -> None:
    card = await _card(db_session, card_token="tok-pay")
    gateway_stub.on(
        "POST",
        CHARGE_PATH,
        json={"id": "p-1", "transactionId": "tx-7", "status": "success", "approvalCode": "654321"},
    )

    result = await SavedCardService(db_session, gateway).pay_with_saved_card(card.id, "member-1", _pay_request())

    assert result.status == PaymentStatus.COMPLETED
    assert result.card_mask == card.card_mask
    assert result.gateway_transaction_id == "tx-7"
    assert result.approval_code == "654321"

    payment = await db_session.get(Payment, result.payment_id)
    assert payment.payment_method == PaymentMethod.SAVED_CARD
    assert payment.completed_at is not None
    assert card.last_used_at is not None

    body = GatewayStub.json_body(gateway_stub.api_requests("POST", CHARGE_PATH)[0])
    assert body["cardId"] == {"id": "tok-pay"}
    assert body["invoiceId"] == payment.invoice_id
    assert body["amount"] == 3000


@pytest.mark.asyncio
async def test_declined_charge_fails_payment(
    db_session: AsyncSession,
    gateway_stub: GatewayStub,
    gateway: EPaymentClient,
) -> None:
    card = await _card(db_session)
    gateway_stub.on(
        "POST",
        CHARGE_PATH,
        json={"id": "p-2", "status": "declined", "errorCode": "05", "errorMessage": "Do not honor"},
    )

    result = await SavedCardService(db_session, gateway).pay_with_saved_card(card.id, "member-1", _pay_request())

    assert result.status == PaymentStatus.FAILED
    assert result.message == "Do not honor"
    payment = await db_session.get(Payment, result.payment_id)
    assert payment.error_code == "05"


@pytest.mark.asyncio
async def test_gateway_error_marks_payment_failed(
    db_session: AsyncSession,
    gateway_stub: GatewayStub,
    gateway: EPaymentClient,
) -> None:
    card = await _card(db_session)
    gateway_stub.on("POST", CHARGE_PATH, status_code=500, json={"code": 500, "message": "internal"})

    with pytest.raises(ExternalServiceError):
        await SavedCardService(db_session, gateway).pay_with_saved_card(card.id, "member-1", _pay_request())

    payment = (await db_session.execute(select(Payment))).scalar_one()
    assert payment.status == PaymentStatus.FAILED
    assert payment.payment_method == PaymentMethod.SAVED_CARD
    assert payment.error_code == "500"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [
        {"is_active": False},
        {"expiry_month": 6, "expiry_year": 2021},
    ],
)
async def test_unusable_card_cannot_pay(
    db_session: AsyncSession,
    gateway_stub: GatewayStub,
    gateway: EPaymentClient,
    overrides: dict,
) -> None:
    card = await _card(db_session, **overrides)

    with pytest.raises(ValidationError) as exc_info:
        await SavedCardService(db_session, gateway).pay_with_saved_card(card.id, "member-1", _pay_request())

    assert exc_info.value.code == ErrorCode.CARD_NOT_USABLE
    assert gateway_stub.requests == []
    assert (await db_session.execute(select(Payment))).scalars().all() == []


@pytest.mark.asyncio
async def test_paying_with_another_members_card_is_not_found(
    db_session: AsyncSession,
    gateway: EPaymentClient,
) -> None:
    card = await _card(db_session)

    with pytest.raises(NotFoundError):
        await SavedCardService(db_session, gateway).pay_with_saved_card(card.id, "member-2", _pay_request())
