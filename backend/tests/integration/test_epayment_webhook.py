"""Tests for the epayment.kz webhook endpoint."""
import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from library_payments.exceptions import DatabaseError
from library_payments.models.callback_retry import CallbackRetry, CallbackRetryStatus
from library_payments.models.payment import Payment, PaymentStatus
from library_payments.services.callback_service import CallbackService
from utils.factories import CallbackFactory, PaymentFactory

WEBHOOK_URL = "/webhooks/epayment"


async def _persist(db: AsyncSession, payment: Payment) -> Payment:
    db.add(payment)
    await db.commit()
    return payment


def _body(payment: Payment, success: bool = True, **overrides) -> dict:
    callback = CallbackFactory.for_payment(payment, success=success, overrides=overrides)
    return callback.model_dump(mode="json", by_alias=True)


@pytest.mark.asyncio
async def test_successful_callback(async_client: AsyncClient, db_session: AsyncSession) -> None:
    payment = await _persist(db_session, PaymentFactory.create())

    response = await async_client.post(WEBHOOK_URL, json=_body(payment))

    assert response.status_code == 200
    data = response.json()
    assert data["payment_id"] == str(payment.id)
    assert data["status"] == "completed"
    assert data["message"] == "Payment callback processed successfully"

    await db_session.refresh(payment)
    assert payment.status == PaymentStatus.COMPLETED


@pytest.mark.asyncio
async def test_duplicate_callback_is_acknowledged_as_already_processed(
    async_client: AsyncClient, db_session: AsyncSession
) -> None:
    payment = await _persist(db_session, PaymentFactory.create())
    body = _body(payment)

    first = await async_client.post(WEBHOOK_URL, json=body)
    second = await async_client.post(WEBHOOK_URL, json=body)

    assert first.status_code == second.status_code == 200
    assert second.json()["payment_id"] == first.json()["payment_id"] == str(payment.id)
    assert second.json()["status"] == first.json()["status"] == "completed"
    assert first.json()["message"] == "Payment callback processed successfully"
    assert second.json()["message"] == "Payment callback already processed"


@pytest.mark.asyncio
async def test_failure_callback(async_client: AsyncClient, db_session: AsyncSession) -> None:
    payment = await _persist(db_session, PaymentFactory.create())

    response = await async_client.post(WEBHOOK_URL, json=_body(payment, success=False))

    assert response.status_code == 200
    assert response.json()["status"] == "failed"


@pytest.mark.asyncio
async def test_amount_mismatch_is_acknowledged_but_ignored(
    async_client: AsyncClient, db_session: AsyncSession
) -> None:
    payment = await _persist(db_session, PaymentFactory.create({"amount": 5000}))

    response = await async_client.post(WEBHOOK_URL, json=_body(payment, amount=500))

    assert response.status_code == 200
    assert response.json()["message"].startswith("Callback rejected")
    assert response.json()["payment_id"] is None
    await db_session.refresh(payment)
    assert payment.status == PaymentStatus.PENDING


@pytest.mark.asyncio
async def test_unknown_invoice_is_acknowledged(async_client: AsyncClient) -> None:
    response = await async_client.post(
        WEBHOOK_URL,
        json={"code": "ok", "invoiceId": "missing-invoice", "amount": 100, "currency": "KZT", "reason": "success"},
    )

    assert response.status_code == 200
    assert response.json()["message"].startswith("Callback rejected")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "content",
    [
        b"not json",
        b'{"code": "ok"}',
        b'{"code": "ok", "invoiceId": "inv", "amount": "lots", "currency": "KZT"}',
    ],
)
async def test_unparseable_body_is_bad_request(async_client: AsyncClient, content: bytes) -> None:
    response = await async_client.post(
        WEBHOOK_URL, content=content, headers={"Content-Type": "application/json"}
    )

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_persistence_failure_queues_retry(
    async_client: AsyncClient,
    db_session: AsyncSession,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    payment = await _persist(db_session, PaymentFactory.create())

    async def unavailable(self, callback):
        raise DatabaseError("Failed to persist payment_callback")

    monkeypatch.setattr(CallbackService, "apply_callback", unavailable)

    response = await async_client.post(WEBHOOK_URL, json=_body(payment))

    assert response.status_code == 503
    assert response.headers["Retry-After"] == "60"

    retry = (await db_session.execute(select(CallbackRetry))).scalar_one()
    assert retry.payment_id == payment.id
    assert retry.status == CallbackRetryStatus.PENDING
    assert retry.last_error == "Failed to persist payment_callback"
