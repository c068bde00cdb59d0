"""API tests for payment, saved card and receipt endpoints."""
from uuid import uuid4

import httpx
import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from library_payments.config import settings
from library_payments.models.base import utcnow
from library_payments.models.callback_retry import CallbackRetry, CallbackRetryStatus
from library_payments.models.payment import Payment, PaymentStatus
from library_payments.services.payment_service import PaymentService
from utils.factories import CallbackFactory, PaymentFactory, past
from utils.gateway_stub import GatewayStub


async def _persist(db: AsyncSession, payment: Payment) -> Payment:
    db.add(payment)
    await db.commit()
    return payment


@pytest.mark.asyncio
async def test_health(async_client: AsyncClient) -> None:
    response = await async_client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


@pytest.mark.asyncio
async def test_authentication_required(async_client: AsyncClient) -> None:
    response = await async_client.get("/v1/payments")

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_invalid_token_rejected(async_client: AsyncClient) -> None:
    response = await async_client.get("/v1/payments", headers={"Authorization": "Bearer not-a-jwt"})

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_unexpected_error_is_internal_error(
    async_client: AsyncClient, member_headers: dict, monkeypatch: pytest.MonkeyPatch
) -> None:
    async def broken(self, *args, **kwargs):
        raise RuntimeError("connection pool exhausted")

    monkeypatch.setattr(PaymentService, "list_member_payments", broken)
    monkeypatch.setattr(settings, "debug", False)
    from library_payments.main import app

    # Starlette re-raises after answering; keep the response instead
    transport = httpx.ASGITransport(app=app, raise_app_exceptions=False)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/v1/payments", headers=member_headers)

    assert response.status_code == 500
    body = response.json()
    assert body["error"] == "InternalError"
    assert body["details"][0]["code"] == "internal_error"
    assert body["remediation"] == "Please contact support with the request ID"
    assert "connection pool" not in body["message"]
    assert body["request_id"]


@pytest.mark.asyncio
async def test_initiate_payment(async_client: AsyncClient, member_headers: dict) -> None:
    response = await async_client.post(
        "/v1/payments",
        json={"amount": 5000, "currency": "kzt", "payment_type": "reservation"},
        headers={**member_headers, "X-Request-ID": "req-test-1"},
    )

    assert response.status_code == 201
    data = response.json()
    assert data["invoice_id"].startswith("reservation-member-1-")
    assert data["auth_token"] == "test-access-token"
    assert data["currency"] == "KZT"
    assert data["widget_url"] == "https://widget.gateway.test/payment-api.js"
    assert response.headers["X-Request-ID"] == "req-test-1"

    listing = await async_client.get("/v1/payments", headers=member_headers)
    assert listing.json()["total"] == 1
    assert listing.json()["items"][0]["status"] == "pending"


@pytest.mark.asyncio
async def test_initiate_payment_validation_error(async_client: AsyncClient, member_headers: dict) -> None:
    response = await async_client.post(
        "/v1/payments",
        json={"amount": 50, "payment_type": "fine"},
        headers=member_headers,
    )

    assert response.status_code == 422
    body = response.json()
    assert body["error"] == "ValidationError"
    assert body["details"][0]["field"] == "body.amount"
    assert body["details"][0]["code"] == "invalid_amount"
    assert body["request_id"]


@pytest.mark.asyncio
async def test_unsupported_currency_is_bad_request(async_client: AsyncClient, member_headers: dict) -> None:
    response = await async_client.post(
        "/v1/payments",
        json={"amount": 5000, "currency": "GBP", "payment_type": "fine"},
        headers=member_headers,
    )

    assert response.status_code == 400
    body = response.json()
    assert body["details"][0]["code"] == "invalid_currency"
    assert body["remediation"]


@pytest.mark.asyncio
async def test_other_members_payment_is_hidden(
    async_client: AsyncClient,
    db_session: AsyncSession,
    other_member_headers: dict,
    admin_headers: dict,
) -> None:
    payment = await _persist(db_session, PaymentFactory.create({"member_id": "member-1"}))

    hidden = await async_client.get(f"/v1/payments/{payment.id}", headers=other_member_headers)
    assert hidden.status_code == 404
    assert hidden.json()["details"][0]["code"] == "payment_not_found"

    visible = await async_client.get(f"/v1/payments/{payment.id}", headers=admin_headers)
    assert visible.status_code == 200
    assert visible.json()["member_id"] == "member-1"


@pytest.mark.asyncio
async def test_cancel_twice(async_client: AsyncClient, db_session: AsyncSession, member_headers: dict) -> None:
    payment = await _persist(db_session, PaymentFactory.create({"member_id": "member-1"}))

    first = await async_client.post(
        f"/v1/payments/{payment.id}/cancel", json={"reason": "duplicate"}, headers=member_headers
    )
    second = await async_client.post(f"/v1/payments/{payment.id}/cancel", headers=member_headers)

    assert first.status_code == 200
    assert first.json()["status"] == "cancelled"
    assert second.status_code == 409
    assert second.json()["details"][0]["code"] == "payment_already_cancelled"


@pytest.mark.asyncio
async def test_verify_endpoint(
    async_client: AsyncClient,
    db_session: AsyncSession,
    gateway_stub: GatewayStub,
    member_headers: dict,
) -> None:
    payment = await _persist(db_session, PaymentFactory.create({"member_id": "member-1"}))
    gateway_stub.on(
        "GET",
        f"/check-status/payment/transaction/{payment.invoice_id}",
        json={"transaction": {"id": "tx-1", "status": "success"}},
    )

    response = await async_client.post(f"/v1/payments/{payment.id}/verify", headers=member_headers)

    assert response.status_code == 200
    assert response.json()["status"] == "completed"
    assert response.json()["gateway_transaction_id"] == "tx-1"


@pytest.mark.asyncio
async def test_refund_endpoint(
    async_client: AsyncClient,
    db_session: AsyncSession,
    gateway_stub: GatewayStub,
    member_headers: dict,
) -> None:
    payment = await _persist(
        db_session,
        PaymentFactory.create(
            {
                "member_id": "member-1",
                "amount": 5000,
                "status": PaymentStatus.COMPLETED,
                "gateway_transaction_id": "tx-2",
                "completed_at": utcnow(),
            }
        ),
    )
    gateway_stub.on("POST", "/operation/tx-2/refund", json={"code": 0})

    too_much = await async_client.post(
        f"/v1/payments/{payment.id}/refund", json={"amount": 6000}, headers=member_headers
    )
    assert too_much.status_code == 400
    assert too_much.json()["details"][0]["code"] == "invalid_refund_amount"

    response = await async_client.post(
        f"/v1/payments/{payment.id}/refund", json={"amount": 2000}, headers=member_headers
    )
    assert response.status_code == 200
    assert response.json()["refunded_amount"] == 2000
    assert response.json()["status"] == "refunded"


@pytest.mark.asyncio
async def test_gateway_failure_is_bad_gateway(
    async_client: AsyncClient,
    db_session: AsyncSession,
    gateway_stub: GatewayStub,
    member_headers: dict,
) -> None:
    payment = await _persist(
        db_session,
        PaymentFactory.create(
            {"member_id": "member-1", "status": PaymentStatus.COMPLETED, "gateway_transaction_id": "tx-3"}
        ),
    )
    gateway_stub.on("POST", "/operation/tx-3/refund", status_code=500, json={"message": "down"})

    response = await async_client.post(f"/v1/payments/{payment.id}/refund", headers=member_headers)

    assert response.status_code == 502
    assert response.json()["error"] == "ExternalServiceError"


@pytest.mark.asyncio
async def test_callback_retry_processing_requires_admin(
    async_client: AsyncClient,
    db_session: AsyncSession,
    member_headers: dict,
    admin_headers: dict,
) -> None:
    payment = await _persist(db_session, PaymentFactory.create())
    db_session.add(
        CallbackRetry(
            payment_id=payment.id,
            callback_data=CallbackFactory.for_payment(payment).model_dump_json(by_alias=True),
            status=CallbackRetryStatus.PENDING,
            retry_count=0,
            max_retries=5,
            next_retry_at=past(1),
        )
    )
    await db_session.commit()

    forbidden = await async_client.post("/v1/payments/callback-retries/process", headers=member_headers)
    assert forbidden.status_code == 403

    response = await async_client.post("/v1/payments/callback-retries/process", headers=admin_headers)
    assert response.status_code == 200
    assert response.json() == {"processed": 1, "succeeded": 1, "failed": 0, "errors": []}


@pytest.mark.asyncio
async def test_saved_card_endpoints(
    async_client: AsyncClient,
    gateway_stub: GatewayStub,
    member_headers: dict,
    other_member_headers: dict,
) -> None:
    created = await async_client.post(
        "/v1/saved-cards",
        json={"card_token": "tok-api", "card_mask": "440043******0011", "expiry_month": 12, "expiry_year": 2099},
        headers=member_headers,
    )
    assert created.status_code == 201
    card = created.json()
    assert card["is_default"] is True
    assert "card_token" not in card

    listing = await async_client.get("/v1/saved-cards", headers=member_headers)
    assert listing.json()["total"] == 1

    assert (await async_client.get("/v1/saved-cards", headers=other_member_headers)).json()["total"] == 0

    gateway_stub.on("POST", "/payments/cards/auth", json={"transactionId": "tx-9", "status": "success"})
    paid = await async_client.post(
        f"/v1/saved-cards/{card['id']}/pay",
        json={"amount": 1500, "payment_type": "fine"},
        headers=member_headers,
    )
    assert paid.status_code == 200
    assert paid.json()["status"] == "completed"

    stolen = await async_client.post(
        f"/v1/saved-cards/{card['id']}/pay",
        json={"amount": 1500, "payment_type": "fine"},
        headers=other_member_headers,
    )
    assert stolen.status_code == 404

    deleted = await async_client.delete(f"/v1/saved-cards/{card['id']}", headers=member_headers)
    assert deleted.status_code == 204
    assert (await async_client.get("/v1/saved-cards", headers=member_headers)).json()["total"] == 0

    inactive = await async_client.post(f"/v1/saved-cards/{card['id']}/default", headers=member_headers)
    assert inactive.status_code == 400
    assert inactive.json()["details"][0]["code"] == "card_not_usable"


@pytest.mark.asyncio
async def test_receipt_endpoints(
    async_client: AsyncClient,
    db_session: AsyncSession,
    member_headers: dict,
    other_member_headers: dict,
) -> None:
    payment = await _persist(
        db_session,
        PaymentFactory.create({"member_id": "member-1", "status": PaymentStatus.COMPLETED, "completed_at": utcnow()}),
    )

    created = await async_client.post("/v1/receipts", json={"payment_id": str(payment.id)}, headers=member_headers)
    assert created.status_code == 201
    receipt = created.json()
    assert receipt["receipt_number"].startswith(f"RCP-{utcnow().year}-")

    again = await async_client.post("/v1/receipts", json={"payment_id": str(payment.id)}, headers=member_headers)
    assert again.json()["id"] == receipt["id"]

    fetched = await async_client.get(f"/v1/receipts/{receipt['id']}", headers=member_headers)
    assert fetched.status_code == 200

    forbidden = await async_client.get(f"/v1/receipts/{receipt['id']}", headers=other_member_headers)
    assert forbidden.status_code == 403

    listing = await async_client.get("/v1/receipts", headers=member_headers)
    assert listing.json()["total"] == 1

    missing = await async_client.get(f"/v1/receipts/{uuid4()}", headers=member_headers)
    assert missing.status_code == 404
    assert missing.json()["details"][0]["code"] == "receipt_not_found"
