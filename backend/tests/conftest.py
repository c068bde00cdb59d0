"""Pytest configuration and fixtures for async testing."""
import os

# Point the application at sqlite before library_payments reads its settings
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-with-at-least-32-bytes!")

from typing import AsyncGenerator  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from library_payments.adapters.epayment_adapter import EPaymentClient  # noqa: E402
from library_payments.adapters.epayment_auth import GatewayTokenManager  # noqa: E402
from library_payments.auth.jwt import jwt_auth  # noqa: E402
from library_payments.database import Base  # noqa: E402
from library_payments import models  # noqa: E402,F401  (registers tables on Base.metadata)
from utils.gateway_stub import API_URL, OAUTH_URL, GatewayStub  # noqa: E402

MEMBER_ID = "member-1"
OTHER_MEMBER_ID = "member-2"
ADMIN_ID = "librarian-1"


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    """In-memory sqlite engine shared by every connection of one test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(db_engine) -> AsyncGenerator[AsyncSession, None]:
    """
    Create a fresh database session for each test.

    Yields:
        AsyncSession: Database session for testing
    """
    session_factory = async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def gateway_stub() -> GatewayStub:
    return GatewayStub()


@pytest_asyncio.fixture
async def http_client(gateway_stub: GatewayStub) -> AsyncGenerator[httpx.AsyncClient, None]:
    async with httpx.AsyncClient(transport=httpx.MockTransport(gateway_stub.handler)) as client:
        yield client


@pytest.fixture
def token_manager(http_client: httpx.AsyncClient) -> GatewayTokenManager:
    return GatewayTokenManager(
        http_client=http_client,
        oauth_url=OAUTH_URL,
        client_id="library",
        client_secret="secret",
        terminal="terminal-1",
        scope="payment",
    )


@pytest.fixture
def gateway(http_client: httpx.AsyncClient, token_manager: GatewayTokenManager) -> EPaymentClient:
    """Gateway client wired to the stub."""
    return EPaymentClient(
        http_client=http_client,
        token_manager=token_manager,
        base_url=API_URL,
        terminal="terminal-1",
        back_link="https://library.test/payments/success",
        failure_back_link="https://library.test/payments/failure",
        post_link="https://library.test/webhooks/epayment",
        widget_url="https://widget.gateway.test/payment-api.js",
    )


@pytest_asyncio.fixture(scope="function")
async def async_client(
    db_session: AsyncSession,
    gateway: EPaymentClient,
) -> AsyncGenerator[httpx.AsyncClient, None]:
    """
    Create an async HTTP client for the app with database and gateway overrides.

    Yields:
        AsyncClient: Async HTTP client for API testing
    """
    from library_payments.api.deps import get_db, get_gateway
    from library_payments.main import app

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway] = lambda: gateway

    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


def _bearer(member_id: str, role: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {jwt_auth.create_access_token(member_id, role=role)}"}


@pytest.fixture
def member_headers() -> dict[str, str]:
    return _bearer(MEMBER_ID, "member")


@pytest.fixture
def other_member_headers() -> dict[str, str]:
    return _bearer(OTHER_MEMBER_ID, "member")


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return _bearer(ADMIN_ID, "admin")
