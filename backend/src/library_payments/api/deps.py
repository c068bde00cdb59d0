"""FastAPI dependencies for database sessions, authentication and services."""
from dataclasses import dataclass
from typing import AsyncGenerator, Optional

import jwt
import structlog
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from library_payments.adapters.epayment_adapter import EPaymentClient
from library_payments.auth.jwt import is_admin_role, jwt_auth
from library_payments.database import AsyncSessionLocal
from library_payments.services.callback_retry_service import CallbackRetryService
from library_payments.services.callback_service import CallbackService
from library_payments.services.payment_service import PaymentService
from library_payments.services.receipt_service import ReceiptService
from library_payments.services.saved_card_service import SavedCardService

logger = structlog.get_logger(__name__)

# HTTP Bearer token security scheme
security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class CurrentMember:
    """Authenticated caller."""

    member_id: str
    role: str
    is_admin: bool


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Database session dependency.

    Services commit their own units of work; anything left pending when the
    request fails is rolled back here.

    Yields:
        AsyncSession: Database session for the request lifecycle
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> CurrentMember:
    """
    Get the authenticated member from the bearer token.

    Raises:
        HTTPException: If token is invalid, expired, or missing
    """
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    token = credentials.credentials

    try:
        payload = jwt_auth.verify_access_token(token)
    except jwt.ExpiredSignatureError:
        logger.warning("token_expired")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except jwt.InvalidTokenError as e:
        logger.warning("invalid_token", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid authentication token: {e}",
            headers={"WWW-Authenticate": "Bearer"},
        )

    role = payload.get("role", "member")
    return CurrentMember(member_id=str(payload["sub"]), role=role, is_admin=is_admin_role(role))


async def require_admin(user: CurrentMember = Depends(get_current_user)) -> CurrentMember:
    """Restrict an endpoint to librarians and admins."""
    if not user.is_admin:
        logger.warning("admin_access_denied", member_id=user.member_id, role=user.role)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Administrator role required")
    return user


def get_gateway(request: Request) -> EPaymentClient:
    """Gateway client created at startup and shared by all requests."""
    return request.app.state.gateway


def get_payment_service(
    db: AsyncSession = Depends(get_db),
    gateway: EPaymentClient = Depends(get_gateway),
) -> PaymentService:
    return PaymentService(db, gateway)


def get_saved_card_service(
    db: AsyncSession = Depends(get_db),
    gateway: EPaymentClient = Depends(get_gateway),
) -> SavedCardService:
    return SavedCardService(db, gateway)


def get_receipt_service(db: AsyncSession = Depends(get_db)) -> ReceiptService:
    return ReceiptService(db)


def get_callback_service(db: AsyncSession = Depends(get_db)) -> CallbackService:
    return CallbackService(db)


def get_callback_retry_service(db: AsyncSession = Depends(get_db)) -> CallbackRetryService:
    return CallbackRetryService(db)
