"""FastAPI application entry point."""
import traceback
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncGenerator

import httpx
import structlog
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app
from sqlalchemy.exc import SQLAlchemyError

from library_payments import __version__
from library_payments.adapters.epayment_adapter import EPaymentClient
from library_payments.adapters.epayment_auth import GatewayTokenManager
from library_payments.api.v1 import health, payments, receipts, saved_cards
from library_payments.api.webhooks import epayment
from library_payments.config import settings
from library_payments.database import create_tables
from library_payments.exceptions import InternalError, PaymentServiceError
from library_payments.middleware.logging import LoggingMiddleware, get_request_id, setup_logging
from library_payments.middleware.metrics import MetricsMiddleware
from library_payments.schemas.error import REMEDIATION_HINTS, ErrorCode, ErrorDetail

# Setup structured logging
setup_logging()
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Create the shared gateway client on startup and close it on shutdown."""
    logger.info(
        "application_starting",
        env=settings.app_env,
        gateway_environment="prod" if settings.is_production_gateway else "test",
    )
    await create_tables()
    async with httpx.AsyncClient(timeout=settings.epayment_http_timeout_seconds) as http_client:
        token_manager = GatewayTokenManager.from_settings(http_client)
        app.state.gateway = EPaymentClient.from_settings(http_client, token_manager)
        yield
    logger.info("application_shutting_down")


app = FastAPI(
    title="Library Payments",
    description="Payment subsystem of the library backend, integrated with the epayment.kz gateway",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(MetricsMiddleware)
app.add_middleware(LoggingMiddleware)

# Mount Prometheus metrics endpoint
app.mount("/metrics", make_asgi_app())


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _error_response(exc: PaymentServiceError, request_id: str) -> JSONResponse:
    detail = ErrorDetail(code=exc.code, message=exc.message, field=exc.field, value=exc.value).model_dump()
    headers = {"Retry-After": "30"} if exc.status_code == status.HTTP_503_SERVICE_UNAVAILABLE else None

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.error_type,
            "message": exc.message,
            "details": [detail],
            "remediation": REMEDIATION_HINTS.get(exc.code),
            "request_id": request_id,
            "timestamp": _timestamp(),
        },
        headers=headers,
    )


@app.exception_handler(PaymentServiceError)
async def payment_error_handler(request: Request, exc: PaymentServiceError) -> JSONResponse:
    """
    Handle payment subsystem errors.

    The HTTP status comes from the exception class; the code, field and value
    are reported in `details`.
    """
    request_id = get_request_id(request)

    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "payment_service_error",
        path=request.url.path,
        method=request.method,
        request_id=request_id,
        error_type=exc.error_type,
        code=exc.code,
        error_message=exc.message,
    )

    return _error_response(exc, request_id)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """
    Handle Pydantic validation errors with structured response.

    Returns 422 with detailed field-level validation errors.
    """
    request_id = get_request_id(request)

    code_mapping = {
        "missing": ErrorCode.MISSING_REQUIRED_FIELD,
        "greater_than": ErrorCode.INVALID_AMOUNT,
        "greater_than_equal": ErrorCode.INVALID_AMOUNT,
        "less_than_equal": ErrorCode.INVALID_AMOUNT,
        "enum": ErrorCode.INVALID_PAYMENT_TYPE,
    }

    details = []
    for error in exc.errors():
        details.append(
            ErrorDetail(
                code=code_mapping.get(error["type"], ErrorCode.VALIDATION_ERROR),
                message=error["msg"],
                field=".".join(str(loc) for loc in error["loc"]),
                value=error.get("input") if isinstance(error.get("input"), (str, int, float, bool)) else None,
            ).model_dump()
        )

    logger.warning(
        "validation_error",
        path=request.url.path,
        method=request.method,
        request_id=request_id,
        error_count=len(details),
    )

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": "ValidationError",
            "message": "Request validation failed",
            "details": details,
            "remediation": "Check the API documentation for correct request format at /docs",
            "request_id": request_id,
            "timestamp": _timestamp(),
        },
    )


@app.exception_handler(SQLAlchemyError)
async def database_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """
    Handle database errors that escaped the services.

    Returns 503 Service Unavailable.
    """
    request_id = get_request_id(request)

    logger.error(
        "database_error",
        path=request.url.path,
        method=request.method,
        request_id=request_id,
        error_type=type(exc).__name__,
        error_message=str(exc),
    )

    # Don't expose internal database details in production
    error_message = "Database temporarily unavailable" if settings.app_env == "production" else str(exc)

    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "error": "DatabaseError",
            "message": "A database error occurred",
            "details": [{"code": ErrorCode.DATABASE_ERROR, "message": error_message}],
            "remediation": REMEDIATION_HINTS.get(ErrorCode.DATABASE_ERROR),
            "request_id": request_id,
            "timestamp": _timestamp(),
        },
        headers={"Retry-After": "30"},
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Handle all other uncaught exceptions.

    Logs the full stack trace but returns a safe error message to the client.
    """
    request_id = get_request_id(request)

    logger.exception(
        "unhandled_exception",
        path=request.url.path,
        method=request.method,
        request_id=request_id,
        exception_type=type(exc).__name__,
        exception_message=str(exc),
        stack_trace=traceback.format_exc(),
    )

    # Internal details only leave the process in debug mode
    error = InternalError(str(exc) if settings.debug else "An unexpected error occurred")
    return _error_response(error, request_id)


@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """Root endpoint with API information."""
    return {
        "service": "Library Payments",
        "version": __version__,
        "status": "operational",
        "docs": "/docs",
    }


app.include_router(health.router, tags=["Health"])
app.include_router(payments.router, prefix="/v1", tags=["Payments"])
app.include_router(saved_cards.router, prefix="/v1", tags=["Saved Cards"])
app.include_router(receipts.router, prefix="/v1", tags=["Receipts"])
app.include_router(epayment.router, tags=["Webhooks"])
