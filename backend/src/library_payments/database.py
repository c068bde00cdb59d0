"""Database session management with async SQLAlchemy."""
from typing import Any

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from library_payments.config import settings
from library_payments.exceptions import DatabaseError

logger = structlog.get_logger(__name__)


def _engine_options(url: str) -> dict:
    # sqlite (used in local runs and tests) does not take pool sizing arguments
    if url.startswith("sqlite"):
        return {}
    return {"pool_pre_ping": True, "pool_size": 20, "max_overflow": 10}


# Create async engine
engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    **_engine_options(settings.database_url),
)

# Create async session factory
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


async def commit_or_raise(session: AsyncSession, operation: str, **context: Any) -> None:
    """
    Commit the session, converting SQLAlchemy failures into DatabaseError.

    Args:
        session: Session to commit
        operation: Name of the operation, used in logs and the error message
        **context: Extra log fields (payment_id, invoice_id, ...)

    Raises:
        DatabaseError: If the commit fails; the session is rolled back first
    """
    try:
        await session.commit()
    except SQLAlchemyError as e:
        await session.rollback()
        logger.error("database_commit_failed", operation=operation, error=str(e), **context)
        raise DatabaseError(f"Failed to persist {operation}", details={k: str(v) for k, v in context.items()}) from e


# Declarative base for all models
Base = declarative_base()


async def create_tables() -> None:
    """Create any missing tables on the configured engine."""
    from library_payments import models  # noqa: F401  (registers tables on Base.metadata)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
