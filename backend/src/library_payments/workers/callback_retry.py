"""Background jobs for payment callbacks and stale payments.

These jobs run periodically to:
1. Replay gateway callbacks that could not be applied when they arrived
2. Fail pending payments the member never completed before expiry
"""
import structlog

from library_payments.config import settings
from library_payments.database import AsyncSessionLocal
from library_payments.services.callback_retry_service import CallbackRetryService
from library_payments.services.payment_service import PaymentService

logger = structlog.get_logger(__name__)


async def process_callback_retries(batch_size: int | None = None) -> dict[str, int]:
    """
    Replay one batch of queued callbacks.

    Retries back off 1m, 5m, 15m, 1h, 6h between attempts and are failed
    after the configured maximum.

    Args:
        batch_size: Records per batch (default from settings)

    Returns:
        Dict with counts of processed retries
    """
    async with AsyncSessionLocal() as db:
        try:
            service = CallbackRetryService(db)
            result = await service.process_batch(batch_size or settings.callback_retry_batch_size)

            logger.info(
                "callback_retry_job_completed",
                processed=result.processed,
                succeeded=result.succeeded,
                failed=result.failed,
                errors=len(result.errors),
            )

            return {
                "processed": result.processed,
                "succeeded": result.succeeded,
                "failed": result.failed,
                "errors": len(result.errors),
            }

        except Exception as e:
            await db.rollback()
            logger.exception("callback_retry_job_error", exc_info=e)
            raise


async def expire_stale_payments(batch_size: int = 100) -> dict[str, int]:
    """
    Fail pending payments past their expiry time.

    Returns:
        Dict with the number of payments expired
    """
    async with AsyncSessionLocal() as db:
        try:
            # Expiry never talks to the gateway
            expired = await PaymentService(db).expire_payments(batch_size=batch_size)

            logger.info("payment_expiry_job_completed", payments_expired=expired)
            return {"payments_expired": expired}

        except Exception as e:
            await db.rollback()
            logger.exception("payment_expiry_job_error", exc_info=e)
            raise
