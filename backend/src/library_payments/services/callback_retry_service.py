"""Service for the durable callback retry queue."""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional
from uuid import UUID

import structlog
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from library_payments.config import settings
from library_payments.database import commit_or_raise
from library_payments.exceptions import DatabaseError, PaymentServiceError
from library_payments.metrics import callback_retries_total
from library_payments.models.base import utcnow
from library_payments.models.callback_retry import CallbackRetry, CallbackRetryStatus
from library_payments.schemas.callback import PaymentCallback
from library_payments.services.callback_service import CallbackService

logger = structlog.get_logger(__name__)


@dataclass
class RetryBatchResult:
    """Counts from one pass over the retry queue."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)


class CallbackRetryService:
    """Queues callbacks that could not be applied and replays them in batches."""

    # Delay before attempt n+1, in minutes: [1, 5, 15, 60, 360]
    RETRY_SCHEDULE_MINUTES = [1, 5, 15, 60, 360]
    MAX_ERROR_LENGTH = 500

    def __init__(
        self,
        db: AsyncSession,
        callback_service: Optional[CallbackService] = None,
        max_retries: Optional[int] = None,
    ):
        """Initialize callback retry service with database session."""
        self.db = db
        self.callback_service = callback_service or CallbackService(db)
        self.max_retries = max_retries or settings.callback_retry_max_attempts

    def next_retry_at(self, retry_count: int, now: Optional[datetime] = None) -> datetime:
        """When the next attempt is due after `retry_count` failed attempts."""
        delay = self.RETRY_SCHEDULE_MINUTES[min(retry_count, len(self.RETRY_SCHEDULE_MINUTES) - 1)]
        return (now or utcnow()) + timedelta(minutes=delay)

    async def enqueue(self, callback: PaymentCallback, payment_id: UUID, error: str) -> CallbackRetry:
        """
        Store a callback for later replay.

        Args:
            callback: Callback that could not be applied
            payment_id: Payment the callback refers to
            error: Why the synchronous application failed

        Returns:
            Queued retry record

        Raises:
            DatabaseError: If the record cannot be persisted
        """
        retry = CallbackRetry(
            payment_id=payment_id,
            callback_data=callback.model_dump_json(by_alias=True),
            status=CallbackRetryStatus.PENDING,
            retry_count=0,
            max_retries=self.max_retries,
            last_error=error[: self.MAX_ERROR_LENGTH],
            next_retry_at=self.next_retry_at(0),
        )
        self.db.add(retry)
        await commit_or_raise(self.db, "callback_retry", payment_id=payment_id)

        logger.info(
            "callback_retry_enqueued",
            retry_id=str(retry.id),
            payment_id=str(payment_id),
            invoice_id=callback.invoice_id,
        )
        return retry

    async def get_due_retries(self, batch_size: int) -> List[CallbackRetry]:
        """
        Pending retries whose next attempt is due, oldest first.

        Args:
            batch_size: Maximum records to return

        Returns:
            Retry records to process
        """
        result = await self.db.execute(
            select(CallbackRetry)
            .where(
                CallbackRetry.status == CallbackRetryStatus.PENDING,
                or_(CallbackRetry.next_retry_at.is_(None), CallbackRetry.next_retry_at <= utcnow()),
                CallbackRetry.retry_count < CallbackRetry.max_retries,
            )
            .order_by(CallbackRetry.created_at)
            .limit(batch_size)
        )
        return list(result.scalars().all())

    async def get_retries_for_payment(self, payment_id: UUID) -> List[CallbackRetry]:
        result = await self.db.execute(
            select(CallbackRetry)
            .where(CallbackRetry.payment_id == payment_id)
            .order_by(CallbackRetry.created_at)
        )
        return list(result.scalars().all())

    async def process_batch(self, batch_size: Optional[int] = None) -> RetryBatchResult:
        """
        Replay one batch of queued callbacks.

        Claims left behind by a crashed or failed pass are released first.

        Args:
            batch_size: Maximum records to process (default from settings)

        Returns:
            Processed, succeeded and failed counts plus error messages
        """
        await self.release_stale_claims()
        retries = await self.get_due_retries(batch_size or settings.callback_retry_batch_size)
        return await self.process_retries(retries)

    async def process_retries(self, retries: List[CallbackRetry]) -> RetryBatchResult:
        """
        Replay the given retry records.

        Each record is claimed with a conditional update from pending to
        processing; a record another worker already claimed or finished is
        skipped. A payload that no longer parses fails permanently. Any other
        failure, database errors included, bumps the retry count and
        reschedules the record until max_retries is reached.

        Args:
            retries: Records previously returned by get_due_retries

        Returns:
            Processed, succeeded and failed counts plus error messages
        """
        result = RetryBatchResult()

        if not retries:
            logger.info("callback_retry_batch_empty")
            return result

        logger.info("callback_retry_batch_started", retry_count=len(retries))

        # A rollback expires every loaded record, so work from IDs only
        retry_ids = [retry.id for retry in retries]
        for retry_id in retry_ids:
            try:
                retry = await self._claim(retry_id)
                if retry is None:
                    result.skipped += 1
                    logger.info("callback_retry_already_claimed", retry_id=str(retry_id))
                    continue

                result.processed += 1
                await self._process_one(retry, result)
            except (DatabaseError, SQLAlchemyError) as e:
                # The record stays claimed until release_stale_claims returns it
                await self.db.rollback()
                result.errors.append(f"retry {retry_id}: {e}")
                logger.error("callback_retry_persist_failed", retry_id=str(retry_id), error=str(e))

        logger.info(
            "callback_retry_batch_completed",
            processed=result.processed,
            succeeded=result.succeeded,
            failed=result.failed,
            skipped=result.skipped,
            errors=len(result.errors),
        )
        return result

    async def release_stale_claims(self, now: Optional[datetime] = None) -> int:
        """
        Return records stuck in processing past the claim timeout to pending.

        Returns:
            Number of records released
        """
        cutoff = (now or utcnow()) - timedelta(minutes=settings.callback_retry_claim_timeout_minutes)
        released = await self.db.execute(
            update(CallbackRetry)
            .where(
                CallbackRetry.status == CallbackRetryStatus.PROCESSING,
                CallbackRetry.updated_at < cutoff,
            )
            .values(status=CallbackRetryStatus.PENDING)
            .execution_options(synchronize_session=False)
        )
        await commit_or_raise(self.db, "callback_retry_release")

        if released.rowcount:
            logger.warning("callback_retry_claims_released", count=released.rowcount)
        return released.rowcount

    async def _claim(self, retry_id: UUID) -> Optional[CallbackRetry]:
        claimed = await self.db.execute(
            update(CallbackRetry)
            .where(CallbackRetry.id == retry_id, CallbackRetry.status == CallbackRetryStatus.PENDING)
            .values(status=CallbackRetryStatus.PROCESSING)
            .execution_options(synchronize_session=False)
        )
        await commit_or_raise(self.db, "callback_retry_claim", retry_id=retry_id)

        if claimed.rowcount == 0:
            return None
        return await self.db.get(CallbackRetry, retry_id, populate_existing=True)

    async def _process_one(self, retry: CallbackRetry, result: RetryBatchResult) -> None:
        retry_id = retry.id

        try:
            callback = PaymentCallback.model_validate_json(retry.callback_data)
        except PydanticValidationError as e:
            retry.status = CallbackRetryStatus.FAILED
            retry.last_error = f"invalid callback data: {e}"[: self.MAX_ERROR_LENGTH]
            retry.next_retry_at = None
            await commit_or_raise(self.db, "callback_retry_failure", retry_id=retry_id)

            result.failed += 1
            result.errors.append(f"retry {retry_id}: invalid callback data")
            callback_retries_total.labels(outcome="failed").inc()
            logger.error("callback_retry_payload_invalid", retry_id=str(retry_id), error=str(e))
            return

        try:
            applied = await self.callback_service.apply_callback(callback)
        except (PaymentServiceError, SQLAlchemyError) as e:
            # Discard anything the failed attempt left in the session
            await self.db.rollback()
            await self.db.refresh(retry)
            self._record_failure(retry, str(e))
            await commit_or_raise(self.db, "callback_retry_failure", retry_id=retry_id)

            result.failed += 1
            result.errors.append(f"retry {retry_id}: {e}")
            logger.warning(
                "callback_retry_attempt_failed",
                retry_id=str(retry_id),
                payment_id=str(retry.payment_id),
                attempt=retry.retry_count,
                status=retry.status.value,
                error=str(e),
            )
            return

        retry.status = CallbackRetryStatus.COMPLETED
        retry.next_retry_at = None
        await commit_or_raise(self.db, "callback_retry_completion", retry_id=retry_id)

        result.succeeded += 1
        callback_retries_total.labels(outcome="completed").inc()
        logger.info(
            "callback_retry_succeeded",
            retry_id=str(retry_id),
            payment_id=str(applied.payment_id),
            processed=applied.processed,
        )

    def _record_failure(self, retry: CallbackRetry, error: str) -> None:
        retry.retry_count += 1
        retry.last_error = error[: self.MAX_ERROR_LENGTH]

        if retry.retry_count >= retry.max_retries:
            retry.status = CallbackRetryStatus.FAILED
            retry.next_retry_at = None
            callback_retries_total.labels(outcome="failed").inc()
            logger.error(
                "callback_retry_exhausted",
                retry_id=str(retry.id),
                payment_id=str(retry.payment_id),
                retries=retry.retry_count,
                last_error=error,
            )
        else:
            retry.status = CallbackRetryStatus.PENDING
            retry.next_retry_at = self.next_retry_at(retry.retry_count)
            callback_retries_total.labels(outcome="retry_scheduled").inc()
