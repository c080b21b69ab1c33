import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from quizsync.application.sync.errors import PayloadFormatError, QueueError, SyncError
from quizsync.infrastructure.repositories.local_store import LocalStoreAdapter
from quizsync.infrastructure.repositories.sync_queue_repository import SyncQueueRepository
from quizsync.presentation.schemas.record_schemas import (
    SYNC_TABLES,
    TABLE_QUIZ_ATTEMPTS,
    TABLE_USERS,
    utcnow,
)
from quizsync.presentation.schemas.sync_schemas import (
    QueuedOperation,
    SyncLogEntry,
    SyncLogStatus,
    SyncOperationType,
    SyncTier,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TierPolicy:
    batch_size: int
    max_retries: int
    retry_delays: Tuple[int, ...]  # seconds; the last one repeats

    def delay_for(self, retry_count: int) -> timedelta:
        index = min(max(retry_count - 1, 0), len(self.retry_delays) - 1)
        return timedelta(seconds=self.retry_delays[index])


TIER_ORDER = (SyncTier.CRITICAL, SyncTier.IMPORTANT, SyncTier.ADMINISTRATIVE)

TIER_POLICIES: Dict[SyncTier, TierPolicy] = {
    SyncTier.CRITICAL: TierPolicy(batch_size=10, max_retries=10, retry_delays=(1, 2, 4, 8, 16)),
    SyncTier.IMPORTANT: TierPolicy(batch_size=25, max_retries=5, retry_delays=(5, 15, 45, 135)),
    SyncTier.ADMINISTRATIVE: TierPolicy(batch_size=50, max_retries=3, retry_delays=(60, 300, 900)),
}


def classify_operation(operation_type: SyncOperationType, table: str) -> SyncTier:
    """Submitted work first, then learner data, then admin-managed reference data."""
    if table == TABLE_QUIZ_ATTEMPTS and operation_type == SyncOperationType.PUSH:
        return SyncTier.CRITICAL
    if table in (TABLE_QUIZ_ATTEMPTS, TABLE_USERS):
        return SyncTier.IMPORTANT
    return SyncTier.ADMINISTRATIVE


@dataclass
class QueueRunResult:
    processed: int = 0
    succeeded: int = 0
    retried: int = 0
    dropped: int = 0


class SyncQueue:
    """Durable, tiered queue of sync operations deferred to a later pass."""

    def __init__(
        self,
        repository: SyncQueueRepository,
        *,
        local_store: LocalStoreAdapter,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._repository = repository
        self._local = local_store
        self._clock = clock

    def enqueue(
        self,
        operation_type: SyncOperationType,
        table: str,
        record_id: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> QueuedOperation:
        if table not in SYNC_TABLES:
            raise QueueError(f"Table {table!r} does not participate in sync", "enqueue")

        operation_type = SyncOperationType(operation_type)
        operation = QueuedOperation(
            id=str(uuid.uuid4()),
            type=operation_type,
            table_name=table,
            record_id=record_id,
            data=data or {},
            tier=classify_operation(operation_type, table),
            timestamp=self._clock(),
        )
        try:
            self._repository.save(operation)
        except (SQLAlchemyError, TypeError, ValueError) as e:
            logger.error(f"Failed to queue {operation_type.value} for {table}:{record_id}: {e}")
            raise QueueError(f"Failed to queue sync operation for {table}:{record_id}", "enqueue", e)

        logger.info(
            f"Queued {operation_type.value} for {table}:{record_id} as {operation.tier.value}"
        )
        return operation

    def size(self, tier: Optional[SyncTier] = None) -> int:
        return self._repository.count(tier.value if tier else None)

    def pending(self):
        return self._repository.list_all()

    def process(
        self,
        handler: Callable[[QueuedOperation], None],
        *,
        deadline: Optional[datetime] = None,
    ) -> QueueRunResult:
        """
        Replay ready operations tier by tier, at most one batch per tier.

        ``handler`` raises on failure; the operation is then rescheduled with
        the tier's backoff, or dropped (and logged as failed) once it has used
        up its retries.
        """
        result = QueueRunResult()
        for tier in TIER_ORDER:
            policy = TIER_POLICIES[tier]
            try:
                ready = self._repository.list_ready(self._clock(), tier.value)[: policy.batch_size]
            except SQLAlchemyError as e:
                logger.error(f"Failed to read {tier.value} queue: {e}")
                raise QueueError(f"Failed to read the {tier.value} queue", "process", e)
            for operation in ready:
                if deadline is not None and self._clock() >= deadline:
                    logger.warning("Queue replay stopped at deadline")
                    return result
                result.processed += 1
                try:
                    handler(operation)
                except (SyncError, PayloadFormatError, ValueError, SQLAlchemyError) as e:
                    if self._reschedule(operation, policy, str(e)):
                        result.retried += 1
                    else:
                        result.dropped += 1
                    continue
                result.succeeded += 1
                try:
                    self._repository.delete(operation.id)
                except SQLAlchemyError as e:
                    # Replaying it again next pass is harmless.
                    logger.error(f"Failed to remove replayed operation {operation.id}: {e}")

        if result.processed:
            logger.info(
                f"Queue replay: {result.succeeded} succeeded, {result.retried} rescheduled, "
                f"{result.dropped} dropped"
            )
        return result

    def _reschedule(self, operation: QueuedOperation, policy: TierPolicy, error: str) -> bool:
        retry_count = operation.retry_count + 1
        if retry_count > policy.max_retries:
            logger.error(
                f"Dropping {operation.type.value} for {operation.table_name}:{operation.record_id} "
                f"after {operation.retry_count} retries: {error}"
            )
            try:
                self._repository.delete(operation.id)
            except SQLAlchemyError as e:
                logger.error(f"Failed to remove dropped operation {operation.id}: {e}")
            now = self._clock()
            try:
                self._local.append_log_entry(
                    SyncLogEntry(
                        operation_type=operation.type.value,
                        table_name=operation.table_name,
                        record_id=operation.record_id,
                        status=SyncLogStatus.FAILED,
                        error_message=f"Dropped after {operation.retry_count} retries: {error}",
                        attempted_at=now,
                        completed_at=now,
                    )
                )
            except SyncError as e:
                logger.error(f"Failed to log dropped operation {operation.id}: {e}")
            return False

        next_retry_at = self._clock() + policy.delay_for(retry_count)
        try:
            self._repository.save(
                operation.model_copy(
                    update={
                        "retry_count": retry_count,
                        "next_retry_at": next_retry_at,
                        "last_error": error[:1000],
                    }
                )
            )
        except SQLAlchemyError as e:
            logger.error(f"Failed to reschedule operation {operation.id}, it stays due: {e}")
            return True
        logger.warning(
            f"Retry {retry_count}/{policy.max_retries} for {operation.table_name}:"
            f"{operation.record_id} scheduled at {next_retry_at.isoformat()}"
        )
        return True
