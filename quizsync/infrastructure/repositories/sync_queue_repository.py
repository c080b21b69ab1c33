import json
import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import delete, func, or_, select

from quizsync.infrastructure.db.models import SyncQueueModel
from quizsync.infrastructure.repositories.local_store import LocalStoreAdapter
from quizsync.presentation.schemas.record_schemas import ensure_utc
from quizsync.presentation.schemas.sync_schemas import QueuedOperation

logger = logging.getLogger(__name__)


def _to_operation(row: SyncQueueModel) -> QueuedOperation:
    return QueuedOperation(
        id=row.id,
        type=row.type,
        table_name=row.table_name,
        record_id=row.record_id,
        data=json.loads(row.data),
        tier=row.tier,
        retry_count=row.retry_count,
        next_retry_at=ensure_utc(row.next_retry_at),
        last_error=row.last_error,
        timestamp=ensure_utc(row.timestamp),
    )


class SyncQueueRepository:
    """Persistence for deferred sync operations, stored in the local store."""

    def __init__(self, local_store: LocalStoreAdapter):
        self._local = local_store

    def save(self, operation: QueuedOperation) -> None:
        with self._local.session() as db:
            try:
                row = db.get(SyncQueueModel, operation.id)
                if row is None:
                    row = SyncQueueModel(id=operation.id)
                    db.add(row)
                row.type = operation.type.value
                row.table_name = operation.table_name
                row.record_id = operation.record_id
                row.data = json.dumps(operation.data, default=str)
                row.tier = operation.tier.value
                row.retry_count = operation.retry_count
                row.next_retry_at = operation.next_retry_at
                row.last_error = operation.last_error
                row.timestamp = operation.timestamp
                db.commit()
            except Exception:
                db.rollback()
                raise

    def list_ready(self, now: datetime, tier: Optional[str] = None) -> List[QueuedOperation]:
        """Operations whose backoff has elapsed, oldest first."""
        with self._local.session() as db:
            query = select(SyncQueueModel).where(
                or_(SyncQueueModel.next_retry_at.is_(None), SyncQueueModel.next_retry_at <= now)
            )
            if tier:
                query = query.where(SyncQueueModel.tier == tier)
            rows = db.execute(query.order_by(SyncQueueModel.timestamp)).scalars().all()
            return [_to_operation(row) for row in rows]

    def list_all(self) -> List[QueuedOperation]:
        with self._local.session() as db:
            rows = db.execute(select(SyncQueueModel).order_by(SyncQueueModel.timestamp)).scalars().all()
            return [_to_operation(row) for row in rows]

    def delete(self, operation_id: str) -> None:
        with self._local.session() as db:
            db.execute(delete(SyncQueueModel).where(SyncQueueModel.id == operation_id))
            db.commit()
            logger.debug(f"Removed queued sync operation {operation_id}")

    def count(self, tier: Optional[str] = None) -> int:
        with self._local.session() as db:
            query = select(func.count()).select_from(SyncQueueModel)
            if tier:
                query = query.where(SyncQueueModel.tier == tier)
            return db.execute(query).scalar_one()

