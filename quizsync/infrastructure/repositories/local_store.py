import logging
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from sqlalchemy import delete, func, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from quizsync.application.sync.errors import StoreReadError, StoreWriteError
from quizsync.infrastructure.db.base import LocalBase
from quizsync.infrastructure.db.models import (
    GLOBAL_SYNC_KEY,
    LOCAL_MODELS,
    SyncLogModel,
    SyncTimestampModel,
)
from quizsync.infrastructure.db.session import create_local_engine, create_session_factory
from quizsync.presentation.schemas.payload_schemas import AnswerSheet
from quizsync.presentation.schemas.record_schemas import (
    TABLE_QUIZ_ATTEMPTS,
    RecordBase,
    ensure_utc,
    record_from_row,
    utcnow,
)
from quizsync.presentation.schemas.sync_schemas import SyncLogEntry, SyncLogStatus

logger = logging.getLogger(__name__)


def _model_for(table: str):
    try:
        return LOCAL_MODELS[table]
    except KeyError:
        raise ValueError(f"Table {table!r} does not participate in sync")


class LocalStoreAdapter:
    """
    Typed access to the embedded store.

    This adapter is the single writer for sync-originated mutations. Writes to
    one record identity are serialized through a per-record re-entrant lock
    that the quiz-taking write path (``save_answer``/``submit_attempt``) shares.
    """

    def __init__(self, engine: Engine):
        self._engine = engine
        self._session_factory = create_session_factory(engine)
        self._locks: Dict[Tuple[str, str], list] = {}  # key -> [RLock, holders]
        self._locks_guard = threading.Lock()

    @classmethod
    def open(cls, database_url: str) -> "LocalStoreAdapter":
        adapter = cls(create_local_engine(database_url))
        adapter.create_schema()
        return adapter

    def create_schema(self) -> None:
        LocalBase.metadata.create_all(bind=self._engine)

    def close(self) -> None:
        self._engine.dispose()
        logger.info("Local store closed")

    @contextmanager
    def session(self) -> Iterator[Session]:
        db = self._session_factory()
        try:
            yield db
        finally:
            db.close()

    @contextmanager
    def record_lock(self, table: str, record_id: str) -> Iterator[None]:
        """Hold the re-entrant lock for one record; the entry is dropped once idle."""
        key = (table, record_id)
        with self._locks_guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.RLock(), 0]
                self._locks[key] = entry
            entry[1] += 1
        lock = entry[0]
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    # ---------------------------
    # Record reads
    # ---------------------------

    def get_record(self, table: str, record_id: str) -> Optional[RecordBase]:
        model = _model_for(table)
        with self.session() as db:
            row = db.get(model, record_id)
            return record_from_row(table, row) if row is not None else None

    def get_record_state(self, table: str, record_id: str) -> Tuple[Optional[RecordBase], bool]:
        """The record plus whether it still has local changes to push."""
        model = _model_for(table)
        try:
            with self.session() as db:
                row = db.get(model, record_id)
                if row is None:
                    return None, False
                return record_from_row(table, row), not row.synced
        except SQLAlchemyError as e:
            logger.error(f"Failed to read {table}:{record_id}: {e}")
            raise StoreReadError(f"Failed to read {table}:{record_id}", "get_record_state", e)

    def get_records_by_ids(self, table: str, record_ids: Iterable[str]) -> Dict[str, RecordBase]:
        ids = list(record_ids)
        if not ids:
            return {}
        model = _model_for(table)
        with self.session() as db:
            rows = db.execute(select(model).where(model.id.in_(ids))).scalars().all()
            return {row.id: record_from_row(table, row) for row in rows}

    def get_changed_records(self, table: str) -> List[RecordBase]:
        """Records edited locally and not yet marked synced, oldest first."""
        model = _model_for(table)
        with self.session() as db:
            rows = (
                db.execute(
                    select(model).where(model.synced.is_(False)).order_by(model.updated_at)
                )
                .scalars()
                .all()
            )
            logger.debug(f"Found {len(rows)} unsynced local records in {table}")
            return [record_from_row(table, row) for row in rows]

    def count_changed_records(self, tables: Iterable[str]) -> int:
        total = 0
        with self.session() as db:
            for table in tables:
                model = _model_for(table)
                total += db.execute(
                    select(func.count()).select_from(model).where(model.synced.is_(False))
                ).scalar_one()
        return total

    # ---------------------------
    # Record writes
    # ---------------------------

    def write_record(self, table: str, record: RecordBase, *, synced: bool = False) -> None:
        """Insert or overwrite one record. Raises StoreWriteError on failure."""
        model = _model_for(table)
        with self.record_lock(table, record.id), self.session() as db:
            try:
                row = db.get(model, record.id)
                if row is None:
                    row = model(id=record.id)
                    db.add(row)
                for key, value in record.sync_fields().items():
                    setattr(row, key, value)
                now = utcnow()
                row.synced = synced
                row.sync_attempted_at = now if synced else row.sync_attempted_at
                row.last_synced = now if synced else row.last_synced
                row.sync_error = None if synced else row.sync_error
                db.commit()
                logger.debug(f"Wrote local {table}:{record.id} (synced={synced})")
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"Failed to write local {table}:{record.id}: {e}")
                raise StoreWriteError(
                    f"Failed to write local record {table}:{record.id}", "local_write", e
                )

    def mark_synced(
        self,
        table: str,
        record_id: str,
        timestamp: datetime,
        expected_updated_at: Optional[datetime] = None,
    ) -> bool:
        """
        Flag a record as synced. When ``expected_updated_at`` is given the flag
        is only set if the row still holds that version, so an edit made while
        the record was in flight stays pending.
        """
        model = _model_for(table)
        with self.record_lock(table, record_id), self.session() as db:
            try:
                row = db.get(model, record_id)
                if row is None:
                    logger.warning(f"Cannot mark missing record {table}:{record_id} as synced")
                    return False
                if expected_updated_at is not None and ensure_utc(row.updated_at) != ensure_utc(
                    expected_updated_at
                ):
                    logger.info(
                        f"Record {table}:{record_id} changed during sync, leaving it pending"
                    )
                    return False
                row.synced = True
                row.last_synced = timestamp
                row.sync_attempted_at = timestamp
                row.sync_error = None
                db.commit()
                return True
            except SQLAlchemyError as e:
                db.rollback()
                raise StoreWriteError(
                    f"Failed to mark {table}:{record_id} as synced", "mark_synced", e
                )

    def mark_sync_failed(self, table: str, record_id: str, error: str, timestamp: datetime) -> None:
        model = _model_for(table)
        with self.record_lock(table, record_id), self.session() as db:
            try:
                row = db.get(model, record_id)
                if row is None:
                    return
                row.sync_attempted_at = timestamp
                row.sync_error = error[:1000]
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"Failed to record sync error for {table}:{record_id}: {e}")

    # ---------------------------
    # Quiz-taking write path
    # ---------------------------

    def save_answer(self, attempt_id: str, question_id: str, option: str) -> RecordBase:
        model = _model_for(TABLE_QUIZ_ATTEMPTS)
        with self.record_lock(TABLE_QUIZ_ATTEMPTS, attempt_id), self.session() as db:
            row = db.get(model, attempt_id)
            if row is None:
                raise ValueError(f"Quiz attempt {attempt_id} not found")
            if row.submitted:
                raise ValueError(f"Quiz attempt {attempt_id} is already submitted")
            sheet = AnswerSheet.loads(row.answers).with_answer(question_id, option)
            now = utcnow()
            row.answers = sheet.dumps()
            row.updated_at = now
            row.last_active_at = now
            row.synced = False
            db.commit()
            return record_from_row(TABLE_QUIZ_ATTEMPTS, row)

    def submit_attempt(
        self, attempt_id: str, score: int, session_duration: Optional[int] = None
    ) -> RecordBase:
        model = _model_for(TABLE_QUIZ_ATTEMPTS)
        with self.record_lock(TABLE_QUIZ_ATTEMPTS, attempt_id), self.session() as db:
            row = db.get(model, attempt_id)
            if row is None:
                raise ValueError(f"Quiz attempt {attempt_id} not found")
            if row.submitted:
                raise ValueError(f"Quiz attempt {attempt_id} is already submitted")
            now = utcnow()
            row.submitted = True
            row.submitted_at = now
            row.score = score
            row.session_duration = session_duration
            row.updated_at = now
            row.synced = False
            db.commit()
            logger.info(f"Quiz attempt {attempt_id} submitted with score {score}")
            return record_from_row(TABLE_QUIZ_ATTEMPTS, row)

    # ---------------------------
    # Sync log
    # ---------------------------

    def append_log_entry(self, entry: SyncLogEntry) -> str:
        entry_id = entry.id or str(uuid.uuid4())
        with self.session() as db:
            try:
                db.add(
                    SyncLogModel(
                        id=entry_id,
                        operation_type=entry.operation_type,
                        table_name=entry.table_name,
                        record_id=entry.record_id,
                        status=SyncLogStatus(entry.status).value,
                        error_message=entry.error_message,
                        attempted_at=entry.attempted_at,
                        completed_at=entry.completed_at,
                    )
                )
                db.commit()
                return entry_id
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(
                    f"Failed to append sync log entry for {entry.table_name}:{entry.record_id}: {e}"
                )
                raise StoreWriteError("Failed to append sync log entry", "sync_log", e)

    def get_log_entries(
        self,
        limit: int = 100,
        status: Optional[str] = None,
        table_name: Optional[str] = None,
    ) -> List[SyncLogEntry]:
        with self.session() as db:
            query = select(SyncLogModel)
            if status:
                query = query.where(SyncLogModel.status == status)
            if table_name:
                query = query.where(SyncLogModel.table_name == table_name)
            query = query.order_by(SyncLogModel.attempted_at.desc()).limit(limit)
            rows = db.execute(query).scalars().all()
            return [SyncLogEntry.model_validate(row) for row in rows]

    def count_log_entries(self, status: Optional[str] = None) -> int:
        with self.session() as db:
            query = select(func.count()).select_from(SyncLogModel)
            if status:
                query = query.where(SyncLogModel.status == status)
            return db.execute(query).scalar_one()

    def prune_log(self, keep: int) -> int:
        """Drop successful entries older than the newest ``keep``. Failures are kept."""
        with self.session() as db:
            try:
                newest = (
                    select(SyncLogModel.id)
                    .where(SyncLogModel.status == SyncLogStatus.SUCCESS.value)
                    .order_by(SyncLogModel.attempted_at.desc())
                    .limit(keep)
                )
                result = db.execute(
                    delete(SyncLogModel)
                    .where(SyncLogModel.status == SyncLogStatus.SUCCESS.value)
                    .where(SyncLogModel.id.not_in(newest.scalar_subquery()))
                    .execution_options(synchronize_session=False)
                )
                db.commit()
                if result.rowcount:
                    logger.info(f"Pruned {result.rowcount} old sync log entries")
                return result.rowcount or 0
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"Failed to prune sync log: {e}")
                return 0

    # ---------------------------
    # Sync timestamps
    # ---------------------------

    def get_watermark(self, table: str) -> Optional[datetime]:
        with self.session() as db:
            row = db.get(SyncTimestampModel, table)
            return ensure_utc(row.last_pull_sync) if row is not None else None

    def set_watermark(self, table: str, watermark: datetime, pushed_at: Optional[datetime] = None) -> None:
        with self.session() as db:
            row = db.get(SyncTimestampModel, table)
            if row is None:
                row = SyncTimestampModel(table_name=table)
                db.add(row)
            row.last_pull_sync = watermark
            if pushed_at is not None:
                row.last_push_sync = pushed_at
            db.commit()

    def get_last_full_sync(self) -> Optional[datetime]:
        with self.session() as db:
            row = db.get(SyncTimestampModel, GLOBAL_SYNC_KEY)
            return ensure_utc(row.last_full_sync) if row is not None else None

    def set_last_full_sync(self, timestamp: datetime) -> None:
        with self.session() as db:
            row = db.get(SyncTimestampModel, GLOBAL_SYNC_KEY)
            if row is None:
                row = SyncTimestampModel(table_name=GLOBAL_SYNC_KEY)
                db.add(row)
            row.last_full_sync = timestamp
            db.commit()

    # ---------------------------
    # Raw access
    # ---------------------------

    def execute_raw(self, sql: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Run a raw statement; returns rows as dicts for SELECTs, [] otherwise."""
        with self.session() as db:
            try:
                result = db.execute(text(sql), params or {})
                rows = [dict(row) for row in result.mappings().all()] if result.returns_rows else []
                db.commit()
                return rows
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"Raw SQL failed: {sql!r}: {e}")
                raise StoreWriteError("Raw SQL statement failed", "execute_raw", e)

    def checkpoint(self) -> None:
        """Flush the SQLite write-ahead log so committed work survives an abrupt exit."""
        if self._engine.dialect.name != "sqlite":
            return
        try:
            with self._engine.connect() as connection:
                connection.exec_driver_sql("PRAGMA wal_checkpoint(TRUNCATE)")
            logger.info("WAL checkpoint completed")
        except SQLAlchemyError as e:
            logger.error(f"WAL checkpoint failed: {e}")
