import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterable, Iterator, List, Optional

from sqlalchemy import select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from quizsync.application.sync.errors import ConnectivityError, StoreWriteError
from quizsync.infrastructure.db.base import RemoteBase
from quizsync.infrastructure.db.models import REMOTE_MODELS
from quizsync.infrastructure.db.session import create_remote_engine, create_session_factory
from quizsync.presentation.schemas.record_schemas import RecordBase, record_from_row

logger = logging.getLogger(__name__)

# Transient failures worth one more round-trip before giving up on a record.
_TRANSIENT_ERRORS = (OperationalError, PoolTimeoutError)


def _model_for(table: str):
    try:
        return REMOTE_MODELS[table]
    except KeyError:
        raise ValueError(f"Table {table!r} does not participate in sync")


class RemoteStoreAdapter:
    """
    Typed access to the centrally hosted store through a small, bounded
    connection pool shared by every table of a pass.
    """

    def __init__(self, engine: Engine, *, timeout_seconds: float = 5.0):
        self._engine = engine
        self._session_factory = create_session_factory(engine)
        self._timeout = timeout_seconds
        self._probe_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="remote-ping")

    @classmethod
    def open(cls, database_url: str, *, pool_size: int = 2, timeout_seconds: float = 5.0) -> "RemoteStoreAdapter":
        engine = create_remote_engine(database_url, pool_size=pool_size, timeout_seconds=timeout_seconds)
        return cls(engine, timeout_seconds=timeout_seconds)

    def create_schema(self) -> None:
        """Only used for local development and tests; production schema is managed centrally."""
        RemoteBase.metadata.create_all(bind=self._engine)

    def close(self) -> None:
        self._probe_executor.shutdown(wait=False)
        self._engine.dispose()
        logger.info("Remote store connection pool closed")

    @contextmanager
    def session(self) -> Iterator[Session]:
        db = self._session_factory()
        try:
            yield db
        finally:
            db.close()

    # ---------------------------
    # Health
    # ---------------------------

    def _select_one(self) -> bool:
        with self._engine.connect() as connection:
            connection.execute(text("SELECT 1"))
        return True

    def ping(self) -> bool:
        """True if the remote answers ``SELECT 1`` within the timeout. Never raises."""
        future = self._probe_executor.submit(self._select_one)
        try:
            return future.result(timeout=self._timeout)
        except FutureTimeoutError:
            logger.warning(f"Remote ping timed out after {self._timeout}s")
            return False
        except Exception as e:
            logger.warning(f"Remote ping failed: {e}")
            return False

    def pool_stats(self) -> Dict[str, int]:
        pool = self._engine.pool
        stats: Dict[str, int] = {}
        for name in ("size", "checkedin", "checkedout", "overflow"):
            getter = getattr(pool, name, None)
            if callable(getter):
                stats[name] = getter()
        return stats

    # ---------------------------
    # Reads
    # ---------------------------

    @retry(
        retry=retry_if_exception_type(_TRANSIENT_ERRORS),
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=0.2, max=1),
        reraise=True,
    )
    def _fetch(self, table: str, ids: Optional[List[str]], since: Optional[datetime]) -> List[RecordBase]:
        model = _model_for(table)
        query = select(model)
        if ids is not None:
            query = query.where(model.id.in_(ids))
        if since is not None:
            query = query.where(model.updated_at > since)
        with self.session() as db:
            rows = db.execute(query.order_by(model.updated_at)).scalars().all()
            return [record_from_row(table, row) for row in rows]

    def fetch_by_ids(self, table: str, record_ids: Iterable[str]) -> List[RecordBase]:
        ids = list(record_ids)
        if not ids:
            return []
        try:
            return self._fetch(table, ids, None)
        except SQLAlchemyError as e:
            logger.error(f"Failed to fetch {len(ids)} remote records from {table}: {e}")
            raise ConnectivityError(f"Failed to fetch remote records from {table}", "fetch_by_ids", e)

    def fetch_modified_since(self, table: str, since: Optional[datetime]) -> List[RecordBase]:
        """Remote records with ``updated_at`` strictly after ``since`` (all records when None)."""
        try:
            return self._fetch(table, None, since)
        except SQLAlchemyError as e:
            logger.error(f"Failed to fetch modified remote records from {table}: {e}")
            raise ConnectivityError(f"Failed to fetch remote changes from {table}", "fetch_modified", e)

    # ---------------------------
    # Writes
    # ---------------------------

    @retry(
        retry=retry_if_exception_type(_TRANSIENT_ERRORS),
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=0.2, max=1),
        reraise=True,
    )
    def _upsert(self, table: str, record: RecordBase) -> None:
        model = _model_for(table)
        with self.session() as db:
            try:
                row = db.get(model, record.id)
                if row is None:
                    row = model(id=record.id)
                    db.add(row)
                # updated_at travels verbatim so the next pass sees no new remote change.
                for key, value in record.sync_fields().items():
                    setattr(row, key, value)
                db.commit()
            except SQLAlchemyError:
                db.rollback()
                raise

    def upsert(self, table: str, record: RecordBase) -> None:
        """Insert or overwrite one remote record. Raises StoreWriteError on failure."""
        try:
            self._upsert(table, record)
            logger.debug(f"Upserted remote {table}:{record.id}")
        except SQLAlchemyError as e:
            logger.error(f"Failed to upsert remote {table}:{record.id}: {e}")
            raise StoreWriteError(f"Failed to write remote record {table}:{record.id}", "remote_upsert", e)
