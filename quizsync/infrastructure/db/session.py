import logging
from typing import Any, Dict

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import sessionmaker

logger = logging.getLogger(__name__)


def _enable_sqlite_wal(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.close()


def create_local_engine(database_url: str) -> Engine:
    """Engine for the embedded store used by the quiz-taking client."""
    url = make_url(database_url)
    connect_args: Dict[str, Any] = {}
    if url.get_backend_name() == "sqlite":
        # Sync runs in worker threads while the UI writes from its own.
        connect_args["check_same_thread"] = False

    engine = create_engine(database_url, connect_args=connect_args, future=True)
    if url.get_backend_name() == "sqlite" and url.database not in (None, "", ":memory:"):
        _enable_sqlite_wal(engine)
    logger.info(f"Local store engine created for backend {url.get_backend_name()}")
    return engine


def create_remote_engine(database_url: str, *, pool_size: int, timeout_seconds: float) -> Engine:
    """
    Engine for the centrally hosted store.

    The pool is bounded (no overflow) and shared by every table in a pass;
    every connection attempt and statement is capped by ``timeout_seconds``.
    """
    url = make_url(database_url)
    backend = url.get_backend_name()
    connect_args: Dict[str, Any] = {}
    if backend == "postgresql":
        connect_args["connect_timeout"] = max(1, int(timeout_seconds))
        connect_args["options"] = f"-c statement_timeout={int(timeout_seconds * 1000)}"
    elif backend == "sqlite":
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = timeout_seconds

    engine = create_engine(
        database_url,
        connect_args=connect_args,
        pool_size=pool_size,
        max_overflow=0,
        pool_timeout=timeout_seconds,
        pool_pre_ping=True,
        future=True,
    )
    logger.info(f"Remote store engine created for backend {backend} (pool_size={pool_size})")
    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
