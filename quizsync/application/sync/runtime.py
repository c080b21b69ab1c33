import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from quizsync.application.sync.conflict_resolver import ConflictResolver, build_strategies
from quizsync.application.sync.connectivity import ConnectivityMonitor
from quizsync.application.sync.sync_engine import SyncEngine
from quizsync.application.sync.sync_queue import SyncQueue
from quizsync.config import SyncSettings
from quizsync.infrastructure.repositories.local_store import LocalStoreAdapter
from quizsync.infrastructure.repositories.remote_store import RemoteStoreAdapter
from quizsync.infrastructure.repositories.sync_queue_repository import SyncQueueRepository

logger = logging.getLogger(__name__)


def build_engine(
    settings: SyncSettings,
    *,
    local_store: LocalStoreAdapter,
    remote_store: RemoteStoreAdapter,
) -> SyncEngine:
    resolver = ConflictResolver(
        local_store=local_store,
        remote_store=remote_store,
        strategies=build_strategies(settings.strategy_overrides),
        tolerance_ms=settings.timestamp_tolerance_ms,
    )
    queue = SyncQueue(SyncQueueRepository(local_store), local_store=local_store)
    monitor = ConnectivityMonitor(
        remote_store, cooldown_seconds=settings.connectivity_cooldown_seconds
    )
    return SyncEngine(
        local_store=local_store,
        remote_store=remote_store,
        resolver=resolver,
        queue=queue,
        monitor=monitor,
        app_close_timeout_seconds=settings.app_close_timeout_seconds,
        log_retention=settings.log_retention,
    )


@contextmanager
def sync_runtime(settings: Optional[SyncSettings] = None) -> Iterator[SyncEngine]:
    """Open both stores, yield a wired engine, close the stores on exit."""
    settings = settings or SyncSettings.from_env()
    if not settings.remote_database_url:
        raise ValueError("REMOTE_DATABASE_URL is not configured")

    local_store = LocalStoreAdapter.open(settings.local_database_url)
    try:
        remote_store = RemoteStoreAdapter.open(
            settings.remote_database_url,
            pool_size=settings.remote_pool_size,
            timeout_seconds=settings.remote_timeout_seconds,
        )
    except Exception:
        local_store.close()
        raise

    try:
        yield build_engine(settings, local_store=local_store, remote_store=remote_store)
    finally:
        remote_store.close()
        local_store.close()
        logger.info("Sync runtime closed")
