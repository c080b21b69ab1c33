import logging
import threading
from typing import Optional

from quizsync.application.sync.sync_engine import SyncEngine
from quizsync.presentation.schemas.sync_schemas import SyncTrigger

logger = logging.getLogger(__name__)


class PeriodicSyncScheduler:
    """
    Background thread that fires a ``periodic`` pass every interval, and a
    ``network_reconnection`` pass as soon as the remote becomes reachable
    again after being offline.
    """

    def __init__(self, engine: SyncEngine, *, interval_seconds: float = 30.0, probe_seconds: Optional[float] = None):
        self._engine = engine
        self._interval = interval_seconds
        # Connectivity is probed more often than full passes run.
        self._probe_interval = probe_seconds or max(1.0, interval_seconds / 6)
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self._interval <= 0:
            logger.info("Periodic sync disabled")
            return
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="periodic-sync", daemon=True)
        self._thread.start()
        logger.info(f"Periodic sync every {self._interval}s")

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Periodic sync stopped")

    def tick(self, elapsed: float) -> Optional[SyncTrigger]:
        """
        One scheduling step; returns the trigger that was fired, if any.
        ``elapsed`` is the time since the last periodic pass.
        """
        was_online = self._engine.monitor.is_online
        online = self._engine.monitor.probe()
        if online and not was_online:
            logger.info("Remote store reachable again, syncing")
            self._engine.run_sync(SyncTrigger.NETWORK_RECONNECTION)
            return SyncTrigger.NETWORK_RECONNECTION
        if elapsed >= self._interval:
            self._engine.run_sync(SyncTrigger.PERIODIC)
            return SyncTrigger.PERIODIC
        return None

    def _run(self) -> None:
        elapsed = 0.0
        while not self._stop.wait(self._probe_interval):
            elapsed += self._probe_interval
            try:
                if self.tick(elapsed) is not None:
                    elapsed = 0.0
            except Exception as e:
                # Keep the loop alive; the next tick retries.
                logger.error(f"Scheduled sync failed: {e}", exc_info=True)
