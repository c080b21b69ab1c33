import logging
import threading
import time
from typing import Callable, Optional

from quizsync.infrastructure.repositories.remote_store import RemoteStoreAdapter

logger = logging.getLogger(__name__)


class ConnectivityMonitor:
    """
    Cached remote reachability.

    ``probe()`` only pings the remote when the cooldown has elapsed (or when
    forced); ``is_online`` never touches the network.
    """

    def __init__(
        self,
        remote_store: Optional[RemoteStoreAdapter],
        *,
        cooldown_seconds: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._remote = remote_store
        self._cooldown = cooldown_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._online = False
        self._last_probe: Optional[float] = None

    @property
    def is_online(self) -> bool:
        return self._online

    def probe(self, force: bool = False) -> bool:
        """Returns the reachability; logs transitions between online and offline."""
        with self._lock:
            now = self._clock()
            if (
                not force
                and self._last_probe is not None
                and now - self._last_probe < self._cooldown
            ):
                return self._online

            online = self._remote.ping() if self._remote is not None else False
            self._last_probe = now
            if online != self._online:
                logger.info(f"Remote store is now {'online' if online else 'offline'}")
            self._online = online
            return online
