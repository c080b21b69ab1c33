import logging
import os
from dataclasses import dataclass, field
from typing import Dict, Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_TIMESTAMP_TOLERANCE_MS = 1000
MAX_REMOTE_POOL_SIZE = 3


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be an integer, got {raw!r}")


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be a number, got {raw!r}")


def parse_strategy_overrides(raw: Optional[str]) -> Dict[str, str]:
    """
    Parse ``table=rule`` pairs separated by commas, e.g.
    ``subjects=timestamp_wins,quiz_attempts=merge_data``.
    """
    overrides: Dict[str, str] = {}
    if not raw:
        return overrides
    for chunk in raw.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        if "=" not in chunk:
            raise ValueError(f"Invalid SYNC_STRATEGIES entry {chunk!r}, expected table=rule")
        table, rule = chunk.split("=", 1)
        overrides[table.strip()] = rule.strip()
    return overrides


@dataclass(frozen=True)
class SyncSettings:
    local_database_url: str = "sqlite:///./quizsync_local.db"
    remote_database_url: Optional[str] = None
    remote_pool_size: int = 2
    remote_timeout_seconds: float = 5.0
    app_close_timeout_seconds: float = 3.0
    timestamp_tolerance_ms: int = DEFAULT_TIMESTAMP_TOLERANCE_MS
    connectivity_cooldown_seconds: float = 5.0
    periodic_interval_seconds: float = 30.0
    log_retention: int = 1000
    strategy_overrides: Dict[str, str] = field(default_factory=dict)
    log_level: str = "INFO"

    def __post_init__(self):
        # Pool is shared by every table in a pass; keep it small.
        clamped = max(1, min(MAX_REMOTE_POOL_SIZE, self.remote_pool_size))
        if clamped != self.remote_pool_size:
            logger.warning(
                f"Remote pool size {self.remote_pool_size} out of range, using {clamped}"
            )
            object.__setattr__(self, "remote_pool_size", clamped)
        if self.timestamp_tolerance_ms < 0:
            raise ValueError("Timestamp tolerance must not be negative")

    @classmethod
    def from_env(cls) -> "SyncSettings":
        load_dotenv()
        return cls(
            local_database_url=os.getenv("LOCAL_DATABASE_URL", "sqlite:///./quizsync_local.db"),
            remote_database_url=os.getenv("REMOTE_DATABASE_URL") or None,
            remote_pool_size=_int_env("SYNC_REMOTE_POOL_SIZE", 2),
            remote_timeout_seconds=_float_env("SYNC_REMOTE_TIMEOUT_SECONDS", 5.0),
            app_close_timeout_seconds=_float_env("SYNC_APP_CLOSE_TIMEOUT_SECONDS", 3.0),
            timestamp_tolerance_ms=_int_env(
                "SYNC_TIMESTAMP_TOLERANCE_MS", DEFAULT_TIMESTAMP_TOLERANCE_MS
            ),
            connectivity_cooldown_seconds=_float_env("SYNC_CONNECTIVITY_COOLDOWN_SECONDS", 5.0),
            periodic_interval_seconds=_float_env("SYNC_PERIODIC_INTERVAL_SECONDS", 30.0),
            log_retention=_int_env("SYNC_LOG_RETENTION", 1000),
            strategy_overrides=parse_strategy_overrides(os.getenv("SYNC_STRATEGIES")),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )
