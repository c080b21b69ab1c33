from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from quizsync.presentation.schemas.record_schemas import SYNC_TABLES, ensure_utc

# ------------------ Enums ------------------


class SyncTrigger(str, Enum):
    MANUAL = "manual"
    STARTUP = "startup"
    APP_CLOSE = "app_close"
    PERIODIC = "periodic"
    NETWORK_RECONNECTION = "network_reconnection"


class SyncOperationType(str, Enum):
    PUSH = "push"
    PULL = "pull"
    CONFLICT_RESOLUTION = "conflict_resolution"


class SyncLogStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    PENDING = "pending"


class SyncPhase(str, Enum):
    IDLE = "idle"
    PROBING = "probing"
    OFFLINE = "offline"
    SYNCING = "syncing"
    COMPLETED = "completed"
    FAILED = "failed"


class SyncTier(str, Enum):
    CRITICAL = "critical"
    IMPORTANT = "important"
    ADMINISTRATIVE = "administrative"


# ------------------ Log ------------------


class SyncLogEntry(BaseModel):
    id: Optional[str] = None
    operation_type: str
    table_name: str
    record_id: str
    status: SyncLogStatus
    error_message: Optional[str] = None
    attempted_at: datetime
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True

    @field_validator("attempted_at", "completed_at")
    @classmethod
    def _as_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)


# ------------------ Pass results ------------------


class RecordOutcome(BaseModel):
    table_name: str
    record_id: str
    operation: SyncOperationType
    success: bool
    detail: Optional[str] = None


class SyncResult(BaseModel):
    success: bool
    trigger: Optional[SyncTrigger] = None
    error: Optional[str] = None
    note: Optional[str] = None
    skipped: bool = False
    pushed_records: int = 0
    pulled_records: int = 0
    resolved_conflicts: int = 0
    queued_operations: int = 0
    replayed_operations: int = 0
    conflicts: List[RecordOutcome] = Field(default_factory=list)
    failures: List[RecordOutcome] = Field(default_factory=list)
    outcomes: List[RecordOutcome] = Field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class SyncStatus(BaseModel):
    last_sync_timestamp: Optional[datetime] = None
    is_online: bool = False
    local_changes: int = 0
    remote_changes: int = 0
    sync_in_progress: bool = False
    phase: SyncPhase = SyncPhase.IDLE
    queued_operations: int = 0


# ------------------ Queue ------------------


class QueueOperationRequest(BaseModel):
    type: SyncOperationType
    table_name: str
    record_id: str
    data: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("table_name")
    @classmethod
    def _known_table(cls, value: str) -> str:
        if value not in SYNC_TABLES:
            raise ValueError(f"Table {value!r} does not participate in sync")
        return value


class QueuedOperation(BaseModel):
    id: str
    type: SyncOperationType
    table_name: str
    record_id: str
    data: Dict[str, Any] = Field(default_factory=dict)
    tier: SyncTier
    retry_count: int = 0
    next_retry_at: Optional[datetime] = None
    last_error: Optional[str] = None
    timestamp: datetime


# ------------------ HTTP ------------------


class TriggerRequest(BaseModel):
    trigger: SyncTrigger = SyncTrigger.MANUAL


class QueueAccepted(BaseModel):
    id: str
    tier: SyncTier


class StrategyOut(BaseModel):
    table_name: str
    rule: str
    preserve_user_data: bool
