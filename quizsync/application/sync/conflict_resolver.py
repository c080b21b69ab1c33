"""
Conflict detection and resolution between the local and remote copy of a record.

Each participating table has a ``ResolutionStrategy``:

  * ``local_wins`` - push the local record to the remote store verbatim
  * ``remote_wins`` - overwrite the local record from the remote store
  * ``timestamp_wins`` - newer ``updated_at`` wins
  * ``merge_data`` - quiz attempts union their answer sheets (local first);
    other tables fall back to ``timestamp_wins``

A locally submitted quiz attempt is never replaced by a remote copy that is
unsubmitted or was submitted earlier, whatever the configured rule.

Every resolution attempt appends exactly one ``conflict_resolution`` entry to
the sync log, successful or not.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Optional

from quizsync.application.sync.errors import (
    PayloadFormatError,
    ResolutionError,
    SyncError,
)
from quizsync.config import DEFAULT_TIMESTAMP_TOLERANCE_MS
from quizsync.infrastructure.repositories.local_store import LocalStoreAdapter
from quizsync.infrastructure.repositories.remote_store import RemoteStoreAdapter
from quizsync.presentation.schemas.payload_schemas import AnswerSheet
from quizsync.presentation.schemas.record_schemas import (
    TABLE_QUESTIONS,
    TABLE_QUIZ_ATTEMPTS,
    TABLE_SUBJECTS,
    TABLE_USERS,
    QuizAttemptRecord,
    RecordBase,
    utcnow,
)
from quizsync.presentation.schemas.sync_schemas import (
    SyncLogEntry,
    SyncLogStatus,
    SyncOperationType,
)

logger = logging.getLogger(__name__)


# ---------------------------
# Value objects
# ---------------------------

class ResolutionRule(str, Enum):
    LOCAL_WINS = "local_wins"
    REMOTE_WINS = "remote_wins"
    TIMESTAMP_WINS = "timestamp_wins"
    MERGE_DATA = "merge_data"


class ConflictType(str, Enum):
    UPDATE_CONFLICT = "update_conflict"
    DELETE_CONFLICT = "delete_conflict"


@dataclass(frozen=True)
class ResolutionStrategy:
    table_name: str
    rule: ResolutionRule
    preserve_user_data: bool = False


DEFAULT_STRATEGIES: Dict[str, ResolutionStrategy] = {
    # User-entered data is the truth.
    TABLE_QUIZ_ATTEMPTS: ResolutionStrategy(TABLE_QUIZ_ATTEMPTS, ResolutionRule.LOCAL_WINS, True),
    # Admin-controlled reference data.
    TABLE_USERS: ResolutionStrategy(TABLE_USERS, ResolutionRule.REMOTE_WINS),
    TABLE_SUBJECTS: ResolutionStrategy(TABLE_SUBJECTS, ResolutionRule.REMOTE_WINS),
    TABLE_QUESTIONS: ResolutionStrategy(TABLE_QUESTIONS, ResolutionRule.REMOTE_WINS),
}


@dataclass(frozen=True)
class Conflict:
    table_name: str
    record_id: str
    local_record: RecordBase
    remote_record: RecordBase
    conflict_type: ConflictType
    detected_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass(frozen=True)
class ResolutionOutcome:
    success: bool
    rule: ResolutionRule
    description: str
    winner: str  # "local", "remote" or "merged"
    record: RecordBase  # state both stores hold afterwards


def build_strategies(overrides: Optional[Dict[str, str]] = None) -> Dict[str, ResolutionStrategy]:
    strategies = dict(DEFAULT_STRATEGIES)
    for table, rule in (overrides or {}).items():
        if table not in strategies:
            raise ValueError(f"Cannot configure strategy for unknown table {table!r}")
        strategies[table] = replace(strategies[table], rule=ResolutionRule(rule))
    return strategies


# ---------------------------
# Resolver
# ---------------------------

class ConflictResolver:
    def __init__(
        self,
        *,
        local_store: LocalStoreAdapter,
        remote_store: RemoteStoreAdapter,
        strategies: Optional[Dict[str, ResolutionStrategy]] = None,
        tolerance_ms: int = DEFAULT_TIMESTAMP_TOLERANCE_MS,
    ):
        self._local = local_store
        self._remote = remote_store
        self._strategies: Dict[str, ResolutionStrategy] = dict(strategies or DEFAULT_STRATEGIES)
        self._tolerance = timedelta(milliseconds=tolerance_ms)

    @property
    def tolerance(self) -> timedelta:
        return self._tolerance

    def get_strategy(self, table: str) -> Optional[ResolutionStrategy]:
        return self._strategies.get(table)

    def set_strategy(self, strategy: ResolutionStrategy) -> None:
        self._strategies[strategy.table_name] = strategy

    def strategies(self) -> Dict[str, ResolutionStrategy]:
        return dict(self._strategies)

    def within_tolerance(self, first: datetime, second: datetime) -> bool:
        return abs(first - second) < self._tolerance

    @staticmethod
    def merge_answers(local: AnswerSheet, remote: AnswerSheet) -> AnswerSheet:
        """Union of both sheets; local answers win on the same question."""
        return local.merged_with(remote)

    # ---------------------------
    # Detection
    # ---------------------------

    def detect_conflict(
        self,
        table: str,
        local: Optional[RecordBase],
        remote: Optional[RecordBase],
    ) -> Optional[Conflict]:
        """
        Return a Conflict when both copies exist and materially diverge.
        Raises ResolutionError if a quiz attempt carries an unreadable answer sheet.
        """
        if local is None or remote is None:
            return None
        if self.records_identical(local, remote):
            return None

        if table == TABLE_QUIZ_ATTEMPTS:
            return self._detect_attempt_conflict(local, remote)
        return self._detect_timestamp_conflict(table, local, remote)

    @staticmethod
    def records_identical(local: RecordBase, remote: RecordBase) -> bool:
        if local.updated_at != remote.updated_at:
            return False
        if isinstance(local, QuizAttemptRecord) and isinstance(remote, QuizAttemptRecord):
            return (
                local.answers == remote.answers
                and local.score == remote.score
                and local.submitted == remote.submitted
            )
        return True

    def _detect_attempt_conflict(
        self, local: QuizAttemptRecord, remote: QuizAttemptRecord
    ) -> Optional[Conflict]:
        # A completed local attempt outranks any unsubmitted copy.
        if local.submitted and not remote.submitted:
            return None

        if local.submitted and remote.submitted:
            if self.within_tolerance(local.submission_time(), remote.submission_time()):
                return None
            return self._conflict(TABLE_QUIZ_ATTEMPTS, local, remote, ConflictType.UPDATE_CONFLICT)

        if not local.submitted and not remote.submitted:
            try:
                divergent = local.answer_sheet().divergent_keys(remote.answer_sheet())
            except PayloadFormatError as e:
                raise ResolutionError(
                    f"Cannot compare answers of quiz attempt {local.id}", "detect_conflict", e
                )
            if divergent:
                logger.info(
                    f"Quiz attempt {local.id} has divergent answers for questions {divergent}"
                )
                return self._conflict(
                    TABLE_QUIZ_ATTEMPTS, local, remote, ConflictType.UPDATE_CONFLICT
                )

        return None

    def _detect_timestamp_conflict(
        self, table: str, local: RecordBase, remote: RecordBase
    ) -> Optional[Conflict]:
        if self.within_tolerance(local.updated_at, remote.updated_at):
            return None
        conflict_type = ConflictType.UPDATE_CONFLICT
        local_active = getattr(local, "is_active", True)
        remote_active = getattr(remote, "is_active", True)
        if local_active != remote_active:
            conflict_type = ConflictType.DELETE_CONFLICT
        return self._conflict(table, local, remote, conflict_type)

    @staticmethod
    def _conflict(table: str, local: RecordBase, remote: RecordBase, conflict_type: ConflictType) -> Conflict:
        return Conflict(
            table_name=table,
            record_id=local.id,
            local_record=local,
            remote_record=remote,
            conflict_type=conflict_type,
        )

    # ---------------------------
    # Resolution
    # ---------------------------

    def resolve_conflict(self, conflict: Conflict) -> ResolutionOutcome:
        """Apply the table's rule. Raises ResolutionError; always writes one log entry."""
        attempted_at = utcnow()
        strategy = self._strategies.get(conflict.table_name)
        rule_name = strategy.rule.value if strategy else "unconfigured"
        logger.info(
            f"Resolving {conflict.conflict_type.value} for "
            f"{conflict.table_name}:{conflict.record_id} using {rule_name}"
        )

        try:
            if strategy is None:
                raise ResolutionError(
                    f"No resolution strategy for table: {conflict.table_name}", "resolve_conflict"
                )
            outcome = self._apply(strategy.rule, conflict)
        except (SyncError, PayloadFormatError) as e:
            logger.error(
                f"Resolution failed for {conflict.table_name}:{conflict.record_id}: {e}"
            )
            self._log_resolution(conflict, SyncLogStatus.FAILED, f"{rule_name}: {e}", attempted_at)
            if isinstance(e, ResolutionError):
                raise
            raise ResolutionError(
                f"Failed to apply {rule_name} to {conflict.table_name}:{conflict.record_id}",
                "resolve_conflict",
                e,
            )

        self._log_resolution(
            conflict,
            SyncLogStatus.SUCCESS,
            f"{outcome.rule.value}: {outcome.description}",
            attempted_at,
        )
        return outcome

    def _apply(self, rule: ResolutionRule, conflict: Conflict) -> ResolutionOutcome:
        if rule == ResolutionRule.LOCAL_WINS:
            return self._apply_local_wins(conflict)
        if rule == ResolutionRule.REMOTE_WINS:
            return self._apply_remote_wins(conflict)
        if rule == ResolutionRule.TIMESTAMP_WINS:
            return self._apply_timestamp_wins(conflict)
        if rule == ResolutionRule.MERGE_DATA:
            return self._apply_merge_data(conflict)
        raise ResolutionError(f"Unknown resolution rule: {rule}", "resolve_conflict")

    def _apply_local_wins(self, conflict: Conflict, rule: ResolutionRule = ResolutionRule.LOCAL_WINS) -> ResolutionOutcome:
        self._remote.upsert(conflict.table_name, conflict.local_record)
        return ResolutionOutcome(
            success=True,
            rule=rule,
            description="Local changes preserved, remote updated",
            winner="local",
            record=conflict.local_record,
        )

    def _apply_remote_wins(self, conflict: Conflict, rule: ResolutionRule = ResolutionRule.REMOTE_WINS) -> ResolutionOutcome:
        if not self.remote_may_overwrite(conflict.local_record, conflict.remote_record):
            logger.warning(
                f"Refusing to overwrite submitted quiz attempt {conflict.record_id} from remote"
            )
            outcome = self._apply_local_wins(conflict, rule)
            return replace(
                outcome,
                description="Submitted local attempt kept, remote updated instead of overwritten",
            )
        self._local.write_record(conflict.table_name, conflict.remote_record, synced=True)
        return ResolutionOutcome(
            success=True,
            rule=rule,
            description="Remote changes applied locally",
            winner="remote",
            record=conflict.remote_record,
        )

    def _apply_timestamp_wins(self, conflict: Conflict, rule: ResolutionRule = ResolutionRule.TIMESTAMP_WINS) -> ResolutionOutcome:
        if conflict.local_record.updated_at > conflict.remote_record.updated_at:
            return self._apply_local_wins(conflict, rule)
        return self._apply_remote_wins(conflict, rule)

    def _apply_merge_data(self, conflict: Conflict) -> ResolutionOutcome:
        if conflict.table_name != TABLE_QUIZ_ATTEMPTS:
            # No field-level merge is defined for admin-controlled reference data.
            return self._apply_timestamp_wins(conflict, ResolutionRule.MERGE_DATA)

        local: QuizAttemptRecord = conflict.local_record
        remote: QuizAttemptRecord = conflict.remote_record
        if local.submitted:
            return self._apply_local_wins(conflict, ResolutionRule.MERGE_DATA)
        if remote.submitted:
            return self._apply_remote_wins(conflict, ResolutionRule.MERGE_DATA)

        merged_sheet = self.merge_answers(local.answer_sheet(), remote.answer_sheet())
        merged = local.model_copy(
            update={
                "answers": merged_sheet.dumps(),
                "updated_at": max(utcnow(), local.updated_at, remote.updated_at),
            }
        )
        self._local.write_record(TABLE_QUIZ_ATTEMPTS, merged, synced=False)
        self._remote.upsert(TABLE_QUIZ_ATTEMPTS, merged)
        return ResolutionOutcome(
            success=True,
            rule=ResolutionRule.MERGE_DATA,
            description="Quiz answers merged with local precedence",
            winner="merged",
            record=merged,
        )

    def remote_may_overwrite(self, local: RecordBase, remote: RecordBase) -> bool:
        """False when ``remote`` would undo or predate a local submission."""
        if not isinstance(local, QuizAttemptRecord) or not local.submitted:
            return True
        if not remote.submitted:
            return False
        return remote.submission_time() >= local.submission_time() - self._tolerance

    def _log_resolution(
        self,
        conflict: Conflict,
        status: SyncLogStatus,
        description: str,
        attempted_at: datetime,
    ) -> None:
        try:
            self._local.append_log_entry(
                SyncLogEntry(
                    id=f"resolution_{conflict.id}",
                    operation_type=SyncOperationType.CONFLICT_RESOLUTION.value,
                    table_name=conflict.table_name,
                    record_id=conflict.record_id,
                    status=status,
                    error_message=description,
                    attempted_at=attempted_at,
                    completed_at=utcnow(),
                )
            )
        except SyncError as e:
            logger.error(f"Failed to log resolution for {conflict.table_name}:{conflict.record_id}: {e}")
