from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy.exc import SQLAlchemyError

from quizsync.application.sync.conflict_resolver import Conflict, ConflictResolver
from quizsync.application.sync.connectivity import ConnectivityMonitor
from quizsync.application.sync.errors import (
    ConnectivityError,
    PayloadFormatError,
    QueueError,
    ResolutionError,
    StoreReadError,
    SyncError,
)
from quizsync.application.sync.sync_queue import SyncQueue
from quizsync.config import DEFAULT_TIMESTAMP_TOLERANCE_MS
from quizsync.infrastructure.repositories.local_store import LocalStoreAdapter
from quizsync.infrastructure.repositories.remote_store import RemoteStoreAdapter
from quizsync.presentation.schemas.record_schemas import (
    SYNC_TABLES,
    QuizAttemptRecord,
    RecordBase,
    parse_record,
    utcnow,
)
from quizsync.presentation.schemas.sync_schemas import (
    QueuedOperation,
    RecordOutcome,
    SyncLogEntry,
    SyncLogStatus,
    SyncOperationType,
    SyncPhase,
    SyncResult,
    SyncStatus,
    SyncTrigger,
)

logger = logging.getLogger(__name__)


# ---------------------------
# Reconciliation plan
# ---------------------------

_CONFIRM = "confirm"  # both sides already agree, only flag local as synced
_PUSH = "push"
_PULL = "pull"
_MERGE = "merge"
_RESOLVE = "resolve"

_LOG_OPERATION = {
    _CONFIRM: SyncOperationType.PUSH,
    _PUSH: SyncOperationType.PUSH,
    _MERGE: SyncOperationType.PUSH,
    _PULL: SyncOperationType.PULL,
    _RESOLVE: SyncOperationType.CONFLICT_RESOLUTION,
}


@dataclass(frozen=True)
class _Plan:
    action: str
    record: Optional[RecordBase] = None
    conflict: Optional[Conflict] = None
    detail: str = ""


@dataclass
class _RecordResult:
    success: bool
    error: Optional[str] = None


# ---------------------------
# Sync Engine
# ---------------------------

class SyncEngine:
    """
    Runs synchronization passes between the local and remote stores.

    One pass at a time: a trigger arriving while a pass runs returns a
    skipped result instead of waiting. Per-record and per-table failures are
    logged and reported in the result; they never abort the pass.
    """

    def __init__(
        self,
        *,
        local_store: LocalStoreAdapter,
        remote_store: RemoteStoreAdapter,
        resolver: ConflictResolver,
        queue: SyncQueue,
        monitor: ConnectivityMonitor,
        tables: Sequence[str] = SYNC_TABLES,
        app_close_timeout_seconds: float = 3.0,
        log_retention: int = 1000,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._local = local_store
        self._remote = remote_store
        self._resolver = resolver
        self._queue = queue
        self._monitor = monitor
        self._tables = tuple(tables)
        self._app_close_timeout = app_close_timeout_seconds
        self._log_retention = log_retention
        self._clock = clock

        self._pass_lock = threading.Lock()
        self._phase = SyncPhase.IDLE
        self._remote_pending = 0

        if resolver.tolerance > timedelta(milliseconds=DEFAULT_TIMESTAMP_TOLERANCE_MS):
            logger.warning(
                f"Timestamp tolerance widened to {resolver.tolerance.total_seconds() * 1000:.0f} ms; "
                f"edits closer together than that are treated as identical"
            )

    @property
    def phase(self) -> SyncPhase:
        return self._phase

    @property
    def resolver(self) -> ConflictResolver:
        return self._resolver

    @property
    def monitor(self) -> ConnectivityMonitor:
        return self._monitor

    # ---------------------------
    # Public API
    # ---------------------------

    def run_sync(
        self,
        trigger: SyncTrigger = SyncTrigger.MANUAL,
        *,
        deadline: Optional[datetime] = None,
    ) -> SyncResult:
        trigger = SyncTrigger(trigger)
        if not self._pass_lock.acquire(blocking=False):
            logger.info(f"Sync already in progress, ignoring {trigger.value} trigger")
            return SyncResult(
                success=True, trigger=trigger, skipped=True, note="Sync already in progress"
            )
        try:
            return self._run_pass(trigger, deadline)
        finally:
            self._phase = SyncPhase.IDLE
            self._pass_lock.release()

    def queue_sync_operation(
        self,
        operation_type: SyncOperationType,
        table: str,
        record_id: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> QueuedOperation:
        """Durably defer an operation to a later pass. Raises QueueError."""
        return self._queue.enqueue(operation_type, table, record_id, data)

    def get_sync_status(self) -> SyncStatus:
        """Snapshot from local state and cached connectivity; no remote round-trip."""
        return SyncStatus(
            last_sync_timestamp=self._local.get_last_full_sync(),
            is_online=self._monitor.is_online,
            local_changes=self._local.count_changed_records(self._tables),
            remote_changes=self._remote_pending,
            sync_in_progress=self._pass_lock.locked(),
            phase=self._phase,
            queued_operations=self._queue.size(),
        )

    def get_sync_log(
        self,
        limit: int = 100,
        status: Optional[str] = None,
        table_name: Optional[str] = None,
    ) -> List[SyncLogEntry]:
        return self._local.get_log_entries(limit=limit, status=status, table_name=table_name)

    def shutdown(self) -> SyncResult:
        """
        Final ``app_close`` pass bounded by the app-close window. Records not
        reached in time are queued for the next start.
        """
        self._local.checkpoint()
        deadline = self._clock() + timedelta(seconds=self._app_close_timeout)
        logger.info(f"Running app_close sync with a {self._app_close_timeout}s window")
        return self.run_sync(SyncTrigger.APP_CLOSE, deadline=deadline)

    # ---------------------------
    # Pass
    # ---------------------------

    def _run_pass(self, trigger: SyncTrigger, deadline: Optional[datetime]) -> SyncResult:
        started_at = self._clock()
        result = SyncResult(success=False, trigger=trigger, started_at=started_at)
        logger.info(f"Starting {trigger.value} sync")

        self._phase = SyncPhase.PROBING
        if not self._monitor.probe(force=True):
            self._phase = SyncPhase.OFFLINE
            logger.warning(f"Remote store unreachable, {trigger.value} sync skipped")
            result.error = "offline"
            result.completed_at = self._clock()
            return result

        self._phase = SyncPhase.SYNCING
        try:
            replay = self._queue.process(
                lambda operation: self._replay_operation(operation, result), deadline=deadline
            )
            result.replayed_operations = replay.succeeded
        except QueueError as e:
            self._table_failure("sync_queue", SyncOperationType.PUSH, str(e), self._clock(), result)

        remote_pending = 0
        for table in self._tables:
            remote_pending += self._sync_table(table, result, deadline)
        self._remote_pending = remote_pending

        result.success = not result.failures
        result.completed_at = self._clock()
        if result.success:
            self._local.set_last_full_sync(result.completed_at)
        self._local.prune_log(self._log_retention)
        self._phase = SyncPhase.COMPLETED if result.success else SyncPhase.FAILED

        logger.info(
            f"{trigger.value} sync {'completed' if result.success else 'finished with failures'}: "
            f"pushed={result.pushed_records}, pulled={result.pulled_records}, "
            f"conflicts={result.resolved_conflicts}, failures={len(result.failures)}, "
            f"queued={result.queued_operations}"
        )
        return result

    def _sync_table(self, table: str, result: SyncResult, deadline: Optional[datetime]) -> int:
        """Reconcile one table. Returns the number of remote changes left unpulled."""
        attempted_at = self._clock()
        try:
            local_changed = self._local.get_changed_records(table)
            watermark = self._local.get_watermark(table)
        except SQLAlchemyError as e:
            self._table_failure(table, SyncOperationType.PUSH, f"Local read failed: {e}", attempted_at, result)
            return 0

        if self._past(deadline):
            logger.warning(f"{table}: app-close window elapsed, queueing local changes")
            for record in local_changed:
                self._defer_record(table, record.id, True, result)
            return 0

        try:
            remote_by_id = {
                record.id: record
                for record in self._remote.fetch_by_ids(table, [record.id for record in local_changed])
            }
            remote_changed = []
            if not self._past(deadline):
                remote_changed = self._remote.fetch_modified_since(table, watermark)
        except ConnectivityError as e:
            self._table_failure(table, SyncOperationType.PULL, str(e), attempted_at, result)
            return 0

        # Candidate order: local changes first, then remote-only changes.
        candidates: Dict[str, Tuple[bool, Optional[RecordBase]]] = {}
        for record in local_changed:
            candidates[record.id] = (True, remote_by_id.get(record.id))
        remote_changed_ids = set()
        for record in remote_changed:
            remote_changed_ids.add(record.id)
            local_pending, _ = candidates.get(record.id, (False, None))
            candidates[record.id] = (local_pending, record)

        logger.info(
            f"{table}: {len(local_changed)} local changes, {len(remote_changed)} remote changes"
        )

        reconciled: List[datetime] = [record.updated_at for record in remote_changed]
        unreconciled: List[datetime] = []
        pushed_any = False
        items = list(candidates.items())
        for index, (record_id, (local_pending, remote)) in enumerate(items):
            if self._past(deadline):
                logger.warning(f"{table}: app-close window elapsed, queueing remaining records")
                for pending_id, (pending_local, pending_remote) in items[index:]:
                    self._defer_record(table, pending_id, pending_local, result)
                    if pending_id in remote_changed_ids:
                        unreconciled.append(pending_remote.updated_at)
                break

            outcome = self._process_record(table, record_id, remote, result)
            if outcome.success:
                pushed_any = pushed_any or local_pending
            elif record_id in remote_changed_ids:
                unreconciled.append(remote.updated_at)

        self._advance_watermark(table, watermark, reconciled, unreconciled, pushed_any)
        return len(unreconciled)

    def _past(self, deadline: Optional[datetime]) -> bool:
        return deadline is not None and self._clock() >= deadline

    def _advance_watermark(
        self,
        table: str,
        watermark: Optional[datetime],
        reconciled: List[datetime],
        unreconciled: List[datetime],
        pushed_any: bool,
    ) -> None:
        # Never move past a remote change that was not reconciled.
        if unreconciled:
            cutoff = min(unreconciled)
            reconciled = [ts for ts in reconciled if ts < cutoff]
        if watermark is not None:
            reconciled.append(watermark)
        if not reconciled:
            return
        new_watermark = max(reconciled)
        if new_watermark != watermark or pushed_any:
            self._local.set_watermark(
                table, new_watermark, pushed_at=self._clock() if pushed_any else None
            )

    def _table_failure(
        self,
        table: str,
        operation: SyncOperationType,
        error: str,
        attempted_at: datetime,
        result: SyncResult,
    ) -> None:
        logger.error(f"Skipping table {table}: {error}")
        result.failures.append(
            RecordOutcome(table_name=table, record_id="*", operation=operation, success=False, detail=error)
        )
        self._log(table, "*", operation, SyncLogStatus.FAILED, error, attempted_at)

    def _defer_record(self, table: str, record_id: str, local_pending: bool, result: SyncResult) -> None:
        operation_type = SyncOperationType.PUSH if local_pending else SyncOperationType.PULL
        try:
            self._queue.enqueue(operation_type, table, record_id)
            result.queued_operations += 1
        except SyncError as e:
            logger.error(f"Could not defer {table}:{record_id}: {e}")
            result.failures.append(
                RecordOutcome(
                    table_name=table,
                    record_id=record_id,
                    operation=operation_type,
                    success=False,
                    detail=str(e),
                )
            )

    # ---------------------------
    # Per-record reconciliation
    # ---------------------------

    def _process_record(
        self,
        table: str,
        record_id: str,
        remote: Optional[RecordBase],
        result: SyncResult,
    ) -> _RecordResult:
        attempted_at = self._clock()
        with self._local.record_lock(table, record_id):
            # Re-read under the lock so a concurrent quiz edit is never lost.
            try:
                local, local_pending = self._local.get_record_state(table, record_id)
            except StoreReadError as e:
                operation = SyncOperationType.PUSH if remote is None else SyncOperationType.PULL
                self._record_failure(table, record_id, operation, str(e), attempted_at, result)
                return _RecordResult(success=False, error=str(e))
            try:
                plan = self._plan(table, local, local_pending, remote)
            except ResolutionError as e:
                self._record_failure(
                    table, record_id, SyncOperationType.CONFLICT_RESOLUTION, str(e), attempted_at, result
                )
                return _RecordResult(success=False, error=str(e))

            if plan is None:
                return _RecordResult(success=True)

            operation = _LOG_OPERATION[plan.action]
            try:
                self._execute(table, plan, remote, result)
            except ResolutionError as e:
                # The resolver already logged this attempt.
                self._record_failure(table, record_id, operation, str(e), attempted_at, result, log=False)
                return _RecordResult(success=False, error=str(e))
            except (SyncError, PayloadFormatError) as e:
                self._record_failure(table, record_id, operation, str(e), attempted_at, result)
                return _RecordResult(success=False, error=str(e))

        if plan.action != _RESOLVE:
            self._log(table, record_id, operation, SyncLogStatus.SUCCESS, plan.detail, attempted_at)
        result.outcomes.append(
            RecordOutcome(
                table_name=table,
                record_id=record_id,
                operation=operation,
                success=True,
                detail=plan.detail or None,
            )
        )
        return _RecordResult(success=True)

    def _plan(
        self,
        table: str,
        local: Optional[RecordBase],
        local_pending: bool,
        remote: Optional[RecordBase],
    ) -> Optional[_Plan]:
        if local is None and remote is None:
            return None
        if remote is None:
            return _Plan(_PUSH, local, detail="New local record pushed") if local_pending else None
        if local is None:
            return _Plan(_PULL, remote, detail="New remote record pulled")

        if self._resolver.records_identical(local, remote):
            return _Plan(_CONFIRM, local, detail="Already identical on both sides") if local_pending else None

        if not local_pending:
            if not self._resolver.remote_may_overwrite(local, remote):
                return _Plan(_PUSH, local, detail="Submitted local attempt re-pushed over stale remote copy")
            return _Plan(_PULL, remote, detail="Remote change pulled")

        conflict = self._resolver.detect_conflict(table, local, remote)
        if conflict is not None:
            return _Plan(_RESOLVE, conflict=conflict)

        try:
            return self._plan_divergence(local, remote)
        except PayloadFormatError as e:
            raise ResolutionError(f"Cannot reconcile {table}:{local.id}", "reconcile", e)

    def _plan_divergence(self, local: RecordBase, remote: RecordBase) -> _Plan:
        """Both sides differ without conflicting."""
        if not isinstance(local, QuizAttemptRecord):
            return _Plan(_CONFIRM, local, detail="Within timestamp tolerance")

        if local.submitted:
            return _Plan(_PUSH, local, detail="Submitted local attempt pushed")
        if remote.submitted:
            return _Plan(_PULL, remote, detail="Remote submission adopted")

        local_sheet = local.answer_sheet()
        merged_sheet = self._resolver.merge_answers(local_sheet, remote.answer_sheet())
        if merged_sheet == local_sheet:
            return _Plan(_PUSH, local, detail="Local answers pushed")
        merged = local.model_copy(
            update={
                "answers": merged_sheet.dumps(),
                "updated_at": max(self._clock(), local.updated_at, remote.updated_at),
            }
        )
        return _Plan(_MERGE, merged, detail="Additive answers merged")

    def _execute(
        self,
        table: str,
        plan: _Plan,
        remote: Optional[RecordBase],
        result: SyncResult,
    ) -> None:
        now = self._clock()
        if plan.action == _CONFIRM:
            self._local.mark_synced(table, plan.record.id, now, expected_updated_at=plan.record.updated_at)
            return

        if plan.action == _PUSH:
            self._remote.upsert(table, plan.record)
            self._local.mark_synced(table, plan.record.id, now, expected_updated_at=plan.record.updated_at)
            result.pushed_records += 1
            return

        if plan.action == _PULL:
            self._local.write_record(table, plan.record, synced=True)
            result.pulled_records += 1
            return

        if plan.action == _MERGE:
            self._local.write_record(table, plan.record, synced=False)
            self._remote.upsert(table, plan.record)
            self._local.mark_synced(table, plan.record.id, now, expected_updated_at=plan.record.updated_at)
            result.pushed_records += 1
            return

        outcome = self._resolver.resolve_conflict(plan.conflict)
        if outcome.winner != "remote":
            self._local.mark_synced(
                table, plan.conflict.record_id, now, expected_updated_at=outcome.record.updated_at
            )
        result.resolved_conflicts += 1
        result.conflicts.append(
            RecordOutcome(
                table_name=table,
                record_id=plan.conflict.record_id,
                operation=SyncOperationType.CONFLICT_RESOLUTION,
                success=True,
                detail=f"{outcome.rule.value}: {outcome.description}",
            )
        )

    def _record_failure(
        self,
        table: str,
        record_id: str,
        operation: SyncOperationType,
        error: str,
        attempted_at: datetime,
        result: SyncResult,
        log: bool = True,
    ) -> None:
        logger.error(f"Sync failed for {table}:{record_id} ({operation.value}): {error}")
        self._local.mark_sync_failed(table, record_id, error, self._clock())
        outcome = RecordOutcome(
            table_name=table, record_id=record_id, operation=operation, success=False, detail=error
        )
        result.failures.append(outcome)
        result.outcomes.append(outcome)
        if log:
            self._log(table, record_id, operation, SyncLogStatus.FAILED, error, attempted_at)

    def _log(
        self,
        table: str,
        record_id: str,
        operation: SyncOperationType,
        status: SyncLogStatus,
        message: Optional[str],
        attempted_at: datetime,
    ) -> None:
        try:
            self._local.append_log_entry(
                SyncLogEntry(
                    operation_type=operation.value,
                    table_name=table,
                    record_id=record_id,
                    status=status,
                    error_message=message or None,
                    attempted_at=attempted_at,
                    completed_at=self._clock(),
                )
            )
        except SyncError as e:
            logger.error(f"Failed to write sync log entry for {table}:{record_id}: {e}")

    # ---------------------------
    # Queue replay
    # ---------------------------

    def _replay_operation(self, operation: QueuedOperation, result: SyncResult) -> None:
        table, record_id = operation.table_name, operation.record_id
        logger.info(f"Replaying queued {operation.type.value} for {table}:{record_id}")

        if operation.type == SyncOperationType.PUSH and operation.data:
            local, _ = self._local.get_record_state(table, record_id)
            if local is None:
                record = parse_record({**operation.data, "table": table, "id": record_id})
                self._local.write_record(table, record, synced=False)

        remote_records = self._remote.fetch_by_ids(table, [record_id])
        remote = remote_records[0] if remote_records else None
        outcome = self._process_record(table, record_id, remote, result)
        if not outcome.success:
            raise SyncError(outcome.error or "Replay failed", "queue_replay")
