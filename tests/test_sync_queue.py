"""Tests for the tiered, durable sync queue."""

from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from conftest import T0
from quizsync.application.sync.errors import ConnectivityError, QueueError
from quizsync.application.sync.sync_queue import (
    TIER_POLICIES,
    SyncQueue,
    classify_operation,
)
from quizsync.infrastructure.repositories.sync_queue_repository import SyncQueueRepository
from quizsync.presentation.schemas.sync_schemas import SyncOperationType, SyncTier


class FakeClock:
    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def queue(local_store, clock):
    return SyncQueue(SyncQueueRepository(local_store), local_store=local_store, clock=clock)


class TestClassification:
    def test_attempt_push_is_critical(self):
        assert classify_operation(SyncOperationType.PUSH, "quiz_attempts") == SyncTier.CRITICAL

    def test_learner_data_is_important(self):
        assert classify_operation(SyncOperationType.PULL, "quiz_attempts") == SyncTier.IMPORTANT
        assert classify_operation(SyncOperationType.PUSH, "users") == SyncTier.IMPORTANT

    def test_reference_data_is_administrative(self):
        assert classify_operation(SyncOperationType.PUSH, "subjects") == SyncTier.ADMINISTRATIVE
        assert classify_operation(SyncOperationType.PULL, "questions") == SyncTier.ADMINISTRATIVE

    def test_policies(self):
        assert TIER_POLICIES[SyncTier.CRITICAL].batch_size == 10
        assert TIER_POLICIES[SyncTier.IMPORTANT].max_retries == 5
        assert TIER_POLICIES[SyncTier.ADMINISTRATIVE].retry_delays == (60, 300, 900)


class TestEnqueue:
    def test_enqueue_persists(self, queue, local_store):
        operation = queue.enqueue(SyncOperationType.PUSH, "quiz_attempts", "a1", {"score": 30})

        assert operation.tier == SyncTier.CRITICAL
        assert queue.size() == 1
        assert queue.size(SyncTier.CRITICAL) == 1

        # Survives a fresh queue over the same store.
        reopened = SyncQueue(SyncQueueRepository(local_store), local_store=local_store)
        pending = reopened.pending()
        assert [(op.record_id, op.data) for op in pending] == [("a1", {"score": 30})]

    def test_unknown_table_raises_queue_error(self, queue):
        with pytest.raises(QueueError):
            queue.enqueue(SyncOperationType.PUSH, "grades", "g1")

    def test_persistence_failure_raises_queue_error(self, local_store):
        repository = MagicMock()
        repository.save.side_effect = OperationalError("INSERT", {}, Exception("database is locked"))
        queue = SyncQueue(repository, local_store=local_store)

        with pytest.raises(QueueError):
            queue.enqueue(SyncOperationType.PUSH, "users", "u1")


class TestProcess:
    def test_successful_operations_are_removed(self, queue):
        queue.enqueue(SyncOperationType.PUSH, "subjects", "s1")
        queue.enqueue(SyncOperationType.PUSH, "quiz_attempts", "a1")
        handled = []

        result = queue.process(lambda op: handled.append(op.record_id))

        # Critical tier first.
        assert handled == ["a1", "s1"]
        assert result.succeeded == 2
        assert queue.size() == 0

    def test_failure_reschedules_with_backoff(self, queue, clock):
        queue.enqueue(SyncOperationType.PUSH, "quiz_attempts", "a1")

        def failing(op):
            raise ConnectivityError("remote unreachable")

        result = queue.process(failing)

        assert result.retried == 1
        operation = queue.pending()[0]
        assert operation.retry_count == 1
        assert operation.next_retry_at == clock.now + timedelta(seconds=1)
        assert "remote unreachable" in operation.last_error

        # Not ready again until the backoff has elapsed.
        assert queue.process(failing).processed == 0
        clock.advance(1)
        queue.process(failing)
        assert queue.pending()[0].next_retry_at == clock.now + timedelta(seconds=2)

    def test_batch_size_limits_each_run(self, queue):
        for index in range(12):
            queue.enqueue(SyncOperationType.PUSH, "quiz_attempts", f"a{index}")

        result = queue.process(lambda op: None)

        assert result.succeeded == 10
        assert queue.size() == 2

    def test_exhausted_operation_is_dropped_and_logged(self, queue, clock, local_store):
        queue.enqueue(SyncOperationType.PUSH, "subjects", "s1")

        def failing(op):
            raise ConnectivityError("remote unreachable")

        dropped = 0
        for _ in range(TIER_POLICIES[SyncTier.ADMINISTRATIVE].max_retries + 1):
            dropped += queue.process(failing).dropped
            clock.advance(3600)

        assert dropped == 1
        assert queue.size() == 0
        failed = local_store.get_log_entries(status="failed")
        assert len(failed) == 1
        assert failed[0].record_id == "s1"
        assert "Dropped after 3 retries" in failed[0].error_message

    def test_deadline_stops_replay(self, queue, clock):
        queue.enqueue(SyncOperationType.PUSH, "subjects", "s1")

        result = queue.process(lambda op: None, deadline=clock.now)

        assert result.processed == 0
        assert queue.size() == 1

    def test_local_database_error_in_handler_is_rescheduled(self, queue, clock):
        queue.enqueue(SyncOperationType.PUSH, "quiz_attempts", "a1")

        def locked(op):
            raise OperationalError("SELECT", {}, Exception("database is locked"))

        result = queue.process(locked)

        assert result.retried == 1
        assert queue.pending()[0].retry_count == 1
        assert "database is locked" in queue.pending()[0].last_error

    def test_unreadable_queue_raises_queue_error(self, local_store):
        repository = MagicMock()
        repository.list_ready.side_effect = OperationalError("SELECT", {}, Exception("database is locked"))
        queue = SyncQueue(repository, local_store=local_store)

        with pytest.raises(QueueError):
            queue.process(lambda op: None)

    def test_failed_reschedule_leaves_operation_due(self, local_store, clock):
        repository = SyncQueueRepository(local_store)
        queue = SyncQueue(repository, local_store=local_store, clock=clock)
        queue.enqueue(SyncOperationType.PUSH, "users", "u1")

        def failing(op):
            raise ConnectivityError("remote unreachable")

        locked = OperationalError("UPDATE", {}, Exception("database is locked"))
        with patch.object(repository, "save", side_effect=locked):
            result = queue.process(failing)

        assert result.retried == 1
        operation = queue.pending()[0]
        assert operation.retry_count == 0
        assert operation.next_retry_at is None
