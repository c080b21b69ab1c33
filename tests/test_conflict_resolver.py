"""Tests for conflict detection and the per-table resolution rules."""

from unittest.mock import MagicMock

import pytest

from conftest import at, make_attempt, make_question, make_subject, make_user
from quizsync.application.sync.conflict_resolver import (
    DEFAULT_STRATEGIES,
    ConflictResolver,
    ConflictType,
    ResolutionRule,
    ResolutionStrategy,
    build_strategies,
)
from quizsync.application.sync.errors import ResolutionError, StoreWriteError
from quizsync.presentation.schemas.sync_schemas import SyncLogStatus


@pytest.fixture
def resolver(local_store, remote_store):
    return ConflictResolver(local_store=local_store, remote_store=remote_store)


def _resolution_entries(local_store):
    return [
        entry
        for entry in local_store.get_log_entries(limit=100)
        if entry.operation_type == "conflict_resolution"
    ]


class TestDefaults:
    def test_attempts_preserve_user_data(self):
        strategy = DEFAULT_STRATEGIES["quiz_attempts"]
        assert strategy.rule == ResolutionRule.LOCAL_WINS
        assert strategy.preserve_user_data is True

    def test_reference_tables_are_remote_authoritative(self):
        for table in ("users", "subjects", "questions"):
            assert DEFAULT_STRATEGIES[table].rule == ResolutionRule.REMOTE_WINS

    def test_overrides_replace_rule_only(self):
        strategies = build_strategies({"subjects": "timestamp_wins"})
        assert strategies["subjects"].rule == ResolutionRule.TIMESTAMP_WINS
        assert strategies["users"].rule == ResolutionRule.REMOTE_WINS

    def test_unknown_table_override_is_rejected(self):
        with pytest.raises(ValueError):
            build_strategies({"grades": "local_wins"})

    def test_unknown_rule_is_rejected(self):
        with pytest.raises(ValueError):
            build_strategies({"subjects": "coin_flip"})


class TestDetectReferenceTables:
    def test_missing_side_is_never_a_conflict(self, resolver):
        assert resolver.detect_conflict("subjects", make_subject(), None) is None
        assert resolver.detect_conflict("subjects", None, make_subject()) is None

    def test_identical_timestamps(self, resolver):
        local = make_subject(id="s1", updated_at=at(0))
        remote = make_subject(id="s1", updated_at=at(0), name="Different")
        assert resolver.detect_conflict("subjects", local, remote) is None

    def test_within_tolerance_is_not_a_conflict(self, resolver):
        """Timestamps closer than the tolerance count as the same edit."""
        local = make_subject(id="s1", updated_at=at(0))
        remote = make_subject(id="s1", updated_at=at(0.5), description="edited")
        assert resolver.detect_conflict("subjects", local, remote) is None

    def test_at_tolerance_is_a_conflict(self, resolver):
        local = make_subject(id="s1", updated_at=at(0))
        remote = make_subject(id="s1", updated_at=at(1))
        conflict = resolver.detect_conflict("subjects", local, remote)
        assert conflict is not None
        assert conflict.conflict_type == ConflictType.UPDATE_CONFLICT
        assert conflict.record_id == "s1"

    def test_soft_delete_is_a_delete_conflict(self, resolver):
        local = make_question(id="q1", updated_at=at(0))
        remote = make_question(id="q1", updated_at=at(60), is_active=False)
        conflict = resolver.detect_conflict("questions", local, remote)
        assert conflict.conflict_type == ConflictType.DELETE_CONFLICT

    def test_custom_tolerance(self, local_store, remote_store):
        resolver = ConflictResolver(
            local_store=local_store, remote_store=remote_store, tolerance_ms=5000
        )
        local = make_user(id="u1", updated_at=at(0))
        remote = make_user(id="u1", updated_at=at(3))
        assert resolver.detect_conflict("users", local, remote) is None


class TestDetectQuizAttempts:
    def test_local_submitted_remote_not(self, resolver):
        local = make_attempt(id="a1", updated_at=at(100), submitted=True, submitted_at=at(100), score=30)
        remote = make_attempt(id="a1", updated_at=at(200))
        assert resolver.detect_conflict("quiz_attempts", local, remote) is None

    def test_remote_submitted_local_not(self, resolver):
        local = make_attempt(id="a1", updated_at=at(100), answers={"q1": "A"})
        remote = make_attempt(id="a1", updated_at=at(50), submitted=True, submitted_at=at(50))
        assert resolver.detect_conflict("quiz_attempts", local, remote) is None

    def test_both_submitted_within_tolerance(self, resolver):
        local = make_attempt(id="a1", updated_at=at(100), submitted=True, submitted_at=at(100), score=30)
        remote = make_attempt(id="a1", updated_at=at(100.4), submitted=True, submitted_at=at(100.4), score=30)
        assert resolver.detect_conflict("quiz_attempts", local, remote) is None

    def test_both_submitted_far_apart(self, resolver):
        local = make_attempt(id="a1", updated_at=at(100), submitted=True, submitted_at=at(100))
        remote = make_attempt(id="a1", updated_at=at(400), submitted=True, submitted_at=at(400))
        conflict = resolver.detect_conflict("quiz_attempts", local, remote)
        assert conflict is not None

    def test_additive_answers_do_not_conflict(self, resolver):
        local = make_attempt(id="a1", updated_at=at(10), answers={"q1": "A"})
        remote = make_attempt(id="a1", updated_at=at(20), answers={"q2": "B"})
        assert resolver.detect_conflict("quiz_attempts", local, remote) is None

    def test_different_option_for_same_question_conflicts(self, resolver):
        local = make_attempt(id="a1", updated_at=at(10), answers={"q1": "A"})
        remote = make_attempt(id="a1", updated_at=at(10.2), answers={"q1": "B"})
        conflict = resolver.detect_conflict("quiz_attempts", local, remote)
        assert conflict is not None
        assert conflict.conflict_type == ConflictType.UPDATE_CONFLICT

    def test_malformed_answers_raise_resolution_error(self, resolver):
        local = make_attempt(id="a1", updated_at=at(10))
        local = local.model_copy(update={"answers": "{broken"})
        remote = make_attempt(id="a1", updated_at=at(20), answers={"q1": "A"})
        with pytest.raises(ResolutionError):
            resolver.detect_conflict("quiz_attempts", local, remote)


class TestResolve:
    def test_remote_wins_overwrites_local(self, resolver, local_store, remote_store):
        local = make_subject(id="s1", updated_at=at(0), name="Maths")
        remote = make_subject(id="s1", updated_at=at(300), name="Mathematics II", description="Revised")
        local_store.write_record("subjects", local)
        remote_store.upsert("subjects", remote)

        conflict = resolver.detect_conflict("subjects", local, remote)
        outcome = resolver.resolve_conflict(conflict)

        assert outcome.winner == "remote"
        stored = local_store.get_record("subjects", "s1")
        assert stored.name == "Mathematics II"
        assert stored.description == "Revised"
        _, pending = local_store.get_record_state("subjects", "s1")
        assert pending is False

    def test_local_wins_pushes_local(self, resolver, local_store, remote_store):
        local = make_attempt(id="a1", updated_at=at(10), answers={"q1": "A"})
        remote = make_attempt(id="a1", updated_at=at(10.3), answers={"q1": "B"})
        local_store.write_record("quiz_attempts", local)
        remote_store.upsert("quiz_attempts", remote)

        outcome = resolver.resolve_conflict(resolver.detect_conflict("quiz_attempts", local, remote))

        assert outcome.winner == "local"
        pushed = remote_store.fetch_by_ids("quiz_attempts", ["a1"])[0]
        assert pushed.answer_sheet().answers == {"q1": "A"}
        assert pushed.updated_at == local.updated_at

    def test_timestamp_wins_prefers_newer(self, local_store, remote_store):
        resolver = ConflictResolver(
            local_store=local_store,
            remote_store=remote_store,
            strategies=build_strategies({"users": "timestamp_wins"}),
        )
        local = make_user(id="u1", updated_at=at(500), name="Newer local")
        remote = make_user(id="u1", updated_at=at(0), name="Older remote")
        local_store.write_record("users", local)
        remote_store.upsert("users", remote)

        outcome = resolver.resolve_conflict(resolver.detect_conflict("users", local, remote))

        assert outcome.winner == "local"
        assert remote_store.fetch_by_ids("users", ["u1"])[0].name == "Newer local"

    def test_merge_data_unions_answers(self, local_store, remote_store):
        resolver = ConflictResolver(
            local_store=local_store,
            remote_store=remote_store,
            strategies=build_strategies({"quiz_attempts": "merge_data"}),
        )
        local = make_attempt(id="a1", updated_at=at(10), answers={"q1": "A", "q2": "B"})
        remote = make_attempt(id="a1", updated_at=at(10.5), answers={"q2": "C", "q3": "D"})
        local_store.write_record("quiz_attempts", local)
        remote_store.upsert("quiz_attempts", remote)

        outcome = resolver.resolve_conflict(resolver.detect_conflict("quiz_attempts", local, remote))

        expected = {"q1": "A", "q2": "B", "q3": "D"}
        assert outcome.winner == "merged"
        assert local_store.get_record("quiz_attempts", "a1").answer_sheet().answers == expected
        assert remote_store.fetch_by_ids("quiz_attempts", ["a1"])[0].answer_sheet().answers == expected

    def test_merge_data_on_reference_table_falls_back_to_timestamp(self, local_store, remote_store):
        resolver = ConflictResolver(
            local_store=local_store,
            remote_store=remote_store,
            strategies=build_strategies({"subjects": "merge_data"}),
        )
        local = make_subject(id="s1", updated_at=at(0), name="Old")
        remote = make_subject(id="s1", updated_at=at(90), name="New")
        local_store.write_record("subjects", local)
        remote_store.upsert("subjects", remote)

        outcome = resolver.resolve_conflict(resolver.detect_conflict("subjects", local, remote))

        assert outcome.rule == ResolutionRule.MERGE_DATA
        assert outcome.winner == "remote"
        assert local_store.get_record("subjects", "s1").name == "New"

    def test_remote_wins_never_unsubmits_local_attempt(self, local_store, remote_store):
        resolver = ConflictResolver(
            local_store=local_store,
            remote_store=remote_store,
            strategies=build_strategies({"quiz_attempts": "remote_wins"}),
        )
        local = make_attempt(id="a1", updated_at=at(100), submitted=True, submitted_at=at(100), score=35)
        remote = make_attempt(id="a1", updated_at=at(400), submitted=True, submitted_at=at(20), score=10)
        local_store.write_record("quiz_attempts", local)
        remote_store.upsert("quiz_attempts", remote)

        outcome = resolver.resolve_conflict(resolver.detect_conflict("quiz_attempts", local, remote))

        assert outcome.winner == "local"
        assert local_store.get_record("quiz_attempts", "a1").score == 35
        assert remote_store.fetch_by_ids("quiz_attempts", ["a1"])[0].score == 35

    def test_every_resolution_writes_one_log_entry(self, resolver, local_store, remote_store):
        local = make_subject(id="s1", updated_at=at(0))
        remote = make_subject(id="s1", updated_at=at(300))
        local_store.write_record("subjects", local)
        remote_store.upsert("subjects", remote)

        resolver.resolve_conflict(resolver.detect_conflict("subjects", local, remote))

        entries = _resolution_entries(local_store)
        assert len(entries) == 1
        assert entries[0].status == SyncLogStatus.SUCCESS
        assert entries[0].error_message.startswith("remote_wins")

    def test_write_failure_raises_and_logs(self, local_store):
        remote_store = MagicMock()
        remote_store.upsert.side_effect = StoreWriteError("remote write refused")
        resolver = ConflictResolver(local_store=local_store, remote_store=remote_store)
        local = make_attempt(id="a1", updated_at=at(10), answers={"q1": "A"})
        remote = make_attempt(id="a1", updated_at=at(10.1), answers={"q1": "B"})

        with pytest.raises(ResolutionError):
            resolver.resolve_conflict(resolver.detect_conflict("quiz_attempts", local, remote))

        entries = _resolution_entries(local_store)
        assert len(entries) == 1
        assert entries[0].status == SyncLogStatus.FAILED
        assert "remote write refused" in entries[0].error_message

    def test_missing_strategy_raises(self, local_store, remote_store):
        resolver = ConflictResolver(
            local_store=local_store,
            remote_store=remote_store,
            strategies={"users": ResolutionStrategy("users", ResolutionRule.REMOTE_WINS)},
        )
        local = make_subject(id="s1", updated_at=at(0))
        remote = make_subject(id="s1", updated_at=at(300))

        with pytest.raises(ResolutionError):
            resolver.resolve_conflict(resolver.detect_conflict("subjects", local, remote))
        assert _resolution_entries(local_store)[0].status == SyncLogStatus.FAILED

    def test_set_strategy(self, resolver):
        resolver.set_strategy(ResolutionStrategy("questions", ResolutionRule.TIMESTAMP_WINS))
        assert resolver.get_strategy("questions").rule == ResolutionRule.TIMESTAMP_WINS
