"""Shared fixtures: two SQLite files standing in for the local and remote stores."""

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from quizsync.application.sync.runtime import build_engine
from quizsync.config import SyncSettings
from quizsync.infrastructure.repositories.local_store import LocalStoreAdapter
from quizsync.infrastructure.repositories.remote_store import RemoteStoreAdapter
from quizsync.presentation.schemas.payload_schemas import AnswerSheet, OptionSet
from quizsync.presentation.schemas.record_schemas import (
    QuestionRecord,
    QuizAttemptRecord,
    SubjectRecord,
    UserRecord,
)

T0 = datetime(2024, 3, 1, 9, 0, 0, tzinfo=timezone.utc)


def at(seconds: float = 0) -> datetime:
    """A point in time relative to T0."""
    return T0 + timedelta(seconds=seconds)


def make_user(id=None, updated_at=None, **overrides) -> UserRecord:
    id = id or str(uuid.uuid4())
    fields = dict(
        id=id,
        updated_at=updated_at or T0,
        name="Ada Obi",
        student_code=f"STU-{id[:8]}",
        password_hash="hashed",
        class_level="SS2",
        gender="FEMALE",
        is_active=True,
        created_at=T0,
    )
    fields.update(overrides)
    return UserRecord(**fields)


def make_subject(id=None, updated_at=None, **overrides) -> SubjectRecord:
    id = id or str(uuid.uuid4())
    fields = dict(
        id=id,
        updated_at=updated_at or T0,
        name="Mathematics",
        subject_code=f"MTH-{id[:8]}",
        description="Core mathematics",
        class_level="SS2",
        total_questions=40,
        is_active=True,
        created_at=T0,
    )
    fields.update(overrides)
    return SubjectRecord(**fields)


def make_question(id=None, updated_at=None, **overrides) -> QuestionRecord:
    fields = dict(
        id=id or str(uuid.uuid4()),
        updated_at=updated_at or T0,
        subject_id="subject-1",
        subject_code="MTH101",
        text="What is 2 + 2?",
        options=OptionSet(options=["3", "4", "5", "22"]).dumps(),
        answer="4",
        question_order=1,
        created_at=T0,
    )
    fields.update(overrides)
    return QuestionRecord(**fields)


def make_attempt(id=None, updated_at=None, answers=None, **overrides) -> QuizAttemptRecord:
    fields = dict(
        id=id or str(uuid.uuid4()),
        updated_at=updated_at or T0,
        user_id="user-1",
        subject_id="subject-1",
        answers=AnswerSheet(answers=answers or {}).dumps(),
        total_questions=40,
        started_at=T0,
    )
    fields.update(overrides)
    return QuizAttemptRecord(**fields)


@pytest.fixture
def settings(tmp_path):
    return SyncSettings(
        local_database_url=f"sqlite:///{tmp_path / 'local.db'}",
        remote_database_url=f"sqlite:///{tmp_path / 'remote.db'}",
        remote_timeout_seconds=2.0,
        connectivity_cooldown_seconds=0.0,
        periodic_interval_seconds=0,
    )


@pytest.fixture
def local_store(settings):
    store = LocalStoreAdapter.open(settings.local_database_url)
    yield store
    store.close()


@pytest.fixture
def remote_store(settings):
    store = RemoteStoreAdapter.open(
        settings.remote_database_url,
        pool_size=settings.remote_pool_size,
        timeout_seconds=settings.remote_timeout_seconds,
    )
    store.create_schema()
    yield store
    store.close()


@pytest.fixture
def engine(settings, local_store, remote_store):
    return build_engine(settings, local_store=local_store, remote_store=remote_store)
