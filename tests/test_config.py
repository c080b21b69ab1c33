"""Tests for environment-driven settings."""

import pytest

from quizsync.config import SyncSettings, parse_strategy_overrides


@pytest.fixture(autouse=True)
def no_dotenv(monkeypatch, tmp_path):
    # Keep a developer's .env out of these tests.
    monkeypatch.chdir(tmp_path)
    for name in (
        "LOCAL_DATABASE_URL",
        "REMOTE_DATABASE_URL",
        "SYNC_REMOTE_POOL_SIZE",
        "SYNC_TIMESTAMP_TOLERANCE_MS",
        "SYNC_STRATEGIES",
        "LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)


class TestSyncSettings:
    def test_defaults(self):
        settings = SyncSettings.from_env()
        assert settings.remote_database_url is None
        assert settings.remote_pool_size == 2
        assert settings.timestamp_tolerance_ms == 1000
        assert settings.app_close_timeout_seconds == 3.0
        assert settings.log_retention == 1000
        assert settings.log_level == "INFO"

    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("REMOTE_DATABASE_URL", "postgresql://sync@db/quiz")
        monkeypatch.setenv("SYNC_TIMESTAMP_TOLERANCE_MS", "2500")
        monkeypatch.setenv("SYNC_STRATEGIES", "subjects=timestamp_wins")
        monkeypatch.setenv("LOG_LEVEL", "debug")

        settings = SyncSettings.from_env()

        assert settings.remote_database_url == "postgresql://sync@db/quiz"
        assert settings.timestamp_tolerance_ms == 2500
        assert settings.strategy_overrides == {"subjects": "timestamp_wins"}
        assert settings.log_level == "DEBUG"

    def test_pool_size_is_clamped(self, monkeypatch):
        monkeypatch.setenv("SYNC_REMOTE_POOL_SIZE", "10")
        assert SyncSettings.from_env().remote_pool_size == 3
        assert SyncSettings(remote_pool_size=0).remote_pool_size == 1

    def test_bad_integer(self, monkeypatch):
        monkeypatch.setenv("SYNC_REMOTE_POOL_SIZE", "many")
        with pytest.raises(ValueError):
            SyncSettings.from_env()

    def test_negative_tolerance_rejected(self):
        with pytest.raises(ValueError):
            SyncSettings(timestamp_tolerance_ms=-1)


class TestStrategyOverrides:
    def test_parses_pairs(self):
        assert parse_strategy_overrides(" users=local_wins , quiz_attempts=merge_data,") == {
            "users": "local_wins",
            "quiz_attempts": "merge_data",
        }

    def test_empty(self):
        assert parse_strategy_overrides(None) == {}
        assert parse_strategy_overrides("") == {}

    def test_missing_rule(self):
        with pytest.raises(ValueError):
            parse_strategy_overrides("users")
