"""Tests for configuration classes."""

from __future__ import annotations

from pathlib import Path

import pytest

from tablesync.core.config import DEFAULT_SYNC_TABLES, ServerConfig, ServerSettings, SyncConfig
from tablesync.core.types import ConflictStrategy


class TestServerConfig:
    """Tests for ServerConfig dataclass."""

    def test_strips_trailing_slash(self) -> None:
        """Server URL should be normalized without a trailing slash."""
        config = ServerConfig(server_url="https://sync.example.com/", token="t")
        assert config.server_url == "https://sync.example.com"

    def test_is_secure(self) -> None:
        """is_secure should reflect the URL scheme."""
        assert ServerConfig(server_url="https://a").is_secure
        assert not ServerConfig(server_url="http://a").is_secure

    def test_defaults(self) -> None:
        """Should have sensible defaults."""
        config = ServerConfig(server_url="http://a")
        assert config.token == ""
        assert config.timeout == 30.0
        assert config.verify_ssl is True


class TestSyncConfig:
    """Tests for SyncConfig dataclass."""

    def test_defaults(self) -> None:
        """Defaults should match the documented engine options."""
        config = SyncConfig()

        assert config.sync_interval_ms == 300_000
        assert config.max_retries == 3
        assert config.retry_delay_ms == 2_000
        assert config.batch_size == 100
        assert config.sync_tables == list(DEFAULT_SYNC_TABLES)
        assert config.conflict_strategy is ConflictStrategy.LAST_WRITE_WINS
        assert config.timestamp_field == "updatedAt"

    def test_from_dict_camel_case(self) -> None:
        """camelCase option names should map onto fields."""
        config = SyncConfig.from_dict(
            {
                "syncInterval": 60_000,
                "maxRetries": 5,
                "retryDelay": 100,
                "batchSize": 10,
                "syncTables": ("clients",),
                "conflictStrategy": "mergeManual",
                "timestampField": "modifiedAt",
            }
        )

        assert config.sync_interval_ms == 60_000
        assert config.max_retries == 5
        assert config.retry_delay_ms == 100
        assert config.batch_size == 10
        assert config.sync_tables == ["clients"]
        assert config.conflict_strategy is ConflictStrategy.MANUAL
        assert config.timestamp_field == "modifiedAt"

    def test_from_dict_ignores_unknown_keys(self) -> None:
        """Keys belonging to other settings should be ignored."""
        config = SyncConfig.from_dict({"server_url": "http://a", "batch_size": 7})
        assert config.batch_size == 7

    def test_invalid_strategy(self) -> None:
        """An unknown strategy name should raise ValueError."""
        with pytest.raises(ValueError):
            SyncConfig.from_dict({"conflictStrategy": "coinFlip"})

    def test_invalid_batch_size(self) -> None:
        """batch_size below 1 should raise ValueError."""
        with pytest.raises(ValueError, match="batch_size"):
            SyncConfig(batch_size=0)

    def test_negative_retries(self) -> None:
        """Negative max_retries should raise ValueError."""
        with pytest.raises(ValueError, match="max_retries"):
            SyncConfig(max_retries=-1)

    def test_strategy_for_table_override(self) -> None:
        """Per-table strategies should override the default."""
        config = SyncConfig.from_dict(
            {"conflictStrategy": "serverWins", "tableStrategies": {"budgets": "clientWins"}}
        )

        assert config.strategy_for("budgets") is ConflictStrategy.CLIENT_WINS
        assert config.strategy_for("clients") is ConflictStrategy.SERVER_WINS


class TestServerSettings:
    """Tests for ServerSettings.from_env."""

    def test_defaults_without_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Without environment variables, defaults should apply."""
        for name in (
            "TABLESYNC_DB_PATH",
            "TABLESYNC_LOG_PATH",
            "TABLESYNC_TABLES",
            "TABLESYNC_SCOPE_BY_USER",
            "TABLESYNC_REJECT_STALE_WRITES",
            "TABLESYNC_TOMBSTONE_RETENTION_DAYS",
        ):
            monkeypatch.delenv(name, raising=False)

        settings = ServerSettings.from_env()

        assert settings.db_path == Path("tablesync.db")
        assert settings.sync_tables == list(DEFAULT_SYNC_TABLES)
        assert settings.scope_by_user is False
        assert settings.reject_stale_writes is False
        assert settings.tombstone_retention_days == 30

    def test_reads_env(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        """TABLESYNC_* variables should override defaults."""
        monkeypatch.setenv("TABLESYNC_DB_PATH", str(tmp_path / "s.db"))
        monkeypatch.setenv("TABLESYNC_TABLES", "clients, budgets,")
        monkeypatch.setenv("TABLESYNC_SCOPE_BY_USER", "yes")
        monkeypatch.setenv("TABLESYNC_REJECT_STALE_WRITES", "0")
        monkeypatch.setenv("TABLESYNC_TOMBSTONE_RETENTION_DAYS", "7")

        settings = ServerSettings.from_env()

        assert settings.db_path == tmp_path / "s.db"
        assert settings.sync_tables == ["clients", "budgets"]
        assert settings.scope_by_user is True
        assert settings.reject_stale_writes is False
        assert settings.tombstone_retention_days == 7
