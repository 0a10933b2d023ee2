"""Shared configuration classes for tablesync.

This module defines configuration classes used by both client and server components.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from tablesync.core.types import ConflictStrategy

DEFAULT_SYNC_TABLES = ("users", "clients", "budgets", "contracts", "financial")


@dataclass
class ServerConfig:
    """Configuration for connecting to a tablesync server.

    Attributes:
        server_url: Base URL of the server (e.g., "https://sync.example.com").
        token: Bearer credential for the device (may be empty when a
            credential provider supplies it per request).
        timeout: Request timeout in seconds.
        verify_ssl: Whether to verify SSL certificates (default True).
    """

    server_url: str
    token: str = ""
    timeout: float = 30.0
    verify_ssl: bool = True

    def __post_init__(self) -> None:
        """Normalize server URL."""
        self.server_url = self.server_url.rstrip("/")

    @property
    def is_secure(self) -> bool:
        """Check if using HTTPS.

        Returns:
            True if server uses HTTPS.
        """
        return self.server_url.startswith("https://")


# camelCase option names accepted by SyncConfig.from_dict
_OPTION_NAMES = {
    "syncInterval": "sync_interval_ms",
    "maxRetries": "max_retries",
    "retryDelay": "retry_delay_ms",
    "batchSize": "batch_size",
    "syncTables": "sync_tables",
    "conflictStrategy": "conflict_strategy",
    "timestampField": "timestamp_field",
    "tableStrategies": "table_strategies",
}


@dataclass
class SyncConfig:
    """Options driving the client sync engine.

    Attributes:
        sync_interval_ms: Period between automatic cycles.
        max_retries: Retry cap per request (attempts = max_retries + 1).
        retry_delay_ms: Backoff base, multiplied by the attempt number.
        batch_size: Soft cap on rows per push request.
        sync_tables: Tables pulled and pushed each cycle, in order.
        conflict_strategy: Default conflict strategy.
        timestamp_field: Field compared by Last-Write-Wins.
        table_strategies: Per-table overrides of conflict_strategy.
    """

    sync_interval_ms: int = 300_000
    max_retries: int = 3
    retry_delay_ms: int = 2_000
    batch_size: int = 100
    sync_tables: list[str] = field(default_factory=lambda: list(DEFAULT_SYNC_TABLES))
    conflict_strategy: ConflictStrategy = ConflictStrategy.LAST_WRITE_WINS
    timestamp_field: str = "updatedAt"
    table_strategies: dict[str, ConflictStrategy] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.conflict_strategy = ConflictStrategy(self.conflict_strategy)
        self.table_strategies = {
            table: ConflictStrategy(strategy)
            for table, strategy in self.table_strategies.items()
        }
        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if self.max_retries < 0:
            raise ValueError("max_retries cannot be negative")

    def strategy_for(self, table: str) -> ConflictStrategy:
        """Conflict strategy in effect for a table."""
        return self.table_strategies.get(table, self.conflict_strategy)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncConfig:
        """Build a config from a dict using either camelCase or field names.

        Unknown keys are ignored so a shared config file can carry other settings.
        """
        kwargs: dict[str, Any] = {}
        field_names = set(cls.__dataclass_fields__)
        for key, value in data.items():
            name = _OPTION_NAMES.get(key, key)
            if name in field_names:
                kwargs[name] = value
        if "sync_tables" in kwargs:
            kwargs["sync_tables"] = list(kwargs["sync_tables"])
        return cls(**kwargs)


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class ServerSettings:
    """Server-side sync settings.

    Attributes:
        db_path: SQLite database file.
        log_path: Server log file.
        sync_tables: Whitelist of syncable tables.
        scope_by_user: Restrict pulls and pushes to records owned by the caller.
        reject_stale_writes: Skip upserts older than the stored record.
        tombstone_retention_days: Minimum age before a tombstone may be purged.
    """

    db_path: Path = Path("tablesync.db")
    log_path: Path = Path("tablesync-server.log")
    sync_tables: list[str] = field(default_factory=lambda: list(DEFAULT_SYNC_TABLES))
    scope_by_user: bool = False
    reject_stale_writes: bool = False
    tombstone_retention_days: int = 30

    @classmethod
    def from_env(cls) -> ServerSettings:
        """Read settings from TABLESYNC_* environment variables."""
        tables = os.environ.get("TABLESYNC_TABLES")
        return cls(
            db_path=Path(os.environ.get("TABLESYNC_DB_PATH", "tablesync.db")),
            log_path=Path(os.environ.get("TABLESYNC_LOG_PATH", "tablesync-server.log")),
            sync_tables=(
                [t.strip() for t in tables.split(",") if t.strip()]
                if tables
                else list(DEFAULT_SYNC_TABLES)
            ),
            scope_by_user=_env_flag("TABLESYNC_SCOPE_BY_USER"),
            reject_stale_writes=_env_flag("TABLESYNC_REJECT_STALE_WRITES"),
            tombstone_retention_days=int(
                os.environ.get("TABLESYNC_TOMBSTONE_RETENTION_DAYS", "30")
            ),
        )
