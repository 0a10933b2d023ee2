"""Local row storage for the sync client.

This module provides:
- RowStore: Abstract interface used by the tracker and the sync engine
- LocalStore: SQLite-backed durable store
- VolatileStore: In-memory fallback that only lives as long as the process
- open_store: Open the durable store, falling back to the volatile one

Rows are plain dicts. Every stored row carries ``id``, ``syncStatus`` and
``updatedAt``; everything else is opaque domain content. Rows created
offline get negative temporary ids until the server assigns a real one.
"""

from __future__ import annotations

import copy
import json
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from tablesync.core.types import PENDING_STATUSES, SyncStatus

logger = logging.getLogger(__name__)

Row = dict[str, Any]
RowPredicate = Callable[[Row], bool]

# Settings key of the temporary id counter
TEMP_ID_KEY = "nextTempId"

# Local-only flag: a temporary-id row has been sent to the server at least once
SENT_KEY = "_sent"

# (row id, row observed earlier or None, replacement or None to delete)
Change = tuple[int, Row | None, Row | None]


class StorageUnavailable(Exception):
    """Raised when the durable storage layer cannot be used."""


def is_temporary_id(row_id: int) -> bool:
    """True for ids handed out locally before the server assigned one."""
    return row_id < 0


def _require_id(row: Row) -> int:
    row_id = row.get("id")
    if not isinstance(row_id, int) or isinstance(row_id, bool):
        raise ValueError(f"row needs an integer id, got {row_id!r}")
    return row_id


def _normalize(row: Row) -> Row:
    """Return a copy of a row with its sync envelope filled in."""
    normalized = dict(row)
    normalized["id"] = _require_id(row)
    normalized["syncStatus"] = int(SyncStatus(row.get("syncStatus", SyncStatus.SYNCED)))
    normalized["updatedAt"] = int(row.get("updatedAt") or 0)
    return normalized


def same_version(stored: Row | None, observed: Row | None) -> bool:
    """True when a stored row still has the sync state it was observed with."""
    if stored is None or observed is None:
        return stored is None and observed is None
    return (
        stored["syncStatus"] == observed["syncStatus"]
        and stored["updatedAt"] == observed["updatedAt"]
    )


class RowStore(ABC):
    """Abstract interface for per-table row storage."""

    @property
    @abstractmethod
    def degraded(self) -> bool:
        """True when data will not survive the process."""

    @property
    @abstractmethod
    def location(self) -> str:
        """Return a human-readable description of where rows are stored."""

    @abstractmethod
    def upsert(self, table: str, row: Row) -> None:
        """Insert or replace a row, keyed by its id."""

    @abstractmethod
    def bulk_upsert(self, table: str, rows: Iterable[Row]) -> None:
        """Insert or replace several rows; all or none are applied."""

    @abstractmethod
    def delete(self, table: str, row_id: int) -> bool:
        """Physically remove a row.

        Returns:
            True if the row existed.
        """

    @abstractmethod
    def get(self, table: str, row_id: int) -> Row | None:
        """Get a row by id, including rows pending deletion."""

    @abstractmethod
    def scan_all(self, table: str) -> list[Row]:
        """All rows of a table ordered by updatedAt."""

    @abstractmethod
    def mark_sync(
        self,
        table: str,
        row_id: int,
        status: SyncStatus,
        updated_at: int | None = None,
        server_last_modified: int | None = None,
    ) -> bool:
        """Set a row's syncStatus and optionally its timestamps.

        Returns:
            True if the row exists.
        """

    @abstractmethod
    def rekey(self, table: str, old_id: int, new_id: int) -> bool:
        """Move a row to a new id, replacing any row already stored there.

        Returns:
            True if a row was moved.
        """

    @abstractmethod
    def mark_sent(self, table: str, row_ids: Iterable[int]) -> None:
        """Flag rows as having gone out in a push request."""

    @abstractmethod
    def apply_if_unchanged(self, table: str, changes: Iterable[Change]) -> list[int]:
        """Apply writes only where the stored row is still the one observed.

        Each change is (id, observed, replacement): observed is the row read
        before deciding, or None if there was none; a None replacement
        deletes the row. All applicable changes are written atomically.

        Returns:
            Ids skipped because the row changed since it was observed.
        """

    @abstractmethod
    def get_setting(self, key: str) -> str | None:
        """Get a persisted client setting."""

    @abstractmethod
    def set_setting(self, key: str, value: str) -> None:
        """Persist a client setting."""

    @abstractmethod
    def next_temp_id(self) -> int:
        """Hand out a fresh negative id; never reused."""

    def close(self) -> None:
        """Release resources held by the store."""

    # === Derived reads ===

    def scan_where(self, table: str, predicate: RowPredicate) -> list[Row]:
        """Rows of a table matching a predicate, ordered by updatedAt."""
        return [row for row in self.scan_all(table) if predicate(row)]

    def pending(self, table: str) -> list[Row]:
        """Rows holding changes the server has not acknowledged."""
        pending_values = {int(s) for s in PENDING_STATUSES}
        return self.scan_where(table, lambda row: row["syncStatus"] in pending_values)

    def count_pending(self, table: str) -> int:
        return len(self.pending(table))

    def list_visible(self, table: str) -> list[Row]:
        """Domain read: all rows except those waiting to be deleted."""
        return self.scan_where(
            table, lambda row: row["syncStatus"] != SyncStatus.PENDING_DELETE
        )

    def get_visible(self, table: str, row_id: int) -> Row | None:
        """Domain read: a row unless it is waiting to be deleted."""
        row = self.get(table, row_id)
        if row is None or row["syncStatus"] == SyncStatus.PENDING_DELETE:
            return None
        return row


class LocalStore(RowStore):
    """SQLite-backed row store.

    Rows are stored as JSON documents with their id, sync status and
    timestamp mirrored into indexed columns.
    """

    def __init__(self, db_path: Path) -> None:
        """Open or create the store.

        Args:
            db_path: Path to SQLite database file.

        Raises:
            StorageUnavailable: If the database cannot be opened.
        """
        self._db_path = Path(db_path)
        # Lock for thread-safe database access
        self._lock = threading.RLock()

        try:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(
                str(self._db_path),
                check_same_thread=False,
                isolation_level=None,  # Autocommit mode
            )
            self._conn.row_factory = sqlite3.Row

            # Enable WAL mode for better concurrency
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._create_tables()
        except (OSError, sqlite3.Error) as e:
            raise StorageUnavailable(f"Cannot open local store {self._db_path}: {e}") from e

    def _create_tables(self) -> None:
        """Create database tables if they don't exist."""
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS rows (
                table_name TEXT NOT NULL,
                id INTEGER NOT NULL,
                sync_status INTEGER NOT NULL DEFAULT 0,
                updated_at INTEGER NOT NULL DEFAULT 0,
                data TEXT NOT NULL,
                PRIMARY KEY (table_name, id)
            );

            CREATE INDEX IF NOT EXISTS ix_rows_status
                ON rows (table_name, sync_status);
            CREATE INDEX IF NOT EXISTS ix_rows_updated
                ON rows (table_name, updated_at);

            -- Key-value client settings (device id, watermarks)
            CREATE TABLE IF NOT EXISTS settings (
                key TEXT PRIMARY KEY,
                value TEXT
            );
        """)

    @property
    def degraded(self) -> bool:
        return False

    @property
    def location(self) -> str:
        return f"SQLite: {self._db_path}"

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Run statements atomically under the store lock."""
        with self._lock:
            try:
                self._conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise StorageUnavailable(f"Local store unavailable: {e}") from e
            try:
                yield self._conn
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            self._conn.execute("COMMIT")

    def _query(self, sql: str, params: tuple[Any, ...] = ()) -> list[sqlite3.Row]:
        with self._lock:
            try:
                return self._conn.execute(sql, params).fetchall()
            except sqlite3.ProgrammingError as e:
                raise StorageUnavailable(f"Local store unavailable: {e}") from e

    @staticmethod
    def _from_db(db_row: sqlite3.Row) -> Row:
        row: Row = json.loads(db_row["data"])
        row["id"] = db_row["id"]
        row["syncStatus"] = db_row["sync_status"]
        row["updatedAt"] = db_row["updated_at"]
        return row

    @staticmethod
    def _write(conn: sqlite3.Connection, table: str, row: Row) -> None:
        row = _normalize(row)
        conn.execute(
            """
            INSERT OR REPLACE INTO rows (table_name, id, sync_status, updated_at, data)
            VALUES (?, ?, ?, ?, ?)
            """,
            (table, row["id"], row["syncStatus"], row["updatedAt"], json.dumps(row)),
        )

    # === Row operations ===

    def upsert(self, table: str, row: Row) -> None:
        with self._transaction() as conn:
            self._write(conn, table, row)

    def bulk_upsert(self, table: str, rows: Iterable[Row]) -> None:
        with self._transaction() as conn:
            for row in rows:
                self._write(conn, table, row)

    def delete(self, table: str, row_id: int) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM rows WHERE table_name = ? AND id = ?", (table, row_id)
            )
            return cursor.rowcount > 0

    def get(self, table: str, row_id: int) -> Row | None:
        rows = self._query(
            "SELECT * FROM rows WHERE table_name = ? AND id = ?", (table, row_id)
        )
        return self._from_db(rows[0]) if rows else None

    def scan_all(self, table: str) -> list[Row]:
        rows = self._query(
            "SELECT * FROM rows WHERE table_name = ? ORDER BY updated_at, id", (table,)
        )
        return [self._from_db(r) for r in rows]

    def pending(self, table: str) -> list[Row]:
        placeholders = ", ".join("?" for _ in PENDING_STATUSES)
        rows = self._query(
            f"SELECT * FROM rows WHERE table_name = ? AND sync_status IN ({placeholders}) "
            "ORDER BY updated_at, id",
            (table, *(int(s) for s in PENDING_STATUSES)),
        )
        return [self._from_db(r) for r in rows]

    def mark_sync(
        self,
        table: str,
        row_id: int,
        status: SyncStatus,
        updated_at: int | None = None,
        server_last_modified: int | None = None,
    ) -> bool:
        with self._transaction() as conn:
            found = conn.execute(
                "SELECT * FROM rows WHERE table_name = ? AND id = ?", (table, row_id)
            ).fetchone()
            if found is None:
                return False
            row = self._from_db(found)
            row["syncStatus"] = int(status)
            if updated_at is not None:
                row["updatedAt"] = updated_at
            if server_last_modified is not None:
                row["serverLastModified"] = server_last_modified
            self._write(conn, table, row)
            return True

    def rekey(self, table: str, old_id: int, new_id: int) -> bool:
        with self._transaction() as conn:
            found = conn.execute(
                "SELECT * FROM rows WHERE table_name = ? AND id = ?", (table, old_id)
            ).fetchone()
            if found is None:
                return False
            row = self._from_db(found)
            row["id"] = new_id
            conn.execute("DELETE FROM rows WHERE table_name = ? AND id = ?", (table, old_id))
            self._write(conn, table, row)
            return True

    def mark_sent(self, table: str, row_ids: Iterable[int]) -> None:
        with self._transaction() as conn:
            for row_id in row_ids:
                found = conn.execute(
                    "SELECT * FROM rows WHERE table_name = ? AND id = ?", (table, row_id)
                ).fetchone()
                if found is None:
                    continue
                row = self._from_db(found)
                if not row.get(SENT_KEY):
                    row[SENT_KEY] = True
                    self._write(conn, table, row)

    def apply_if_unchanged(self, table: str, changes: Iterable[Change]) -> list[int]:
        skipped: list[int] = []
        with self._transaction() as conn:
            for row_id, observed, replacement in changes:
                found = conn.execute(
                    "SELECT * FROM rows WHERE table_name = ? AND id = ?", (table, row_id)
                ).fetchone()
                if not same_version(self._from_db(found) if found else None, observed):
                    skipped.append(row_id)
                    continue
                if replacement is None:
                    conn.execute(
                        "DELETE FROM rows WHERE table_name = ? AND id = ?", (table, row_id)
                    )
                else:
                    self._write(conn, table, replacement)
        return skipped

    # === Settings ===

    def get_setting(self, key: str) -> str | None:
        rows = self._query("SELECT value FROM settings WHERE key = ?", (key,))
        return rows[0]["value"] if rows else None

    def set_setting(self, key: str, value: str) -> None:
        with self._transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO settings (key, value) VALUES (?, ?)", (key, value)
            )

    def next_temp_id(self) -> int:
        with self._transaction() as conn:
            found = conn.execute(
                "SELECT value FROM settings WHERE key = ?", (TEMP_ID_KEY,)
            ).fetchone()
            temp_id = int(found["value"]) if found else -1
            conn.execute(
                "INSERT OR REPLACE INTO settings (key, value) VALUES (?, ?)",
                (TEMP_ID_KEY, str(temp_id - 1)),
            )
            return temp_id


class VolatileStore(RowStore):
    """In-memory row store used when durable storage is unavailable.

    Data survives only for the lifetime of the process.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._tables: dict[str, dict[int, Row]] = {}
        self._settings: dict[str, str] = {}
        self._next_temp_id = -1

    @property
    def degraded(self) -> bool:
        return True

    @property
    def location(self) -> str:
        return "memory (not persisted)"

    def _table(self, table: str) -> dict[int, Row]:
        return self._tables.setdefault(table, {})

    def upsert(self, table: str, row: Row) -> None:
        row = _normalize(copy.deepcopy(row))
        with self._lock:
            self._table(table)[row["id"]] = row

    def bulk_upsert(self, table: str, rows: Iterable[Row]) -> None:
        # Normalize everything first so a bad row leaves the table untouched
        normalized = [_normalize(copy.deepcopy(row)) for row in rows]
        with self._lock:
            stored = self._table(table)
            for row in normalized:
                stored[row["id"]] = row

    def delete(self, table: str, row_id: int) -> bool:
        with self._lock:
            return self._table(table).pop(row_id, None) is not None

    def get(self, table: str, row_id: int) -> Row | None:
        with self._lock:
            row = self._table(table).get(row_id)
            return copy.deepcopy(row) if row is not None else None

    def scan_all(self, table: str) -> list[Row]:
        with self._lock:
            rows = copy.deepcopy(list(self._table(table).values()))
        return sorted(rows, key=lambda r: (r["updatedAt"], r["id"]))

    def mark_sync(
        self,
        table: str,
        row_id: int,
        status: SyncStatus,
        updated_at: int | None = None,
        server_last_modified: int | None = None,
    ) -> bool:
        with self._lock:
            row = self._table(table).get(row_id)
            if row is None:
                return False
            row["syncStatus"] = int(status)
            if updated_at is not None:
                row["updatedAt"] = updated_at
            if server_last_modified is not None:
                row["serverLastModified"] = server_last_modified
            return True

    def rekey(self, table: str, old_id: int, new_id: int) -> bool:
        with self._lock:
            stored = self._table(table)
            row = stored.pop(old_id, None)
            if row is None:
                return False
            row["id"] = new_id
            stored[new_id] = row
            return True

    def mark_sent(self, table: str, row_ids: Iterable[int]) -> None:
        with self._lock:
            stored = self._table(table)
            for row_id in row_ids:
                if row_id in stored:
                    stored[row_id][SENT_KEY] = True

    def apply_if_unchanged(self, table: str, changes: Iterable[Change]) -> list[int]:
        pending = [
            (row_id, observed, _normalize(copy.deepcopy(r)) if r is not None else None)
            for row_id, observed, r in changes
        ]
        skipped: list[int] = []
        with self._lock:
            stored = self._table(table)
            for row_id, observed, replacement in pending:
                if not same_version(stored.get(row_id), observed):
                    skipped.append(row_id)
                elif replacement is None:
                    stored.pop(row_id, None)
                else:
                    stored[row_id] = replacement
        return skipped

    def get_setting(self, key: str) -> str | None:
        with self._lock:
            return self._settings.get(key)

    def set_setting(self, key: str, value: str) -> None:
        with self._lock:
            self._settings[key] = value

    def next_temp_id(self) -> int:
        with self._lock:
            temp_id = self._next_temp_id
            self._next_temp_id -= 1
            return temp_id


def open_store(db_path: Path | None) -> RowStore:
    """Open the durable store, or a volatile one if it is unavailable.

    Args:
        db_path: SQLite file, or None to run without durable storage.

    Returns:
        A LocalStore, or a VolatileStore flagged as degraded.
    """
    if db_path is not None:
        try:
            return LocalStore(db_path)
        except StorageUnavailable as e:
            logger.warning("%s; falling back to in-memory storage", e)
    logger.warning(
        "Running with volatile storage: local changes will not be queued for sync "
        "and data is lost when the process exits"
    )
    return VolatileStore()
