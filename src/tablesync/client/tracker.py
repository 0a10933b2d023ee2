"""Change tracking for local writes.

CRUD code calls ChangeTracker.mark_for_sync() after every local mutation.
The tracker stamps the row and queues it for the next push by setting
its syncStatus; the row itself is the pending operation.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from enum import Enum

from tablesync.client.store import SENT_KEY, Row, RowStore, is_temporary_id
from tablesync.core.types import SyncStatus, now_ms

logger = logging.getLogger(__name__)

# Local-only keys set on rows awaiting manual conflict resolution
CONFLICT_KEYS = ("_conflict", "_remote")


class Intent(str, Enum):
    """Kind of local mutation."""

    UPSERT = "upsert"
    DELETE = "delete"


class ChangeTracker:
    """Stamps local mutations and queues them for push."""

    def __init__(self, store: RowStore, clock: Callable[[], int] = now_ms) -> None:
        self._store = store
        self._clock = clock

    def _stamp(self, previous: Row | None) -> int:
        # updatedAt never goes backwards, even if the wall clock does
        now = self._clock()
        if previous is not None:
            return max(now, int(previous.get("updatedAt") or 0))
        return now

    def mark_for_sync(self, table: str, row: Row, intent: Intent = Intent.UPSERT) -> Row | None:
        """Record a local mutation.

        Args:
            table: Table the row belongs to.
            row: Row content after the mutation. Rows without an id are
                new and get a temporary id.
            intent: UPSERT for create/update, DELETE for delete.

        Returns:
            The stored row, or None when the row no longer exists locally
            (a delete of a row that was never sent to the server).
        """
        intent = Intent(intent)

        if self._store.degraded:
            logger.warning(
                "Storage is degraded: %s change to %r (id=%s) is kept locally but not queued",
                intent.value,
                table,
                row.get("id"),
            )
            return row

        row_id = row.get("id")
        previous = self._store.get(table, row_id) if row_id is not None else None

        if intent is Intent.DELETE:
            if row_id is None:
                raise ValueError("cannot delete a row without an id")
            if is_temporary_id(row_id) and not (previous or {}).get(SENT_KEY):
                # Never pushed: nothing to tell the server
                self._store.delete(table, row_id)
                logger.debug("Removed unsynced %s row %d", table, row_id)
                return None
            base = previous if previous is not None else row
            tombstone = {
                **{k: v for k, v in base.items() if k not in CONFLICT_KEYS},
                "syncStatus": int(SyncStatus.PENDING_DELETE),
                "updatedAt": self._stamp(previous),
            }
            self._store.upsert(table, tombstone)
            return tombstone

        stored = {k: v for k, v in row.items() if k not in CONFLICT_KEYS}
        if row_id is None:
            stored["id"] = self._store.next_temp_id()
        elif previous is not None and previous.get(SENT_KEY):
            stored[SENT_KEY] = True
        stored["syncStatus"] = int(SyncStatus.PENDING_PUSH)
        stored["updatedAt"] = self._stamp(previous)
        self._store.upsert(table, stored)
        return stored
