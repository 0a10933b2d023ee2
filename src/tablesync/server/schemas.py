"""Converters from ORM objects to wire payloads."""

from __future__ import annotations

from typing import Any

from tablesync.core.schemas import TableStatus
from tablesync.server.models import SyncRecord


def record_to_wire(record: SyncRecord) -> dict[str, Any]:
    """Convert a SyncRecord to the row shape returned by pull.

    Tombstones carry only their identity and the delete marker.
    """
    if record.is_tombstone:
        return {
            "id": record.id,
            "updatedAt": record.updated_at,
            "deleted": True,
            "deletedAt": record.deleted_at,
        }
    return {**record.data, "id": record.id, "updatedAt": record.updated_at}


def status_to_response(status: dict[str, dict[str, int | None]]) -> dict[str, TableStatus]:
    """Convert Database.table_status output to response models."""
    return {
        table: TableStatus(
            latest_updated_at=values["latest_updated_at"],
            records=values["records"] or 0,
            tombstones=values["tombstones"] or 0,
        )
        for table, values in status.items()
    }
