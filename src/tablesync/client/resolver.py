"""Conflict resolution between a local row and its remote version.

resolve() is a pure function: it never mutates its inputs and always
returns fresh dicts.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass
from enum import Enum
from typing import Any

from tablesync.core.types import ConflictStrategy

Row = dict[str, Any]


class Side(Enum):
    """Which version a resolution keeps."""

    LOCAL = "local"
    REMOTE = "remote"
    MERGED = "merged"


@dataclass(frozen=True)
class Resolution:
    """Outcome of resolving one record.

    Attributes:
        side: Winning side, or MERGED for an unresolved manual conflict.
        record: The row to keep. For a remote tombstone this is the
            tombstone itself and the local row should be removed.
    """

    side: Side
    record: Row

    @property
    def unresolved(self) -> bool:
        return self.side is Side.MERGED

    @property
    def deletes(self) -> bool:
        """True if applying this resolution removes the local row."""
        return self.side is Side.REMOTE and is_tombstone(self.record)


def is_tombstone(row: Row) -> bool:
    """True for a pulled row that marks a server-side deletion."""
    return bool(row.get("deleted"))


def _stamp(row: Row, timestamp_field: str) -> int:
    value = row.get(timestamp_field)
    if value is None:
        value = row.get("updatedAt")
    return int(value or 0)


def _merge(local: Row, remote: Row) -> Row:
    # Local fields win so the pending change survives until someone decides.
    # A tombstone has no fields to contribute.
    base = {} if is_tombstone(remote) else copy.deepcopy(remote)
    merged = {**base, **copy.deepcopy(local)}
    merged["_conflict"] = True
    merged["_remote"] = copy.deepcopy(remote)
    return merged


def resolve(
    local: Row | None,
    remote: Row | None,
    strategy: ConflictStrategy = ConflictStrategy.LAST_WRITE_WINS,
    timestamp_field: str = "updatedAt",
) -> Resolution:
    """Decide which version of a record to keep.

    Args:
        local: Local row, or None if the device does not have it.
        remote: Row received from the server, or None.
        strategy: Conflict strategy.
        timestamp_field: Field compared by Last-Write-Wins.

    Returns:
        Resolution naming the winning side and the row to keep.

    Raises:
        ValueError: If both sides are missing.
    """
    if local is None and remote is None:
        raise ValueError("nothing to resolve: both sides are missing")
    if local is None:
        return Resolution(Side.REMOTE, copy.deepcopy(remote))  # type: ignore[arg-type]
    if remote is None:
        return Resolution(Side.LOCAL, copy.deepcopy(local))

    strategy = ConflictStrategy(strategy)
    if strategy is ConflictStrategy.CLIENT_WINS:
        return Resolution(Side.LOCAL, copy.deepcopy(local))
    if strategy is ConflictStrategy.SERVER_WINS:
        return Resolution(Side.REMOTE, copy.deepcopy(remote))
    if strategy is ConflictStrategy.MANUAL:
        return Resolution(Side.MERGED, _merge(local, remote))

    # Last-Write-Wins, ties go to the server
    if _stamp(local, timestamp_field) > _stamp(remote, timestamp_field):
        return Resolution(Side.LOCAL, copy.deepcopy(local))
    return Resolution(Side.REMOTE, copy.deepcopy(remote))
