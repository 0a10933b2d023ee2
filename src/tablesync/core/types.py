"""Shared types for tablesync.

This module defines types and enums used by both client and server.
"""

from __future__ import annotations

import time
from enum import Enum, IntEnum


class SyncStatus(IntEnum):
    """Sync marker carried by every local row.

    The integer values are part of the wire contract: pushed rows carry
    1 (create/update) or 2 (delete).
    """

    SYNCED = 0
    PENDING_PUSH = 1
    PENDING_DELETE = 2

    @property
    def is_pending(self) -> bool:
        """True if the row holds a change the server has not acknowledged."""
        return self is not SyncStatus.SYNCED


PENDING_STATUSES = (SyncStatus.PENDING_PUSH, SyncStatus.PENDING_DELETE)


class ConflictStrategy(str, Enum):
    """How the resolver arbitrates between a local and a remote record."""

    LAST_WRITE_WINS = "lastWriteWins"
    CLIENT_WINS = "clientWins"
    SERVER_WINS = "serverWins"
    MANUAL = "mergeManual"


class SyncState(str, Enum):
    """Sync state of a device.

    Reported by the client scheduler and the CLI status command.
    """

    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"
    OFFLINE = "offline"


def now_ms() -> int:
    """Current wall-clock time in milliseconds since the epoch."""
    return int(time.time() * 1000)
