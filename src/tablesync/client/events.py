"""Events emitted by the sync engine.

The engine reports to a single callback supplied at construction; there is
no global event bus. Callbacks run on the thread executing the cycle and
must not block.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from tablesync.client.engine import CycleResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthExpired:
    """The server rejected the credential; syncing stops until re-authentication."""

    message: str
    table: str | None = None


@dataclass(frozen=True)
class ConflictUnresolved:
    """A manual-strategy conflict waits for external resolution."""

    table: str
    record_id: int
    local: dict[str, Any] = field(default_factory=dict)
    remote: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TableSyncFailed:
    """One table's pull or push step failed; the cycle moved on."""

    table: str
    phase: str  # "pull" or "push"
    error: str
    retryable: bool


@dataclass(frozen=True)
class CycleCompleted:
    """Summary of a finished cycle."""

    result: CycleResult


SyncEvent = AuthExpired | ConflictUnresolved | TableSyncFailed | CycleCompleted
EventSink = Callable[[SyncEvent], None]


def log_event(event: SyncEvent) -> None:
    """Default event sink: log the event."""
    if isinstance(event, CycleCompleted):
        logger.info("Sync cycle finished: %s", event.result.summary())
    elif isinstance(event, AuthExpired):
        logger.warning("Authentication expired: %s", event.message)
    elif isinstance(event, ConflictUnresolved):
        logger.warning(
            "Unresolved conflict on %s record %d", event.table, event.record_id
        )
    else:
        logger.warning("%s of %r failed: %s", event.phase, event.table, event.error)
