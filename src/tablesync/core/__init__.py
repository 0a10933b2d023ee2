"""Core module - Shared types, configuration, and wire schemas."""

from tablesync.core.config import (
    DEFAULT_SYNC_TABLES,
    ServerConfig,
    ServerSettings,
    SyncConfig,
)
from tablesync.core.schemas import (
    PullQuery,
    PullResponse,
    PushRecord,
    PushRequest,
    PushResponse,
    StatusResponse,
)
from tablesync.core.types import (
    PENDING_STATUSES,
    ConflictStrategy,
    SyncState,
    SyncStatus,
    now_ms,
)

__all__ = [
    # Config
    "DEFAULT_SYNC_TABLES",
    "ServerConfig",
    "ServerSettings",
    "SyncConfig",
    # Schemas
    "PullQuery",
    "PullResponse",
    "PushRecord",
    "PushRequest",
    "PushResponse",
    "StatusResponse",
    # Types
    "PENDING_STATUSES",
    "ConflictStrategy",
    "SyncState",
    "SyncStatus",
    "now_ms",
]
