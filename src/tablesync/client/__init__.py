"""Client module - Local store, change tracking and the sync engine."""

from tablesync.client.api import (
    APIError,
    AuthenticationError,
    HTTPClient,
    ServerError,
    TransportError,
    ValidationError,
)
from tablesync.client.engine import (
    CancellationToken,
    CycleResult,
    SyncCancelled,
    SyncEngine,
    Watermarks,
)
from tablesync.client.resolver import Resolution, Side, resolve
from tablesync.client.scheduler import ConnectivityMonitor, SyncScheduler
from tablesync.client.store import (
    LocalStore,
    RowStore,
    StorageUnavailable,
    VolatileStore,
    open_store,
)
from tablesync.client.tracker import ChangeTracker, Intent

__all__ = [
    # API
    "APIError",
    "AuthenticationError",
    "HTTPClient",
    "ServerError",
    "TransportError",
    "ValidationError",
    # Engine
    "CancellationToken",
    "CycleResult",
    "SyncCancelled",
    "SyncEngine",
    "Watermarks",
    # Resolver
    "Resolution",
    "Side",
    "resolve",
    # Scheduler
    "ConnectivityMonitor",
    "SyncScheduler",
    # Storage
    "LocalStore",
    "RowStore",
    "StorageUnavailable",
    "VolatileStore",
    "open_store",
    # Tracking
    "ChangeTracker",
    "Intent",
]
