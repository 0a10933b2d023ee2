"""Sync engine: one pull-then-push cycle across the configured tables.

This module provides:
- SyncEngine: Runs cycles, single-flight per process
- PullWorker: Downloads deltas, resolves conflicts, advances watermarks
- PushWorker: Uploads pending rows and finalizes them from the server answer
- Watermarks: Per-table lastSync values, never decreasing
- CancellationToken: Checked at every suspension point of a cycle
- CycleResult: Per-table summary of a cycle

Local effects are applied per record, only after the server answered, so
a cancelled or failed cycle never leaves half-applied state behind.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass, field, replace
from typing import Any, TypeVar

from tablesync.client.api import (
    AuthenticationError,
    HTTPClient,
    TransportError,
    ValidationError,
)
from tablesync.client.device import DeviceIdentity
from tablesync.client.events import (
    AuthExpired,
    ConflictUnresolved,
    CycleCompleted,
    EventSink,
    SyncEvent,
    TableSyncFailed,
    log_event,
)
from tablesync.client.resolver import Side, is_tombstone, resolve
from tablesync.client.retry import retry_with_backoff
from tablesync.client.store import Change, Row, RowStore, is_temporary_id
from tablesync.core.config import SyncConfig
from tablesync.core.schemas import PushResponse
from tablesync.core.types import SyncStatus, now_ms

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Row keys that never leave the device
LOCAL_ONLY_FIELDS = frozenset({"serverLastModified", "deleted", "deletedAt"})

LAST_CYCLE_KEY = "lastCycleAt"


class SyncCancelled(Exception):
    """Raised inside a cycle once its cancellation token is set."""


class CancellationToken:
    """Cooperative cancellation for one cycle."""

    def __init__(self) -> None:
        self._event = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def check(self) -> None:
        """Raise SyncCancelled if the cycle was cancelled."""
        if self._event.is_set():
            raise SyncCancelled()

    def sleep(self, seconds: float) -> None:
        """Sleep, waking up early with SyncCancelled on cancellation."""
        if self._event.wait(seconds):
            raise SyncCancelled()


class Watermarks:
    """Per-table pull watermarks persisted as ``lastSync_<table>`` settings."""

    PREFIX = "lastSync_"

    def __init__(self, store: RowStore) -> None:
        self._store = store

    def get(self, table: str) -> int:
        value = self._store.get_setting(self.PREFIX + table)
        return int(value) if value else 0

    def advance(self, table: str, value: int) -> int:
        """Move a watermark forward; a smaller value leaves it unchanged.

        Returns:
            The watermark now stored.
        """
        current = self.get(table)
        if value > current:
            self._store.set_setting(self.PREFIX + table, str(value))
            return value
        return current


@dataclass
class TableResult:
    """What one cycle did to one table."""

    pulled: int = 0
    pushed: int = 0
    removed: int = 0
    conflicts: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class CycleResult:
    """Summary of one cycle."""

    started_at: int
    finished_at: int | None = None
    tables: dict[str, TableResult] = field(default_factory=dict)
    auth_expired: bool = False
    cancelled: bool = False
    error: str | None = None

    def table(self, name: str) -> TableResult:
        return self.tables.setdefault(name, TableResult())

    @property
    def ok(self) -> bool:
        """True if every step of every table succeeded."""
        return (
            not self.auth_expired
            and not self.cancelled
            and not any(t.errors for t in self.tables.values())
        )

    @property
    def pulled(self) -> int:
        return sum(t.pulled for t in self.tables.values())

    @property
    def pushed(self) -> int:
        return sum(t.pushed for t in self.tables.values())

    @property
    def removed(self) -> int:
        return sum(t.removed for t in self.tables.values())

    @property
    def conflicts(self) -> int:
        return sum(t.conflicts for t in self.tables.values())

    @property
    def failed_tables(self) -> list[str]:
        return [name for name, t in self.tables.items() if t.errors]

    def summary(self) -> str:
        text = (
            f"{self.pulled} pulled, {self.pushed} pushed, "
            f"{self.removed} removed, {self.conflicts} conflicts"
        )
        if self.auth_expired:
            text += ", authentication expired"
        if self.cancelled:
            text += ", cancelled"
        if self.failed_tables:
            text += f", failed: {', '.join(self.failed_tables)}"
        return text


@dataclass(frozen=True)
class CycleState:
    """Snapshot of the engine's cycle state."""

    running: bool = False
    started_at: int | None = None
    last_error: str | None = None
    last_result: CycleResult | None = None


def _batches(rows: Sequence[Row], size: int) -> Iterator[Sequence[Row]]:
    for start in range(0, len(rows), size):
        yield rows[start : start + size]


def to_wire(row: Row) -> dict[str, Any]:
    """Convert a pending local row to a push record.

    Rows still holding a temporary id are sent without an id; the temporary
    id travels as clientRef so the server can answer with the real one.
    """
    record = {
        k: v for k, v in row.items() if not k.startswith("_") and k not in LOCAL_ONLY_FIELDS
    }
    if is_temporary_id(row["id"]):
        record["id"] = None
        record["clientRef"] = row["id"]
    return record


class _Worker:
    """Shared plumbing of the pull and push workers."""

    def __init__(
        self,
        store: RowStore,
        api: HTTPClient,
        config: SyncConfig,
        device_id: str,
        clock: Callable[[], int],
        emit: Callable[[SyncEvent], None],
    ) -> None:
        self._store = store
        self._api = api
        self._config = config
        self._device_id = device_id
        self._clock = clock
        self._emit = emit

    def _request(self, func: Callable[[], T], token: CancellationToken, description: str) -> T:
        def attempt() -> T:
            token.check()
            return func()

        return retry_with_backoff(
            attempt,
            max_retries=self._config.max_retries,
            base_delay=self._config.retry_delay_ms / 1000,
            sleep=token.sleep,
            description=description,
        )


class PullWorker(_Worker):
    """Downloads server deltas for one table at a time."""

    def __init__(self, *args: Any, watermarks: Watermarks, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._watermarks = watermarks

    @staticmethod
    def _as_synced(remote: Row) -> Row:
        row = {k: v for k, v in remote.items() if k not in ("deleted", "deletedAt")}
        row["syncStatus"] = int(SyncStatus.SYNCED)
        row["serverLastModified"] = remote.get("updatedAt")
        return row

    def pull_table(self, table: str, outcome: TableResult, token: CancellationToken) -> None:
        """Pull one table and apply the delta locally.

        Rows with a pending local change go through the conflict resolver;
        all other rows take the server version.
        """
        since = self._watermarks.get(table)
        response = self._request(
            lambda: self._api.pull(table, since, self._device_id), token, f"Pull of {table!r}"
        )
        token.check()

        strategy = self._config.strategy_for(table)
        changes: list[Change] = []

        for remote in response.data:
            remote_id = remote.get("id")
            if not isinstance(remote_id, int):
                logger.warning("Ignoring pulled %s row without an id: %r", table, remote)
                continue

            local = self._store.get(table, remote_id)
            if local is not None and SyncStatus(local["syncStatus"]).is_pending:
                outcome.conflicts += 1
                resolution = resolve(local, remote, strategy, self._config.timestamp_field)
                if resolution.side is Side.LOCAL:
                    logger.debug("Kept local %s row %d over server version", table, remote_id)
                    continue
                if resolution.side is Side.MERGED:
                    changes.append((remote_id, local, resolution.record))
                    self._emit(ConflictUnresolved(table, remote_id, local, remote))
                    continue

            if is_tombstone(remote):
                if local is not None:
                    changes.append((remote_id, local, None))
                continue
            changes.append((remote_id, local, self._as_synced(remote)))

        # Rows edited locally since they were read keep the local edit
        skipped = set(self._store.apply_if_unchanged(table, changes))
        if skipped:
            logger.info(
                "Left %d %s rows edited during pull for the next cycle: %s",
                len(skipped),
                table,
                sorted(skipped),
            )
        deleted = sum(
            1
            for row_id, _, replacement in changes
            if replacement is None and row_id not in skipped
        )

        outcome.pulled += len(response.data)
        watermark = self._watermarks.advance(
            table, response.server_last_sync_timestamp or self._clock()
        )
        logger.info(
            "Pulled %d %s rows (%d deleted locally), lastSync=%d",
            len(response.data),
            table,
            deleted,
            watermark,
        )


class PushWorker(_Worker):
    """Uploads pending rows of one table at a time."""

    def push_table(self, table: str, outcome: TableResult, token: CancellationToken) -> None:
        """Push pending rows of a table in batches and finalize the accepted ones.

        Rows awaiting manual conflict resolution are held back.
        """
        rows = [row for row in self._store.pending(table) if not row.get("_conflict")]
        if not rows:
            return

        for batch in _batches(rows, self._config.batch_size):
            token.check()
            records = [to_wire(row) for row in batch]
            # From here on the server may know these rows even if the answer is lost
            self._store.mark_sent(
                table, [row["id"] for row in batch if is_temporary_id(row["id"])]
            )
            response = self._request(
                lambda: self._api.push(table, records, self._device_id),
                token,
                f"Push of {len(records)} {table!r} rows",
            )
            self._finalize(table, batch, response, outcome)

        logger.info(
            "Pushed %s: %d synced, %d removed, %d still pending",
            table,
            outcome.pushed,
            outcome.removed,
            len(rows) - outcome.pushed - outcome.removed,
        )

    def _finalize(
        self,
        table: str,
        batch: Sequence[Row],
        response: PushResponse,
        outcome: TableResult,
    ) -> None:
        processed = set(response.processed_ids)
        assigned = {a.client_ref: a.id for a in response.assigned_ids}
        stamps = {s.id: s.updated_at for s in response.stamps}

        for sent in batch:
            local_id = sent["id"]
            server_id = assigned.get(local_id) if is_temporary_id(local_id) else local_id
            if server_id is None or server_id not in processed:
                continue

            if server_id != local_id:
                self._store.rekey(table, local_id, server_id)

            # Re-read: the row may have changed while the request was in flight
            current = self._store.get(table, server_id)
            if current is None:
                continue
            if (
                current["updatedAt"] != sent["updatedAt"]
                or current["syncStatus"] != sent["syncStatus"]
            ):
                logger.debug("%s row %d changed during push; left pending", table, server_id)
                continue

            if sent["syncStatus"] == SyncStatus.PENDING_DELETE:
                self._store.delete(table, server_id)
                outcome.removed += 1
            else:
                # Keep the stamp the server stored so later pulls match
                stamp = stamps.get(server_id, max(sent["updatedAt"], response.server_timestamp))
                self._store.mark_sync(
                    table,
                    server_id,
                    SyncStatus.SYNCED,
                    updated_at=stamp,
                    server_last_modified=stamp,
                )
                outcome.pushed += 1


class SyncEngine:
    """Runs sync cycles: pull every table, then push every table.

    At most one cycle runs at a time; a second call while a cycle is in
    progress returns immediately.
    """

    def __init__(
        self,
        store: RowStore,
        api: HTTPClient,
        config: SyncConfig | None = None,
        *,
        device: DeviceIdentity | None = None,
        clock: Callable[[], int] = now_ms,
        on_event: EventSink | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            store: Local row store.
            api: HTTP client, already holding the credential provider.
            config: Sync options; defaults apply if None.
            device: Device identity; read from the store if None.
            clock: Millisecond clock.
            on_event: Callback receiving engine events; logs them if None.
        """
        self._store = store
        self._api = api
        self._config = config or SyncConfig()
        self._device = device or DeviceIdentity(store)
        self._clock = clock
        self._on_event = on_event or log_event
        self._lock = threading.Lock()
        self._state = CycleState()
        self.watermarks = Watermarks(store)

        worker_args = (store, api, self._config, self._device.device_id, clock, self._emit)
        self._puller = PullWorker(*worker_args, watermarks=self.watermarks)
        self._pusher = PushWorker(*worker_args)

    @property
    def config(self) -> SyncConfig:
        return self._config

    @property
    def device_id(self) -> str:
        return self._device.device_id

    @property
    def state(self) -> CycleState:
        return self._state

    @property
    def running(self) -> bool:
        return self._state.running

    def _emit(self, event: SyncEvent) -> None:
        try:
            self._on_event(event)
        except Exception:
            logger.exception("Sync event handler failed for %s", type(event).__name__)

    def _step(
        self,
        table: str,
        phase: str,
        work: Callable[[str, TableResult, CancellationToken], None],
        result: CycleResult,
        token: CancellationToken,
    ) -> None:
        token.check()
        outcome = result.table(table)
        try:
            work(table, outcome, token)
        except ValidationError as e:
            outcome.errors.append(f"{phase}: {e}")
            logger.error(
                "%s of %r rejected by server: %s %s", phase, table, e, e.messages or ""
            )
            self._emit(TableSyncFailed(table, phase, str(e), retryable=False))
        except TransportError as e:
            outcome.errors.append(f"{phase}: {e}")
            logger.error("%s of %r failed, will retry next cycle: %s", phase, table, e)
            self._emit(TableSyncFailed(table, phase, str(e), retryable=True))

    def run_cycle(self, token: CancellationToken | None = None) -> CycleResult | None:
        """Run one cycle unless one is already running.

        Args:
            token: Cancellation token for this cycle.

        Returns:
            The cycle summary, or None if another cycle was in progress.
        """
        if not self._lock.acquire(blocking=False):
            logger.debug("Sync cycle already running; skipping")
            return None

        token = token or CancellationToken()
        result = CycleResult(started_at=self._clock())
        self._state = replace(self._state, running=True, started_at=result.started_at)
        tables = list(self._config.sync_tables)
        logger.info("Starting sync cycle for %d tables", len(tables))

        current_table: str | None = None
        try:
            for phase, work in (
                ("pull", self._puller.pull_table),
                ("push", self._pusher.push_table),
            ):
                for current_table in tables:
                    self._step(current_table, phase, work, result, token)
        except AuthenticationError as e:
            result.auth_expired = True
            result.error = str(e)
            logger.warning("Sync cycle aborted: authentication expired (%s)", e)
            self._emit(AuthExpired(str(e), table=current_table))
        except SyncCancelled:
            result.cancelled = True
            logger.info("Sync cycle cancelled")
        finally:
            result.finished_at = self._clock()
            if result.error is None and result.failed_tables:
                first = result.tables[result.failed_tables[0]]
                result.error = first.errors[0]
            self._state = CycleState(
                running=False,
                started_at=result.started_at,
                last_error=result.error,
                last_result=result,
            )
            self._lock.release()

        if result.ok:
            self._store.set_setting(LAST_CYCLE_KEY, str(result.finished_at))
        self._emit(CycleCompleted(result))
        return result
