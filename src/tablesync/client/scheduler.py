"""Drives sync cycles from session and connectivity events.

This module provides:
- SyncScheduler: Periodic cycles while authenticated and online
- ConnectivityMonitor: Polls the server health endpoint and reports
  online/offline transitions
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

from tablesync.client.api import HTTPClient
from tablesync.client.engine import CancellationToken, CycleResult, SyncEngine
from tablesync.core.types import SyncState

logger = logging.getLogger(__name__)


class SyncScheduler:
    """Runs one cycle immediately on start, then one per interval.

    The scheduler runs only while both authenticated and online. Losing
    either stops the timer and cancels the cycle in flight at its next
    suspension point.
    """

    def __init__(
        self,
        engine: SyncEngine,
        interval_ms: int | None = None,
        on_state_change: Callable[[SyncState], None] | None = None,
    ) -> None:
        """Initialize the scheduler.

        Args:
            engine: Sync engine to drive.
            interval_ms: Period between cycles (default: engine config).
            on_state_change: Optional callback for idle/syncing/error/offline.
        """
        self._engine = engine
        self._interval = (interval_ms or engine.config.sync_interval_ms) / 1000
        self._on_state_change = on_state_change

        self._lock = threading.RLock()
        self._authenticated = False
        self._online = True
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._wake_event = threading.Event()
        self._token: CancellationToken | None = None
        self._state = SyncState.IDLE

    @property
    def running(self) -> bool:
        """True while the periodic timer is active."""
        with self._lock:
            return self._thread is not None

    @property
    def state(self) -> SyncState:
        return self._state

    def _set_state(self, state: SyncState) -> None:
        if state is self._state:
            return
        self._state = state
        if self._on_state_change:
            self._on_state_change(state)

    # === Session and connectivity events ===

    def on_authenticated(self) -> None:
        """Credential available: start syncing if online."""
        with self._lock:
            self._authenticated = True
            online = self._online
        if online:
            self.start()

    def on_unauthenticated(self) -> None:
        """Credential gone or expired: stop syncing."""
        with self._lock:
            self._authenticated = False
        self.stop()

    def on_online(self) -> None:
        """Connectivity restored: resume if authenticated."""
        with self._lock:
            self._online = True
            authenticated = self._authenticated
        if authenticated:
            self.start()
        elif self._state is SyncState.OFFLINE:
            self._set_state(SyncState.IDLE)

    def on_offline(self) -> None:
        """Connectivity lost: stop syncing."""
        with self._lock:
            self._online = False
        self.stop()
        self._set_state(SyncState.OFFLINE)

    # === Timer ===

    def start(self) -> None:
        """Start the periodic timer; idempotent. Runs one cycle right away."""
        with self._lock:
            if self._thread is not None:
                return
            self._stop_event = threading.Event()
            self._wake_event = threading.Event()
            self._thread = threading.Thread(
                target=self._run,
                args=(self._stop_event, self._wake_event),
                name="tablesync-scheduler",
                daemon=True,
            )
            self._thread.start()
            logger.info("Sync scheduler started (every %.0fs)", self._interval)

    def stop(self, timeout: float | None = 10.0) -> None:
        """Stop the timer and cancel the cycle in flight."""
        with self._lock:
            thread = self._thread
            if thread is None:
                return
            self._thread = None
            self._stop_event.set()
            self._wake_event.set()
            if self._token is not None:
                self._token.cancel()
        # Stopping from inside a cycle (auth expired) must not join itself
        if thread is not threading.current_thread():
            thread.join(timeout)
        logger.info("Sync scheduler stopped")

    def trigger(self) -> CycleResult | None:
        """Run one cycle now, unless one is already running.

        Returns:
            The cycle summary, or None if a cycle was already in progress.
        """
        if self.running:
            self._wake_event.set()
            return None
        return self._run_cycle()

    def _run(self, stop_event: threading.Event, wake_event: threading.Event) -> None:
        while not stop_event.is_set():
            self._run_cycle()
            wake_event.wait(self._interval)
            wake_event.clear()

    def _run_cycle(self) -> CycleResult | None:
        token = CancellationToken()
        with self._lock:
            self._token = token
        self._set_state(SyncState.SYNCING)

        result = self._engine.run_cycle(token)

        with self._lock:
            if self._token is token:
                self._token = None

        if result is None:
            return None
        if result.auth_expired:
            self._set_state(SyncState.ERROR)
            self.on_unauthenticated()
        elif self._state is not SyncState.OFFLINE:
            self._set_state(SyncState.IDLE if result.ok else SyncState.ERROR)
        return result


class ConnectivityMonitor:
    """Polls the server health endpoint and reports transitions."""

    def __init__(
        self,
        api: HTTPClient,
        on_online: Callable[[], None],
        on_offline: Callable[[], None],
        interval: float = 30.0,
    ) -> None:
        """Initialize the monitor.

        Args:
            api: HTTP client used for health checks.
            on_online: Called when the server becomes reachable.
            on_offline: Called when the server stops answering.
            interval: Seconds between checks.
        """
        self._api = api
        self._on_online = on_online
        self._on_offline = on_offline
        self._interval = interval
        self._online: bool | None = None
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def online(self) -> bool | None:
        """Last observed state, None before the first check."""
        return self._online

    def check(self) -> bool:
        """Check once and fire a callback if the state changed."""
        online = self._api.health_check()
        if online != self._online:
            self._online = online
            if online:
                logger.info("Server %s reachable", self._api.server_url)
                self._on_online()
            else:
                logger.warning("Server %s unreachable, going offline", self._api.server_url)
                self._on_offline()
        return online

    def start(self) -> None:
        """Start polling in a background thread."""
        if self._thread is not None:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name="tablesync-connectivity", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        """Stop polling."""
        if self._thread is None:
            return
        self._stop_event.set()
        self._thread.join(self._interval + 1)
        self._thread = None

    def _run(self) -> None:
        while not self._stop_event.is_set():
            self.check()
            self._stop_event.wait(self._interval)
