"""Tests for device identity."""

from __future__ import annotations

from pathlib import Path
from uuid import UUID

from tablesync.client.device import DEVICE_ID_KEY, DeviceIdentity
from tablesync.client.store import LocalStore, VolatileStore


class TestDeviceIdentity:
    """Tests for DeviceIdentity."""

    def test_created_on_first_use(self) -> None:
        """A UUID should be generated and persisted on first access."""
        store = VolatileStore()

        device_id = DeviceIdentity(store).device_id

        assert UUID(device_id).version == 4
        assert store.get_setting(DEVICE_ID_KEY) == device_id

    def test_stable_across_restarts(self, tmp_path: Path) -> None:
        """The same store should always give the same id."""
        store = LocalStore(tmp_path / "client.db")
        first = DeviceIdentity(store).device_id
        store.close()

        reopened = LocalStore(tmp_path / "client.db")
        try:
            assert DeviceIdentity(reopened).device_id == first
        finally:
            reopened.close()
