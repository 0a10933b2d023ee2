"""Stable per-install device identity."""

from __future__ import annotations

import logging
import uuid

from tablesync.client.store import RowStore

logger = logging.getLogger(__name__)

DEVICE_ID_KEY = "cloudDeviceId"


class DeviceIdentity:
    """UUID identifying this client install, created on first use."""

    def __init__(self, store: RowStore) -> None:
        self._store = store
        self._device_id: str | None = None

    @property
    def device_id(self) -> str:
        if self._device_id is None:
            stored = self._store.get_setting(DEVICE_ID_KEY)
            if stored is None:
                stored = str(uuid.uuid4())
                self._store.set_setting(DEVICE_ID_KEY, stored)
                logger.info("Created device id %s", stored)
            self._device_id = stored
        return self._device_id

    def __str__(self) -> str:
        return self.device_id
