"""Shared test fixtures."""

from __future__ import annotations

import pytest

from tablesync.client.store import VolatileStore


class FakeClock:
    """Millisecond clock advanced by hand."""

    def __init__(self, start: int = 1_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now

    def set(self, ms: int) -> None:
        self.now = ms


@pytest.fixture
def clock() -> FakeClock:
    """A fake millisecond clock starting at 1000."""
    return FakeClock()


class DurableMemoryStore(VolatileStore):
    """In-memory store that behaves like durable storage."""

    @property
    def degraded(self) -> bool:
        return False
