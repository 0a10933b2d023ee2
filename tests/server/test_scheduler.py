"""Tests for the tombstone purge scheduler."""

from __future__ import annotations

from collections.abc import Generator
from pathlib import Path
from unittest.mock import patch

import pytest

from tablesync.core.schemas import PushRecord
from tablesync.server.database import MS_PER_DAY, Database
from tablesync.server.scheduler import TombstonePurgeScheduler
from tests.conftest import FakeClock

DEVICE = "11111111-1111-4111-8111-111111111111"


@pytest.fixture
def db(tmp_path: Path, clock: FakeClock) -> Generator[Database, None, None]:
    """Create a test database."""
    database = Database(tmp_path / "test.db", clock=clock)
    yield database
    database.close()


def make_old_tombstone(db: Database, clock: FakeClock) -> int:
    """Create a tombstone older than the default retention window."""
    record_id = db.apply_push(
        "clients",
        [PushRecord.model_validate({"clientRef": -1, "syncStatus": 1, "name": "A"})],
        DEVICE,
    ).processed_ids[0]
    db.apply_push(
        "clients", [PushRecord.model_validate({"id": record_id, "syncStatus": 2})], DEVICE
    )
    clock.advance(31 * MS_PER_DAY)
    return record_id


class TestTombstonePurgeScheduler:
    """Tests for TombstonePurgeScheduler class."""

    def test_init_default_values(self, db: Database) -> None:
        """Should initialize with default values."""
        scheduler = TombstonePurgeScheduler(db)

        assert scheduler._retention_days == 30
        assert scheduler._hour == 3
        assert scheduler._minute == 0
        assert not scheduler.running

    def test_init_custom_values(self, db: Database) -> None:
        """Should accept custom values."""
        scheduler = TombstonePurgeScheduler(db, retention_days=7, hour=2, minute=30)

        assert scheduler._retention_days == 7
        assert scheduler._hour == 2
        assert scheduler._minute == 30

    def test_start_creates_scheduler(self, db: Database) -> None:
        """Should create and start APScheduler on start()."""
        scheduler = TombstonePurgeScheduler(db)
        scheduler.start()

        try:
            assert scheduler._scheduler is not None
            assert scheduler._scheduler.running
            assert scheduler._scheduler.get_job("tombstone_purge") is not None
        finally:
            scheduler.stop()

    def test_stop_stops_scheduler(self, db: Database) -> None:
        """Should stop scheduler on stop()."""
        scheduler = TombstonePurgeScheduler(db)
        scheduler.start()
        scheduler.stop()

        assert not scheduler.running

    def test_start_idempotent(self, db: Database) -> None:
        """Should be safe to call start() multiple times."""
        scheduler = TombstonePurgeScheduler(db)
        scheduler.start()
        sched1 = scheduler._scheduler
        scheduler.start()
        sched2 = scheduler._scheduler

        try:
            assert sched1 is sched2
        finally:
            scheduler.stop()

    def test_run_now(self, db: Database, clock: FakeClock) -> None:
        """Should purge immediately with run_now()."""
        record_id = make_old_tombstone(db, clock)

        scheduler = TombstonePurgeScheduler(db, retention_days=30)

        assert scheduler.run_now() == 1
        assert db.get_record(record_id) is None

    def test_purge_job_runs_purge(self, db: Database, clock: FakeClock) -> None:
        """The scheduled job should purge eligible tombstones."""
        record_id = make_old_tombstone(db, clock)

        TombstonePurgeScheduler(db)._purge_job()

        assert db.get_record(record_id) is None

    def test_purge_job_handles_exception(
        self, db: Database, caplog: pytest.LogCaptureFixture
    ) -> None:
        """Should log exceptions in the purge job instead of raising."""
        scheduler = TombstonePurgeScheduler(db)

        with patch.object(db, "purge_tombstones", side_effect=Exception("Test error")):
            scheduler._purge_job()

        assert "Error during scheduled tombstone purge" in caplog.text
