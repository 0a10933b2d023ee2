"""Scheduler for automatic maintenance tasks.

This module provides:
- Automatic daily tombstone purge at 3:00 AM
- Manual purge for CLI usage
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

if TYPE_CHECKING:
    from tablesync.server.database import Database

logger = logging.getLogger(__name__)


class TombstonePurgeScheduler:
    """Runs the tombstone purge once a day."""

    def __init__(
        self,
        db: Database,
        retention_days: int = 30,
        hour: int = 3,
        minute: int = 0,
    ) -> None:
        """Initialize the scheduler.

        Args:
            db: Database instance.
            retention_days: Minimum age in days before a tombstone may be purged.
            hour: Hour to run the purge job (0-23).
            minute: Minute to run the purge job (0-59).
        """
        self._db = db
        self._retention_days = retention_days
        self._hour = hour
        self._minute = minute
        self._scheduler: BackgroundScheduler | None = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None

    def _purge_job(self) -> None:
        """Job function for scheduled tombstone purge."""
        logger.info(
            "Starting scheduled tombstone purge (retention: %d days)", self._retention_days
        )
        try:
            purged = self._db.purge_tombstones(self._retention_days)
            if purged == 0:
                logger.debug(
                    "Tombstone purge: nothing older than %d days is safe to drop",
                    self._retention_days,
                )
        except Exception:
            logger.exception("Error during scheduled tombstone purge")

    def start(self) -> None:
        """Start the scheduler."""
        if self._scheduler is not None:
            return  # Already running

        self._scheduler = BackgroundScheduler()
        self._scheduler.add_job(
            self._purge_job,
            trigger=CronTrigger(hour=self._hour, minute=self._minute),
            id="tombstone_purge",
            name="Daily tombstone purge",
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info(
            "Tombstone purge scheduler started (daily at %02d:%02d, retention: %d days)",
            self._hour,
            self._minute,
            self._retention_days,
        )

    def stop(self) -> None:
        """Stop the scheduler."""
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("Tombstone purge scheduler stopped")

    def run_now(self) -> int:
        """Run the tombstone purge immediately (manual trigger).

        Returns:
            Number of tombstones purged.
        """
        return self._db.purge_tombstones(self._retention_days)
