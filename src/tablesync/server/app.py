"""FastAPI application for the tablesync server.

This module creates and configures the FastAPI application with:
- Sync API (pull, push, status)
- Health check
- Daily tombstone purge

Usage:
    uvicorn tablesync.server.app:app_factory --factory --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI

from tablesync.core.config import ServerSettings
from tablesync.server.api.errors import register_error_handlers
from tablesync.server.api.router import router as api_router
from tablesync.server.database import Database
from tablesync.server.scheduler import TombstonePurgeScheduler

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(log_path: Path) -> None:
    """Configure logging to output to both file and stdout.

    Args:
        log_path: Path to the log file.
    """
    formatter = logging.Formatter(LOG_FORMAT)

    # Root logger for tablesync
    root_logger = logging.getLogger("tablesync")
    root_logger.setLevel(logging.INFO)

    # Stdout handler
    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(formatter)
    root_logger.addHandler(stdout_handler)

    # File handler
    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)

    # Also capture uvicorn logs to file
    for uvicorn_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(uvicorn_name)
        uvicorn_logger.addHandler(file_handler)


def create_app(
    db: Database,
    settings: ServerSettings | None = None,
    purge_scheduler: TombstonePurgeScheduler | None = None,
) -> FastAPI:
    """Create FastAPI application with custom database and settings.

    Args:
        db: Database instance.
        settings: Sync settings (whitelist, scoping, retention). Defaults apply if None.
        purge_scheduler: Optional scheduler started and stopped with the app.

    Returns:
        Configured FastAPI application.
    """
    settings = settings or ServerSettings(db_path=db.path)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler for startup/shutdown."""
        # Startup
        logger.info("=" * 60)
        logger.info("tablesync server starting")
        logger.info("=" * 60)
        logger.info("  Database: %s", db.path)
        logger.info("  Tables:   %s", ", ".join(settings.sync_tables))
        logger.info("  Scoping:  %s", "per user" if settings.scope_by_user else "shared")
        logger.info("=" * 60)
        if purge_scheduler:
            purge_scheduler.start()

        yield

        # Shutdown
        if purge_scheduler:
            purge_scheduler.stop()
        logger.info("tablesync server shutting down")

    application = FastAPI(
        title="tablesync server",
        description="Offline-first table synchronization server",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.state.db = db
    application.state.settings = settings

    register_error_handlers(application)
    application.include_router(api_router)

    return application


def app_factory() -> FastAPI:
    """Factory function for uvicorn --factory mode.

    Reads TABLESYNC_* environment variables.
    """
    settings = ServerSettings.from_env()
    setup_logging(settings.log_path)
    db = Database(settings.db_path)
    return create_app(
        db=db,
        settings=settings,
        purge_scheduler=TombstonePurgeScheduler(db, settings.tombstone_retention_days),
    )
