"""Liveness route polled by the client connectivity monitor."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from tablesync.core.schemas import HealthResponse
from tablesync.server.api.deps import get_db
from tablesync.server.database import Database

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
def health_check(db: Database = Depends(get_db)) -> HealthResponse:
    """Report liveness without authentication."""
    return HealthResponse(status="ok", server_time=db.now())
