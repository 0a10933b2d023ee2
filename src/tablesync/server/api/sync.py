"""Sync API routes: delta pull, batched push, and status.

Clients poll GET /sync/pull per table with their last watermark and
POST /sync/push with their pending rows. Every route requires a bearer token.
"""

from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse

from tablesync.core.config import ServerSettings
from tablesync.core.schemas import (
    TABLE_NAME_PATTERN,
    AssignedId,
    ErrorResponse,
    PullResponse,
    PushRequest,
    PushResponse,
    RecordStamp,
    StatusData,
    StatusResponse,
)
from tablesync.server.api.deps import get_current_token, get_db, get_settings
from tablesync.server.api.errors import InvalidTableError, error_response
from tablesync.server.database import Database
from tablesync.server.models import Token
from tablesync.server.schemas import record_to_wire, status_to_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"])

ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
}


def require_syncable(table: str, settings: ServerSettings) -> None:
    """Raise InvalidTableError unless the table is whitelisted."""
    if table not in settings.sync_tables:
        raise InvalidTableError(table)


def _scope(token: Token, settings: ServerSettings) -> int | None:
    return token.user_id if settings.scope_by_user else None


@router.get("/pull", response_model=PullResponse, responses=ERROR_RESPONSES)
def pull(
    table: str = Query(..., pattern=TABLE_NAME_PATTERN, description="Table to pull."),
    last_sync: int = Query(
        ...,
        alias="lastSync",
        ge=0,
        description="Watermark in milliseconds; rows changed after it are returned.",
    ),
    device_id: UUID = Query(..., alias="deviceId", description="Pulling device."),
    db: Database = Depends(get_db),
    settings: ServerSettings = Depends(get_settings),
    token: Token = Depends(get_current_token),
) -> PullResponse | JSONResponse:
    """Return rows and tombstones of a table changed since lastSync.

    The new watermark is the server time taken with the write lock held,
    so an empty result still moves the device forward.
    """
    require_syncable(table, settings)

    try:
        server_now, records = db.pull(
            table,
            last_sync,
            str(device_id),
            token.user_id,
            scope_by_user=settings.scope_by_user,
        )
    except Exception:
        logger.exception(
            "Sync pull failed for %r (user=%d, device=%s)", table, token.user_id, device_id
        )
        return error_response(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "Internal server error during sync pull",
            "SERVER_ERROR",
        )

    logger.info(
        "Pull for %r completed: %d records (user=%d, device=%s, lastSync=%d, newLastSync=%d)",
        table,
        len(records),
        token.user_id,
        device_id,
        last_sync,
        server_now,
    )
    return PullResponse(
        data=[record_to_wire(r) for r in records],
        server_last_sync_timestamp=server_now,
    )


@router.post("/push", response_model=PushResponse, responses=ERROR_RESPONSES)
def push(
    payload: PushRequest,
    db: Database = Depends(get_db),
    settings: ServerSettings = Depends(get_settings),
    token: Token = Depends(get_current_token),
) -> PushResponse | JSONResponse:
    """Apply a batch of creates, updates and deletes in one transaction.

    Records that fail are left out of processedIds; the client keeps
    them pending and retries on its next cycle.
    """
    require_syncable(payload.table, settings)

    if not payload.data:
        logger.info(
            "Push for %r received with no records (user=%d, device=%s)",
            payload.table,
            token.user_id,
            payload.device_id,
        )
        return PushResponse(
            processed_ids=[],
            server_timestamp=db.now(),
            message="No records to process.",
        )

    try:
        outcome = db.apply_push(
            payload.table,
            payload.data,
            str(payload.device_id),
            token.user_id,
            scope_by_user=settings.scope_by_user,
            reject_stale_writes=settings.reject_stale_writes,
        )
    except Exception:
        logger.exception(
            "Sync push failed for %r (user=%d, device=%s), transaction rolled back",
            payload.table,
            token.user_id,
            payload.device_id,
        )
        return error_response(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "Internal server error during sync push",
            "SERVER_ERROR",
        )

    logger.info(
        "Push for %r completed: %d/%d records processed (user=%d, device=%s)",
        payload.table,
        len(outcome.processed_ids),
        len(payload.data),
        token.user_id,
        payload.device_id,
    )
    return PushResponse(
        processed_ids=outcome.processed_ids,
        server_timestamp=outcome.server_timestamp,
        message=f"{len(outcome.processed_ids)} of {len(payload.data)} records synchronized.",
        assigned_ids=[
            AssignedId(client_ref=client_ref, id=record_id)
            for client_ref, record_id in outcome.assigned_ids
        ],
        stamps=[
            RecordStamp(id=record_id, updated_at=stamp)
            for record_id, stamp in outcome.stamps.items()
        ],
    )


@router.get("/status", response_model=StatusResponse)
def sync_status(
    db: Database = Depends(get_db),
    settings: ServerSettings = Depends(get_settings),
    token: Token = Depends(get_current_token),
) -> StatusResponse:
    """Report server time and a per-table summary of synced data."""
    tables = db.table_status(settings.sync_tables, user_id=_scope(token, settings))
    return StatusResponse(
        data=StatusData(server_time=db.now(), tables=status_to_response(tables)),
    )
