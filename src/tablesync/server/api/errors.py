"""Error bodies and exception handlers for the sync API.

Errors use the body ``{"success": false, "error", "code", "messages"?}``
with codes VALIDATION_ERROR, INVALID_TABLE and SERVER_ERROR.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from tablesync.core.schemas import ErrorResponse

logger = logging.getLogger(__name__)


class InvalidTableError(Exception):
    """Raised when a request names a table outside the sync whitelist."""

    def __init__(self, table: str) -> None:
        super().__init__(f"Table {table!r} is not syncable")
        self.table = table


def error_response(
    status_code: int,
    error: str,
    code: str,
    messages: list[str] | None = None,
) -> JSONResponse:
    """Build a JSON error response."""
    body = ErrorResponse(error=error, code=code, messages=messages)
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(by_alias=True, exclude_none=True),
    )


def _format_error(error: dict[str, Any]) -> str:
    location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
    return f"{location}: {error.get('msg', 'invalid value')}" if location else error.get("msg", "")


def register_error_handlers(app: FastAPI) -> None:
    """Install handlers mapping validation failures to 400 responses."""

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        messages = [_format_error(e) for e in exc.errors()]
        logger.warning(
            "Validation failed for %s %s: %s", request.method, request.url.path, messages
        )
        return error_response(
            status.HTTP_400_BAD_REQUEST,
            "Invalid sync parameters",
            "VALIDATION_ERROR",
            messages,
        )

    @app.exception_handler(InvalidTableError)
    async def _invalid_table(request: Request, exc: InvalidTableError) -> JSONResponse:
        logger.warning("Sync request for non-syncable table %r", exc.table)
        return error_response(
            status.HTTP_400_BAD_REQUEST,
            "Invalid table for synchronization",
            "INVALID_TABLE",
        )
