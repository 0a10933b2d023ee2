"""Pydantic models for the sync wire contract.

Both sides import these: the server uses them as request/response models,
the client uses them to build push payloads and to parse responses.
Field names are snake_case in Python and camelCase on the wire.
"""

from __future__ import annotations

from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# Table names travel in URLs and map to server whitelists
TABLE_NAME_PATTERN = r"^[A-Za-z][A-Za-z0-9_]*$"

# Keys that describe a row's sync envelope rather than its domain content
ENVELOPE_FIELDS = frozenset(
    {"id", "syncStatus", "updatedAt", "clientRef", "deleted", "deletedAt", "serverLastModified"}
)


class WireModel(BaseModel):
    """Base for wire models: camelCase aliases, snake_case attributes."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# === Pull ===


class PullQuery(WireModel):
    """Query parameters of GET /sync/pull."""

    table: str = Field(pattern=TABLE_NAME_PATTERN)
    last_sync: int = Field(ge=0)
    device_id: UUID

    def to_params(self) -> dict[str, str]:
        """Encode as URL query parameters."""
        return {k: str(v) for k, v in self.model_dump(by_alias=True, mode="json").items()}


class PullResponse(WireModel):
    """Response for GET /sync/pull."""

    success: bool = True
    data: list[dict[str, Any]]
    server_last_sync_timestamp: int | None = None


# === Push ===


class PushRecord(WireModel):
    """One row in a push batch.

    Domain fields are kept as extra attributes. A row created offline has no
    server id yet; it carries its local temporary id as client_ref instead.
    """

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="allow"
    )

    id: int | None = None
    sync_status: Literal[1, 2] = 1
    updated_at: int | None = Field(default=None, ge=0)
    client_ref: int | None = None

    @property
    def domain_fields(self) -> dict[str, Any]:
        """Domain fields of the record."""
        extra = self.model_extra or {}
        return {k: v for k, v in extra.items() if k not in ENVELOPE_FIELDS}


class PushRequest(WireModel):
    """Request body for POST /sync/push."""

    table: str = Field(pattern=TABLE_NAME_PATTERN)
    data: list[PushRecord]
    device_id: UUID


class AssignedId(WireModel):
    """Server id assigned to a row the client created offline."""

    client_ref: int
    id: int


class RecordStamp(WireModel):
    """updatedAt the server stored for a processed record."""

    id: int
    updated_at: int


class PushResponse(WireModel):
    """Response for POST /sync/push."""

    success: bool = True
    processed_ids: list[int]
    server_timestamp: int
    message: str | None = None
    assigned_ids: list[AssignedId] = Field(default_factory=list)
    stamps: list[RecordStamp] = Field(default_factory=list)


# === Status ===


class TableStatus(WireModel):
    """Server-side summary of one table."""

    latest_updated_at: int | None
    records: int
    tombstones: int


class StatusData(WireModel):
    """Payload of GET /sync/status."""

    server_time: int
    tables: dict[str, TableStatus]


class StatusResponse(WireModel):
    """Response for GET /sync/status."""

    success: bool = True
    data: StatusData


# === Errors and health ===


class ErrorResponse(WireModel):
    """Error body returned by the sync routes."""

    success: bool = False
    error: str
    code: str
    messages: list[str] | None = None


class HealthResponse(WireModel):
    """Health check response, with the server clock for skew checks."""

    status: str
    server_time: int
