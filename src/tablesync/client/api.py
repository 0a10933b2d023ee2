"""HTTP client for the tablesync server API.

This module provides:
- HTTPClient: HTTP client for the sync endpoints
- The client-side error taxonomy (authentication, validation, transport)
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from typing import Any
from uuid import UUID

import httpx
from pydantic import ValidationError as SchemaError

from tablesync.core.config import ServerConfig
from tablesync.core.schemas import (
    PullQuery,
    PullResponse,
    PushRequest,
    PushResponse,
    StatusResponse,
)

logger = logging.getLogger(__name__)

CredentialProvider = Callable[[], "str | None"]


class APIError(Exception):
    """Base exception for API errors."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(APIError):
    """Credential missing, invalid or expired (401/403)."""


class ValidationError(APIError):
    """Request rejected as invalid (400). Never retried."""

    def __init__(
        self,
        message: str,
        status_code: int | None = 400,
        code: str | None = None,
        messages: list[str] | None = None,
    ) -> None:
        super().__init__(message, status_code)
        self.code = code
        self.messages = messages or []


class TransportError(APIError):
    """Network failure, timeout, or an unexpected server answer. Retried."""


class ServerError(TransportError):
    """Server reported an internal error (500)."""


def _error_body(response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


class HTTPClient:
    """HTTP client for the tablesync sync endpoints."""

    def __init__(
        self,
        config: ServerConfig,
        credentials: CredentialProvider | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            config: Server connection settings.
            credentials: Callable returning the current bearer token. When
                omitted, config.token is used.
            client: Preconfigured httpx client (tests inject one bound to
                the app under test).
        """
        self._config = config
        self._credentials = credentials
        self._owns_client = client is None
        self._client = client or httpx.Client(
            base_url=config.server_url,
            timeout=config.timeout,
            verify=config.verify_ssl,
        )

    @property
    def server_url(self) -> str:
        return self._config.server_url

    def close(self) -> None:
        """Close the HTTP client."""
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> HTTPClient:
        """Context manager entry."""
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.close()

    def _headers(self) -> dict[str, str]:
        token = self._credentials() if self._credentials else self._config.token
        if not token:
            return {}
        return {"Authorization": f"Bearer {token}"}

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = self._client.request(
                method,
                path,
                headers=self._headers(),
                timeout=self._config.timeout,
                **kwargs,
            )
        except httpx.TimeoutException as e:
            raise TransportError(f"Request to {path} timed out") from e
        except httpx.RequestError as e:
            raise TransportError(f"Request to {path} failed: {e}") from e
        return self._handle_response(response)

    def _handle_response(self, response: httpx.Response) -> httpx.Response:
        """Handle API response and raise appropriate exceptions."""
        status = response.status_code
        if status in (401, 403):
            raise AuthenticationError("Invalid or expired credentials", status)
        if status == 400:
            body = _error_body(response)
            raise ValidationError(
                body.get("error", "Invalid request"),
                status,
                code=body.get("code"),
                messages=body.get("messages"),
            )
        if status == 500:
            body = _error_body(response)
            raise ServerError(body.get("error", "Internal server error"), status)
        if status >= 400:
            body = _error_body(response)
            message = body.get("error") or body.get("detail") or f"HTTP {status}"
            raise TransportError(str(message), status)
        return response

    def _parse(self, model: Any, response: httpx.Response) -> Any:
        try:
            return model.model_validate(response.json())
        except (ValueError, SchemaError) as e:
            raise TransportError(
                f"Malformed response from {response.request.url.path}: {e}",
                response.status_code,
            ) from e

    # === Health check ===

    def health_check(self) -> bool:
        """Check if the server is reachable and healthy.

        Returns:
            True if server is healthy.
        """
        try:
            response = self._client.get("/health", timeout=self._config.timeout)
            return response.status_code == 200
        except httpx.RequestError:
            return False

    # === Sync operations ===

    def pull(self, table: str, last_sync: int, device_id: str | UUID) -> PullResponse:
        """Fetch rows of a table changed since a watermark.

        Args:
            table: Table name.
            last_sync: Watermark in milliseconds.
            device_id: This device's id.

        Returns:
            Pulled rows and the new server watermark.
        """
        try:
            query = PullQuery(table=table, last_sync=last_sync, device_id=device_id)
        except SchemaError as e:
            raise ValidationError(f"Invalid pull parameters: {e}", None) from e
        response = self._request("GET", "/sync/pull", params=query.to_params())
        result: PullResponse = self._parse(PullResponse, response)
        return result

    def push(
        self,
        table: str,
        records: Sequence[dict[str, Any]],
        device_id: str | UUID,
    ) -> PushResponse:
        """Send a batch of pending rows.

        Args:
            table: Table name.
            records: Wire-ready rows (id, syncStatus, updatedAt, domain fields).
            device_id: This device's id.

        Returns:
            Processed ids, ids assigned to offline creates and the server timestamp.
        """
        try:
            request = PushRequest.model_validate(
                {"table": table, "data": list(records), "deviceId": str(device_id)}
            )
        except SchemaError as e:
            raise ValidationError(f"Invalid push batch: {e}", None) from e
        response = self._request(
            "POST",
            "/sync/push",
            json=request.model_dump(by_alias=True, mode="json"),
        )
        result: PushResponse = self._parse(PushResponse, response)
        return result

    def status(self) -> StatusResponse:
        """Fetch the server time and per-table summary."""
        response = self._request("GET", "/sync/status")
        result: StatusResponse = self._parse(StatusResponse, response)
        return result
