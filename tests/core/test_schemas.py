"""Tests for the wire models."""

from __future__ import annotations

from uuid import UUID

import pytest
from pydantic import ValidationError

from tablesync.core.schemas import PullQuery, PushRecord, PushRequest, PushResponse

DEVICE = "11111111-1111-4111-8111-111111111111"


class TestPushRecord:
    """Tests for PushRecord."""

    def test_domain_fields_exclude_envelope(self) -> None:
        """Only domain content should be reported as domain fields."""
        record = PushRecord.model_validate(
            {
                "id": 3,
                "syncStatus": 1,
                "updatedAt": 10,
                "name": "Acme",
                "deleted": False,
                "serverLastModified": 9,
            }
        )

        assert record.id == 3
        assert record.updated_at == 10
        assert record.domain_fields == {"name": "Acme"}

    def test_defaults(self) -> None:
        """A bare record is an upsert without id."""
        record = PushRecord.model_validate({})

        assert record.id is None
        assert record.sync_status == 1
        assert record.client_ref is None

    @pytest.mark.parametrize("status", [0, 3])
    def test_rejects_unknown_sync_status(self, status: int) -> None:
        """Only 1 and 2 are valid pushed statuses."""
        with pytest.raises(ValidationError):
            PushRecord.model_validate({"syncStatus": status})


class TestPushRequest:
    """Tests for PushRequest."""

    @pytest.mark.parametrize("table", ["drop;table", "1abc", "a-b", "_hidden", ""])
    def test_rejects_bad_table_name(self, table: str) -> None:
        """Table names must start with a letter and hold only letters, digits and _."""
        with pytest.raises(ValidationError):
            PushRequest.model_validate({"table": table, "data": [], "deviceId": DEVICE})

    @pytest.mark.parametrize("table", ["budget_items", "clients2", "Invoices"])
    def test_accepts_snake_case_table_name(self, table: str) -> None:
        """Ordinary table names with digits and underscores should validate."""
        request = PushRequest.model_validate({"table": table, "data": [], "deviceId": DEVICE})

        assert request.table == table

    def test_dumps_camel_case(self) -> None:
        """Serialization by alias should produce the wire shape."""
        request = PushRequest(
            table="clients",
            data=[PushRecord.model_validate({"clientRef": -1, "name": "A"})],
            device_id=UUID(DEVICE),
        )

        payload = request.model_dump(by_alias=True, mode="json")

        assert payload["deviceId"] == DEVICE
        assert payload["data"][0]["clientRef"] == -1
        assert payload["data"][0]["name"] == "A"


class TestPullQuery:
    """Tests for PullQuery."""

    def test_to_params(self) -> None:
        """Query parameters should use wire names and string values."""
        query = PullQuery(table="clients", last_sync=42, device_id=UUID(DEVICE))

        assert query.to_params() == {"table": "clients", "lastSync": "42", "deviceId": DEVICE}

    def test_accepts_snake_case_table_name(self) -> None:
        """Pull queries should accept the same table names as pushes."""
        query = PullQuery(table="budget_items", last_sync=0, device_id=UUID(DEVICE))

        assert query.to_params()["table"] == "budget_items"

    def test_rejects_negative_watermark(self) -> None:
        """lastSync must not be negative."""
        with pytest.raises(ValidationError):
            PullQuery(table="clients", last_sync=-1, device_id=UUID(DEVICE))


class TestPushResponse:
    """Tests for PushResponse."""

    def test_parses_assigned_ids(self) -> None:
        """assignedIds should default to empty and parse when present."""
        bare = PushResponse.model_validate({"processedIds": [1], "serverTimestamp": 5})
        full = PushResponse.model_validate(
            {
                "success": True,
                "processedIds": [7],
                "serverTimestamp": 5,
                "assignedIds": [{"clientRef": -1, "id": 7}],
            }
        )

        assert bare.assigned_ids == []
        assert full.assigned_ids[0].client_ref == -1
        assert full.assigned_ids[0].id == 7

    def test_parses_stamps(self) -> None:
        """stamps should default to empty and carry each record's stored updatedAt."""
        bare = PushResponse.model_validate({"processedIds": [1], "serverTimestamp": 5})
        full = PushResponse.model_validate(
            {
                "processedIds": [7],
                "serverTimestamp": 5,
                "stamps": [{"id": 7, "updatedAt": 9}],
            }
        )

        assert bare.stamps == []
        assert full.stamps[0].id == 7
        assert full.stamps[0].updated_at == 9
