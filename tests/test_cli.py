"""Tests for CLI commands - configure, sync, status and server administration."""

from __future__ import annotations

import json
import logging
from collections.abc import Generator
from pathlib import Path
from typing import Any
from unittest.mock import patch

import pytest
from click.testing import CliRunner
from fastapi.testclient import TestClient

from tablesync.client.api import HTTPClient
from tablesync.client.cli import cli
from tablesync.core.config import ServerConfig, ServerSettings
from tablesync.core.schemas import PushRecord
from tablesync.server.app import create_app
from tablesync.server.database import Database

DEVICE = "11111111-1111-4111-8111-111111111111"


@pytest.fixture
def runner() -> CliRunner:
    """Create a CLI test runner."""
    return CliRunner()


@pytest.fixture(autouse=True)
def restore_logging() -> Generator[None, None, None]:
    """The CLI reconfigures the package logger; undo it after each test."""
    package_logger = logging.getLogger("tablesync")
    handlers = package_logger.handlers[:]
    level = package_logger.level
    yield
    package_logger.handlers[:] = handlers
    package_logger.setLevel(level)


@pytest.fixture
def server_db(tmp_path: Path) -> Generator[Database, None, None]:
    """Server database backing the in-process app."""
    database = Database(tmp_path / "server.db")
    yield database
    database.close()


@pytest.fixture
def token(server_db: Database) -> str:
    user = server_db.create_user("cli")
    raw_token, _ = server_db.create_token(user.id)
    return raw_token


@pytest.fixture
def http(server_db: Database, tmp_path: Path) -> TestClient:
    settings = ServerSettings(db_path=tmp_path / "server.db", sync_tables=["clients"])
    return TestClient(create_app(server_db, settings))


def configure(runner: CliRunner, tmp_path: Path, token: str, *extra: str) -> Any:
    with patch("tablesync.client.cli.get_config_dir", return_value=tmp_path):
        return runner.invoke(
            cli,
            ["configure", "--server", "http://testserver/", "--token", token, *extra],
        )


def invoke_with_server(
    runner: CliRunner, tmp_path: Path, http: TestClient, args: list[str]
) -> Any:
    """Run a client command against the in-process server."""

    def make_api(config: dict[str, Any]) -> HTTPClient:
        return HTTPClient(
            ServerConfig(server_url=config["server_url"], token=config["auth_token"]),
            client=http,
        )

    with (
        patch("tablesync.client.cli.get_config_dir", return_value=tmp_path),
        patch("tablesync.client.cli.make_api", side_effect=make_api),
    ):
        return runner.invoke(cli, args)


class TestConfigureCommand:
    """Tests for 'tablesync configure' command."""

    def test_configure_saves_config(self, runner: CliRunner, tmp_path: Path) -> None:
        """Configure should write the server, token and options."""
        result = configure(
            runner, tmp_path, "ts_abc", "--tables", "clients, budgets", "--strategy", "serverWins"
        )

        assert result.exit_code == 0
        assert "Configured server: http://testserver" in result.output
        saved = json.loads((tmp_path / "config.json").read_text())
        assert saved["server_url"] == "http://testserver"
        assert saved["auth_token"] == "ts_abc"
        assert saved["syncTables"] == ["clients", "budgets"]
        assert saved["conflictStrategy"] == "serverWins"

    def test_configure_rejects_unknown_strategy(
        self, runner: CliRunner, tmp_path: Path
    ) -> None:
        """An unknown strategy should be refused."""
        result = configure(runner, tmp_path, "ts_abc", "--strategy", "coinFlip")

        assert result.exit_code != 0
        assert not (tmp_path / "config.json").exists()

    def test_commands_require_configuration(self, runner: CliRunner, tmp_path: Path) -> None:
        """Sync without configuration should fail with a hint."""
        with patch("tablesync.client.cli.get_config_dir", return_value=tmp_path):
            result = runner.invoke(cli, ["sync"])

        assert result.exit_code == 1
        assert "tablesync configure" in result.output


class TestSyncCommand:
    """Tests for 'tablesync sync' command."""

    def test_sync_pulls_then_reports_up_to_date(
        self,
        runner: CliRunner,
        tmp_path: Path,
        http: TestClient,
        server_db: Database,
        token: str,
    ) -> None:
        """A first sync should pull server rows; a second has nothing to do."""
        server_db.apply_push(
            "clients", [PushRecord.model_validate({"syncStatus": 1, "name": "A"})], DEVICE
        )
        configure(runner, tmp_path, token, "--tables", "clients")

        first = invoke_with_server(runner, tmp_path, http, ["sync"])
        second = invoke_with_server(runner, tmp_path, http, ["sync"])

        assert first.exit_code == 0, first.output
        assert "Sync complete: 1 pulled" in first.output
        assert second.exit_code == 0, second.output
        assert "Everything is up to date." in second.output

    def test_sync_with_revoked_token(
        self, runner: CliRunner, tmp_path: Path, http: TestClient
    ) -> None:
        """An unknown token should exit with an authentication error."""
        configure(runner, tmp_path, "ts_unknown", "--tables", "clients")

        result = invoke_with_server(runner, tmp_path, http, ["sync"])

        assert result.exit_code == 1
        assert "Authentication expired" in result.output

    def test_sync_table_rejected(
        self, runner: CliRunner, tmp_path: Path, http: TestClient, token: str
    ) -> None:
        """A table the server does not sync should fail the command."""
        configure(runner, tmp_path, token, "--tables", "clients,secrets")

        result = invoke_with_server(runner, tmp_path, http, ["sync"])

        assert result.exit_code == 1
        assert "failed: secrets" in result.output


class TestStatusCommand:
    """Tests for 'tablesync status' command."""

    def test_status_shows_local_and_server(
        self, runner: CliRunner, tmp_path: Path, http: TestClient, token: str
    ) -> None:
        """Status should list local tables and the server summary."""
        configure(runner, tmp_path, token, "--tables", "clients")

        result = invoke_with_server(runner, tmp_path, http, ["status"])

        assert result.exit_code == 0, result.output
        assert "Server: http://testserver" in result.output
        assert "Last successful sync: never" in result.output
        assert "clients: 0 rows, 0 pending, lastSync=0" in result.output
        assert "clients: 0 rows, 0 tombstones" in result.output


class TestServerCommands:
    """Tests for 'tablesync server' commands."""

    def test_create_token(self, runner: CliRunner, tmp_path: Path) -> None:
        """create-token should print a token the server accepts."""
        db_path = tmp_path / "admin.db"

        result = runner.invoke(cli, ["server", "create-token", "alice", "--db-path", str(db_path)])

        assert result.exit_code == 0, result.output
        assert "Token for alice:" in result.output
        raw_token = result.output.strip().splitlines()[-1]
        db = Database(db_path)
        try:
            assert db.validate_token(raw_token) is not None
            assert db.get_user_by_name("alice") is not None
        finally:
            db.close()

    def test_purge_missing_database(self, runner: CliRunner, tmp_path: Path) -> None:
        """Purging without a database should fail."""
        result = runner.invoke(
            cli, ["server", "purge-tombstones", "--db-path", str(tmp_path / "none.db")]
        )

        assert result.exit_code == 1
        assert "Database not found" in result.output

    def test_purge_removes_old_tombstones(self, runner: CliRunner, tmp_path: Path) -> None:
        """Old tombstones should be purged and counted."""
        db_path = tmp_path / "admin.db"
        db = Database(db_path, clock=lambda: 1_000)
        record_id = db.apply_push(
            "clients", [PushRecord.model_validate({"syncStatus": 1, "name": "A"})], DEVICE
        ).processed_ids[0]
        db.apply_push(
            "clients", [PushRecord.model_validate({"id": record_id, "syncStatus": 2})], DEVICE
        )
        db.close()

        result = runner.invoke(
            cli, ["server", "purge-tombstones", "-d", "30", "--db-path", str(db_path)]
        )
        again = runner.invoke(
            cli, ["server", "purge-tombstones", "-d", "30", "--db-path", str(db_path)]
        )

        assert result.exit_code == 0, result.output
        assert "Purged 1 tombstones." in result.output
        assert "No tombstones to purge." in again.output
