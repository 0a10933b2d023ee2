"""Command-line interface for tablesync.

Provides commands for:
- configure: Save server URL, token and sync options
- sync: Run one sync cycle
- watch: Sync periodically, following connectivity
- status: Show pending changes and server summary
- server run / create-token / purge-tombstones: Server administration
"""

from __future__ import annotations

import json
import logging
import sys
import time
from datetime import timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any

import click

from tablesync.client.api import APIError, HTTPClient
from tablesync.client.engine import LAST_CYCLE_KEY, SyncEngine
from tablesync.client.events import EventSink, SyncEvent, TableSyncFailed, log_event
from tablesync.client.store import RowStore, open_store
from tablesync.core.config import ServerConfig, ServerSettings, SyncConfig

if TYPE_CHECKING:
    from tablesync.server.database import Database

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def get_config_dir() -> Path:
    """Get the configuration directory for tablesync.

    Returns:
        Path to ~/.tablesync or equivalent.
    """
    return Path.home() / ".tablesync"


def get_config_file() -> Path:
    """Get the path to the config file."""
    return get_config_dir() / "config.json"


def load_config() -> dict[str, Any]:
    """Load configuration from config file."""
    config_file = get_config_file()
    if config_file.exists():
        return dict(json.loads(config_file.read_text()))
    return {}


def save_config(config: dict[str, Any]) -> None:
    """Save configuration to config file."""
    config_file = get_config_file()
    config_file.parent.mkdir(parents=True, exist_ok=True)
    config_file.write_text(json.dumps(config, indent=2))


def get_db_path(config: dict[str, Any]) -> Path:
    """Local store path (configured or default ~/.tablesync/client.db)."""
    if config.get("db_path"):
        return Path(config["db_path"]).expanduser()
    return get_config_dir() / "client.db"


def require_registration() -> dict[str, Any]:
    """Load config, exiting with an error if no server is configured."""
    config = load_config()
    if not config.get("server_url") or not config.get("auth_token"):
        click.echo(
            "Error: No server configured. Run 'tablesync configure' first.", err=True
        )
        sys.exit(1)
    return config


def make_api(config: dict[str, Any]) -> HTTPClient:
    """Create the HTTP client for the configured server."""
    return HTTPClient(
        ServerConfig(server_url=config["server_url"], token=config["auth_token"])
    )


def make_engine(
    config: dict[str, Any],
    store: RowStore,
    api: HTTPClient,
    on_event: EventSink | None = None,
) -> SyncEngine:
    """Create the sync engine from the saved config."""
    return SyncEngine(store, api, SyncConfig.from_dict(config), on_event=on_event)


def _setup_logging(verbose: bool) -> None:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    package_logger = logging.getLogger("tablesync")
    for existing in package_logger.handlers[:]:
        package_logger.removeHandler(existing)
    package_logger.addHandler(handler)
    package_logger.setLevel(logging.DEBUG if verbose else logging.WARNING)


@click.group()
@click.version_option(package_name="tablesync")
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging.")
def cli(verbose: bool) -> None:
    """tablesync - Offline-first table synchronization."""
    _setup_logging(verbose)


@cli.command()
@click.option("--server", "server_url", required=True, help="Server URL (e.g., http://localhost:8000).")
@click.option("--token", required=True, help="Bearer token issued by the server admin.")
@click.option("--db-path", default=None, help="Local database file (default: ~/.tablesync/client.db).")
@click.option("--tables", default=None, help="Comma-separated tables to sync, in order.")
@click.option(
    "--strategy",
    type=click.Choice(["lastWriteWins", "clientWins", "serverWins", "mergeManual"]),
    default=None,
    help="Conflict strategy.",
)
@click.option("--interval", "interval_ms", type=int, default=None, help="Sync interval in ms.")
def configure(
    server_url: str,
    token: str,
    db_path: str | None,
    tables: str | None,
    strategy: str | None,
    interval_ms: int | None,
) -> None:
    """Save the server connection and sync options."""
    config = load_config()
    config["server_url"] = server_url.rstrip("/")
    config["auth_token"] = token
    if db_path:
        config["db_path"] = str(Path(db_path).expanduser().resolve())
    if tables:
        config["syncTables"] = [t.strip() for t in tables.split(",") if t.strip()]
    if strategy:
        config["conflictStrategy"] = strategy
    if interval_ms:
        config["syncInterval"] = interval_ms

    try:
        SyncConfig.from_dict(config)
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    save_config(config)
    click.echo(f"Configured server: {config['server_url']}")
    click.echo(f"Config file: {get_config_file()}")


def _echo_result_errors(event: SyncEvent) -> None:
    log_event(event)
    if isinstance(event, TableSyncFailed):
        click.echo(f"  ✗ {event.phase} {event.table}: {event.error}", err=True)


@cli.command()
def sync() -> None:
    """Run one sync cycle: pull every table, then push pending changes."""
    config = require_registration()
    store = open_store(get_db_path(config))
    api = make_api(config)

    try:
        engine = make_engine(config, store, api, on_event=_echo_result_errors)
        click.echo(f"Syncing with {api.server_url}...")
        result = engine.run_cycle()
    finally:
        api.close()
        store.close()

    if result is None:
        click.echo("A sync is already running.")
        return
    if result.auth_expired:
        click.echo("Error: Authentication expired. Run 'tablesync configure' with a new token.", err=True)
        sys.exit(1)

    if result.pulled + result.pushed + result.removed == 0 and result.ok:
        click.echo("Everything is up to date.")
    else:
        click.echo(f"Sync complete: {result.summary()}")
    if not result.ok:
        sys.exit(1)


@cli.command()
@click.option("--check-interval", type=float, default=30.0, help="Seconds between connectivity checks.")
def watch(check_interval: float) -> None:
    """Sync continuously until interrupted.

    Syncs on start, then every sync interval. Pauses while the server is
    unreachable and syncs again as soon as it comes back.
    """
    from tablesync.client.scheduler import ConnectivityMonitor, SyncScheduler

    config = require_registration()
    store = open_store(get_db_path(config))
    api = make_api(config)
    engine = make_engine(config, store, api)

    scheduler = SyncScheduler(
        engine,
        on_state_change=lambda state: click.echo(f"[{state.value}]"),
    )
    monitor = ConnectivityMonitor(
        api,
        on_online=scheduler.on_online,
        on_offline=scheduler.on_offline,
        interval=check_interval,
    )

    click.echo(f"Watching {api.server_url}... (Ctrl+C to stop)\n")
    monitor.check()
    scheduler.on_authenticated()
    monitor.start()
    try:
        while True:
            time.sleep(1.0)
    except KeyboardInterrupt:
        click.echo("\nStopping...")
    finally:
        monitor.stop()
        scheduler.stop()
        api.close()
        store.close()


@cli.command()
def status() -> None:
    """Show local pending changes and the server summary."""
    config = require_registration()
    sync_config = SyncConfig.from_dict(config)
    store = open_store(get_db_path(config))
    api = make_api(config)

    try:
        engine = make_engine(config, store, api)
        click.echo(f"Server: {api.server_url}")
        click.echo(f"Device: {engine.device_id}")
        click.echo(f"Storage: {store.location}")
        last_cycle = store.get_setting(LAST_CYCLE_KEY)
        click.echo(f"Last successful sync: {last_cycle or 'never'}")

        click.echo("\nLocal:")
        for table in sync_config.sync_tables:
            click.echo(
                f"  {table}: {len(store.list_visible(table))} rows, "
                f"{store.count_pending(table)} pending, "
                f"lastSync={engine.watermarks.get(table)}"
            )

        try:
            server_status = api.status()
        except APIError as e:
            click.echo(f"\nServer status unavailable: {e}")
            return

        click.echo(f"\nServer (time {server_status.data.server_time}):")
        for table, info in server_status.data.tables.items():
            click.echo(
                f"  {table}: {info.records} rows, {info.tombstones} tombstones, "
                f"latest={info.latest_updated_at}"
            )
    finally:
        api.close()
        store.close()


# === Server administration ===


@cli.group()
def server() -> None:
    """Server management commands.

    These commands are for server administrators. Paths default to the
    TABLESYNC_* environment variables used by the server.
    """


def _open_server_db(db_path: str | None) -> Database:
    from tablesync.server.database import Database

    resolved = Path(db_path) if db_path else ServerSettings.from_env().db_path
    return Database(resolved)


@server.command("run")
@click.option("--host", default="127.0.0.1", show_default=True, help="Bind address.")
@click.option("--port", default=8000, show_default=True, type=int, help="Bind port.")
def run_server(host: str, port: int) -> None:
    """Run the sync server with uvicorn."""
    import uvicorn

    uvicorn.run("tablesync.server.app:app_factory", factory=True, host=host, port=port)


@server.command("create-token")
@click.argument("name")
@click.option("--db-path", type=click.Path(), default=None, help="Server database file.")
@click.option("--expires-days", type=int, default=None, help="Token lifetime in days.")
def create_token_cmd(name: str, db_path: str | None, expires_days: int | None) -> None:
    """Issue a bearer token for user NAME, creating the user if needed."""
    db = _open_server_db(db_path)
    try:
        user = db.get_or_create_user(name)
        expires_in = timedelta(days=expires_days) if expires_days else None
        raw_token, _ = db.create_token(user.id, expires_in=expires_in)
    finally:
        db.close()

    click.echo(f"Token for {name}:")
    click.echo(raw_token)


@server.command("purge-tombstones")
@click.option(
    "--older-than-days",
    "-d",
    type=int,
    default=None,
    help="Purge tombstones older than N days (default: TABLESYNC_TOMBSTONE_RETENTION_DAYS or 30).",
)
@click.option("--db-path", type=click.Path(), default=None, help="Server database file.")
def purge_tombstones_cmd(older_than_days: int | None, db_path: str | None) -> None:
    """Permanently remove tombstones every active device has pulled.

    This command can be run manually or via cron for scheduled cleanup.
    """
    settings = ServerSettings.from_env()
    days = older_than_days if older_than_days is not None else settings.tombstone_retention_days
    db_file = Path(db_path) if db_path else settings.db_path
    if not db_file.exists():
        click.echo(f"Error: Database not found: {db_file}", err=True)
        click.echo("Make sure the server has been run at least once.", err=True)
        sys.exit(1)

    click.echo(f"Database: {db_file}")
    click.echo(f"Purging tombstones older than {days} days...")
    db = _open_server_db(str(db_file))
    try:
        purged = db.purge_tombstones(days)
    finally:
        db.close()

    if purged:
        click.echo(f"Purged {purged} tombstones.")
    else:
        click.echo("No tombstones to purge.")


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
