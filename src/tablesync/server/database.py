"""Server database using SQLAlchemy with SQLite.

This module provides:
- User and token-based authentication
- Delta queries for pull (rows and tombstones changed since a watermark)
- Batched push application under one transaction with per-record savepoints
- Device cursors and tombstone purge
"""

from __future__ import annotations

import hashlib
import logging
import secrets
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any

from sqlalchemy import create_engine, event, func, select
from sqlalchemy.orm import Session

from tablesync.core.types import SyncStatus, now_ms
from tablesync.server.models import (
    Base,
    ClientRef,
    DeviceCursor,
    IssuedWatermark,
    SyncRecord,
    Token,
    User,
)

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from tablesync.core.schemas import PushRecord

logger = logging.getLogger(__name__)

MS_PER_DAY = 24 * 60 * 60 * 1000

# Execution option that makes a transaction take the SQLite write lock on BEGIN
WRITE_LOCK_OPTION = "tablesync_write_lock"


def hash_token(token: str) -> str:
    """Hash a token using SHA-256.

    Args:
        token: Raw token string.

    Returns:
        Hex-encoded SHA-256 hash.
    """
    return hashlib.sha256(token.encode()).hexdigest()


class RecordRejected(Exception):
    """Raised when a single pushed record cannot be applied."""


@dataclass
class PushOutcome:
    """Result of applying one push batch."""

    processed_ids: list[int] = field(default_factory=list)
    assigned_ids: list[tuple[int, int]] = field(default_factory=list)
    server_timestamp: int = 0
    failed: int = 0
    stamps: dict[int, int] = field(default_factory=dict)


class Database:
    """SQLAlchemy database for synced records.

    Uses SQLite with WAL mode for better concurrency with multiple readers.
    Transactions are begun explicitly so per-record SAVEPOINTs work with pysqlite.
    """

    def __init__(self, db_path: Path, clock: Callable[[], int] = now_ms) -> None:
        """Initialize the database.

        Args:
            db_path: Path to the SQLite database file.
            clock: Source of server time in milliseconds.
        """
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._clock = clock

        # Create engine with check_same_thread=False for multi-threaded access
        self._engine: Engine = create_engine(
            f"sqlite:///{self._db_path}",
            connect_args={"check_same_thread": False},
            echo=False,
        )

        @event.listens_for(self._engine, "connect")
        def _on_connect(dbapi_connection: Any, _record: Any) -> None:
            # Let SQLAlchemy emit BEGIN itself; pysqlite's implicit
            # transactions break SAVEPOINT otherwise.
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(self._engine, "begin")
        def _on_begin(conn: Any) -> None:
            if conn.get_execution_options().get(WRITE_LOCK_OPTION):
                conn.exec_driver_sql("BEGIN IMMEDIATE")
            else:
                conn.exec_driver_sql("BEGIN")

        # Create tables if they don't exist
        Base.metadata.create_all(self._engine)

    @property
    def path(self) -> Path:
        return self._db_path

    def now(self) -> int:
        """Current server time in milliseconds."""
        return self._clock()

    def close(self) -> None:
        """Close the database connection."""
        self._engine.dispose()

    def _session(self) -> Session:
        """Create a new database session."""
        return Session(self._engine)

    @contextmanager
    def _write_session(self) -> Iterator[Session]:
        """Create a session whose transaction holds the write lock from BEGIN.

        Sync reads and writes take server time only once the lock is held,
        so stamps and watermarks are handed out in commit order.
        """
        with self._engine.connect() as conn:
            conn = conn.execution_options(**{WRITE_LOCK_OPTION: True})
            with Session(bind=conn) as session:
                # Begin now: the lock is held before the caller reads the clock
                session.connection()
                yield session

    # === User operations ===

    def create_user(self, name: str) -> User:
        """Create a new user.

        Args:
            name: Unique user name.

        Returns:
            Created User object.

        Raises:
            IntegrityError: If name already exists.
        """
        with self._session() as session:
            user = User(name=name)
            session.add(user)
            session.commit()
            session.refresh(user)
            session.expunge(user)
            return user

    def get_user_by_name(self, name: str) -> User | None:
        """Get a user by name."""
        with self._session() as session:
            stmt = select(User).where(User.name == name)
            user = session.execute(stmt).scalar_one_or_none()
            if user:
                session.expunge(user)
            return user

    def get_or_create_user(self, name: str) -> User:
        """Get a user by name, creating it if needed."""
        return self.get_user_by_name(name) or self.create_user(name)

    def update_user_last_seen(self, user_id: int) -> None:
        """Update user's last_seen timestamp."""
        with self._session() as session:
            user = session.get(User, user_id)
            if user:
                user.last_seen = datetime.now(UTC)
                session.commit()

    # === Token operations ===

    def create_token(
        self,
        user_id: int,
        expires_in: timedelta | None = None,
    ) -> tuple[str, Token]:
        """Create a new bearer token.

        Args:
            user_id: User ID to associate with token.
            expires_in: Optional expiration duration.

        Returns:
            Tuple of (raw_token, Token object).
        """
        raw_token = "ts_" + secrets.token_urlsafe(32)
        token_hash = hash_token(raw_token)
        now = datetime.now(UTC)
        expires_at = (now + expires_in) if expires_in else None

        with self._session() as session:
            token = Token(
                user_id=user_id,
                token_hash=token_hash,
                created_at=now,
                expires_at=expires_at,
            )
            session.add(token)
            session.commit()
            session.refresh(token)
            session.expunge(token)
            return raw_token, token

    def validate_token(self, raw_token: str) -> Token | None:
        """Validate a token and return it if valid.

        Args:
            raw_token: Raw token string.

        Returns:
            Token if valid, None otherwise.
        """
        token_hash = hash_token(raw_token)
        with self._session() as session:
            stmt = select(Token).where(Token.token_hash == token_hash, Token.revoked == False)  # noqa: E712
            token = session.execute(stmt).scalar_one_or_none()

            if token is None:
                return None

            # Check expiration (handle both naive and aware datetimes)
            if token.expires_at:
                now = datetime.now(UTC)
                expires_at = token.expires_at
                # If expires_at is naive, assume UTC
                if expires_at.tzinfo is None:
                    expires_at = expires_at.replace(tzinfo=UTC)
                if expires_at < now:
                    return None

            session.expunge(token)
            return token

    def revoke_token(self, token_id: int) -> None:
        """Revoke a token."""
        with self._session() as session:
            token = session.get(Token, token_id)
            if token:
                token.revoked = True
                session.commit()

    # === Pull ===

    def pull_changes(
        self,
        table: str,
        since: int,
        user_id: int | None = None,
    ) -> list[SyncRecord]:
        """Get rows and tombstones of a table changed after a watermark.

        A first pull (since == 0) skips tombstones: the device has nothing to delete.

        Args:
            table: Table name.
            since: Watermark in milliseconds; only updated_at > since is returned.
            user_id: Restrict to records owned by this user.

        Returns:
            Records ordered by updated_at ascending.
        """
        with self._session() as session:
            return self._changes(session, table, since, user_id)

    def pull(
        self,
        table: str,
        since: int,
        device_id: str,
        user_id: int | None = None,
        *,
        scope_by_user: bool = False,
    ) -> tuple[int, list[SyncRecord]]:
        """Serve a device pull: read the delta and issue the next watermark.

        Runs under the write lock. Every push that took a stamp before this
        point has committed, and every later push stamps above the returned
        watermark, so a device never moves past a record it has not seen.
        The device cursor never moves backwards.

        Args:
            table: Table name.
            since: Watermark the device reported.
            device_id: Pulling device.
            user_id: Authenticated user.
            scope_by_user: Only return records owned by user_id.

        Returns:
            Tuple of (new watermark, records).
        """
        with self._write_session() as session:
            now = self._clock()
            records = self._changes(
                session, table, since, user_id if scope_by_user else None
            )

            issued = session.get(IssuedWatermark, table)
            if issued is None:
                session.add(IssuedWatermark(table_name=table, watermark=now))
            else:
                issued.watermark = max(issued.watermark, now)

            cursor = session.get(DeviceCursor, (device_id, table))
            if cursor is None:
                session.add(
                    DeviceCursor(
                        device_id=device_id,
                        table_name=table,
                        last_sync=since,
                        user_id=user_id,
                        seen_at=now,
                    )
                )
            else:
                cursor.last_sync = max(cursor.last_sync, since)
                cursor.seen_at = now
                cursor.user_id = user_id
            session.commit()
        return now, records

    @staticmethod
    def _changes(
        session: Session, table: str, since: int, user_id: int | None
    ) -> list[SyncRecord]:
        stmt = (
            select(SyncRecord)
            .where(SyncRecord.table_name == table, SyncRecord.updated_at > since)
            .order_by(SyncRecord.updated_at.asc(), SyncRecord.id.asc())
        )
        if since == 0:
            stmt = stmt.where(SyncRecord.deleted_at.is_(None))
        if user_id is not None:
            stmt = stmt.where(SyncRecord.owner_id == user_id)
        records = list(session.execute(stmt).scalars().all())
        # Detach before commit so the records are not expired
        for record in records:
            session.expunge(record)
        return records

    def get_record(self, record_id: int) -> SyncRecord | None:
        """Get a record (live or tombstone) by id."""
        with self._session() as session:
            record = session.get(SyncRecord, record_id)
            if record:
                session.expunge(record)
            return record

    # === Push ===

    def apply_push(
        self,
        table: str,
        records: Sequence[PushRecord],
        device_id: str,
        user_id: int | None = None,
        *,
        scope_by_user: bool = False,
        reject_stale_writes: bool = False,
    ) -> PushOutcome:
        """Apply a batch of pushed records in a single transaction.

        Every record runs inside its own SAVEPOINT: a failing record is logged,
        rolled back and left out of processed_ids while the rest commit.
        The batch time is taken once the write lock is held and is never at
        or below a watermark already issued for the table. Records are
        stamped with it, never earlier than the client-supplied updated_at.

        Args:
            table: Whitelisted table name.
            records: Records to apply.
            device_id: Pushing device.
            user_id: Authenticated user.
            scope_by_user: Refuse to touch records owned by another user.
            reject_stale_writes: Refuse upserts older than the stored record.

        Returns:
            PushOutcome with processed ids, ids assigned to offline creates,
            the stored stamp of each processed record, and the batch server
            timestamp.
        """
        if not records:
            return PushOutcome(server_timestamp=self._clock())

        with self._write_session() as session:
            try:
                now = self._clock()
                issued = session.get(IssuedWatermark, table)
                if issued is not None:
                    now = max(now, issued.watermark + 1)
                outcome = PushOutcome(server_timestamp=now)

                for record in records:
                    try:
                        with session.begin_nested():
                            record_id, stamp = self._apply_record(
                                session,
                                table,
                                record,
                                device_id,
                                user_id,
                                now,
                                scope_by_user=scope_by_user,
                                reject_stale_writes=reject_stale_writes,
                            )
                    except RecordRejected as e:
                        outcome.failed += 1
                        logger.warning(
                            "Rejected %s record (id=%s, clientRef=%s): %s",
                            table,
                            record.id,
                            record.client_ref,
                            e,
                        )
                        continue
                    except Exception:
                        outcome.failed += 1
                        logger.exception(
                            "Failed to apply %s record (id=%s, clientRef=%s)",
                            table,
                            record.id,
                            record.client_ref,
                        )
                        continue

                    outcome.processed_ids.append(record_id)
                    outcome.stamps[record_id] = stamp
                    if record.client_ref is not None:
                        outcome.assigned_ids.append((record.client_ref, record_id))

                session.commit()
            except Exception:
                session.rollback()
                raise

        return outcome

    def _find_target(
        self,
        session: Session,
        table: str,
        record: PushRecord,
        device_id: str,
    ) -> SyncRecord | None:
        if record.id is not None:
            target = session.get(SyncRecord, record.id)
        elif record.client_ref is not None:
            ref = session.get(ClientRef, (table, device_id, record.client_ref))
            target = session.get(SyncRecord, ref.record_id) if ref else None
        else:
            return None
        if target is not None and target.table_name != table:
            raise RecordRejected(f"id {target.id} belongs to table {target.table_name!r}")
        return target

    def _insert(
        self,
        session: Session,
        table: str,
        record: PushRecord,
        device_id: str,
        user_id: int | None,
        data: dict[str, Any],
        stamp: int,
        deleted_at: int | None = None,
    ) -> SyncRecord:
        target = SyncRecord(
            id=record.id,
            table_name=table,
            data=data,
            updated_at=stamp,
            deleted_at=deleted_at,
            owner_id=user_id,
            last_device_id=device_id,
        )
        session.add(target)
        session.flush()
        if record.client_ref is not None:
            session.add(
                ClientRef(
                    table_name=table,
                    device_id=device_id,
                    client_ref=record.client_ref,
                    record_id=target.id,
                )
            )
        return target

    def _apply_record(
        self,
        session: Session,
        table: str,
        record: PushRecord,
        device_id: str,
        user_id: int | None,
        now: int,
        *,
        scope_by_user: bool,
        reject_stale_writes: bool,
    ) -> tuple[int, int]:
        """Apply one record and return its (id, stored updated_at)."""
        target = self._find_target(session, table, record, device_id)

        if (
            scope_by_user
            and target is not None
            and target.owner_id is not None
            and target.owner_id != user_id
        ):
            raise RecordRejected("record owned by another user")

        stamp = max(now, record.updated_at or 0)

        if record.sync_status == SyncStatus.PENDING_DELETE:
            if target is None:
                if record.id is not None:
                    # Already gone: deleting twice is not an error
                    return record.id, stamp
                if record.client_ref is None:
                    raise RecordRejected("delete without a server id or clientRef")
                # The create never arrived. Keep a tombstone under the
                # reference so a late replay of it stays deleted.
                target = self._insert(
                    session, table, record, device_id, user_id, {}, stamp, deleted_at=stamp
                )
                logger.debug("Recorded delete of unseen %s record %d", table, target.id)
                return target.id, target.updated_at
            if not target.is_tombstone:
                target.deleted_at = stamp
                target.updated_at = max(stamp, target.updated_at)
                target.data = {}
                target.last_device_id = device_id
                logger.debug("Deleted %s record %d", table, target.id)
            return target.id, target.updated_at

        fields = record.domain_fields

        if target is None:
            target = self._insert(session, table, record, device_id, user_id, fields, stamp)
            logger.debug("Created %s record %d", table, target.id)
            return target.id, target.updated_at

        if record.id is None and target.is_tombstone:
            # Late replay of a create the device has since deleted
            logger.debug("Ignored replayed create of deleted %s record %d", table, target.id)
            return target.id, target.updated_at

        if (
            reject_stale_writes
            and record.updated_at is not None
            and record.updated_at < target.updated_at
        ):
            raise RecordRejected(
                f"stale write: {record.updated_at} older than stored {target.updated_at}"
            )

        if (
            not target.is_tombstone
            and target.data == fields
            and (record.updated_at or 0) <= target.updated_at
        ):
            # Replayed batch: nothing changed, keep the stored stamp
            return target.id, target.updated_at

        target.data = fields
        target.deleted_at = None
        target.updated_at = max(stamp, target.updated_at)
        target.last_device_id = device_id
        if target.owner_id is None:
            target.owner_id = user_id
        logger.debug("Updated %s record %d", table, target.id)
        return target.id, target.updated_at

    # === Status and maintenance ===

    def table_status(
        self,
        tables: Sequence[str],
        user_id: int | None = None,
    ) -> dict[str, dict[str, int | None]]:
        """Summarize each table: newest change, live rows and tombstones."""
        status: dict[str, dict[str, int | None]] = {}
        with self._session() as session:
            for table in tables:
                stmt = select(
                    func.max(SyncRecord.updated_at),
                    func.count(SyncRecord.id).filter(SyncRecord.deleted_at.is_(None)),
                    func.count(SyncRecord.id).filter(SyncRecord.deleted_at.is_not(None)),
                ).where(SyncRecord.table_name == table)
                if user_id is not None:
                    stmt = stmt.where(SyncRecord.owner_id == user_id)
                latest, live, tombstones = session.execute(stmt).one()
                status[table] = {
                    "latest_updated_at": latest,
                    "records": live or 0,
                    "tombstones": tombstones or 0,
                }
        return status

    def purge_tombstones(self, older_than_days: int = 30) -> int:
        """Permanently delete tombstones every active device has pulled past.

        A tombstone is purged when it is older than the retention window and
        every device seen within that window reported a watermark at or
        beyond its deletion stamp. Devices silent for longer than the window
        no longer hold tombstones back.

        Args:
            older_than_days: Retention window in days.

        Returns:
            Number of tombstones purged.
        """
        now = self._clock()
        cutoff = now - older_than_days * MS_PER_DAY
        with self._session() as session:
            cursors = list(
                session.execute(
                    select(DeviceCursor).where(DeviceCursor.seen_at >= cutoff)
                ).scalars().all()
            )
            floor: dict[str, int] = {}
            for cursor in cursors:
                current = floor.get(cursor.table_name)
                floor[cursor.table_name] = (
                    cursor.last_sync if current is None else min(current, cursor.last_sync)
                )

            stmt = select(SyncRecord).where(
                SyncRecord.deleted_at.is_not(None),
                SyncRecord.deleted_at < cutoff,
            )
            purged = 0
            for record in session.execute(stmt).scalars().all():
                table_floor = floor.get(record.table_name)
                if table_floor is not None and table_floor < record.updated_at:
                    continue
                session.delete(record)
                purged += 1
            session.commit()

        if purged:
            logger.info("Purged %d tombstones older than %d days", purged, older_than_days)
        return purged
