"""SQLAlchemy models for the tablesync server.

This module defines the database schema using SQLAlchemy ORM.

Domain tables are not modelled individually: every syncable row lives in
``sync_records`` keyed by a server-assigned id, tagged with its table name,
and carries its domain fields as a JSON document.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""


class User(Base):
    """Represents an account that owns sync credentials."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
    )
    last_seen: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
    )

    # Relationships
    tokens: Mapped[list[Token]] = relationship(
        "Token", back_populates="user", cascade="all, delete-orphan"
    )


class Token(Base):
    """Represents a bearer credential."""

    __tablename__ = "tokens"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    token_hash: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
    )
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    revoked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Relationships
    user: Mapped[User] = relationship("User", back_populates="tokens")

    # Indexes
    __table_args__ = (Index("idx_tokens_hash", "token_hash"),)


class SyncRecord(Base):
    """A row of a syncable table, or its tombstone.

    Timestamps are integer milliseconds since the epoch, as on the wire.
    A tombstone keeps its id with ``deleted_at`` set and ``updated_at``
    equal to the deletion time, so deltas pick it up like any other change.
    """

    __tablename__ = "sync_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    table_name: Mapped[str] = mapped_column(String(64), nullable=False)
    data: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    updated_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    deleted_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    owner_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    last_device_id: Mapped[str | None] = mapped_column(String(36), nullable=True)

    # Indexes
    __table_args__ = (
        Index("idx_records_table_updated", "table_name", "updated_at"),
        Index("idx_records_deleted", "deleted_at"),
        # Never reuse ids of purged tombstones
        {"sqlite_autoincrement": True},
    )

    @property
    def is_tombstone(self) -> bool:
        return self.deleted_at is not None


class ClientRef(Base):
    """Maps a device's temporary row id to the server id it was given.

    Lets a re-pushed create land on the same record instead of duplicating it.
    """

    __tablename__ = "client_refs"

    table_name: Mapped[str] = mapped_column(String(64), primary_key=True)
    device_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    client_ref: Mapped[int] = mapped_column(Integer, primary_key=True)
    record_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("sync_records.id", ondelete="CASCADE"), nullable=False
    )


class DeviceCursor(Base):
    """Last watermark a device reported for a table.

    Used to decide when every device has pulled past a tombstone.
    """

    __tablename__ = "device_cursors"

    device_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    table_name: Mapped[str] = mapped_column(String(64), primary_key=True)
    last_sync: Mapped[int] = mapped_column(BigInteger, nullable=False)
    user_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    seen_at: Mapped[int] = mapped_column(BigInteger, nullable=False)


class IssuedWatermark(Base):
    """Highest pull watermark handed out for a table.

    Pushes stamp records above it, so no device can already have pulled
    past a newly written record.
    """

    __tablename__ = "issued_watermarks"

    table_name: Mapped[str] = mapped_column(String(64), primary_key=True)
    watermark: Mapped[int] = mapped_column(BigInteger, nullable=False)
