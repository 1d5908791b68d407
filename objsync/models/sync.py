"""Sync configuration, per-client state and manifest models."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from sqlalchemy import (
    BigInteger,
    Boolean,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from objsync.models.base import Base, UTCDateTime


class SyncDirection(StrEnum):
    """Which way changes flow between the local directory and the remote endpoint."""

    BIDIRECTIONAL = "bidirectional"
    UPLOAD_ONLY = "upload-only"
    DOWNLOAD_ONLY = "download-only"


class SyncStatus(StrEnum):
    """State machine of a sync configuration."""

    IDLE = "idle"
    SCANNING = "scanning"
    SYNCING = "syncing"
    ERROR = "error"
    PAUSED = "paused"


class SyncConfig(Base):
    """A named mirroring relationship between a local directory and a virtual path."""

    __tablename__ = "sync_configs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    source_path: Mapped[str] = mapped_column(Text, nullable=False)
    dest_path: Mapped[str] = mapped_column(Text, nullable=False)
    direction: Mapped[str] = mapped_column(String, nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default=SyncStatus.IDLE)

    interval_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=300)
    workers: Mapped[int] = mapped_column(Integer, nullable=False, default=4)
    chunk_size: Mapped[int] = mapped_column(BigInteger, nullable=False, default=5242880)
    ignore_patterns: Mapped[str] = mapped_column(Text, nullable=False, default="[]")

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    states: Mapped[list[SyncState]] = relationship(
        back_populates="sync_config", cascade="all, delete-orphan"
    )


class SyncState(Base):
    """Per (config, backend, client) progress and error bookkeeping."""

    __tablename__ = "sync_states"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    sync_config_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("sync_configs.id", ondelete="CASCADE"), nullable=False
    )
    backend_id: Mapped[str] = mapped_column(String, nullable=False)
    client_id: Mapped[str] = mapped_column(String, nullable=False)

    last_sync_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    cursor: Mapped[str | None] = mapped_column(Text, nullable=True)
    files_scanned: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    files_synced: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    bytes_synced: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    error_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    sync_config: Mapped[SyncConfig] = relationship(back_populates="states")
    manifest: Mapped[list[SyncManifest]] = relationship(
        back_populates="sync_state", cascade="all, delete-orphan"
    )

    __table_args__ = (
        UniqueConstraint(
            "sync_config_id", "backend_id", "client_id", name="uq_sync_states_config_backend_client"
        ),
    )


class SyncManifest(Base):
    """Local and remote state of a path as recorded at its last successful sync."""

    __tablename__ = "sync_manifest"

    sync_state_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("sync_states.id", ondelete="CASCADE"), primary_key=True
    )
    path: Mapped[str] = mapped_column(Text, primary_key=True)
    local_size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    local_mtime: Mapped[float] = mapped_column(Float, nullable=False)
    local_hash: Mapped[str | None] = mapped_column(Text, nullable=True)
    remote_size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    remote_mtime: Mapped[float] = mapped_column(Float, nullable=False)
    remote_etag: Mapped[str | None] = mapped_column(Text, nullable=True)
    synced_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    sync_state: Mapped[SyncState] = relationship(back_populates="manifest")
