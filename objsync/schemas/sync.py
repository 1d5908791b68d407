"""Sync configuration and status schemas."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from objsync.models.sync import SyncDirection


class SyncConfigCreate(BaseModel):
    """Request to create a sync configuration.

    Exactly one of ``source_path`` and ``dest_path`` must be an absolute local
    directory; the other is a virtual path without a leading slash.
    """

    name: str = Field(min_length=1, max_length=100, pattern=r"^[A-Za-z0-9_.-]+$")
    source_path: str = Field(min_length=1)
    dest_path: str = Field(min_length=1)
    direction: SyncDirection = SyncDirection.BIDIRECTIONAL
    enabled: bool = True
    interval_seconds: int | None = Field(default=None, ge=1)
    workers: int | None = Field(default=None, ge=1, le=64)
    chunk_size: int | None = Field(default=None, ge=5 * 1024 * 1024)
    ignore_patterns: list[str] = Field(default_factory=list)


class SyncStateResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    backend_id: str
    client_id: str
    last_sync_at: datetime | None
    files_scanned: int
    files_synced: int
    bytes_synced: int
    error_count: int
    last_error: str | None
    pending_jobs: int = 0


class SyncConfigResponse(BaseModel):
    id: int
    name: str
    source_path: str
    dest_path: str
    direction: str
    enabled: bool
    status: str
    interval_seconds: int
    workers: int
    chunk_size: int
    ignore_patterns: list[str]
    states: list[SyncStateResponse] = Field(default_factory=list)


class SyncStatusResponse(BaseModel):
    """Aggregate status across all sync configurations."""

    total: int
    by_status: dict[str, int]
    files_synced: int
    bytes_synced: int
    error_count: int
    configs: list[SyncConfigResponse]


class ConflictReport(BaseModel):
    path: str
    winner: str
    reason: str


class SyncRunResponse(BaseModel):
    """Outcome of one sync run."""

    name: str
    status: str
    jobs_total: int = 0
    jobs_completed: int = 0
    jobs_failed: int = 0
    bytes_transferred: int = 0
    resumed: bool = False
    conflicts: list[ConflictReport] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
