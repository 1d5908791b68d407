"""Backend-related schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field

BackendIdRef = Annotated[str, Field(min_length=1, max_length=64)]


class BackendCreate(BaseModel):
    """Request to provision a backend."""

    id: BackendIdRef
    name: str | None = Field(default=None, max_length=200)
    endpoint: str = Field(min_length=1)
    bucket: str = Field(min_length=1)
    region: str | None = None
    use_ssl: bool = True
    access_key: str = Field(min_length=1)
    secret_key: str = Field(min_length=1)


class BackendUpdate(BaseModel):
    """Partial update. Supplying both keys rotates the credentials."""

    name: str | None = Field(default=None, max_length=200)
    endpoint: str | None = None
    bucket: str | None = None
    region: str | None = None
    use_ssl: bool | None = None
    access_key: str | None = None
    secret_key: str | None = None


class BackendResponse(BaseModel):
    """Backend detail. Credentials are never returned."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    endpoint: str
    bucket: str
    region: str | None
    use_ssl: bool
    file_count: int
    total_size: int
    scanned_at: datetime | None
    created_at: datetime
    updated_at: datetime


class ScanResult(BaseModel):
    """Outcome of reconciling a backend's listing with the metadata store."""

    backend_id: str
    created: int = 0
    updated: int = 0
    deleted: int = 0
    skipped: list[str] = Field(default_factory=list)
    file_count: int = 0
    total_size: int = 0


class FileChangeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    file_id: int | None
    backend_id: str
    kind: str
    path: str
    old_path: str | None
    new_path: str | None
    client_id: str
    created_at: datetime
