"""Virtual filesystem schemas."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class FileResponse(BaseModel):
    """A file or directory entry in a listing."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    backend_id: str
    path: str
    virtual_path: str
    size: int
    etag: str | None = None
    mime_type: str | None = None
    is_dir: bool = False
    modified_at: datetime


class ListingEntry(BaseModel):
    """Entry of a virtual directory listing."""

    name: str
    virtual_path: str
    kind: str
    size: int = 0
    is_dir: bool = False
    modified_at: datetime | None = None


class ListingResponse(BaseModel):
    path: str
    kind: str
    entries: list[ListingEntry]
    total: int


class TestResponse(BaseModel):
    path: str
    exists: bool
    kind: str | None = None


class TouchRequest(BaseModel):
    path: str = Field(min_length=1)
    size: int | None = Field(default=None, ge=0)
    mime_type: str | None = None


class PathRequest(BaseModel):
    path: str = Field(min_length=1)


class MoveRequest(BaseModel):
    source: str = Field(min_length=1)
    destination: str = Field(min_length=1)


class RemoveResponse(BaseModel):
    path: str
    removed: int
