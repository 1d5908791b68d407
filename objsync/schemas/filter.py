"""Filter schemas."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from objsync.schemas.vfs import FileResponse


class FilterCreate(BaseModel):
    """Request to create a filter.

    ``virtual_path`` may include the reserved namespace segment.
    """

    virtual_path: str = Field(min_length=1)
    name: str | None = Field(default=None, max_length=200)
    query: str = Field(min_length=1)
    description: str | None = None


class FilterUpdate(BaseModel):
    virtual_path: str | None = None
    name: str | None = Field(default=None, max_length=200)
    query: str | None = None
    description: str | None = None


class FilterResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    virtual_path: str
    name: str
    query_expression: str
    description: str | None
    created_at: datetime
    updated_at: datetime


class FilterTestRequest(BaseModel):
    query: str = Field(min_length=1)
    limit: int = Field(default=100, ge=1, le=10000)


class FilterResultsResponse(BaseModel):
    query: str
    total: int
    files: list[FileResponse]
