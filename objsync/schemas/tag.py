"""Tag schemas."""

from __future__ import annotations

from typing import Annotated

from pydantic import BaseModel, Field

TagKey = Annotated[str, Field(min_length=1, max_length=200, pattern=r"^[^\s=<>:\"]+$")]


class TagPair(BaseModel):
    key: TagKey
    value: str = Field(max_length=1000)


class TagRequest(BaseModel):
    """Add or remove tags on the file at ``path``."""

    path: str = Field(min_length=1)
    tags: list[TagPair] = Field(min_length=1)


class TagReplaceRequest(BaseModel):
    """Replace the full tag set of the file at ``path``."""

    path: str = Field(min_length=1)
    tags: list[TagPair] = Field(default_factory=list)


class AutoTagRequest(BaseModel):
    path: str = Field(min_length=1)
    recursive: bool = False


class FileTagsResponse(BaseModel):
    path: str
    tags: list[TagPair]


class AutoTagResponse(BaseModel):
    files: int
    tags_added: int
