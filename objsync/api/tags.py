"""Tag endpoints."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from objsync.api.deps import get_filter_cache, get_session, get_settings, get_write_session
from objsync.config import Settings
from objsync.schemas.tag import (
    AutoTagRequest,
    AutoTagResponse,
    FileTagsResponse,
    TagPair,
    TagReplaceRequest,
    TagRequest,
)
from objsync.schemas.vfs import FileResponse
from objsync.services import file_service, tag_service
from objsync.services.filter_cache import FilterResultCache
from objsync.services.vfs_service import resolve_file

if TYPE_CHECKING:
    from objsync.models.file import File

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/tags", tags=["tags"])

_AUTO_TAG_BATCH = 10_000


async def _tags_response(session: AsyncSession, path: str, file: File) -> FileTagsResponse:
    tags = await tag_service.get_file_tags(session, file.id)
    return FileTagsResponse(path=path, tags=[TagPair(key=t.key, value=t.value) for t in tags])


@router.get("", response_model=FileTagsResponse)
async def get_tags_endpoint(
    path: str,
    session: Annotated[AsyncSession, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> FileTagsResponse:
    file = await resolve_file(session, path, filter_namespace=settings.filter_namespace)
    return await _tags_response(session, path, file)


@router.post("", response_model=FileTagsResponse)
async def add_tags_endpoint(
    body: TagRequest,
    session: Annotated[AsyncSession, Depends(get_write_session)],
    settings: Annotated[Settings, Depends(get_settings)],
    cache: Annotated[FilterResultCache, Depends(get_filter_cache)],
) -> FileTagsResponse:
    """Add tags. Adding a tag the file already carries is a no-op."""
    file = await resolve_file(session, body.path, filter_namespace=settings.filter_namespace)
    for pair in body.tags:
        await tag_service.add_tag(session, file, pair.key, pair.value, cache=cache)
    await session.commit()
    return await _tags_response(session, body.path, file)


@router.put("", response_model=FileTagsResponse)
async def replace_tags_endpoint(
    body: TagReplaceRequest,
    session: Annotated[AsyncSession, Depends(get_write_session)],
    settings: Annotated[Settings, Depends(get_settings)],
    cache: Annotated[FilterResultCache, Depends(get_filter_cache)],
) -> FileTagsResponse:
    """Replace the whole tag set atomically."""
    file = await resolve_file(session, body.path, filter_namespace=settings.filter_namespace)
    await tag_service.replace_file_tags(
        session, file, [(p.key, p.value) for p in body.tags], cache=cache
    )
    await session.commit()
    return await _tags_response(session, body.path, file)


@router.delete("", response_model=FileTagsResponse)
async def remove_tags_endpoint(
    path: str,
    key: str,
    session: Annotated[AsyncSession, Depends(get_write_session)],
    settings: Annotated[Settings, Depends(get_settings)],
    cache: Annotated[FilterResultCache, Depends(get_filter_cache)],
    value: str | None = None,
) -> FileTagsResponse:
    """Remove ``key=value``, or every value of ``key`` when no value is given."""
    file = await resolve_file(session, path, filter_namespace=settings.filter_namespace)
    await tag_service.remove_tag(session, file, key, value, cache=cache)
    await session.commit()
    return await _tags_response(session, path, file)


@router.get("/search", response_model=list[FileResponse])
async def search_tags_endpoint(
    key: str,
    value: str,
    session: Annotated[AsyncSession, Depends(get_session)],
    limit: Annotated[int, Query(ge=1, le=1000)] = 100,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> list[FileResponse]:
    """Files carrying exactly ``key=value``."""
    files = await tag_service.find_files_by_tag(session, key, value, limit=limit, offset=offset)
    return [FileResponse.model_validate(f) for f in files]


@router.post("/auto", response_model=AutoTagResponse)
async def auto_tag_endpoint(
    body: AutoTagRequest,
    session: Annotated[AsyncSession, Depends(get_write_session)],
    settings: Annotated[Settings, Depends(get_settings)],
    cache: Annotated[FilterResultCache, Depends(get_filter_cache)],
) -> AutoTagResponse:
    """Derive extension, type and date tags from file metadata."""
    target = await resolve_file(session, body.path, filter_namespace=settings.filter_namespace)
    if not target.is_dir:
        files = [target]
    elif body.recursive:
        files = await file_service.list_files(
            session, target.backend_id, f"{target.path}/", limit=_AUTO_TAG_BATCH
        )
    else:
        files = [
            child
            for child in await file_service.list_children(
                session, target.backend_id, target.path, limit=_AUTO_TAG_BATCH
            )
            if not child.is_dir
        ]
    added = await tag_service.auto_tag(session, files, cache=cache)
    await session.commit()
    return AutoTagResponse(files=len(files), tags_added=added)
