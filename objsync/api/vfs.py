"""Virtual filesystem endpoints: ls, test, touch, rm, mkdir, mv."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from objsync.api.deps import get_filter_cache, get_session, get_settings, get_write_session
from objsync.config import Settings
from objsync.schemas.vfs import (
    FileResponse,
    ListingResponse,
    MoveRequest,
    PathRequest,
    RemoveResponse,
    TestResponse,
    TouchRequest,
)
from objsync.services import vfs_service
from objsync.services.filter_cache import FilterResultCache

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/vfs", tags=["vfs"])


@router.get("/ls", response_model=ListingResponse)
async def ls_endpoint(
    session: Annotated[AsyncSession, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
    cache: Annotated[FilterResultCache, Depends(get_filter_cache)],
    path: str = "/",
    limit: Annotated[int, Query(ge=1, le=10000)] = 1000,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> ListingResponse:
    return await vfs_service.list_path(
        session,
        path,
        filter_namespace=settings.filter_namespace,
        cache=cache,
        timeout=settings.query_timeout_seconds,
        limit=limit,
        offset=offset,
    )


@router.get("/test", response_model=TestResponse)
async def test_endpoint(
    path: str,
    session: Annotated[AsyncSession, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> TestResponse:
    return await vfs_service.test_path(session, path, filter_namespace=settings.filter_namespace)


@router.post("/touch", response_model=FileResponse)
async def touch_endpoint(
    body: TouchRequest,
    session: Annotated[AsyncSession, Depends(get_write_session)],
    settings: Annotated[Settings, Depends(get_settings)],
    cache: Annotated[FilterResultCache, Depends(get_filter_cache)],
) -> FileResponse:
    file = await vfs_service.touch(
        session,
        body.path,
        filter_namespace=settings.filter_namespace,
        client_id=settings.client_id,
        size=body.size,
        mime_type=body.mime_type,
        cache=cache,
    )
    await session.commit()
    return FileResponse.model_validate(file)


@router.delete("/rm", response_model=RemoveResponse)
async def rm_endpoint(
    path: str,
    session: Annotated[AsyncSession, Depends(get_write_session)],
    settings: Annotated[Settings, Depends(get_settings)],
    cache: Annotated[FilterResultCache, Depends(get_filter_cache)],
    confirm: bool = False,
) -> RemoveResponse:
    """Remove a file or directory. Wiping a backend root needs confirm=true."""
    removed = await vfs_service.remove(
        session,
        path,
        filter_namespace=settings.filter_namespace,
        client_id=settings.client_id,
        confirm=confirm,
        cache=cache,
    )
    await session.commit()
    return RemoveResponse(path=path, removed=removed)


@router.post("/mkdir", response_model=FileResponse)
async def mkdir_endpoint(
    body: PathRequest,
    session: Annotated[AsyncSession, Depends(get_write_session)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> FileResponse:
    directory = await vfs_service.make_directory(
        session, body.path, filter_namespace=settings.filter_namespace
    )
    await session.commit()
    return FileResponse.model_validate(directory)


@router.post("/mv", response_model=FileResponse)
async def mv_endpoint(
    body: MoveRequest,
    session: Annotated[AsyncSession, Depends(get_write_session)],
    settings: Annotated[Settings, Depends(get_settings)],
    cache: Annotated[FilterResultCache, Depends(get_filter_cache)],
) -> FileResponse:
    file = await vfs_service.move(
        session,
        body.source,
        body.destination,
        filter_namespace=settings.filter_namespace,
        client_id=settings.client_id,
        cache=cache,
    )
    await session.commit()
    logger.info("Moved %s to %s", body.source, body.destination)
    return FileResponse.model_validate(file)
