"""Backend registry endpoints."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from objsync.api.deps import (
    get_filter_cache,
    get_registry,
    get_session,
    get_settings,
    get_store,
    require_confirmation,
)
from objsync.config import Settings
from objsync.database import MetadataStore
from objsync.schemas.backend import (
    BackendCreate,
    BackendResponse,
    BackendUpdate,
    FileChangeResponse,
    ScanResult,
)
from objsync.services import backend_service, file_service
from objsync.services.filter_cache import FilterResultCache
from objsync.storage.registry import BackendRegistry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/backends", tags=["backends"])


@router.get("", response_model=list[BackendResponse])
async def list_backends_endpoint(
    session: Annotated[AsyncSession, Depends(get_session)],
) -> list[BackendResponse]:
    """List active backends."""
    backends = await backend_service.list_backends(session)
    return [BackendResponse.model_validate(b) for b in backends]


@router.post("", response_model=BackendResponse, status_code=201)
async def create_backend_endpoint(
    body: BackendCreate,
    registry: Annotated[BackendRegistry, Depends(get_registry)],
) -> BackendResponse:
    """Register a backend. Credentials are encrypted at rest."""
    backend = await registry.register(body)
    logger.info("Registered backend %s (%s/%s)", backend.id, backend.endpoint, backend.bucket)
    return BackendResponse.model_validate(backend)


@router.get("/{backend_id}", response_model=BackendResponse)
async def get_backend_endpoint(
    backend_id: str,
    session: Annotated[AsyncSession, Depends(get_session)],
) -> BackendResponse:
    return BackendResponse.model_validate(await backend_service.get_backend(session, backend_id))


@router.patch("/{backend_id}", response_model=BackendResponse)
async def update_backend_endpoint(
    backend_id: str,
    body: BackendUpdate,
    registry: Annotated[BackendRegistry, Depends(get_registry)],
) -> BackendResponse:
    backend = await registry.update(backend_id, body)
    logger.info("Updated backend %s", backend_id)
    return BackendResponse.model_validate(backend)


@router.delete("/{backend_id}", status_code=204)
async def delete_backend_endpoint(
    backend_id: str,
    registry: Annotated[BackendRegistry, Depends(get_registry)],
    confirm: bool = False,
) -> None:
    """Remove a backend. Its files disappear from every listing and filter."""
    require_confirmation(confirm)
    hidden = await registry.remove(backend_id)
    logger.info("Removed backend %s (%d files hidden)", backend_id, hidden)


@router.post("/{backend_id}/scan", response_model=ScanResult)
async def scan_backend_endpoint(
    backend_id: str,
    store: Annotated[MetadataStore, Depends(get_store)],
    registry: Annotated[BackendRegistry, Depends(get_registry)],
    cache: Annotated[FilterResultCache, Depends(get_filter_cache)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> ScanResult:
    """List the bucket and reconcile the file metadata with it."""
    client = await registry.resolve_client(backend_id)
    objects = await client.list_objects("")
    async with store.write() as session:
        result = await backend_service.apply_scan(
            session, backend_id, objects, client_id=settings.client_id, cache=cache
        )
        await session.commit()
    return result


@router.get("/{backend_id}/changes", response_model=list[FileChangeResponse])
async def backend_changes_endpoint(
    backend_id: str,
    session: Annotated[AsyncSession, Depends(get_session)],
    after: Annotated[int, Query(ge=0)] = 0,
    limit: Annotated[int, Query(ge=1, le=1000)] = 100,
) -> list[FileChangeResponse]:
    """Change log entries for one backend, oldest first."""
    await backend_service.get_backend(session, backend_id)
    changes = await file_service.get_changes(session, backend_id, after_id=after, limit=limit)
    return [FileChangeResponse.model_validate(c) for c in changes]
