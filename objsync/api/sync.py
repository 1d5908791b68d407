"""Sync configuration, control and status endpoints."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from objsync.api.deps import (
    get_session,
    get_settings,
    get_store,
    get_sync_agent,
    get_sync_engine,
    require_confirmation,
)
from objsync.config import Settings
from objsync.database import MetadataStore
from objsync.exceptions import ConflictError
from objsync.schemas.sync import (
    SyncConfigCreate,
    SyncConfigResponse,
    SyncRunResponse,
    SyncStatusResponse,
)
from objsync.services import sync_config_service
from objsync.services.sync_engine import SyncAgent, SyncEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync", tags=["sync"])


async def _config(store: MetadataStore, name: str) -> SyncConfigResponse:
    async with store.session() as session:
        config = await sync_config_service.get_sync_config(session, name)
    return sync_config_service.config_response(config)


@router.get("/status", response_model=SyncStatusResponse)
async def sync_status_endpoint(
    session: Annotated[AsyncSession, Depends(get_session)],
) -> SyncStatusResponse:
    """Aggregate progress across every sync configuration."""
    return await sync_config_service.aggregate_status(session)


@router.get("/configs", response_model=list[SyncConfigResponse])
async def list_configs_endpoint(
    session: Annotated[AsyncSession, Depends(get_session)],
) -> list[SyncConfigResponse]:
    configs = await sync_config_service.list_sync_configs(session)
    return [sync_config_service.config_response(c) for c in configs]


@router.post("/configs", response_model=SyncConfigResponse, status_code=201)
async def create_config_endpoint(
    body: SyncConfigCreate,
    store: Annotated[MetadataStore, Depends(get_store)],
    settings: Annotated[Settings, Depends(get_settings)],
    agent: Annotated[SyncAgent | None, Depends(get_sync_agent)],
) -> SyncConfigResponse:
    """Create a sync configuration. The agent picks it up immediately."""
    async with store.write() as session:
        config = await sync_config_service.create_sync_config(session, body, settings)
        response = sync_config_service.config_response(config)
        await session.commit()
    if agent is not None:
        await agent.refresh()
    return response


@router.get("/configs/{name}", response_model=SyncConfigResponse)
async def get_config_endpoint(
    name: str,
    store: Annotated[MetadataStore, Depends(get_store)],
) -> SyncConfigResponse:
    return await _config(store, name)


@router.delete("/configs/{name}", status_code=204)
async def delete_config_endpoint(
    name: str,
    store: Annotated[MetadataStore, Depends(get_store)],
    engine: Annotated[SyncEngine, Depends(get_sync_engine)],
    agent: Annotated[SyncAgent | None, Depends(get_sync_agent)],
    confirm: bool = False,
) -> None:
    """Delete a configuration together with its cursors and manifest."""
    require_confirmation(confirm)
    if engine.is_running(name):
        raise ConflictError(f"Sync {name} is running; pause it first")
    async with store.write() as session:
        await sync_config_service.delete_sync_config(session, name)
        await session.commit()
    logger.info("Deleted sync config %s", name)
    if agent is not None:
        await agent.refresh()


@router.post("/configs/{name}/pause", response_model=SyncConfigResponse)
async def pause_endpoint(
    name: str,
    store: Annotated[MetadataStore, Depends(get_store)],
    engine: Annotated[SyncEngine, Depends(get_sync_engine)],
) -> SyncConfigResponse:
    """Pause. A running batch stops after its in-flight jobs complete."""
    await engine.pause(name)
    return await _config(store, name)


@router.post("/configs/{name}/resume", response_model=SyncConfigResponse)
async def resume_endpoint(
    name: str,
    store: Annotated[MetadataStore, Depends(get_store)],
    engine: Annotated[SyncEngine, Depends(get_sync_engine)],
    agent: Annotated[SyncAgent | None, Depends(get_sync_agent)],
) -> SyncConfigResponse:
    """Resume. The next run continues from the persisted cursor."""
    await engine.resume(name)
    if agent is not None:
        agent.trigger(name)
    return await _config(store, name)


@router.post("/configs/{name}/run", response_model=SyncRunResponse)
async def run_endpoint(
    name: str,
    engine: Annotated[SyncEngine, Depends(get_sync_engine)],
) -> SyncRunResponse:
    """Run one batch now and wait for it to finish."""
    return await engine.run(name)
