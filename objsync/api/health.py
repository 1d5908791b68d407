"""Health check endpoint."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from objsync.api.deps import get_filter_cache, get_registry, get_store, get_sync_agent
from objsync.database import MetadataStore
from objsync.services.filter_cache import FilterResultCache
from objsync.services.sync_engine import SyncAgent
from objsync.storage.registry import BackendRegistry

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])

VERSION = "0.1.0"


class HealthResponse(BaseModel):
    status: str
    version: str
    database: str
    cached_clients: list[str]
    filter_cache_hits: int
    filter_cache_misses: int
    sync_loops: list[str]


@router.get("/api/health", response_model=HealthResponse)
async def health_check(
    store: Annotated[MetadataStore, Depends(get_store)],
    registry: Annotated[BackendRegistry, Depends(get_registry)],
    cache: Annotated[FilterResultCache, Depends(get_filter_cache)],
    agent: Annotated[SyncAgent | None, Depends(get_sync_agent)],
) -> HealthResponse:
    """Health check endpoint for monitoring."""
    db_ok = await store.health()
    return HealthResponse(
        status="ok" if db_ok else "degraded",
        version=VERSION,
        database="ok" if db_ok else "error",
        cached_clients=registry.cached_ids(),
        filter_cache_hits=cache.hits,
        filter_cache_misses=cache.misses,
        sync_loops=agent.running if agent is not None else [],
    )
