"""Shared API dependencies: store sessions, registry, filter cache, sync engine."""

from __future__ import annotations

from collections.abc import AsyncGenerator

from fastapi import HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from objsync.config import Settings
from objsync.database import MetadataStore
from objsync.services.filter_cache import FilterResultCache
from objsync.services.sync_engine import SyncAgent, SyncEngine
from objsync.storage.registry import BackendRegistry


def get_settings(request: Request) -> Settings:
    """Get application settings from app state."""
    settings: Settings = request.app.state.settings
    return settings


def get_store(request: Request) -> MetadataStore:
    store: MetadataStore = request.app.state.store
    return store


def get_registry(request: Request) -> BackendRegistry:
    registry: BackendRegistry = request.app.state.registry
    return registry


def get_filter_cache(request: Request) -> FilterResultCache:
    cache: FilterResultCache = request.app.state.filter_cache
    return cache


def get_sync_engine(request: Request) -> SyncEngine:
    engine: SyncEngine = request.app.state.sync_engine
    return engine


def get_sync_agent(request: Request) -> SyncAgent | None:
    """The background agent, or None when it is disabled."""
    agent: SyncAgent | None = getattr(request.app.state, "sync_agent", None)
    return agent


async def get_session(request: Request) -> AsyncGenerator[AsyncSession]:
    """Get a read session."""
    store: MetadataStore = request.app.state.store
    async with store.session() as session:
        yield session


async def get_write_session(request: Request) -> AsyncGenerator[AsyncSession]:
    """Get a write session. The endpoint commits."""
    store: MetadataStore = request.app.state.store
    async with store.write() as session:
        yield session


def require_confirmation(confirm: bool) -> None:
    if not confirm:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="This operation requires confirm=true",
        )
