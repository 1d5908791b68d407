"""Sync configuration CRUD, endpoint validation and aggregate status."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.orm import selectinload

from objsync.exceptions import ConflictError, NotFoundError, ValidationError
from objsync.models.sync import SyncConfig, SyncDirection, SyncState, SyncStatus
from objsync.schemas.sync import SyncConfigResponse, SyncStateResponse, SyncStatusResponse
from objsync.services.datetime_service import now_utc
from objsync.services.path_resolver import PathKind, ResolvedPath, resolve_path

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from objsync.config import Settings
    from objsync.schemas.sync import SyncConfigCreate

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncEndpoints:
    """Which side of a config is the local directory and which is virtual."""

    local_dir: str
    remote_path: str
    local_is_source: bool


def split_endpoints(source_path: str, dest_path: str) -> SyncEndpoints:
    """Exactly one endpoint must be an absolute local directory."""
    source_local = PurePosixPath(source_path).is_absolute()
    dest_local = PurePosixPath(dest_path).is_absolute()
    if source_local == dest_local:
        raise ValidationError(
            "Exactly one of source_path and dest_path must be an absolute local directory"
        )
    if source_local:
        return SyncEndpoints(source_path, dest_path, local_is_source=True)
    return SyncEndpoints(dest_path, source_path, local_is_source=False)


def ignore_patterns(config: SyncConfig) -> list[str]:
    return list(json.loads(config.ignore_patterns or "[]"))


def pending_jobs(state: SyncState) -> int:
    if not state.cursor:
        return 0
    return len(json.loads(state.cursor).get("pending", []))


async def resolve_remote(
    session: AsyncSession, config: SyncConfig, filter_namespace: str
) -> ResolvedPath:
    """Resolve the virtual endpoint and enforce the read-only rule for filters."""
    endpoints = split_endpoints(config.source_path, config.dest_path)
    resolved = await resolve_path(session, endpoints.remote_path, filter_namespace)
    if resolved.kind in (PathKind.ROOT, PathKind.FILTER_ROOT):
        raise ValidationError(
            f"Sync endpoint {endpoints.remote_path!r} must name a backend path or a filter"
        )
    if resolved.kind == PathKind.FILTER and config.direction != SyncDirection.DOWNLOAD_ONLY:
        raise ValidationError(
            "A filter is a read-only sync source: only download-only is allowed"
        )
    return resolved


async def list_sync_configs(session: AsyncSession) -> list[SyncConfig]:
    stmt = select(SyncConfig).options(selectinload(SyncConfig.states)).order_by(SyncConfig.name)
    return list((await session.execute(stmt)).scalars().all())


async def get_sync_config(session: AsyncSession, name: str) -> SyncConfig:
    stmt = (
        select(SyncConfig)
        .options(selectinload(SyncConfig.states))
        .where(SyncConfig.name == name)
    )
    config = (await session.execute(stmt)).scalar_one_or_none()
    if config is None:
        raise NotFoundError(f"Sync config not found: {name}")
    return config


async def create_sync_config(
    session: AsyncSession, data: SyncConfigCreate, settings: Settings
) -> SyncConfig:
    existing = await session.execute(select(SyncConfig.id).where(SyncConfig.name == data.name))
    if existing.first() is not None:
        raise ConflictError(f"Sync config already exists: {data.name}")

    now = now_utc()
    config = SyncConfig(
        name=data.name,
        source_path=data.source_path,
        dest_path=data.dest_path,
        direction=data.direction,
        enabled=data.enabled,
        status=SyncStatus.IDLE,
        interval_seconds=data.interval_seconds or settings.sync_default_interval_seconds,
        workers=data.workers or settings.sync_default_workers,
        chunk_size=data.chunk_size or settings.sync_default_chunk_size,
        ignore_patterns=json.dumps(data.ignore_patterns),
        created_at=now,
        updated_at=now,
    )
    await resolve_remote(session, config, settings.filter_namespace)
    session.add(config)
    await session.flush()
    logger.info(
        "Created sync config %s: %s -> %s (%s)",
        config.name,
        config.source_path,
        config.dest_path,
        config.direction,
    )
    return await get_sync_config(session, data.name)


async def delete_sync_config(session: AsyncSession, name: str) -> None:
    config = await get_sync_config(session, name)
    await session.delete(config)
    await session.flush()


async def get_or_create_state(
    session: AsyncSession, config_id: int, backend_id: str, client_id: str
) -> SyncState:
    stmt = select(SyncState).where(
        SyncState.sync_config_id == config_id,
        SyncState.backend_id == backend_id,
        SyncState.client_id == client_id,
    )
    state = (await session.execute(stmt)).scalar_one_or_none()
    if state is not None:
        return state
    now = now_utc()
    state = SyncState(
        sync_config_id=config_id,
        backend_id=backend_id,
        client_id=client_id,
        files_scanned=0,
        files_synced=0,
        bytes_synced=0,
        error_count=0,
        created_at=now,
        updated_at=now,
    )
    session.add(state)
    await session.flush()
    return state


def config_response(config: SyncConfig) -> SyncConfigResponse:
    states = [
        SyncStateResponse.model_validate(state).model_copy(
            update={"pending_jobs": pending_jobs(state)}
        )
        for state in sorted(config.states, key=lambda s: (s.backend_id, s.client_id))
    ]
    return SyncConfigResponse(
        id=config.id,
        name=config.name,
        source_path=config.source_path,
        dest_path=config.dest_path,
        direction=config.direction,
        enabled=config.enabled,
        status=config.status,
        interval_seconds=config.interval_seconds,
        workers=config.workers,
        chunk_size=config.chunk_size,
        ignore_patterns=ignore_patterns(config),
        states=states,
    )


async def aggregate_status(session: AsyncSession) -> SyncStatusResponse:
    configs = await list_sync_configs(session)
    by_status = {status.value: 0 for status in SyncStatus}
    files_synced = bytes_synced = error_count = 0
    for config in configs:
        by_status[config.status] = by_status.get(config.status, 0) + 1
        for state in config.states:
            files_synced += state.files_synced
            bytes_synced += state.bytes_synced
            error_count += state.error_count
    return SyncStatusResponse(
        total=len(configs),
        by_status=by_status,
        files_synced=files_synced,
        bytes_synced=bytes_synced,
        error_count=error_count,
        configs=[config_response(config) for config in configs],
    )
