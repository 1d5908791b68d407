"""Filter CRUD and evaluation with optional result caching."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy import select

from objsync.exceptions import ConflictError, InvalidPathError, NotFoundError
from objsync.models.filter import Filter
from objsync.services.datetime_service import now_utc
from objsync.services.path_resolver import split_path
from objsync.services.query_engine import (
    candidate_backends,
    evaluate_query,
    uses_relative_time,
)
from objsync.services.query_parser import parse_query

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from objsync.schemas.filter import FilterCreate, FilterUpdate
    from objsync.services.filter_cache import FilterResultCache
    from objsync.services.query_engine import FilterMatch

logger = logging.getLogger(__name__)


def normalize_filter_path(path: str, filter_namespace: str) -> str:
    """Strip the namespace segment (if present) and canonicalize slashes."""
    segments = split_path(path)
    if segments and segments[0] == filter_namespace:
        segments = segments[1:]
    if not segments:
        raise InvalidPathError(f"Filter path {path!r} is empty", path)
    return "/".join(segments)


async def list_filters(session: AsyncSession) -> list[Filter]:
    stmt = select(Filter).order_by(Filter.virtual_path)
    return list((await session.execute(stmt)).scalars().all())


async def get_filter(session: AsyncSession, filter_id: int) -> Filter:
    flt = await session.get(Filter, filter_id)
    if flt is None:
        raise NotFoundError(f"Filter not found: {filter_id}")
    return flt


async def get_filter_by_path(session: AsyncSession, path: str, filter_namespace: str) -> Filter:
    virtual_path = normalize_filter_path(path, filter_namespace)
    stmt = select(Filter).where(Filter.virtual_path == virtual_path)
    flt = (await session.execute(stmt)).scalar_one_or_none()
    if flt is None:
        raise NotFoundError(f"Filter not found: {filter_namespace}/{virtual_path}")
    return flt


async def _ensure_unique_path(
    session: AsyncSession, virtual_path: str, exclude_id: int | None = None
) -> None:
    stmt = select(Filter.id).where(Filter.virtual_path == virtual_path)
    if exclude_id is not None:
        stmt = stmt.where(Filter.id != exclude_id)
    if (await session.execute(stmt)).first() is not None:
        raise ConflictError(f"Filter already exists: {virtual_path}")


async def create_filter(
    session: AsyncSession, data: FilterCreate, *, filter_namespace: str
) -> Filter:
    """Validate the query and persist a new filter."""
    virtual_path = normalize_filter_path(data.virtual_path, filter_namespace)
    parse_query(data.query)
    await _ensure_unique_path(session, virtual_path)

    now = now_utc()
    flt = Filter(
        virtual_path=virtual_path,
        name=data.name or virtual_path.rsplit("/", 1)[-1],
        query_expression=data.query,
        description=data.description,
        created_at=now,
        updated_at=now,
    )
    session.add(flt)
    await session.flush()
    logger.info("Created filter %s/%s: %s", filter_namespace, virtual_path, data.query)
    return flt


async def update_filter(
    session: AsyncSession,
    filter_id: int,
    data: FilterUpdate,
    *,
    filter_namespace: str,
    cache: FilterResultCache | None = None,
) -> Filter:
    flt = await get_filter(session, filter_id)
    if data.query is not None:
        parse_query(data.query)
        flt.query_expression = data.query
    if data.virtual_path is not None:
        virtual_path = normalize_filter_path(data.virtual_path, filter_namespace)
        await _ensure_unique_path(session, virtual_path, exclude_id=filter_id)
        flt.virtual_path = virtual_path
    if data.name is not None:
        flt.name = data.name
    if data.description is not None:
        flt.description = data.description
    flt.updated_at = now_utc()
    await session.flush()
    if cache is not None:
        cache.invalidate_filter_on_commit(session, filter_id)
    return flt


async def delete_filter(
    session: AsyncSession, filter_id: int, *, cache: FilterResultCache | None = None
) -> None:
    flt = await get_filter(session, filter_id)
    await session.delete(flt)
    await session.flush()
    if cache is not None:
        cache.invalidate_filter_on_commit(session, filter_id)


async def evaluate_filter(
    session: AsyncSession,
    flt: Filter,
    *,
    cache: FilterResultCache | None = None,
    timeout: float | None = None,
) -> list[FilterMatch]:
    """Compute the live result set of a stored filter."""
    if cache is not None:
        cached = cache.get(flt.id, flt.query_expression)
        if cached is not None:
            return cached

    node = parse_query(flt.query_expression)
    generation = cache.generation if cache is not None else None
    matches = await evaluate_query(session, node, timeout=timeout)
    if cache is not None and not uses_relative_time(node):
        cache.put(
            flt.id,
            flt.query_expression,
            candidate_backends(node),
            matches,
            generation=generation,
        )
    return matches
