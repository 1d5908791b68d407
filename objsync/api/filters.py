"""Filter endpoints: CRUD, ad-hoc query testing and live results."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from objsync.api.deps import get_filter_cache, get_session, get_settings, get_write_session
from objsync.config import Settings
from objsync.schemas.filter import (
    FilterCreate,
    FilterResponse,
    FilterResultsResponse,
    FilterTestRequest,
    FilterUpdate,
)
from objsync.schemas.vfs import FileResponse
from objsync.services import filter_service
from objsync.services.filter_cache import FilterResultCache
from objsync.services.query_engine import FilterMatch, evaluate_query

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/filters", tags=["filters"])


def _file_response(match: FilterMatch) -> FileResponse:
    return FileResponse(
        id=match.file_id,
        backend_id=match.backend_id,
        path=match.path,
        virtual_path=match.virtual_path,
        size=match.size,
        etag=match.etag,
        mime_type=match.mime_type,
        modified_at=match.modified_at,
    )


def _results(query: str, matches: list[FilterMatch], limit: int) -> FilterResultsResponse:
    return FilterResultsResponse(
        query=query,
        total=len(matches),
        files=[_file_response(m) for m in matches[:limit]],
    )


@router.get("", response_model=list[FilterResponse])
async def list_filters_endpoint(
    session: Annotated[AsyncSession, Depends(get_session)],
) -> list[FilterResponse]:
    return [FilterResponse.model_validate(f) for f in await filter_service.list_filters(session)]


@router.post("", response_model=FilterResponse, status_code=201)
async def create_filter_endpoint(
    body: FilterCreate,
    session: Annotated[AsyncSession, Depends(get_write_session)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> FilterResponse:
    """Create a filter. The query is validated before anything is stored."""
    flt = await filter_service.create_filter(
        session, body, filter_namespace=settings.filter_namespace
    )
    await session.commit()
    logger.info("Created filter %s: %s", flt.virtual_path, flt.query_expression)
    return FilterResponse.model_validate(flt)


@router.get("/show", response_model=FilterResponse)
async def show_filter_endpoint(
    path: str,
    session: Annotated[AsyncSession, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> FilterResponse:
    """Look a filter up by its virtual path."""
    flt = await filter_service.get_filter_by_path(session, path, settings.filter_namespace)
    return FilterResponse.model_validate(flt)


@router.post("/test", response_model=FilterResultsResponse)
async def test_filter_endpoint(
    body: FilterTestRequest,
    session: Annotated[AsyncSession, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> FilterResultsResponse:
    """Evaluate a query without storing it."""
    matches = await evaluate_query(session, body.query, timeout=settings.query_timeout_seconds)
    return _results(body.query, matches, body.limit)


@router.get("/{filter_id}", response_model=FilterResponse)
async def get_filter_endpoint(
    filter_id: int,
    session: Annotated[AsyncSession, Depends(get_session)],
) -> FilterResponse:
    return FilterResponse.model_validate(await filter_service.get_filter(session, filter_id))


@router.put("/{filter_id}", response_model=FilterResponse)
async def update_filter_endpoint(
    filter_id: int,
    body: FilterUpdate,
    session: Annotated[AsyncSession, Depends(get_write_session)],
    settings: Annotated[Settings, Depends(get_settings)],
    cache: Annotated[FilterResultCache, Depends(get_filter_cache)],
) -> FilterResponse:
    flt = await filter_service.update_filter(
        session, filter_id, body, filter_namespace=settings.filter_namespace, cache=cache
    )
    await session.commit()
    return FilterResponse.model_validate(flt)


@router.delete("/{filter_id}", status_code=204)
async def delete_filter_endpoint(
    filter_id: int,
    session: Annotated[AsyncSession, Depends(get_write_session)],
    cache: Annotated[FilterResultCache, Depends(get_filter_cache)],
) -> None:
    await filter_service.delete_filter(session, filter_id, cache=cache)
    await session.commit()


@router.get("/{filter_id}/results", response_model=FilterResultsResponse)
async def filter_results_endpoint(
    filter_id: int,
    session: Annotated[AsyncSession, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
    cache: Annotated[FilterResultCache, Depends(get_filter_cache)],
    limit: Annotated[int, Query(ge=1, le=10000)] = 1000,
) -> FilterResultsResponse:
    """Current result set. Always reflects the latest tags and metadata."""
    flt = await filter_service.get_filter(session, filter_id)
    matches = await filter_service.evaluate_filter(
        session, flt, cache=cache, timeout=settings.query_timeout_seconds
    )
    return _results(flt.query_expression, matches, limit)
