"""Virtual filesystem verbs over backend and filter paths.

All verbs operate on the metadata store; bytes move only through sync.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy import select

from objsync.exceptions import InvalidPathError, NotFoundError, ValidationError
from objsync.models.file import File
from objsync.schemas.vfs import ListingEntry, ListingResponse, TestResponse
from objsync.services import backend_service, file_service, filter_service
from objsync.services.path_resolver import PathKind, ResolvedPath, resolve_path

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from objsync.services.filter_cache import FilterResultCache

logger = logging.getLogger(__name__)


def _file_entry(file: File, *, name: str | None = None) -> ListingEntry:
    return ListingEntry(
        name=name or file.path.rsplit("/", 1)[-1],
        virtual_path=file.virtual_path,
        kind="directory" if file.is_dir else "file",
        size=file.size,
        is_dir=file.is_dir,
        modified_at=file.modified_at,
    )


async def _backend_target(
    session: AsyncSession, path: str, filter_namespace: str, *, allow_root: bool = False
) -> ResolvedPath:
    resolved = await resolve_path(session, path, filter_namespace)
    if resolved.kind in (PathKind.FILTER, PathKind.FILTER_ROOT):
        raise ValidationError(f"{path!r} is a filter path; filters are read-only views")
    if resolved.kind == PathKind.ROOT:
        raise InvalidPathError("A backend identifier is required", path)
    if not resolved.remainder and not allow_root:
        raise InvalidPathError(f"{path!r} names a backend, not a file", path)
    return resolved


async def list_path(
    session: AsyncSession,
    path: str,
    *,
    filter_namespace: str,
    cache: FilterResultCache | None = None,
    timeout: float | None = None,
    limit: int = 1000,
    offset: int = 0,
) -> ListingResponse:
    """List the root, the filter namespace, a filter's results or a backend directory."""
    resolved = await resolve_path(session, path, filter_namespace)
    entries: list[ListingEntry] = []

    if resolved.kind == PathKind.ROOT:
        for backend in await backend_service.list_backends(session):
            entries.append(
                ListingEntry(
                    name=backend.id,
                    virtual_path=backend.id,
                    kind="backend",
                    size=backend.total_size,
                    is_dir=True,
                    modified_at=backend.scanned_at,
                )
            )
        entries.append(
            ListingEntry(
                name=filter_namespace, virtual_path=filter_namespace, kind="namespace", is_dir=True
            )
        )
    elif resolved.kind == PathKind.FILTER_ROOT:
        for flt in await filter_service.list_filters(session):
            entries.append(
                ListingEntry(
                    name=flt.virtual_path,
                    virtual_path=f"{filter_namespace}/{flt.virtual_path}",
                    kind="filter",
                    is_dir=True,
                )
            )
    elif resolved.kind == PathKind.FILTER:
        if resolved.filter is None:
            raise NotFoundError(f"Filter not found: {path}")
        matches = await filter_service.evaluate_filter(
            session, resolved.filter, cache=cache, timeout=timeout
        )
        for match in matches[offset : offset + limit]:
            entries.append(
                ListingEntry(
                    name=match.virtual_path,
                    virtual_path=match.virtual_path,
                    kind="file",
                    size=match.size,
                    modified_at=match.modified_at,
                )
            )
        return ListingResponse(
            path=resolved.virtual_path, kind=resolved.kind, entries=entries, total=len(matches)
        )
    else:
        file = None
        if resolved.remainder:
            file = await file_service.get_file(session, resolved.namespace, resolved.remainder)
            if file is None:
                raise NotFoundError(f"Path not found: {resolved.virtual_path}")
        if file is not None and not file.is_dir:
            entries.append(_file_entry(file))
        else:
            children = await file_service.list_children(
                session, resolved.namespace, resolved.remainder, limit=limit, offset=offset
            )
            entries.extend(_file_entry(child) for child in children)

    return ListingResponse(
        path=resolved.virtual_path, kind=resolved.kind, entries=entries, total=len(entries)
    )


async def test_path(session: AsyncSession, path: str, *, filter_namespace: str) -> TestResponse:
    """Report whether a virtual path exists. Malformed paths still raise."""
    try:
        resolved = await resolve_path(session, path, filter_namespace)
    except NotFoundError:
        return TestResponse(path=path, exists=False)
    if resolved.kind == PathKind.BACKEND and resolved.remainder:
        file = await file_service.get_file(session, resolved.namespace, resolved.remainder)
        if file is None:
            return TestResponse(path=path, exists=False)
        return TestResponse(path=path, exists=True, kind="directory" if file.is_dir else "file")
    return TestResponse(path=path, exists=True, kind=resolved.kind)


async def touch(
    session: AsyncSession,
    path: str,
    *,
    filter_namespace: str,
    client_id: str,
    size: int | None = None,
    mime_type: str | None = None,
    cache: FilterResultCache | None = None,
) -> File:
    """Create the file's metadata or bump its modification time."""
    resolved = await _backend_target(session, path, filter_namespace)
    existing = await file_service.get_file(session, resolved.namespace, resolved.remainder)
    if size is None:
        size = existing.size if existing is not None else 0
    file, _kind = await file_service.upsert_file(
        session,
        resolved.namespace,
        resolved.remainder,
        size=size,
        mime_type=mime_type,
        client_id=client_id,
        cache=cache,
    )
    return file


async def remove(
    session: AsyncSession,
    path: str,
    *,
    filter_namespace: str,
    client_id: str,
    confirm: bool = False,
    cache: FilterResultCache | None = None,
) -> int:
    """Remove a file or directory. Wiping a whole backend requires ``confirm``."""
    resolved = await _backend_target(session, path, filter_namespace, allow_root=True)
    if resolved.remainder:
        return await file_service.soft_delete_file(
            session, resolved.namespace, resolved.remainder, client_id=client_id, cache=cache
        )

    if not confirm:
        raise ValidationError(
            f"Refusing to remove every file in backend {resolved.namespace!r} without confirmation"
        )
    stmt = select(File.path).where(
        File.backend_id == resolved.namespace,
        File.deleted_at.is_(None),
        File.parent_id.is_(None),
    )
    removed = 0
    for top_level in (await session.execute(stmt)).scalars().all():
        removed += await file_service.soft_delete_file(
            session, resolved.namespace, top_level, client_id=client_id, cache=cache
        )
    logger.warning("Wiped %d files from backend %s", removed, resolved.namespace)
    return removed


async def make_directory(session: AsyncSession, path: str, *, filter_namespace: str) -> File:
    resolved = await _backend_target(session, path, filter_namespace)
    return await file_service.ensure_directory(session, resolved.namespace, resolved.remainder)


async def move(
    session: AsyncSession,
    source: str,
    destination: str,
    *,
    filter_namespace: str,
    client_id: str,
    cache: FilterResultCache | None = None,
) -> File:
    """Rename within one backend."""
    src = await _backend_target(session, source, filter_namespace)
    dst = await _backend_target(session, destination, filter_namespace)
    if src.namespace != dst.namespace:
        raise ValidationError("Moving between backends is not supported; sync the file instead")
    return await file_service.rename_file(
        session, src.namespace, src.remainder, dst.remainder, client_id=client_id, cache=cache
    )


async def resolve_file(session: AsyncSession, path: str, *, filter_namespace: str) -> File:
    """The active file or directory row at a backend path."""
    resolved = await _backend_target(session, path, filter_namespace)
    return await file_service.require_file(session, resolved.namespace, resolved.remainder)
