"""File metadata access: lookups, listings, upserts and the change log.

Functions flush but never commit; the caller owns the transaction so a File
row and its FileChange entry land together.
"""

from __future__ import annotations

import logging
import mimetypes
from typing import TYPE_CHECKING

from sqlalchemy import delete, select

from objsync.exceptions import ConflictError, InvalidPathError, NotFoundError
from objsync.models.file import ChangeKind, File, FileChange
from objsync.services.datetime_service import now_utc

if TYPE_CHECKING:
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

    from objsync.services.filter_cache import FilterResultCache

logger = logging.getLogger(__name__)


def _parent_paths(path: str) -> list[str]:
    """``a/b/c.txt`` -> ``["a", "a/b"]``."""
    segments = path.split("/")[:-1]
    return ["/".join(segments[: i + 1]) for i in range(len(segments))]


def _invalidate(
    session: AsyncSession, cache: FilterResultCache | None, backend_id: str
) -> None:
    if cache is not None:
        cache.invalidate_backend_on_commit(session, backend_id)


async def get_file(
    session: AsyncSession, backend_id: str, path: str, *, include_deleted: bool = False
) -> File | None:
    stmt = select(File).where(File.backend_id == backend_id, File.path == path)
    if not include_deleted:
        stmt = stmt.where(File.deleted_at.is_(None))
    return (await session.execute(stmt)).scalar_one_or_none()


async def require_file(session: AsyncSession, backend_id: str, path: str) -> File:
    """Like ``get_file`` but raises NotFoundError."""
    file = await get_file(session, backend_id, path)
    if file is None:
        raise NotFoundError(f"File not found: {backend_id}/{path}")
    return file


async def list_files(
    session: AsyncSession,
    backend_id: str,
    prefix: str = "",
    *,
    limit: int = 100,
    offset: int = 0,
    include_dirs: bool = False,
) -> list[File]:
    """Active files whose path starts with ``prefix``, ordered by path."""
    stmt = select(File).where(File.backend_id == backend_id, File.deleted_at.is_(None))
    if prefix:
        stmt = stmt.where(File.path.startswith(prefix, autoescape=True))
    if not include_dirs:
        stmt = stmt.where(File.is_dir.is_(False))
    stmt = stmt.order_by(File.path).limit(limit).offset(offset)
    return list((await session.execute(stmt)).scalars().all())


async def list_children(
    session: AsyncSession,
    backend_id: str,
    parent_path: str = "",
    *,
    limit: int = 1000,
    offset: int = 0,
) -> list[File]:
    """Direct children of a directory (the backend root when ``parent_path`` is empty)."""
    stmt = select(File).where(File.backend_id == backend_id, File.deleted_at.is_(None))
    if parent_path:
        parent = await get_file(session, backend_id, parent_path)
        if parent is None or not parent.is_dir:
            raise NotFoundError(f"Directory not found: {backend_id}/{parent_path}")
        stmt = stmt.where(File.parent_id == parent.id)
    else:
        stmt = stmt.where(File.parent_id.is_(None))
    stmt = stmt.order_by(File.path).limit(limit).offset(offset)
    return list((await session.execute(stmt)).scalars().all())


async def record_change(
    session: AsyncSession,
    *,
    backend_id: str,
    kind: ChangeKind,
    path: str,
    client_id: str,
    file_id: int | None = None,
    old_path: str | None = None,
    new_path: str | None = None,
) -> FileChange:
    """Append an entry to the change log."""
    change = FileChange(
        file_id=file_id,
        backend_id=backend_id,
        kind=kind,
        path=path,
        old_path=old_path,
        new_path=new_path,
        client_id=client_id,
        created_at=now_utc(),
    )
    session.add(change)
    await session.flush()
    return change


async def get_changes(
    session: AsyncSession,
    backend_id: str | None = None,
    *,
    after_id: int = 0,
    limit: int = 100,
) -> list[FileChange]:
    """Change log entries with id greater than ``after_id``, oldest first."""
    stmt = select(FileChange).where(FileChange.id > after_id)
    if backend_id is not None:
        stmt = stmt.where(FileChange.backend_id == backend_id)
    stmt = stmt.order_by(FileChange.id).limit(limit)
    return list((await session.execute(stmt)).scalars().all())


async def ensure_directory(
    session: AsyncSession, backend_id: str, path: str, *, now: datetime | None = None
) -> File:
    """Create (or revive) the directory row for ``path`` and all of its ancestors."""
    now = now or now_utc()
    parent_id: int | None = None
    directory: File | None = None
    for dir_path in [*_parent_paths(path), path]:
        directory = await get_file(session, backend_id, dir_path, include_deleted=True)
        if directory is None:
            directory = File(
                backend_id=backend_id,
                path=dir_path,
                size=0,
                is_dir=True,
                parent_id=parent_id,
                modified_at=now,
                created_at=now,
                updated_at=now,
            )
            session.add(directory)
            await session.flush()
        elif not directory.is_dir:
            raise ConflictError(f"{backend_id}/{dir_path} exists and is not a directory")
        elif directory.deleted_at is not None:
            directory.deleted_at = None
            directory.updated_at = now
            directory.parent_id = parent_id
        parent_id = directory.id
    if directory is None:
        raise InvalidPathError("Directory path is empty", segment=path)
    return directory


async def _parent_id(
    session: AsyncSession, backend_id: str, path: str, now: datetime
) -> int | None:
    parents = _parent_paths(path)
    if not parents:
        return None
    return (await ensure_directory(session, backend_id, parents[-1], now=now)).id


async def upsert_file(
    session: AsyncSession,
    backend_id: str,
    path: str,
    *,
    size: int,
    client_id: str,
    modified_at: datetime | None = None,
    etag: str | None = None,
    md5_hash: str | None = None,
    sha256_hash: str | None = None,
    mime_type: str | None = None,
    cache: FilterResultCache | None = None,
) -> tuple[File, ChangeKind | None]:
    """Insert or update the metadata of a regular file.

    Returns the row and the change kind recorded, or None when nothing
    changed. Missing parent directories are created.
    """
    now = now_utc()
    modified_at = modified_at or now
    mime_type = mime_type or mimetypes.guess_type(path)[0]
    file = await get_file(session, backend_id, path, include_deleted=True)

    if file is not None and file.is_dir and file.deleted_at is None:
        raise ConflictError(f"{backend_id}/{path} is a directory")

    if file is None or file.deleted_at is not None:
        parent_id = await _parent_id(session, backend_id, path, now)
        if file is None:
            file = File(backend_id=backend_id, path=path, created_at=now)
            session.add(file)
        file.size = size
        file.etag = etag
        file.md5_hash = md5_hash
        file.sha256_hash = sha256_hash
        file.mime_type = mime_type
        file.is_dir = False
        file.parent_id = parent_id
        file.modified_at = modified_at
        file.updated_at = now
        file.deleted_at = None
        await session.flush()
        kind: ChangeKind | None = ChangeKind.CREATE
    else:
        changed = (
            file.size != size
            or (etag is not None and file.etag != etag)
            or (md5_hash is not None and file.md5_hash != md5_hash)
            or file.modified_at != modified_at
        )
        if not changed:
            return file, None
        file.size = size
        file.etag = etag or file.etag
        file.md5_hash = md5_hash or file.md5_hash
        file.sha256_hash = sha256_hash or file.sha256_hash
        file.mime_type = mime_type or file.mime_type
        file.modified_at = modified_at
        file.updated_at = now
        await session.flush()
        kind = ChangeKind.UPDATE

    await record_change(
        session,
        backend_id=backend_id,
        kind=kind,
        path=path,
        client_id=client_id,
        file_id=file.id,
    )
    _invalidate(session, cache, backend_id)
    return file, kind


async def soft_delete_file(
    session: AsyncSession,
    backend_id: str,
    path: str,
    *,
    client_id: str,
    cache: FilterResultCache | None = None,
) -> int:
    """Mark a file (or a directory and everything below it) deleted.

    Returns the number of regular files removed from the active view.
    """
    file = await require_file(session, backend_id, path)
    now = now_utc()
    targets = [file]
    if file.is_dir:
        stmt = select(File).where(
            File.backend_id == backend_id,
            File.deleted_at.is_(None),
            File.path.startswith(f"{path}/", autoescape=True),
        )
        targets.extend((await session.execute(stmt)).scalars().all())

    removed = 0
    for target in targets:
        target.deleted_at = now
        target.updated_at = now
        if target.is_dir:
            continue
        removed += 1
        await record_change(
            session,
            backend_id=backend_id,
            kind=ChangeKind.DELETE,
            path=target.path,
            client_id=client_id,
            file_id=target.id,
        )
    await session.flush()
    _invalidate(session, cache, backend_id)
    return removed


async def _clear_tombstone(session: AsyncSession, backend_id: str, path: str) -> None:
    existing = await get_file(session, backend_id, path, include_deleted=True)
    if existing is None:
        return
    if existing.deleted_at is None:
        raise ConflictError(f"Destination already exists: {backend_id}/{path}")
    await session.execute(delete(File).where(File.id == existing.id))


async def rename_file(
    session: AsyncSession,
    backend_id: str,
    old_path: str,
    new_path: str,
    *,
    client_id: str,
    cache: FilterResultCache | None = None,
) -> File:
    """Move a file or directory within one backend. Tags follow the file."""
    if old_path == new_path:
        return await require_file(session, backend_id, old_path)
    if new_path.startswith(f"{old_path}/"):
        raise ConflictError(f"Cannot move {old_path!r} into itself")

    file = await require_file(session, backend_id, old_path)
    now = now_utc()
    moves = [file]
    if file.is_dir:
        stmt = select(File).where(
            File.backend_id == backend_id,
            File.deleted_at.is_(None),
            File.path.startswith(f"{old_path}/", autoescape=True),
        )
        moves.extend((await session.execute(stmt)).scalars().all())

    for moving in moves:
        await _clear_tombstone(session, backend_id, new_path + moving.path[len(old_path) :])

    file.parent_id = await _parent_id(session, backend_id, new_path, now)
    for moving in moves:
        source = moving.path
        moving.path = new_path + source[len(old_path) :]
        moving.updated_at = now
        await record_change(
            session,
            backend_id=backend_id,
            kind=ChangeKind.RENAME,
            path=moving.path,
            client_id=client_id,
            file_id=moving.id,
            old_path=source,
            new_path=moving.path,
        )
    await session.flush()
    _invalidate(session, cache, backend_id)
    return file
