"""Tag storage: idempotent add, remove, transactional replace and reverse lookup."""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from objsync.exceptions import ValidationError
from objsync.models.backend import Backend
from objsync.models.file import File
from objsync.models.tag import Tag
from objsync.services.datetime_service import now_utc

if TYPE_CHECKING:
    from collections.abc import Iterable

    from sqlalchemy.ext.asyncio import AsyncSession

    from objsync.services.filter_cache import FilterResultCache

logger = logging.getLogger(__name__)

TAG_KEY_PATTERN = re.compile(r"^[^\s=<>:\"]+$")


def validate_tag_key(key: str) -> str:
    """Tag keys must be usable verbatim in ``tag:<key>=<value>`` queries."""
    if not key or TAG_KEY_PATTERN.match(key) is None:
        raise ValidationError(
            f"Invalid tag key {key!r}: must be non-empty without whitespace, quotes or =<>:"
        )
    return key


async def get_file_tags(session: AsyncSession, file_id: int) -> list[Tag]:
    stmt = select(Tag).where(Tag.file_id == file_id).order_by(Tag.key, Tag.value)
    return list((await session.execute(stmt)).scalars().all())


async def _has_tag(session: AsyncSession, file_id: int, key: str, value: str) -> bool:
    stmt = select(Tag.id).where(Tag.file_id == file_id, Tag.key == key, Tag.value == value)
    return (await session.execute(stmt)).first() is not None


async def add_tag(
    session: AsyncSession,
    file: File,
    key: str,
    value: str,
    *,
    cache: FilterResultCache | None = None,
) -> bool:
    """Attach ``key=value`` to ``file``. Returns False if the triple already existed."""
    validate_tag_key(key)
    if await _has_tag(session, file.id, key, value):
        return False
    try:
        async with session.begin_nested():
            session.add(Tag(file_id=file.id, key=key, value=value, created_at=now_utc()))
    except IntegrityError:
        # another writer inserted the same triple first
        return False
    if cache is not None:
        cache.invalidate_backend_on_commit(session, file.backend_id)
    return True


async def remove_tag(
    session: AsyncSession,
    file: File,
    key: str,
    value: str | None = None,
    *,
    cache: FilterResultCache | None = None,
) -> int:
    """Remove ``key=value`` (or every value of ``key``). Absent tags are a no-op."""
    stmt = delete(Tag).where(Tag.file_id == file.id, Tag.key == key)
    if value is not None:
        stmt = stmt.where(Tag.value == value)
    result = await session.execute(stmt)
    removed = result.rowcount or 0  # type: ignore[attr-defined]
    if removed and cache is not None:
        cache.invalidate_backend_on_commit(session, file.backend_id)
    return removed


async def replace_file_tags(
    session: AsyncSession,
    file: File,
    tags: Iterable[tuple[str, str]],
    *,
    cache: FilterResultCache | None = None,
) -> list[Tag]:
    """Replace the full tag set of ``file`` atomically.

    Runs inside a savepoint: on any failure the previous tag set is left
    untouched and the error propagates.
    """
    pairs = sorted(set(tags))
    for key, _value in pairs:
        validate_tag_key(key)
    now = now_utc()
    async with session.begin_nested():
        await session.execute(delete(Tag).where(Tag.file_id == file.id))
        for key, value in pairs:
            session.add(Tag(file_id=file.id, key=key, value=value, created_at=now))
    if cache is not None:
        cache.invalidate_backend_on_commit(session, file.backend_id)
    return await get_file_tags(session, file.id)


async def find_files_by_tag(
    session: AsyncSession,
    key: str,
    value: str,
    *,
    limit: int = 100,
    offset: int = 0,
) -> list[File]:
    """Active files carrying exactly ``key=value``, ordered by (backend, path)."""
    stmt = (
        select(File)
        .join(Tag, Tag.file_id == File.id)
        .join(Backend, Backend.id == File.backend_id)
        .where(
            Tag.key == key,
            Tag.value == value,
            File.deleted_at.is_(None),
            Backend.deleted_at.is_(None),
        )
        .order_by(File.backend_id, File.path)
        .limit(limit)
        .offset(offset)
    )
    return list((await session.execute(stmt)).scalars().all())


def derive_tags(file: File) -> list[tuple[str, str]]:
    """Tags inferred from a file's name, MIME type and modification time."""
    derived: list[tuple[str, str]] = []
    name = file.path.rsplit("/", 1)[-1]
    if "." in name.strip("."):
        derived.append(("extension", name.rsplit(".", 1)[-1].lower()))
    if file.mime_type:
        derived.append(("type", file.mime_type.split("/", 1)[0]))
    derived.append(("year", f"{file.modified_at.year:04d}"))
    derived.append(("month", f"{file.modified_at.month:02d}"))
    return derived


async def auto_tag(
    session: AsyncSession,
    files: Iterable[File],
    *,
    cache: FilterResultCache | None = None,
) -> int:
    """Add derived tags to each regular file. Returns the number of tags added."""
    added = 0
    for file in files:
        if file.is_dir:
            continue
        for key, value in derive_tags(file):
            if await add_tag(session, file, key, value, cache=cache):
                added += 1
    logger.info("Auto-tagging added %d tags", added)
    return added
