"""Evaluate parsed filter queries against the metadata store.

Every atom becomes a set of file ids; ``AND`` intersects, ``OR`` unions and
``NOT`` complements against the universe of active, non-directory files on
active backends. Glob matching and numeric coercion happen in Python so the
SQLite and PostgreSQL stores return identical results.
"""

from __future__ import annotations

import asyncio
import logging
import math
import operator
from dataclasses import dataclass
from datetime import datetime, timedelta
from fnmatch import fnmatchcase
from typing import TYPE_CHECKING, Any

from sqlalchemy import and_, select

from objsync.models.backend import Backend
from objsync.models.file import File
from objsync.models.tag import Tag
from objsync.services.datetime_service import (
    is_date_only,
    is_relative,
    now_utc,
    parse_datetime,
    resolve_relative,
)
from objsync.services.query_parser import (
    And,
    FieldPredicate,
    Node,
    Not,
    Or,
    TagPredicate,
    parse_query,
    parse_size,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from sqlalchemy import ColumnElement, Select
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

_COMPARATORS: dict[str, Callable[[Any, Any], bool]] = {
    "=": operator.eq,
    ">": operator.gt,
    "<": operator.lt,
    ">=": operator.ge,
    "<=": operator.le,
}
_GLOB_CHARS = "*?["
_ID_CHUNK = 500


@dataclass(frozen=True)
class FilterMatch:
    """A file selected by a filter, with the attributes sync and listings need."""

    file_id: int
    backend_id: str
    path: str
    size: int
    etag: str | None
    md5_hash: str | None
    mime_type: str | None
    modified_at: datetime

    @property
    def virtual_path(self) -> str:
        return f"{self.backend_id}/{self.path}"


def _as_number(value: str) -> float | None:
    try:
        number = float(value)
    except ValueError:
        return None
    return number if math.isfinite(number) else None


def compare_values(left: str, op: str, right: str) -> bool:
    """Compare a stored tag value with a query literal.

    ``=`` is exact string equality. Ordering operators compare numerically
    when both operands parse as finite numbers, otherwise lexicographically.
    Mixed values such as ``high`` against ``4`` therefore fall back to string
    comparison without error.
    """
    if op == "=":
        return left == right
    left_number, right_number = _as_number(left), _as_number(right)
    if left_number is not None and right_number is not None:
        return _COMPARATORS[op](left_number, right_number)
    return _COMPARATORS[op](left, right)


def candidate_backends(node: Node) -> frozenset[str] | None:
    """Backends whose files could match ``node``; None means any backend.

    Only positive ``backend:`` predicates narrow the set. Anything under a
    ``NOT`` is treated as unconstrained.
    """
    if isinstance(node, FieldPredicate):
        if node.field == "backend":
            return frozenset({node.value})
        return None
    if isinstance(node, TagPredicate | Not):
        return None
    if isinstance(node, And):
        narrowed: frozenset[str] | None = None
        for term in node.terms:
            backends = candidate_backends(term)
            if backends is not None:
                narrowed = backends if narrowed is None else narrowed & backends
        return narrowed
    union: set[str] = set()
    for term in node.terms:
        backends = candidate_backends(term)
        if backends is None:
            return None
        union |= backends
    return frozenset(union)


def uses_relative_time(node: Node) -> bool:
    """True when the result depends on evaluation time (``now``-relative predicates)."""
    if isinstance(node, FieldPredicate):
        return node.field == "modified_time" and is_relative(node.value)
    if isinstance(node, TagPredicate):
        return False
    if isinstance(node, Not):
        return uses_relative_time(node.operand)
    return any(uses_relative_time(term) for term in node.terms)


def _glob_prefix(pattern: str) -> str:
    cut = min((i for i, char in enumerate(pattern) if char in _GLOB_CHARS), default=len(pattern))
    return pattern[:cut]


def _active() -> ColumnElement[bool]:
    return and_(
        File.deleted_at.is_(None),
        File.is_dir.is_(False),
        Backend.deleted_at.is_(None),
    )


def _files(*columns: Any) -> Select[Any]:
    return select(*columns).join(Backend, File.backend_id == Backend.id).where(_active())


class QueryEvaluator:
    """Bottom-up evaluator producing sets of file ids."""

    def __init__(self, session: AsyncSession, now: datetime) -> None:
        self._session = session
        self._now = now
        self._universe: set[int] | None = None

    async def _ids(self, stmt: Select[Any]) -> set[int]:
        return set((await self._session.execute(stmt)).scalars().all())

    async def universe(self) -> set[int]:
        if self._universe is None:
            self._universe = await self._ids(_files(File.id))
        return self._universe

    async def evaluate(self, node: Node) -> set[int]:
        if isinstance(node, And):
            result: set[int] | None = None
            for term in node.terms:
                ids = await self.evaluate(term)
                result = ids if result is None else result & ids
                if not result:
                    return set()
            return result or set()
        if isinstance(node, Or):
            union: set[int] = set()
            for term in node.terms:
                union |= await self.evaluate(term)
            return union
        if isinstance(node, Not):
            return await self.universe() - await self.evaluate(node.operand)
        if isinstance(node, TagPredicate):
            return await self._tag(node)
        return await self._field(node)

    async def _tag(self, node: TagPredicate) -> set[int]:
        stmt = _files(Tag.file_id, Tag.value).join(Tag, Tag.file_id == File.id)
        stmt = stmt.where(Tag.key == node.key)
        if node.op == "=":
            stmt = stmt.where(Tag.value == node.value)
        rows = (await self._session.execute(stmt)).all()
        return {
            file_id for file_id, value in rows if compare_values(value, node.op, node.value)
        }

    async def _field(self, node: FieldPredicate) -> set[int]:
        if node.field == "backend":
            return await self._ids(_files(File.id).where(File.backend_id == node.value))
        if node.field == "path":
            return await self._glob(File.path, node.value, case_sensitive=True)
        if node.field == "mime_type":
            return await self._glob(File.mime_type, node.value, case_sensitive=False)
        if node.field == "size":
            limit = parse_size(node.value)
            return await self._ids(_files(File.id).where(_compare(File.size, node.op, limit)))
        return await self._ids(_files(File.id).where(self._modified(node)))

    async def _glob(self, column: Any, pattern: str, *, case_sensitive: bool) -> set[int]:
        stmt = _files(File.id, column).where(column.is_not(None))
        prefix = _glob_prefix(pattern)
        if prefix and case_sensitive:
            stmt = stmt.where(column.startswith(prefix, autoescape=True))
        if not case_sensitive:
            pattern = pattern.lower()
        rows = (await self._session.execute(stmt)).all()
        return {
            file_id
            for file_id, value in rows
            if fnmatchcase(value if case_sensitive else value.lower(), pattern)
        }

    def _modified(self, node: FieldPredicate) -> ColumnElement[bool]:
        column = File.modified_at
        if is_relative(node.value):
            return _compare(column, node.op, resolve_relative(node.value, self._now))
        start = parse_datetime(node.value)
        if not is_date_only(node.value):
            return _compare(column, node.op, start)

        end = start + timedelta(days=1)
        if node.op == "=":
            return and_(column >= start, column < end)
        if node.op == "<":
            return column < start
        if node.op == "<=":
            return column < end
        if node.op == ">":
            return column >= end
        return column >= start


def _compare(column: Any, op: str, value: Any) -> ColumnElement[bool]:
    return _COMPARATORS[op](column, value)  # type: ignore[no-any-return]


async def load_matches(session: AsyncSession, file_ids: set[int]) -> list[FilterMatch]:
    """Fetch match rows for ``file_ids`` ordered by (backend_id, path)."""
    matches: list[FilterMatch] = []
    ordered = sorted(file_ids)
    for start in range(0, len(ordered), _ID_CHUNK):
        chunk = ordered[start : start + _ID_CHUNK]
        stmt = select(
            File.id,
            File.backend_id,
            File.path,
            File.size,
            File.etag,
            File.md5_hash,
            File.mime_type,
            File.modified_at,
        ).where(File.id.in_(chunk))
        for row in (await session.execute(stmt)).all():
            matches.append(FilterMatch(*row))
    matches.sort(key=lambda m: (m.backend_id, m.path))
    return matches


async def evaluate_query(
    session: AsyncSession,
    query: str | Node,
    *,
    now: datetime | None = None,
    timeout: float | None = None,
) -> list[FilterMatch]:
    """Evaluate a query string or AST and return its matches.

    Raises ValidationError for malformed queries and TimeoutError when
    ``timeout`` seconds elapse first.
    """
    node = parse_query(query) if isinstance(query, str) else query
    evaluator = QueryEvaluator(session, now or now_utc())
    async with asyncio.timeout(timeout):
        file_ids = await evaluator.evaluate(node)
        matches = await load_matches(session, file_ids)
    logger.debug("Query matched %d files", len(matches))
    return matches
