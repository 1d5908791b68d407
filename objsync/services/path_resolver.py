"""Virtual path classification and decomposition.

A virtual path is either ``<backend-id>/<path within backend>`` or
``<namespace>/<filter virtual path>`` where ``<namespace>`` is the reserved
filter segment (``filters`` by default). Resolution only consults the
metadata store; it never contacts a storage endpoint and is never cached.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

from sqlalchemy import select

from objsync.exceptions import InvalidPathError, NotFoundError
from objsync.models.backend import Backend
from objsync.models.filter import Filter

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

BACKEND_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
DEFAULT_FILTER_NAMESPACE = "filters"


class PathKind(StrEnum):
    """Classification of a resolved virtual path."""

    ROOT = "root"
    BACKEND = "backend"
    FILTER_ROOT = "filter_root"
    FILTER = "filter"


@dataclass(frozen=True)
class ResolvedPath:
    """Result of resolving a virtual path.

    ``namespace`` is the backend id or the filter namespace token,
    ``remainder`` the rest of the path (possibly empty).
    """

    kind: PathKind
    namespace: str
    remainder: str
    backend: Backend | None = None
    filter: Filter | None = None

    @property
    def virtual_path(self) -> str:
        if self.kind == PathKind.ROOT:
            return ""
        if not self.remainder:
            return self.namespace
        return f"{self.namespace}/{self.remainder}"


def split_path(path: str) -> list[str]:
    """Split a slash-delimited path into segments.

    Leading, trailing and repeated slashes are insignificant. ``.`` and
    ``..`` segments are rejected.
    """
    segments = [segment for segment in path.strip().split("/") if segment]
    for segment in segments:
        if segment in {".", ".."}:
            raise InvalidPathError(f"Relative segment {segment!r} is not allowed", segment)
    return segments


def normalize_path(path: str) -> str:
    """Return the canonical slash-joined form of ``path``."""
    return "/".join(split_path(path))


def validate_backend_id(
    backend_id: str, filter_namespace: str = DEFAULT_FILTER_NAMESPACE
) -> str:
    """Reject identifiers outside ``[A-Za-z0-9_-]`` or equal to the filter namespace."""
    if not backend_id or BACKEND_ID_PATTERN.match(backend_id) is None:
        raise InvalidPathError(
            f"Invalid backend identifier {backend_id!r}: "
            "use only letters, digits, '-' and '_'",
            backend_id,
        )
    if backend_id == filter_namespace:
        raise InvalidPathError(
            f"Backend identifier {backend_id!r} is reserved for filters", backend_id
        )
    return backend_id


async def resolve_path(
    session: AsyncSession,
    path: str,
    filter_namespace: str = DEFAULT_FILTER_NAMESPACE,
) -> ResolvedPath:
    """Classify and decompose a virtual path.

    Raises InvalidPathError for malformed paths and NotFoundError when the
    backend or filter does not exist.
    """
    segments = split_path(path)
    if not segments:
        return ResolvedPath(kind=PathKind.ROOT, namespace="", remainder="")

    head, rest = segments[0], "/".join(segments[1:])

    if head == filter_namespace:
        if not rest:
            return ResolvedPath(kind=PathKind.FILTER_ROOT, namespace=head, remainder="")
        stmt = select(Filter).where(Filter.virtual_path == rest)
        flt = (await session.execute(stmt)).scalar_one_or_none()
        if flt is None:
            raise NotFoundError(f"Filter not found: {head}/{rest}")
        return ResolvedPath(kind=PathKind.FILTER, namespace=head, remainder=rest, filter=flt)

    validate_backend_id(head, filter_namespace)
    stmt_backend = select(Backend).where(Backend.id == head, Backend.deleted_at.is_(None))
    backend = (await session.execute(stmt_backend)).scalar_one_or_none()
    if backend is None:
        raise NotFoundError(f"Backend not found: {head}")
    return ResolvedPath(kind=PathKind.BACKEND, namespace=head, remainder=rest, backend=backend)
