"""In-process cache of evaluated filter results.

Entries are keyed by filter id and remember the backends their query could
match. Any tag or file mutation on one of those backends drops the entry;
entries whose query is not narrowed by ``backend:`` drop on every mutation.
Invalidation is synchronous so a write is visible to the next evaluation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from sqlalchemy import event

if TYPE_CHECKING:
    from collections.abc import Iterable

    from sqlalchemy.ext.asyncio import AsyncSession

    from objsync.services.query_engine import FilterMatch

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheEntry:
    query_expression: str
    backends: frozenset[str] | None
    matches: tuple[FilterMatch, ...]


class FilterResultCache:
    """Owned cache instance; store one on ``app.state`` rather than a module global."""

    def __init__(self, *, enabled: bool = True) -> None:
        self.enabled = enabled
        self._entries: dict[int, CacheEntry] = {}
        self.generation = 0
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, filter_id: int, query_expression: str) -> list[FilterMatch] | None:
        if not self.enabled:
            return None
        entry = self._entries.get(filter_id)
        if entry is None or entry.query_expression != query_expression:
            self.misses += 1
            return None
        self.hits += 1
        return list(entry.matches)

    def put(
        self,
        filter_id: int,
        query_expression: str,
        backends: frozenset[str] | None,
        matches: Iterable[FilterMatch],
        *,
        generation: int | None = None,
    ) -> None:
        """Store a result computed when the cache was at ``generation``.

        Results computed before an intervening invalidation are discarded.
        """
        if not self.enabled:
            return
        if generation is not None and generation != self.generation:
            return
        self._entries[filter_id] = CacheEntry(query_expression, backends, tuple(matches))

    def invalidate_filter(self, filter_id: int) -> None:
        self.generation += 1
        self._entries.pop(filter_id, None)

    def invalidate_backend(self, backend_id: str) -> None:
        """Drop every entry whose candidate backend set includes ``backend_id``."""
        self.generation += 1
        stale = [
            filter_id
            for filter_id, entry in self._entries.items()
            if entry.backends is None or backend_id in entry.backends
        ]
        for filter_id in stale:
            del self._entries[filter_id]
        if stale:
            logger.debug("Invalidated %d cached filter results for %s", len(stale), backend_id)

    def invalidate_backend_on_commit(self, session: AsyncSession, backend_id: str) -> None:
        """Invalidate now and once more when ``session`` commits.

        Entries computed from pre-commit data in between are dropped at commit.
        """
        self.invalidate_backend(backend_id)

        def _after_commit(_session: Any) -> None:
            self.invalidate_backend(backend_id)

        event.listen(session.sync_session, "after_commit", _after_commit, once=True)

    def invalidate_filter_on_commit(self, session: AsyncSession, filter_id: int) -> None:
        self.invalidate_filter(filter_id)

        def _after_commit(_session: Any) -> None:
            self.invalidate_filter(filter_id)

        event.listen(session.sync_session, "after_commit", _after_commit, once=True)

    def clear(self) -> None:
        self.generation += 1
        self._entries.clear()
