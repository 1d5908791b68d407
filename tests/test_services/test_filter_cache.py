"""Tests for the filter result cache and its invalidation."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

from objsync.schemas.filter import FilterCreate, FilterUpdate
from objsync.services import backend_service, file_service, filter_service, tag_service
from objsync.services.filter_cache import FilterResultCache
from objsync.services.query_engine import FilterMatch
from tests.conftest import TEST_SECRET_KEY, backend_create

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from objsync.database import MetadataStore


def _match(backend_id: str, path: str) -> FilterMatch:
    return FilterMatch(
        file_id=1,
        backend_id=backend_id,
        path=path,
        size=1,
        etag=None,
        md5_hash=None,
        mime_type=None,
        modified_at=datetime(2024, 1, 1, tzinfo=UTC),
    )


class TestFilterResultCache:
    def test_hit_and_miss_counters(self) -> None:
        cache = FilterResultCache()
        assert cache.get(1, "tag:a=1") is None
        cache.put(1, "tag:a=1", None, [_match("s3", "a")])
        assert cache.get(1, "tag:a=1") == [_match("s3", "a")]
        assert (cache.hits, cache.misses) == (1, 1)

    def test_changed_query_expression_misses(self) -> None:
        cache = FilterResultCache()
        cache.put(1, "tag:a=1", None, [])
        assert cache.get(1, "tag:a=2") is None

    def test_backend_invalidation_is_scoped(self) -> None:
        cache = FilterResultCache()
        cache.put(1, "backend:s3", frozenset({"s3"}), [])
        cache.put(2, "backend:b2", frozenset({"b2"}), [])
        cache.put(3, "tag:a=1", None, [])
        cache.invalidate_backend("s3")
        assert cache.get(1, "backend:s3") is None
        assert cache.get(2, "backend:b2") == []
        # unscoped queries could match anything
        assert cache.get(3, "tag:a=1") is None

    def test_stale_generation_is_discarded(self) -> None:
        cache = FilterResultCache()
        generation = cache.generation
        cache.invalidate_backend("s3")
        cache.put(1, "tag:a=1", None, [_match("s3", "a")], generation=generation)
        assert len(cache) == 0

    def test_disabled_cache_stores_nothing(self) -> None:
        cache = FilterResultCache(enabled=False)
        cache.put(1, "tag:a=1", None, [])
        assert cache.get(1, "tag:a=1") is None
        assert len(cache) == 0

    def test_clear(self) -> None:
        cache = FilterResultCache()
        cache.put(1, "tag:a=1", None, [])
        cache.clear()
        assert len(cache) == 0


class TestInvalidateOnCommit:
    async def test_entry_computed_before_commit_is_dropped(self, store: MetadataStore) -> None:
        cache = FilterResultCache()
        async with store.write() as session:
            cache.invalidate_backend_on_commit(session, "s3")
            # a reader caching pre-commit data in between
            cache.put(1, "tag:a=1", None, [_match("s3", "stale")], generation=cache.generation)
            assert len(cache) == 1
            await session.commit()
        assert len(cache) == 0

    async def test_listener_fires_once(self, store: MetadataStore) -> None:
        cache = FilterResultCache()
        async with store.write() as session:
            cache.invalidate_filter_on_commit(session, 7)
            await session.commit()
            cache.put(7, "tag:a=1", None, [])
            await session.commit()
        assert cache.get(7, "tag:a=1") == []


class TestEvaluateFilterCaching:
    async def test_tag_mutation_invalidates(
        self, db_session: AsyncSession, filter_cache: FilterResultCache
    ) -> None:
        await backend_service.create_backend(
            db_session, backend_create("s3"), TEST_SECRET_KEY, filter_namespace="filters"
        )
        file, _kind = await file_service.upsert_file(
            db_session, "s3", "a.txt", size=1, client_id="test-client"
        )
        flt = await filter_service.create_filter(
            db_session,
            FilterCreate(virtual_path="red", query="tag:color=red"),
            filter_namespace="filters",
        )
        await db_session.commit()

        assert await filter_service.evaluate_filter(db_session, flt, cache=filter_cache) == []
        assert len(filter_cache) == 1
        assert await filter_service.evaluate_filter(db_session, flt, cache=filter_cache) == []
        assert filter_cache.hits == 1

        await tag_service.add_tag(db_session, file, "color", "red", cache=filter_cache)
        await db_session.commit()
        assert len(filter_cache) == 0
        matches = await filter_service.evaluate_filter(db_session, flt, cache=filter_cache)
        assert [m.path for m in matches] == ["a.txt"]

    async def test_relative_time_filters_are_not_cached(
        self, db_session: AsyncSession, filter_cache: FilterResultCache
    ) -> None:
        flt = await filter_service.create_filter(
            db_session,
            FilterCreate(virtual_path="recent", query="modified_time>now-1d"),
            filter_namespace="filters",
        )
        await filter_service.evaluate_filter(db_session, flt, cache=filter_cache)
        assert len(filter_cache) == 0

    async def test_filter_update_invalidates(
        self, db_session: AsyncSession, filter_cache: FilterResultCache
    ) -> None:
        flt = await filter_service.create_filter(
            db_session,
            FilterCreate(virtual_path="red", query="tag:color=red"),
            filter_namespace="filters",
        )
        await filter_service.evaluate_filter(db_session, flt, cache=filter_cache)
        assert len(filter_cache) == 1
        await filter_service.update_filter(
            db_session,
            flt.id,
            FilterUpdate(description="things that are red"),
            filter_namespace="filters",
            cache=filter_cache,
        )
        assert len(filter_cache) == 0
