"""Tests for the schema migration runner."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from sqlalchemy import inspect

from objsync.database import MetadataStore
from objsync.migrations import MIGRATIONS, migration_status, rollback_last, run_migrations

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from sqlalchemy.ext.asyncio import AsyncEngine

    from objsync.config import Settings


@pytest.fixture
async def engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine]:
    """An engine on an empty database."""
    metadata_store = MetadataStore.from_settings(test_settings)
    yield metadata_store.engine
    await metadata_store.dispose()


async def _tables(engine: AsyncEngine) -> set[str]:
    async with engine.connect() as conn:
        return set(await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names()))


class TestMigrations:
    async def test_apply_is_idempotent(self, engine: AsyncEngine) -> None:
        assert await run_migrations(engine) == [m.version for m in MIGRATIONS]
        assert await run_migrations(engine) == []
        tables = await _tables(engine)
        assert {"backends", "files", "tags", "filters", "sync_configs", "file_changes"} <= tables
        assert all(status.applied for status in await migration_status(engine))

    async def test_rollback_last(self, engine: AsyncEngine) -> None:
        await run_migrations(engine)
        last = MIGRATIONS[-1].version
        assert await rollback_last(engine) == last
        statuses = {s.version: s.applied for s in await migration_status(engine)}
        assert statuses[last] is False
        assert "file_changes" not in await _tables(engine)
        assert await run_migrations(engine) == [last]

    async def test_status_on_empty_database(self, engine: AsyncEngine) -> None:
        assert not any(s.applied for s in await migration_status(engine))
        assert await rollback_last(engine) is None
