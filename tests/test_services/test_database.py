"""Tests for database engine and session management."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from sqlalchemy import text

from objsync.exceptions import PersistenceError

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from objsync.database import MetadataStore


class TestMetadataStore:
    async def test_session_works(self, db_session: AsyncSession) -> None:
        result = await db_session.execute(text("SELECT 42"))
        assert result.scalar() == 42

    async def test_foreign_keys_enabled(self, db_session: AsyncSession) -> None:
        result = await db_session.execute(text("PRAGMA foreign_keys"))
        assert result.scalar() == 1

    async def test_health(self, store: MetadataStore) -> None:
        assert await store.health() is True
        assert store.single_writer is True

    async def test_savepoint_rolls_back_inner_work(self, store: MetadataStore) -> None:
        async with store.write() as session:
            await session.execute(text("CREATE TABLE scratch (v INTEGER)"))
            await session.execute(text("INSERT INTO scratch VALUES (1)"))
            nested = await session.begin_nested()
            await session.execute(text("INSERT INTO scratch VALUES (2)"))
            await nested.rollback()
            await session.commit()
        async with store.session() as session:
            rows = (await session.execute(text("SELECT v FROM scratch"))).scalars().all()
        assert rows == [1]

    async def test_failed_write_becomes_persistence_error(self, store: MetadataStore) -> None:
        with pytest.raises(PersistenceError, match="transaction failed"):
            async with store.write() as session:
                await session.execute(text("INSERT INTO no_such_table VALUES (1)"))
