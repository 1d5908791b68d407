"""Database engine, session management and the metadata store facade."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from sqlalchemy import event, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from objsync.exceptions import PersistenceError

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from objsync.config import Settings

logger = logging.getLogger(__name__)


def _enable_sqlite_pragmas(dbapi_connection: Any, connection_record: Any) -> None:
    # let SQLAlchemy emit BEGIN itself so SAVEPOINT nests inside the transaction
    dbapi_connection.isolation_level = None
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


def _emit_sqlite_begin(conn: Any) -> None:
    conn.exec_driver_sql("BEGIN")


def create_engine(
    settings: Settings,
) -> tuple[
    AsyncEngine,
    async_sessionmaker[AsyncSession],
]:
    """Create async engine and session factory.

    Returns (engine, session_factory) tuple.
    """
    engine = create_async_engine(
        settings.database_url,
        echo=settings.database_echo,
    )
    if engine.dialect.name == "sqlite":
        event.listen(engine.sync_engine, "connect", _enable_sqlite_pragmas)
        event.listen(engine.sync_engine, "begin", _emit_sqlite_begin)
    session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    return engine, session_factory


class MetadataStore:
    """Owns the engine and hands out read and write sessions.

    The embedded SQLite variant admits at most one write transaction at a time
    (``single_writer``); the networked variant lets the database arbitrate
    concurrent writers. Query semantics are identical for both.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        single_writer: bool,
    ) -> None:
        self.engine = engine
        self.session_factory = session_factory
        self.single_writer = single_writer
        self._write_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> MetadataStore:
        engine, session_factory = create_engine(settings)
        return cls(engine, session_factory, single_writer=settings.is_single_writer)

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession]:
        """Yield a session for read-only work."""
        try:
            async with self.session_factory() as session:
                yield session
        except SQLAlchemyError as exc:
            logger.error("Metadata store read failed: %s", exc)
            raise PersistenceError(f"Metadata store read failed: {exc}") from exc

    @asynccontextmanager
    async def write(self) -> AsyncGenerator[AsyncSession]:
        """Yield a session for mutations. The caller commits.

        Uncommitted work is rolled back when the block exits.
        """
        if self.single_writer:
            await self._write_lock.acquire()
        try:
            async with self.session_factory() as session:
                yield session
        except SQLAlchemyError as exc:
            logger.error("Metadata store transaction failed: %s", exc)
            raise PersistenceError(f"Metadata store transaction failed: {exc}") from exc
        finally:
            if self.single_writer:
                self._write_lock.release()

    async def health(self) -> bool:
        try:
            async with self.session_factory() as session:
                await session.execute(text("SELECT 1"))
        except SQLAlchemyError:
            logger.warning("Metadata store health check failed", exc_info=True)
            return False
        return True

    async def dispose(self) -> None:
        await self.engine.dispose()


