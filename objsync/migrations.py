"""Explicit, versioned schema migrations.

Each step is idempotent (``checkfirst`` table creation) and recorded once in
``schema_migrations`` inside the same transaction that applied it. Rollback
of the most recent step is best-effort.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from sqlalchemy import delete, inspect, select

from objsync.models import (
    Backend,
    Base,
    File,
    FileChange,
    Filter,
    SchemaMigration,
    SyncConfig,
    SyncManifest,
    SyncState,
    Tag,
)
from objsync.services.datetime_service import now_utc

if TYPE_CHECKING:
    from collections.abc import Callable

    from sqlalchemy import Connection, Table
    from sqlalchemy.ext.asyncio import AsyncEngine

logger = logging.getLogger(__name__)


def _tables(*models: type[Base]) -> list[Table]:
    return [model.__table__ for model in models]  # type: ignore[misc]


def _create(*models: type[Base]) -> Callable[[Connection], None]:
    def upgrade(conn: Connection) -> None:
        Base.metadata.create_all(conn, tables=_tables(*models), checkfirst=True)

    return upgrade


def _drop(*models: type[Base]) -> Callable[[Connection], None]:
    def downgrade(conn: Connection) -> None:
        Base.metadata.drop_all(conn, tables=_tables(*models), checkfirst=True)

    return downgrade


@dataclass(frozen=True)
class Migration:
    """A single schema step."""

    version: int
    description: str
    upgrade: Callable[[Connection], None]
    downgrade: Callable[[Connection], None] | None = None


@dataclass(frozen=True)
class MigrationStatus:
    version: int
    description: str
    applied: bool


MIGRATIONS: tuple[Migration, ...] = (
    Migration(
        version=1,
        description="Create backends, files and tags",
        upgrade=_create(Backend, File, Tag),
        downgrade=_drop(Tag, File, Backend),
    ),
    Migration(
        version=2,
        description="Create filters",
        upgrade=_create(Filter),
        downgrade=_drop(Filter),
    ),
    Migration(
        version=3,
        description="Create sync configs, sync states and sync manifest",
        upgrade=_create(SyncConfig, SyncState, SyncManifest),
        downgrade=_drop(SyncManifest, SyncState, SyncConfig),
    ),
    Migration(
        version=4,
        description="Create file change log",
        upgrade=_create(FileChange),
        downgrade=_drop(FileChange),
    ),
)


def _ensure_ledger(conn: Connection) -> None:
    Base.metadata.create_all(conn, tables=_tables(SchemaMigration), checkfirst=True)


def _applied_versions(conn: Connection) -> set[int]:
    if not inspect(conn).has_table(SchemaMigration.__tablename__):
        return set()
    return set(conn.execute(select(SchemaMigration.version)).scalars().all())


async def run_migrations(
    engine: AsyncEngine, migrations: tuple[Migration, ...] = MIGRATIONS
) -> list[int]:
    """Apply all pending migrations in order. Returns the versions applied."""
    async with engine.begin() as conn:
        await conn.run_sync(_ensure_ledger)
        applied = await conn.run_sync(_applied_versions)

    newly_applied: list[int] = []
    for migration in sorted(migrations, key=lambda m: m.version):
        if migration.version in applied:
            continue
        logger.info("Applying migration %d: %s", migration.version, migration.description)
        async with engine.begin() as conn:
            await conn.run_sync(migration.upgrade)
            await conn.execute(
                SchemaMigration.__table__.insert().values(
                    version=migration.version,
                    description=migration.description,
                    applied_at=now_utc(),
                )
            )
        newly_applied.append(migration.version)
    return newly_applied


async def migration_status(
    engine: AsyncEngine, migrations: tuple[Migration, ...] = MIGRATIONS
) -> list[MigrationStatus]:
    """Report which migrations have been applied."""
    async with engine.connect() as conn:
        applied = await conn.run_sync(_applied_versions)
    return [
        MigrationStatus(version=m.version, description=m.description, applied=m.version in applied)
        for m in sorted(migrations, key=lambda m: m.version)
    ]


async def rollback_last(
    engine: AsyncEngine, migrations: tuple[Migration, ...] = MIGRATIONS
) -> int | None:
    """Undo the most recently applied migration. Returns its version, or None."""
    async with engine.connect() as conn:
        applied = await conn.run_sync(_applied_versions)
    if not applied:
        return None

    last = max(applied)
    migration = next((m for m in migrations if m.version == last), None)
    if migration is None or migration.downgrade is None:
        logger.warning("Migration %d cannot be rolled back", last)
        return None

    async with engine.begin() as conn:
        await conn.run_sync(migration.downgrade)
        await conn.execute(delete(SchemaMigration).where(SchemaMigration.version == last))
    logger.info("Rolled back migration %d: %s", last, migration.description)
    return last
