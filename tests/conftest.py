"""Shared test fixtures for objsync."""

from __future__ import annotations

import hashlib
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import pytest
from httpx import ASGITransport, AsyncClient

from objsync.config import Settings
from objsync.database import MetadataStore
from objsync.exceptions import StorageError
from objsync.main import create_app
from objsync.migrations import run_migrations
from objsync.schemas.backend import BackendCreate
from objsync.services.filter_cache import FilterResultCache
from objsync.services.sync_engine import SyncEngine
from objsync.storage.base import ObjectInfo
from objsync.storage.registry import BackendRegistry

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Awaitable, Callable
    from pathlib import Path

    from sqlalchemy.ext.asyncio import AsyncSession

    from objsync.models.backend import Backend
    from objsync.services.crypto_service import CredentialPair

logger = logging.getLogger(__name__)

TEST_SECRET_KEY = "test-secret-key-with-at-least-32-characters"
BASE_TIME = datetime(2024, 3, 1, 12, 0, tzinfo=UTC)


@dataclass
class StoredObject:
    data: bytes
    modified_at: datetime
    content_type: str | None = None

    @property
    def etag(self) -> str:
        return hashlib.md5(self.data, usedforsecurity=False).hexdigest()


class FakeStorageClient:
    """In-memory bucket. Entity tags are MD5 digests like a real S3 single-part upload."""

    def __init__(self, backend_id: str) -> None:
        self.backend_id = backend_id
        self.objects: dict[str, StoredObject] = {}
        self.closed = False
        self.transient_failures = 0
        self.permanent_failures: set[str] = set()
        self.upload_hook: Callable[[str], Awaitable[None]] | None = None
        self.uploads: list[str] = []
        self.downloads: list[str] = []
        self._clock = BASE_TIME

    def tick(self) -> datetime:
        self._clock += timedelta(seconds=1)
        return self._clock

    def put(self, key: str, data: bytes, *, modified_at: datetime | None = None) -> None:
        self.objects[key] = StoredObject(data, modified_at or self.tick())

    def _info(self, key: str) -> ObjectInfo:
        obj = self.objects[key]
        return ObjectInfo(
            key=key,
            size=len(obj.data),
            etag=obj.etag,
            modified_at=obj.modified_at,
            content_type=obj.content_type,
        )

    def _check(self, key: str) -> None:
        if key in self.permanent_failures:
            raise StorageError(f"Access denied for {key!r}")
        if self.transient_failures > 0:
            self.transient_failures -= 1
            raise StorageError(f"Slow down on {key!r}", transient=True)

    async def list_objects(self, prefix: str = "") -> list[ObjectInfo]:
        return [self._info(key) for key in sorted(self.objects) if key.startswith(prefix)]

    async def stat(self, key: str) -> ObjectInfo | None:
        return self._info(key) if key in self.objects else None

    async def upload_file(self, local_path: Path, key: str, *, chunk_size: int) -> ObjectInfo:
        self._check(key)
        self.put(key, local_path.read_bytes())
        self.uploads.append(key)
        if self.upload_hook is not None:
            await self.upload_hook(key)
        return self._info(key)

    async def download_file(self, key: str, local_path: Path, *, chunk_size: int) -> ObjectInfo:
        self._check(key)
        if key not in self.objects:
            raise StorageError(f"Download {key!r} failed: object does not exist")
        local_path.parent.mkdir(parents=True, exist_ok=True)
        local_path.write_bytes(self.objects[key].data)
        self.downloads.append(key)
        return self._info(key)

    async def delete_object(self, key: str) -> None:
        self._check(key)
        self.objects.pop(key, None)

    async def close(self) -> None:
        self.closed = True


@dataclass
class FakeClientFactory:
    """Client factory that hands out one FakeStorageClient per backend id."""

    clients: dict[str, FakeStorageClient] = field(default_factory=dict)
    builds: list[str] = field(default_factory=list)
    credentials: dict[str, CredentialPair] = field(default_factory=dict)

    def bucket(self, backend_id: str) -> FakeStorageClient:
        """The bucket contents survive client eviction, like a real remote."""
        if backend_id not in self.clients:
            self.clients[backend_id] = FakeStorageClient(backend_id)
        return self.clients[backend_id]

    def __call__(self, backend: Backend, credentials: CredentialPair) -> FakeStorageClient:
        self.builds.append(backend.id)
        self.credentials[backend.id] = credentials
        client = self.bucket(backend.id)
        client.closed = False
        return client


def backend_create(backend_id: str, **overrides: object) -> BackendCreate:
    data: dict[str, object] = {
        "id": backend_id,
        "endpoint": "https://s3.example.test",
        "bucket": f"{backend_id}-bucket",
        "access_key": f"AKIA-{backend_id}",
        "secret_key": f"secret-{backend_id}",
    }
    data.update(overrides)
    return BackendCreate.model_validate(data)


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Create test settings with temporary paths."""
    db_path = tmp_path / "test.db"
    return Settings(
        secret_key=TEST_SECRET_KEY,
        debug=True,
        database_url=f"sqlite+aiosqlite:///{db_path}",
        data_dir=tmp_path / "data",
        client_id="test-client",
        agent_enabled=False,
        sync_retry_base_delay=0,
        sync_error_backoff_seconds=0,
        query_timeout_seconds=10,
    )


@pytest.fixture
async def store(test_settings: Settings) -> AsyncGenerator[MetadataStore]:
    """A migrated metadata store on a temporary SQLite file."""
    metadata_store = MetadataStore.from_settings(test_settings)
    await run_migrations(metadata_store.engine)
    yield metadata_store
    await metadata_store.dispose()


@pytest.fixture
async def db_session(store: MetadataStore) -> AsyncGenerator[AsyncSession]:
    """Create a test database session."""
    async with store.session_factory() as session:
        yield session


@pytest.fixture
def filter_cache() -> FilterResultCache:
    return FilterResultCache()


@pytest.fixture
def client_factory() -> FakeClientFactory:
    return FakeClientFactory()


@pytest.fixture
async def registry(
    store: MetadataStore,
    filter_cache: FilterResultCache,
    client_factory: FakeClientFactory,
) -> AsyncGenerator[BackendRegistry]:
    backend_registry = BackendRegistry(
        store,
        TEST_SECRET_KEY,
        client_factory=client_factory,
        cache=filter_cache,
    )
    yield backend_registry
    await backend_registry.close()


@pytest.fixture
def sync_engine(
    store: MetadataStore,
    registry: BackendRegistry,
    test_settings: Settings,
    filter_cache: FilterResultCache,
) -> SyncEngine:
    async def no_sleep(_delay: float) -> None:
        return None

    return SyncEngine(store, registry, test_settings, cache=filter_cache, sleep=no_sleep)


@asynccontextmanager
async def create_test_client(
    settings: Settings, factory: FakeClientFactory | None = None
) -> AsyncGenerator[AsyncClient]:
    """Create an HTTP test client with a fully initialized app.

    Performs the work of the application lifespan by hand because
    ASGITransport does not trigger it.
    """
    app = create_app(settings)
    settings.validate_runtime_security()

    metadata_store = MetadataStore.from_settings(settings)
    await run_migrations(metadata_store.engine)
    cache = FilterResultCache(enabled=settings.filter_cache_enabled)
    backend_registry = BackendRegistry(
        metadata_store,
        settings.secret_key,
        client_factory=factory or FakeClientFactory(),
        filter_namespace=settings.filter_namespace,
        cache=cache,
    )
    app.state.store = metadata_store
    app.state.filter_cache = cache
    app.state.registry = backend_registry
    app.state.sync_engine = SyncEngine(metadata_store, backend_registry, settings, cache=cache)
    app.state.sync_agent = None

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://localhost",
    ) as ac:
        yield ac

    await backend_registry.close()
    await metadata_store.dispose()


@pytest.fixture
async def api_client(
    test_settings: Settings, client_factory: FakeClientFactory
) -> AsyncGenerator[AsyncClient]:
    async with create_test_client(test_settings, client_factory) as ac:
        yield ac
