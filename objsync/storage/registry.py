"""Backend registry: provisioning plus a cache of live storage clients."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING

from objsync.exceptions import InternalServerError
from objsync.services import backend_service
from objsync.services.crypto_service import CredentialPair, decrypt_credentials
from objsync.storage.local import LocalStorageClient
from objsync.storage.s3 import S3StorageClient

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Callable

    from objsync.config import Settings
    from objsync.database import MetadataStore
    from objsync.models.backend import Backend
    from objsync.schemas.backend import BackendCreate, BackendUpdate
    from objsync.services.filter_cache import FilterResultCache
    from objsync.storage.base import StorageClient

    ClientFactory = Callable[[Backend, CredentialPair], StorageClient]

logger = logging.getLogger(__name__)

LOCAL_ENDPOINT_SCHEME = "file://"


def make_client_factory(settings: Settings) -> ClientFactory:
    """Build clients for ``file://`` endpoints locally and everything else through boto3."""

    def build(backend: Backend, credentials: CredentialPair) -> StorageClient:
        if backend.endpoint.startswith(LOCAL_ENDPOINT_SCHEME):
            root = Path(backend.endpoint.removeprefix(LOCAL_ENDPOINT_SCHEME)) / backend.bucket
            return LocalStorageClient(backend.id, root)
        return S3StorageClient(
            backend.id,
            endpoint=backend.endpoint,
            bucket=backend.bucket,
            access_key=credentials.access_key,
            secret_key=credentials.secret_key,
            region=backend.region,
            use_ssl=backend.use_ssl,
            timeout=settings.storage_timeout_seconds,
        )

    return build


class ReadWriteLock:
    """Many concurrent readers or one writer. Writers are not starved by new readers."""

    def __init__(self) -> None:
        self._condition = asyncio.Condition()
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @asynccontextmanager
    async def read(self) -> AsyncGenerator[None]:
        async with self._condition:
            await self._condition.wait_for(lambda: not self._writer and not self._writers_waiting)
            self._readers += 1
        try:
            yield
        finally:
            async with self._condition:
                self._readers -= 1
                if self._readers == 0:
                    self._condition.notify_all()

    @asynccontextmanager
    async def write(self) -> AsyncGenerator[None]:
        async with self._condition:
            self._writers_waiting += 1
            try:
                await self._condition.wait_for(lambda: not self._writer and self._readers == 0)
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            async with self._condition:
                self._writer = False
                self._condition.notify_all()


class BackendRegistry:
    """Turns backend identifiers into live, credentialed storage clients.

    Each application (or test) owns its own instance. Cache hits take the
    shared lock; constructing a missing client takes the exclusive lock.
    Updating or removing a backend evicts its client so the next resolution
    rebuilds it with fresh credentials.
    """

    def __init__(
        self,
        store: MetadataStore,
        secret_key: str,
        *,
        client_factory: ClientFactory,
        filter_namespace: str = "filters",
        cache: FilterResultCache | None = None,
    ) -> None:
        self._store = store
        self._secret_key = secret_key
        self._client_factory = client_factory
        self._filter_namespace = filter_namespace
        self._result_cache = cache
        self._clients: dict[str, StorageClient] = {}
        self._lock = ReadWriteLock()

    def cached_ids(self) -> list[str]:
        return sorted(self._clients)

    async def register(self, data: BackendCreate) -> Backend:
        async with self._store.write() as session:
            backend = await backend_service.create_backend(
                session, data, self._secret_key, filter_namespace=self._filter_namespace
            )
            await session.commit()
        await self.invalidate(backend.id)
        return backend

    async def update(self, backend_id: str, data: BackendUpdate) -> Backend:
        async with self._store.write() as session:
            backend = await backend_service.update_backend(
                session, backend_id, data, self._secret_key
            )
            await session.commit()
        await self.invalidate(backend_id)
        return backend

    async def remove(self, backend_id: str) -> int:
        async with self._store.write() as session:
            hidden = await backend_service.delete_backend(
                session, backend_id, cache=self._result_cache
            )
            await session.commit()
        await self.invalidate(backend_id)
        return hidden

    async def resolve_client(self, backend_id: str) -> StorageClient:
        """Return the cached client for ``backend_id``, constructing it on first use.

        Raises NotFoundError for unknown or removed backends.
        """
        async with self._lock.read():
            client = self._clients.get(backend_id)
        if client is not None:
            return client

        async with self._lock.write():
            client = self._clients.get(backend_id)
            if client is not None:
                return client
            async with self._store.session() as session:
                backend = await backend_service.get_backend(session, backend_id)
            client = self._build(backend)
            self._clients[backend_id] = client
            logger.debug("Constructed storage client for backend %s", backend_id)
            return client

    def _build(self, backend: Backend) -> StorageClient:
        try:
            credentials = decrypt_credentials(
                CredentialPair(backend.access_key, backend.secret_key), self._secret_key
            )
        except ValueError as exc:
            raise InternalServerError(
                f"Cannot decrypt credentials for backend {backend.id}: {exc}"
            ) from exc
        return self._client_factory(backend, credentials)

    async def invalidate(self, backend_id: str) -> None:
        """Evict and close the cached client for ``backend_id`` (if any)."""
        async with self._lock.write():
            client = self._clients.pop(backend_id, None)
        if client is not None:
            await client.close()
            logger.debug("Evicted storage client for backend %s", backend_id)

    async def close(self) -> None:
        async with self._lock.write():
            clients = list(self._clients.values())
            self._clients.clear()
        for client in clients:
            await client.close()
