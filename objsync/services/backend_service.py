"""Backend provisioning, soft deletion and metadata scans."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy import func, select, update

from objsync.exceptions import ConflictError, NotFoundError, ValidationError
from objsync.models.backend import Backend
from objsync.models.file import File
from objsync.schemas.backend import ScanResult
from objsync.services import file_service
from objsync.services.crypto_service import CredentialPair, encrypt_credentials
from objsync.services.datetime_service import now_utc
from objsync.services.path_resolver import validate_backend_id

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from objsync.schemas.backend import BackendCreate, BackendUpdate
    from objsync.services.filter_cache import FilterResultCache
    from objsync.storage.base import ObjectInfo

logger = logging.getLogger(__name__)


async def list_backends(session: AsyncSession) -> list[Backend]:
    stmt = select(Backend).where(Backend.deleted_at.is_(None)).order_by(Backend.id)
    return list((await session.execute(stmt)).scalars().all())


async def get_backend(session: AsyncSession, backend_id: str) -> Backend:
    """Return an active backend. Raises NotFoundError."""
    backend = await session.get(Backend, backend_id)
    if backend is None or backend.deleted_at is not None:
        raise NotFoundError(f"Backend not found: {backend_id}")
    return backend


async def create_backend(
    session: AsyncSession,
    data: BackendCreate,
    secret_key: str,
    *,
    filter_namespace: str,
) -> Backend:
    """Validate the identifier, encrypt credentials and persist the backend.

    A previously removed backend with the same identifier is reactivated
    with the new connection details.
    """
    validate_backend_id(data.id, filter_namespace)
    encrypted = encrypt_credentials(CredentialPair(data.access_key, data.secret_key), secret_key)
    now = now_utc()

    backend = await session.get(Backend, data.id)
    if backend is not None and backend.deleted_at is None:
        raise ConflictError(f"Backend already exists: {data.id}")
    if backend is None:
        backend = Backend(id=data.id, created_at=now)
        session.add(backend)

    backend.name = data.name or data.id
    backend.endpoint = data.endpoint
    backend.bucket = data.bucket
    backend.region = data.region
    backend.use_ssl = data.use_ssl
    backend.access_key = encrypted.access_key
    backend.secret_key = encrypted.secret_key
    backend.updated_at = now
    backend.deleted_at = None
    await session.flush()
    logger.info("Registered backend %s (%s/%s)", data.id, data.endpoint, data.bucket)
    return backend


async def update_backend(
    session: AsyncSession,
    backend_id: str,
    data: BackendUpdate,
    secret_key: str,
) -> Backend:
    """Apply a partial update. Credentials rotate only when both keys are given."""
    backend = await get_backend(session, backend_id)
    if (data.access_key is None) != (data.secret_key is None):
        raise ValidationError("access_key and secret_key must be rotated together")

    for field in ("name", "endpoint", "bucket", "region", "use_ssl"):
        value = getattr(data, field)
        if value is not None:
            setattr(backend, field, value)
    if data.access_key is not None and data.secret_key is not None:
        encrypted = encrypt_credentials(
            CredentialPair(data.access_key, data.secret_key), secret_key
        )
        backend.access_key = encrypted.access_key
        backend.secret_key = encrypted.secret_key
        logger.info("Rotated credentials for backend %s", backend_id)
    backend.updated_at = now_utc()
    await session.flush()
    return backend


async def delete_backend(
    session: AsyncSession,
    backend_id: str,
    *,
    cache: FilterResultCache | None = None,
) -> int:
    """Soft-delete a backend and every file it owns. Returns the number of files hidden."""
    backend = await get_backend(session, backend_id)
    now = now_utc()
    result = await session.execute(
        update(File)
        .where(File.backend_id == backend_id, File.deleted_at.is_(None))
        .values(deleted_at=now, updated_at=now)
    )
    backend.deleted_at = now
    backend.updated_at = now
    await session.flush()
    if cache is not None:
        cache.invalidate_backend_on_commit(session, backend_id)
    hidden = result.rowcount or 0  # type: ignore[attr-defined]
    logger.info("Removed backend %s (%d entries hidden)", backend_id, hidden)
    return hidden


async def refresh_statistics(session: AsyncSession, backend: Backend) -> Backend:
    """Recompute file count and total size from active file rows."""
    stmt = select(func.count(File.id), func.coalesce(func.sum(File.size), 0)).where(
        File.backend_id == backend.id,
        File.deleted_at.is_(None),
        File.is_dir.is_(False),
    )
    count, total = (await session.execute(stmt)).one()
    backend.file_count = int(count)
    backend.total_size = int(total)
    backend.updated_at = now_utc()
    await session.flush()
    return backend


async def apply_scan(
    session: AsyncSession,
    backend_id: str,
    objects: list[ObjectInfo],
    *,
    client_id: str,
    cache: FilterResultCache | None = None,
) -> ScanResult:
    """Reconcile stored metadata with a fresh listing of the bucket.

    Objects missing from the listing are soft-deleted; every change lands in
    the change log. A key that names both an object and a directory prefix
    (``a`` next to ``a/b.txt``) cannot be placed in the tree: whichever is
    indexed first is kept and the other key is skipped with a warning.
    """
    backend = await get_backend(session, backend_id)
    result = ScanResult(backend_id=backend_id)
    seen: set[str] = set()

    for obj in objects:
        seen.add(obj.key)
        try:
            async with session.begin_nested():
                _file, kind = await file_service.upsert_file(
                    session,
                    backend_id,
                    obj.key,
                    size=obj.size,
                    etag=obj.etag,
                    modified_at=obj.modified_at,
                    mime_type=obj.content_type,
                    client_id=client_id,
                )
        except ConflictError as exc:
            logger.warning("Skipping %s/%s during scan: %s", backend_id, obj.key, exc)
            result.skipped.append(obj.key)
            continue
        if kind == "create":
            result.created += 1
        elif kind == "update":
            result.updated += 1

    stmt = select(File.path).where(
        File.backend_id == backend_id,
        File.deleted_at.is_(None),
        File.is_dir.is_(False),
    )
    stale = [path for path in (await session.execute(stmt)).scalars().all() if path not in seen]
    for path in stale:
        result.deleted += await file_service.soft_delete_file(
            session, backend_id, path, client_id=client_id
        )

    await refresh_statistics(session, backend)
    backend.scanned_at = now_utc()
    await session.flush()
    if cache is not None:
        cache.invalidate_backend_on_commit(session, backend_id)

    result.file_count = backend.file_count
    result.total_size = backend.total_size
    logger.info(
        "Scanned backend %s: %d created, %d updated, %d deleted, %d skipped",
        backend_id,
        result.created,
        result.updated,
        result.deleted,
        len(result.skipped),
    )
    return result
