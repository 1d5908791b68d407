"""Storage client backed by a local directory (``file://`` endpoints)."""

from __future__ import annotations

import asyncio
import logging
import mimetypes
import os
import shutil
from pathlib import Path

from objsync.exceptions import StorageError
from objsync.services.datetime_service import from_timestamp
from objsync.services.sync_service import hash_file
from objsync.storage.base import ObjectInfo

logger = logging.getLogger(__name__)


class LocalStorageClient:
    """Treats ``<root>/<bucket>`` as a bucket. The entity tag is the MD5 of the content."""

    def __init__(self, backend_id: str, root: Path) -> None:
        self.backend_id = backend_id
        self.root = root

    def _resolve(self, key: str) -> Path:
        target = (self.root / key).resolve()
        root = self.root.resolve()
        if target != root and root not in target.parents:
            raise StorageError(f"Key {key!r} escapes the bucket root")
        return target

    def _info(self, key: str, path: Path) -> ObjectInfo:
        stat = path.stat()
        return ObjectInfo(
            key=key,
            size=stat.st_size,
            etag=hash_file(path),
            modified_at=from_timestamp(stat.st_mtime),
            content_type=mimetypes.guess_type(path.name)[0],
        )

    def _list_sync(self, prefix: str) -> list[ObjectInfo]:
        if not self.root.is_dir():
            return []
        objects: list[ObjectInfo] = []
        for dirpath, _dirs, files in os.walk(self.root):
            for filename in files:
                full = Path(dirpath) / filename
                key = full.relative_to(self.root).as_posix()
                if key.startswith(prefix):
                    objects.append(self._info(key, full))
        objects.sort(key=lambda o: o.key)
        return objects

    async def list_objects(self, prefix: str = "") -> list[ObjectInfo]:
        try:
            return await asyncio.to_thread(self._list_sync, prefix)
        except OSError as exc:
            raise StorageError(f"List {prefix!r} failed: {exc}", transient=True) from exc

    async def stat(self, key: str) -> ObjectInfo | None:
        path = self._resolve(key)
        if not path.is_file():
            return None
        try:
            return await asyncio.to_thread(self._info, key, path)
        except OSError as exc:
            raise StorageError(f"Stat {key!r} failed: {exc}", transient=True) from exc

    def _copy(self, source: Path, target: Path) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, target)

    async def upload_file(self, local_path: Path, key: str, *, chunk_size: int) -> ObjectInfo:
        target = self._resolve(key)
        try:
            await asyncio.to_thread(self._copy, local_path, target)
            return await asyncio.to_thread(self._info, key, target)
        except OSError as exc:
            raise StorageError(f"Upload {key!r} failed: {exc}", transient=True) from exc

    async def download_file(self, key: str, local_path: Path, *, chunk_size: int) -> ObjectInfo:
        source = self._resolve(key)
        if not source.is_file():
            raise StorageError(f"Download {key!r} failed: object does not exist")
        try:
            info = await asyncio.to_thread(self._info, key, source)
            await asyncio.to_thread(self._copy, source, local_path)
        except OSError as exc:
            raise StorageError(f"Download {key!r} failed: {exc}", transient=True) from exc
        return info

    async def delete_object(self, key: str) -> None:
        target = self._resolve(key)
        try:
            await asyncio.to_thread(target.unlink, missing_ok=True)
        except OSError as exc:
            raise StorageError(f"Delete {key!r} failed: {exc}", transient=True) from exc

    async def close(self) -> None:
        return None
