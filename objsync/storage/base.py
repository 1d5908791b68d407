"""Storage client protocol and object metadata shared by all backends."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from datetime import datetime
    from pathlib import Path


@dataclass(frozen=True)
class ObjectInfo:
    """Metadata of a single stored object as reported by the backend."""

    key: str
    size: int
    etag: str | None
    modified_at: datetime
    content_type: str | None = None


@runtime_checkable
class StorageClient(Protocol):
    """Protocol for a credentialed connection to one bucket.

    Keys are paths within the backend, without a leading slash. Failures are
    raised as ``StorageError`` with ``transient`` set when a retry may help.
    """

    backend_id: str

    async def list_objects(self, prefix: str = "") -> list[ObjectInfo]:
        """List every object under ``prefix``, ordered by key."""
        ...

    async def stat(self, key: str) -> ObjectInfo | None:
        """Return metadata for ``key`` or None when it does not exist."""
        ...

    async def upload_file(self, local_path: Path, key: str, *, chunk_size: int) -> ObjectInfo:
        """Upload a local file, splitting it into ``chunk_size`` parts when large."""
        ...

    async def download_file(self, key: str, local_path: Path, *, chunk_size: int) -> ObjectInfo:
        """Download ``key`` into ``local_path``, creating parent directories."""
        ...

    async def delete_object(self, key: str) -> None:
        """Delete ``key``. Deleting a missing key is not an error."""
        ...

    async def close(self) -> None:
        """Release connections held by the client."""
        ...
