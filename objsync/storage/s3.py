"""boto3-backed storage client for S3-compatible endpoints."""

from __future__ import annotations

import asyncio
import logging
import mimetypes
from typing import TYPE_CHECKING, Any

import boto3
from boto3.s3.transfer import TransferConfig
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from objsync.exceptions import StorageError
from objsync.storage.base import ObjectInfo

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)

_MISSING_CODES = frozenset({"NoSuchKey", "404", "NotFound"})
_TRANSIENT_CODES = frozenset(
    {
        "InternalError",
        "RequestTimeout",
        "RequestTimeTooSkewed",
        "ServiceUnavailable",
        "SlowDown",
        "Throttling",
        "ThrottlingException",
    }
)
_TRANSIENT_EXCEPTIONS = (
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)


def _clean_etag(etag: str | None) -> str | None:
    return etag.strip('"') if etag else None


def _is_missing(exc: ClientError) -> bool:
    return exc.response.get("Error", {}).get("Code", "") in _MISSING_CODES


def _storage_error(action: str, key: str, exc: Exception) -> StorageError:
    if isinstance(exc, ClientError):
        code = exc.response.get("Error", {}).get("Code", "")
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
        transient = code in _TRANSIENT_CODES or status >= 500
        return StorageError(f"{action} {key!r} failed: {code or exc}", transient=transient)
    transient = isinstance(exc, _TRANSIENT_EXCEPTIONS)
    return StorageError(f"{action} {key!r} failed: {exc}", transient=transient)


class S3StorageClient:
    """Storage client for one bucket. Blocking boto3 calls run in worker threads."""

    def __init__(
        self,
        backend_id: str,
        *,
        endpoint: str,
        bucket: str,
        access_key: str,
        secret_key: str,
        region: str | None = None,
        use_ssl: bool = True,
        timeout: int = 30,
    ) -> None:
        self.backend_id = backend_id
        self.bucket = bucket
        if "://" not in endpoint:
            endpoint = f"{'https' if use_ssl else 'http'}://{endpoint}"
        session = boto3.Session(
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            region_name=region,
        )
        self._s3 = session.client(
            "s3",
            endpoint_url=endpoint,
            use_ssl=use_ssl,
            config=BotoConfig(
                connect_timeout=timeout,
                read_timeout=timeout,
                retries={"max_attempts": 1, "mode": "standard"},
            ),
        )

    def _info(self, key: str, head: dict[str, Any]) -> ObjectInfo:
        return ObjectInfo(
            key=key,
            size=int(head.get("ContentLength", 0)),
            etag=_clean_etag(head.get("ETag")),
            modified_at=head["LastModified"],
            content_type=head.get("ContentType"),
        )

    def _list_sync(self, prefix: str) -> list[ObjectInfo]:
        paginator = self._s3.get_paginator("list_objects_v2")
        objects: list[ObjectInfo] = []
        for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
            for item in page.get("Contents", []):
                key = item["Key"]
                if key.endswith("/"):
                    continue
                objects.append(
                    ObjectInfo(
                        key=key,
                        size=int(item.get("Size", 0)),
                        etag=_clean_etag(item.get("ETag")),
                        modified_at=item["LastModified"],
                    )
                )
        objects.sort(key=lambda o: o.key)
        return objects

    async def list_objects(self, prefix: str = "") -> list[ObjectInfo]:
        try:
            return await asyncio.to_thread(self._list_sync, prefix)
        except (ClientError, BotoCoreError) as exc:
            raise _storage_error("List", prefix, exc) from exc

    async def stat(self, key: str) -> ObjectInfo | None:
        try:
            head = await asyncio.to_thread(self._s3.head_object, Bucket=self.bucket, Key=key)
        except ClientError as exc:
            if _is_missing(exc):
                return None
            raise _storage_error("Stat", key, exc) from exc
        except BotoCoreError as exc:
            raise _storage_error("Stat", key, exc) from exc
        return self._info(key, head)

    async def upload_file(self, local_path: Path, key: str, *, chunk_size: int) -> ObjectInfo:
        transfer = TransferConfig(multipart_threshold=chunk_size, multipart_chunksize=chunk_size)
        content_type = mimetypes.guess_type(local_path.name)[0] or "application/octet-stream"
        try:
            await asyncio.to_thread(
                self._s3.upload_file,
                str(local_path),
                self.bucket,
                key,
                ExtraArgs={"ContentType": content_type},
                Config=transfer,
            )
        except (ClientError, BotoCoreError) as exc:
            raise _storage_error("Upload", key, exc) from exc
        except OSError as exc:
            raise StorageError(f"Upload {key!r} failed: {exc}") from exc
        info = await self.stat(key)
        if info is None:
            raise StorageError(f"Upload {key!r} failed: object missing afterwards", transient=True)
        logger.debug("Uploaded %s to %s/%s", local_path, self.backend_id, key)
        return info

    async def download_file(self, key: str, local_path: Path, *, chunk_size: int) -> ObjectInfo:
        info = await self.stat(key)
        if info is None:
            raise StorageError(f"Download {key!r} failed: object does not exist")
        transfer = TransferConfig(multipart_threshold=chunk_size, multipart_chunksize=chunk_size)
        local_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            await asyncio.to_thread(
                self._s3.download_file, self.bucket, key, str(local_path), Config=transfer
            )
        except (ClientError, BotoCoreError) as exc:
            raise _storage_error("Download", key, exc) from exc
        except OSError as exc:
            raise StorageError(f"Download {key!r} failed: {exc}") from exc
        logger.debug("Downloaded %s/%s to %s", self.backend_id, key, local_path)
        return info

    async def delete_object(self, key: str) -> None:
        try:
            await asyncio.to_thread(self._s3.delete_object, Bucket=self.bucket, Key=key)
        except ClientError as exc:
            if _is_missing(exc):
                return
            raise _storage_error("Delete", key, exc) from exc
        except BotoCoreError as exc:
            raise _storage_error("Delete", key, exc) from exc

    async def close(self) -> None:
        await asyncio.to_thread(self._s3.close)
