"""Sync planning: local scanning, change detection against the manifest and conflict policy."""

from __future__ import annotations

import fnmatch
import hashlib
import logging
import os
from dataclasses import asdict, dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from objsync.models.sync import SyncDirection

if TYPE_CHECKING:
    from collections.abc import Iterable

    from objsync.models.sync import SyncManifest

logger = logging.getLogger(__name__)


class ChangeType(StrEnum):
    """Type of change detected between local, remote and manifest."""

    NO_CHANGE = "no_change"
    LOCAL_ADD = "local_add"
    LOCAL_MODIFY = "local_modify"
    LOCAL_DELETE = "local_delete"
    REMOTE_ADD = "remote_add"
    REMOTE_MODIFY = "remote_modify"
    REMOTE_DELETE = "remote_delete"
    CONFLICT = "conflict"
    DELETE_MODIFY_CONFLICT = "delete_modify_conflict"


class JobKind(StrEnum):
    UPLOAD = "upload"
    DOWNLOAD = "download"
    DELETE_LOCAL = "delete_local"
    DELETE_REMOTE = "delete_remote"
    # both sides already agree; only the manifest baseline is written
    RECORD = "record"
    # both sides deleted; the manifest row is dropped
    FORGET = "forget"


_ALLOWED: dict[SyncDirection, frozenset[JobKind]] = {
    SyncDirection.BIDIRECTIONAL: frozenset(JobKind),
    SyncDirection.UPLOAD_ONLY: frozenset(
        {JobKind.UPLOAD, JobKind.DELETE_REMOTE, JobKind.RECORD, JobKind.FORGET}
    ),
    SyncDirection.DOWNLOAD_ONLY: frozenset(
        {JobKind.DOWNLOAD, JobKind.DELETE_LOCAL, JobKind.RECORD, JobKind.FORGET}
    ),
}


@dataclass
class LocalEntry:
    """A file in the local directory."""

    path: str
    size: int
    mtime: float
    content_hash: str


@dataclass
class RemoteEntry:
    """An object at the remote endpoint. ``path`` is relative to the endpoint root."""

    path: str
    key: str
    size: int
    mtime: float
    etag: str | None


@dataclass
class ManifestEntry:
    """Both sides of a path as recorded at its last successful sync."""

    path: str
    local_size: int
    local_mtime: float
    local_hash: str | None
    remote_size: int
    remote_mtime: float
    remote_etag: str | None

    @classmethod
    def from_row(cls, row: SyncManifest) -> ManifestEntry:
        return cls(
            path=row.path,
            local_size=row.local_size,
            local_mtime=row.local_mtime,
            local_hash=row.local_hash,
            remote_size=row.remote_size,
            remote_mtime=row.remote_mtime,
            remote_etag=row.remote_etag,
        )


@dataclass
class SyncJob:
    """One unit of work. Serialized into the resumable cursor."""

    kind: JobKind
    path: str
    key: str
    size: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncJob:
        return cls(
            kind=JobKind(data["kind"]),
            path=str(data["path"]),
            key=str(data["key"]),
            size=int(data.get("size", 0)),
        )


@dataclass
class Conflict:
    """Both sides changed; ``winner`` is the side kept."""

    path: str
    change_type: ChangeType
    winner: str
    reason: str


@dataclass
class SyncPlan:
    """The computed sync plan."""

    jobs: list[SyncJob] = field(default_factory=list)
    conflicts: list[Conflict] = field(default_factory=list)
    skipped: list[SyncJob] = field(default_factory=list)
    no_change: list[str] = field(default_factory=list)

    @property
    def total_bytes(self) -> int:
        return sum(job.size for job in self.jobs)


def hash_file(file_path: Path) -> str:
    """Compute the MD5 hex digest of a file (comparable to single-part S3 entity tags)."""
    md5 = hashlib.md5(usedforsecurity=False)
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            md5.update(chunk)
    return md5.hexdigest()


def is_ignored(path: str, patterns: Iterable[str]) -> bool:
    """Match ``path`` and its basename against shell-style ignore patterns."""
    name = path.rsplit("/", 1)[-1]
    return any(fnmatch.fnmatchcase(path, p) or fnmatch.fnmatchcase(name, p) for p in patterns)


def scan_local_files(
    root: Path,
    manifest: dict[str, ManifestEntry] | None = None,
    ignore_patterns: Iterable[str] = (),
) -> dict[str, LocalEntry]:
    """Walk ``root`` and describe every regular file.

    Hidden files and directories are skipped. A file whose size and mtime
    match its manifest baseline reuses the recorded hash instead of being
    re-read.
    """
    manifest = manifest or {}
    patterns = list(ignore_patterns)
    entries: dict[str, LocalEntry] = {}
    if not root.is_dir():
        return entries
    for dirpath, dirs, files in os.walk(root):
        dirs[:] = sorted(d for d in dirs if not d.startswith("."))
        for filename in files:
            if filename.startswith("."):
                continue
            full = Path(dirpath) / filename
            rel = full.relative_to(root).as_posix()
            if is_ignored(rel, patterns):
                continue
            stat = full.stat()
            base = manifest.get(rel)
            if (
                base is not None
                and base.local_hash
                and base.local_size == stat.st_size
                and base.local_mtime == stat.st_mtime
            ):
                content_hash = base.local_hash
            else:
                content_hash = hash_file(full)
            entries[rel] = LocalEntry(
                path=rel, size=stat.st_size, mtime=stat.st_mtime, content_hash=content_hash
            )
    return entries


def local_changed(entry: LocalEntry, base: ManifestEntry) -> bool:
    if entry.size != base.local_size:
        return True
    if base.local_hash:
        return entry.content_hash != base.local_hash
    return entry.mtime != base.local_mtime


def remote_changed(entry: RemoteEntry, base: ManifestEntry) -> bool:
    if entry.size != base.remote_size:
        return True
    if entry.etag and base.remote_etag:
        return entry.etag != base.remote_etag
    return entry.mtime != base.remote_mtime


def same_content(local: LocalEntry, remote: RemoteEntry) -> bool:
    return local.size == remote.size and remote.etag is not None and (
        local.content_hash == remote.etag
    )


def resolve_conflict(
    local: LocalEntry,
    remote: RemoteEntry,
    direction: SyncDirection,
    change_type: ChangeType = ChangeType.CONFLICT,
) -> tuple[SyncJob, Conflict]:
    """Last writer wins; ties go to the direction's preferred side (local when bidirectional).

    The discarded side is logged only when the direction lets the winning
    job run; otherwise the caller skips the path and nothing is discarded.
    """
    if local.mtime > remote.mtime:
        winner, reason = "local", "local modification is newer"
    elif remote.mtime > local.mtime:
        winner, reason = "remote", "remote modification is newer"
    elif direction == SyncDirection.DOWNLOAD_ONLY:
        winner, reason = "remote", "equal timestamps, download-only prefers remote"
    else:
        winner, reason = "local", f"equal timestamps, {direction} prefers local"

    if winner == "local":
        job = SyncJob(JobKind.UPLOAD, local.path, remote.key, local.size)
    else:
        job = SyncJob(JobKind.DOWNLOAD, local.path, remote.key, remote.size)
    conflict = Conflict(path=local.path, change_type=change_type, winner=winner, reason=reason)
    if job.kind not in _ALLOWED[direction]:
        return job, conflict

    if winner == "local":
        logger.warning(
            "Conflict on %s: %s; discarding remote version (size=%d, etag=%s, mtime=%s)",
            local.path,
            reason,
            remote.size,
            remote.etag,
            remote.mtime,
        )
    else:
        logger.warning(
            "Conflict on %s: %s; discarding local version (size=%d, hash=%s, mtime=%s)",
            local.path,
            reason,
            local.size,
            local.content_hash,
            local.mtime,
        )
    return job, conflict


def compute_sync_plan(
    local_current: dict[str, LocalEntry],
    manifest: dict[str, ManifestEntry],
    remote_current: dict[str, RemoteEntry],
    direction: SyncDirection,
    *,
    key_for: dict[str, str] | None = None,
) -> SyncPlan:
    """Compare both sides against the manifest baseline and produce jobs.

    ``key_for`` maps relative paths that exist only locally to their remote
    object key; by default the key equals the path.
    """
    plan = SyncPlan()
    key_for = key_for or {}
    all_paths = set(local_current) | set(manifest) | set(remote_current)

    for path in sorted(all_paths):
        local = local_current.get(path)
        base = manifest.get(path)
        remote = remote_current.get(path)
        key = remote.key if remote is not None else key_for.get(path, path)
        job: SyncJob | None = None
        conflict: Conflict | None = None

        if local and remote and base:
            lc, rc = local_changed(local, base), remote_changed(remote, base)
            if not lc and not rc:
                plan.no_change.append(path)
            elif lc and not rc:
                job = SyncJob(JobKind.UPLOAD, path, key, local.size)
            elif rc and not lc:
                job = SyncJob(JobKind.DOWNLOAD, path, key, remote.size)
            elif same_content(local, remote):
                job = SyncJob(JobKind.RECORD, path, key)
            else:
                job, conflict = resolve_conflict(local, remote, direction)

        elif local and not remote and not base:
            job = SyncJob(JobKind.UPLOAD, path, key, local.size)

        elif remote and not local and not base:
            job = SyncJob(JobKind.DOWNLOAD, path, key, remote.size)

        elif local and base and not remote:
            if local_changed(local, base):
                # remote deletion loses to the local modification
                job = SyncJob(JobKind.UPLOAD, path, key, local.size)
                conflict = Conflict(
                    path, ChangeType.DELETE_MODIFY_CONFLICT, "local", "kept local edit"
                )
            else:
                job = SyncJob(JobKind.DELETE_LOCAL, path, key)

        elif remote and base and not local:
            if remote_changed(remote, base):
                job = SyncJob(JobKind.DOWNLOAD, path, key, remote.size)
                conflict = Conflict(
                    path, ChangeType.DELETE_MODIFY_CONFLICT, "remote", "kept remote edit"
                )
            else:
                job = SyncJob(JobKind.DELETE_REMOTE, path, key)

        elif local and remote:
            if same_content(local, remote):
                job = SyncJob(JobKind.RECORD, path, key)
            else:
                job, conflict = resolve_conflict(local, remote, direction)

        else:
            job = SyncJob(JobKind.FORGET, path, key)

        if job is None:
            continue
        if job.kind in _ALLOWED[direction]:
            plan.jobs.append(job)
            if conflict is not None:
                plan.conflicts.append(conflict)
        else:
            # the other side keeps its version; nothing was resolved
            plan.skipped.append(job)

    return plan
