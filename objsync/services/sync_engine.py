"""Sync engine: per-config state machine, resumable job batches and the background agent.

A run moves a config ``idle -> scanning -> syncing -> idle``. Scanning diffs
the local directory and the remote endpoint against the manifest baseline
and persists the resulting job list as the state's cursor. Syncing drains
the cursor through a bounded pool of worker tasks; each completed job is
committed together with its manifest row, counters and the shortened cursor,
so a restart picks up exactly the jobs that are still pending.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from sqlalchemy import select, update

from objsync.exceptions import (
    ConflictError,
    InternalServerError,
    NotFoundError,
    ObjSyncError,
    PersistenceError,
    StorageError,
)
from objsync.models.sync import SyncConfig, SyncDirection, SyncManifest, SyncState, SyncStatus
from objsync.schemas.sync import ConflictReport, SyncRunResponse
from objsync.services import file_service, filter_service, sync_config_service
from objsync.services.datetime_service import now_utc
from objsync.services.path_resolver import PathKind
from objsync.services.sync_service import (
    JobKind,
    ManifestEntry,
    RemoteEntry,
    SyncJob,
    compute_sync_plan,
    hash_file,
    is_ignored,
    scan_local_files,
)
from objsync.services.watcher import Debouncer, LocalWatcher

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from sqlalchemy.ext.asyncio import AsyncSession

    from objsync.config import Settings
    from objsync.database import MetadataStore
    from objsync.services.filter_cache import FilterResultCache
    from objsync.storage.base import ObjectInfo
    from objsync.storage.registry import BackendRegistry

logger = logging.getLogger(__name__)

TRANSITIONS: dict[SyncStatus, frozenset[SyncStatus]] = {
    SyncStatus.IDLE: frozenset({SyncStatus.SCANNING, SyncStatus.PAUSED, SyncStatus.ERROR}),
    SyncStatus.SCANNING: frozenset(
        {SyncStatus.SYNCING, SyncStatus.ERROR, SyncStatus.PAUSED, SyncStatus.IDLE}
    ),
    SyncStatus.SYNCING: frozenset({SyncStatus.IDLE, SyncStatus.ERROR, SyncStatus.PAUSED}),
    SyncStatus.ERROR: frozenset({SyncStatus.IDLE, SyncStatus.PAUSED}),
    SyncStatus.PAUSED: frozenset({SyncStatus.IDLE}),
}

# Statuses that only exist while a run is in flight.
_ACTIVE = (SyncStatus.SCANNING, SyncStatus.SYNCING, SyncStatus.ERROR)


def check_transition(current: str, target: SyncStatus) -> None:
    """Raise ConflictError unless ``current -> target`` is a legal transition."""
    if target not in TRANSITIONS[SyncStatus(current)]:
        raise ConflictError(f"Illegal sync state transition {current} -> {target}")


def describe_failure(exc: Exception) -> str:
    """Message recorded on the SyncState; internal details stay in the log."""
    if isinstance(exc, InternalServerError):
        return "Internal error; see the agent log"
    return str(exc)


def load_cursor(raw: str | None) -> list[SyncJob]:
    if not raw:
        return []
    return [SyncJob.from_dict(item) for item in json.loads(raw).get("pending", [])]


def dump_cursor(jobs: list[SyncJob]) -> str | None:
    if not jobs:
        return None
    return json.dumps({"pending": [job.to_dict() for job in jobs]})


def _without(jobs: list[SyncJob], done: SyncJob) -> list[SyncJob]:
    remaining = list(jobs)
    for index, job in enumerate(remaining):
        if job.kind == done.kind and job.path == done.path:
            del remaining[index]
            break
    return remaining


@dataclass
class SyncTarget:
    """One backend's share of a run, with its own SyncState and cursor."""

    backend_id: str
    state_id: int
    local_root: Path
    prefix: str
    jobs: list[SyncJob] = field(default_factory=list)
    resumed: bool = False


@dataclass
class JobOutcome:
    """What a finished job changes in the metadata store."""

    bytes_transferred: int = 0
    manifest: ManifestEntry | None = None
    uploaded: ObjectInfo | None = None
    local_hash: str | None = None
    remote_deleted: bool = False


class SyncEngine:
    """Runs sync configurations. One run per config at a time."""

    def __init__(
        self,
        store: MetadataStore,
        registry: BackendRegistry,
        settings: Settings,
        *,
        cache: FilterResultCache | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._registry = registry
        self._settings = settings
        self._cache = cache
        self._sleep = sleep
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._pause_requested: set[str] = set()

    def is_running(self, name: str) -> bool:
        return self._locks[name].locked()

    # -- state machine ------------------------------------------------------

    async def _transition(self, name: str, target: SyncStatus) -> None:
        async with self._store.write() as session:
            stmt = select(SyncConfig).where(SyncConfig.name == name).with_for_update()
            config = (await session.execute(stmt)).scalar_one_or_none()
            if config is None:
                raise ConflictError(f"Sync config {name} was removed during the run")
            check_transition(config.status, target)
            config.status = target
            config.updated_at = now_utc()
            await session.commit()
        logger.info("Sync %s -> %s", name, target)

    async def pause(self, name: str) -> None:
        """Pause a config. A running batch stops after its in-flight jobs complete."""
        async with self._store.session() as session:
            config = await sync_config_service.get_sync_config(session, name)
        if config.status == SyncStatus.PAUSED:
            return
        if self.is_running(name):
            self._pause_requested.add(name)
            return
        await self._transition(name, SyncStatus.PAUSED)

    async def resume(self, name: str) -> None:
        async with self._store.session() as session:
            config = await sync_config_service.get_sync_config(session, name)
        if config.status != SyncStatus.PAUSED:
            if name in self._pause_requested:
                self._pause_requested.discard(name)
                return
            raise ConflictError(f"Sync config {name} is not paused")
        await self._transition(name, SyncStatus.IDLE)

    async def recover_interrupted(self) -> list[str]:
        """Return configs left mid-run by a crash to ``idle``. Their cursors are kept."""
        async with self._store.write() as session:
            stmt = select(SyncConfig.name).where(SyncConfig.status.in_(_ACTIVE))
            names = list((await session.execute(stmt)).scalars().all())
            if names:
                await session.execute(
                    update(SyncConfig)
                    .where(SyncConfig.name.in_(names))
                    .values(status=SyncStatus.IDLE, updated_at=now_utc())
                )
            await session.commit()
        for name in names:
            logger.warning("Sync %s was interrupted; pending jobs will resume", name)
        return names

    # -- run ----------------------------------------------------------------

    async def run(self, name: str) -> SyncRunResponse:
        """Scan (or resume) and drain one batch for ``name``.

        Raises ConflictError when the config is paused or already running and
        PersistenceError when the metadata store fails. Failures of a single
        backend or job are recorded on its SyncState and end the run in
        ``error``; an aborted run leaves the config ``idle`` with its cursor.
        """
        lock = self._locks[name]
        if lock.locked():
            raise ConflictError(f"Sync {name} is already running")
        async with lock:
            async with self._store.session() as session:
                config = await sync_config_service.get_sync_config(session, name)
            if config.status == SyncStatus.PAUSED:
                raise ConflictError(f"Sync {name} is paused")
            if config.status != SyncStatus.IDLE:
                await self._transition(name, SyncStatus.IDLE)
            self._pause_requested.discard(name)

            await self._transition(name, SyncStatus.SCANNING)
            try:
                return await self._run_batch(config)
            except BaseException:
                await self._abandon(name)
                raise

    async def _run_batch(self, config: SyncConfig) -> SyncRunResponse:
        name = config.name
        result = SyncRunResponse(name=name, status=SyncStatus.SCANNING)
        try:
            targets, failures = await self._scan(config, result)
        except PersistenceError:
            raise
        except (ObjSyncError, InternalServerError) as exc:
            logger.error("Sync %s failed while scanning: %s", name, exc)
            result.errors.append(describe_failure(exc))
            await self._fail(name, result)
            return result

        if name in self._pause_requested:
            return await self._paused(name, result)

        await self._transition(name, SyncStatus.SYNCING)
        result.jobs_total = sum(len(target.jobs) for target in targets)
        for target in targets:
            failures += await self._drain(config, target, result)
            if name in self._pause_requested:
                return await self._paused(name, result)
            await self._finish_batch(target, clean=failures == 0)

        if failures:
            await self._fail(name, result)
        else:
            await self._transition(name, SyncStatus.IDLE)
            result.status = SyncStatus.IDLE
        logger.info(
            "Sync %s finished: %d/%d jobs, %d failed, %d bytes",
            name,
            result.jobs_completed,
            result.jobs_total,
            result.jobs_failed,
            result.bytes_transferred,
        )
        return result

    async def _abandon(self, name: str) -> None:
        """Return a config whose run was aborted to ``idle``. Its cursor is kept."""
        try:
            async with self._store.write() as session:
                await session.execute(
                    update(SyncConfig)
                    .where(SyncConfig.name == name, SyncConfig.status.in_(_ACTIVE))
                    .values(status=SyncStatus.IDLE, updated_at=now_utc())
                )
                await session.commit()
        except PersistenceError as exc:
            logger.error("Could not reset sync %s after an aborted run: %s", name, exc)
            return
        logger.warning("Sync %s aborted; pending jobs remain in the cursor", name)

    async def _paused(self, name: str, result: SyncRunResponse) -> SyncRunResponse:
        self._pause_requested.discard(name)
        await self._transition(name, SyncStatus.PAUSED)
        result.status = SyncStatus.PAUSED
        logger.info("Sync %s paused; pending jobs remain in the cursor", name)
        return result

    async def _fail(self, name: str, result: SyncRunResponse) -> None:
        await self._transition(name, SyncStatus.ERROR)
        result.status = SyncStatus.ERROR
        await self._sleep(self._settings.sync_error_backoff_seconds)
        async with self._store.session() as session:
            config = await sync_config_service.get_sync_config(session, name)
        if config.status == SyncStatus.ERROR:
            await self._transition(name, SyncStatus.IDLE)

    # -- scanning -----------------------------------------------------------

    async def _scan(
        self, config: SyncConfig, result: SyncRunResponse
    ) -> tuple[list[SyncTarget], int]:
        endpoints = sync_config_service.split_endpoints(config.source_path, config.dest_path)
        local_root = Path(endpoints.local_dir)
        patterns = sync_config_service.ignore_patterns(config)
        client_id = self._settings.client_id

        async with self._store.session() as session:
            resolved = await sync_config_service.resolve_remote(
                session, config, self._settings.filter_namespace
            )
            remote_by_backend: dict[str, dict[str, RemoteEntry] | None] = {}
            if resolved.kind == PathKind.FILTER:
                if resolved.filter is None:
                    raise NotFoundError(f"Filter not found: {endpoints.remote_path}")
                matches = await filter_service.evaluate_filter(
                    session,
                    resolved.filter,
                    cache=self._cache,
                    timeout=self._settings.query_timeout_seconds,
                )
                for match in matches:
                    entry = RemoteEntry(
                        path=match.path,
                        key=match.path,
                        size=match.size,
                        mtime=match.modified_at.timestamp(),
                        etag=match.etag or match.md5_hash,
                    )
                    remote_by_backend.setdefault(match.backend_id, {})[match.path] = entry
                stmt = select(SyncState.backend_id).where(
                    SyncState.sync_config_id == config.id, SyncState.client_id == client_id
                )
                for backend_id in (await session.execute(stmt)).scalars().all():
                    remote_by_backend.setdefault(backend_id, {})
                prefix = ""
            else:
                remote_by_backend[resolved.namespace] = None
                prefix = f"{resolved.remainder}/" if resolved.remainder else ""

        targets: list[SyncTarget] = []
        failures = 0
        for backend_id in sorted(remote_by_backend):
            root = local_root / backend_id if resolved.kind == PathKind.FILTER else local_root
            async with self._store.write() as session:
                state = await sync_config_service.get_or_create_state(
                    session, config.id, backend_id, client_id
                )
                await session.commit()
            target = SyncTarget(backend_id, state.id, root, prefix)

            pending = load_cursor(state.cursor)
            if pending:
                target.jobs = pending
                target.resumed = result.resumed = True
                logger.info(
                    "Resuming %d pending jobs for %s/%s", len(pending), config.name, backend_id
                )
                targets.append(target)
                continue

            try:
                remote = remote_by_backend[backend_id]
                if remote is None:
                    remote = await self._list_remote(backend_id, prefix, patterns)
                await self._plan(config, target, remote, patterns, result)
            except PersistenceError:
                raise
            except (ObjSyncError, InternalServerError) as exc:
                failures += 1
                message = describe_failure(exc)
                result.errors.append(f"{backend_id}: {message}")
                logger.error("Sync %s could not scan %s: %s", config.name, backend_id, exc)
                await self._record_failure(target, None, message)
                continue
            targets.append(target)
        return targets, failures

    async def _list_remote(
        self, backend_id: str, prefix: str, patterns: list[str]
    ) -> dict[str, RemoteEntry]:
        client = await self._registry.resolve_client(backend_id)
        objects = await self._with_retry(
            f"list {backend_id}/{prefix}", lambda: client.list_objects(prefix)
        )
        remote: dict[str, RemoteEntry] = {}
        for obj in objects:
            rel = obj.key[len(prefix) :]
            if not rel or is_ignored(rel, patterns):
                continue
            remote[rel] = RemoteEntry(
                path=rel,
                key=obj.key,
                size=obj.size,
                mtime=obj.modified_at.timestamp(),
                etag=obj.etag,
            )
        return remote

    async def _plan(
        self,
        config: SyncConfig,
        target: SyncTarget,
        remote: dict[str, RemoteEntry],
        patterns: list[str],
        result: SyncRunResponse,
    ) -> None:
        async with self._store.session() as session:
            stmt = select(SyncManifest).where(SyncManifest.sync_state_id == target.state_id)
            rows = (await session.execute(stmt)).scalars().all()
            manifest = {row.path: ManifestEntry.from_row(row) for row in rows}

        try:
            local = await asyncio.to_thread(scan_local_files, target.local_root, manifest, patterns)
        except OSError as exc:
            raise StorageError(f"Cannot scan {target.local_root}: {exc}") from exc
        key_for = {path: f"{target.prefix}{path}" for path in local}
        plan = compute_sync_plan(
            local, manifest, remote, SyncDirection(config.direction), key_for=key_for
        )
        target.jobs = plan.jobs
        result.conflicts.extend(
            ConflictReport(path=c.path, winner=c.winner, reason=c.reason) for c in plan.conflicts
        )
        if plan.skipped:
            logger.debug(
                "Sync %s/%s: %d changes not propagated in %s mode",
                config.name,
                target.backend_id,
                len(plan.skipped),
                config.direction,
            )

        async with self._store.write() as session:
            await session.execute(
                update(SyncState)
                .where(SyncState.id == target.state_id)
                .values(
                    cursor=dump_cursor(plan.jobs),
                    files_scanned=SyncState.files_scanned + len(local) + len(remote),
                    updated_at=now_utc(),
                )
            )
            await session.commit()

    # -- syncing ------------------------------------------------------------

    async def _drain(self, config: SyncConfig, target: SyncTarget, result: SyncRunResponse) -> int:
        """Process the target's jobs with ``config.workers`` tasks. Returns the failure count."""
        if not target.jobs:
            return 0
        queue: asyncio.Queue[SyncJob] = asyncio.Queue()
        for job in target.jobs:
            queue.put_nowait(job)
        failures = 0

        async def worker() -> None:
            nonlocal failures
            while config.name not in self._pause_requested:
                try:
                    job = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                try:
                    outcome = await self._with_retry(
                        f"{job.kind} {job.path}", lambda: self._execute(config, target, job)
                    )
                except PersistenceError:
                    raise
                except (ObjSyncError, InternalServerError) as exc:
                    failures += 1
                    result.jobs_failed += 1
                    message = describe_failure(exc)
                    result.errors.append(f"{job.kind} {target.backend_id}/{job.key}: {message}")
                    logger.error("Job %s %s failed: %s", job.kind, job.path, exc)
                    await self._record_failure(target, job, message)
                else:
                    await self._commit_job(target, job, outcome)
                    result.jobs_completed += 1
                    result.bytes_transferred += outcome.bytes_transferred
                finally:
                    queue.task_done()

        pool_size = min(config.workers, len(target.jobs))
        tasks = [asyncio.create_task(worker()) for _ in range(pool_size)]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        return failures

    async def _with_retry(self, action: str, call: Callable[[], Awaitable[Any]]) -> Any:
        attempts = self._settings.sync_retry_attempts
        for attempt in range(attempts + 1):
            try:
                return await call()
            except StorageError as exc:
                if not exc.transient or attempt >= attempts:
                    raise
                delay = min(
                    self._settings.sync_retry_base_delay * 2**attempt,
                    self._settings.sync_retry_max_delay,
                )
                logger.warning(
                    "%s failed (attempt %d/%d), retrying in %.1fs: %s",
                    action,
                    attempt + 1,
                    attempts + 1,
                    delay,
                    exc,
                )
                await self._sleep(delay)
        raise AssertionError("unreachable")

    async def _execute(self, config: SyncConfig, target: SyncTarget, job: SyncJob) -> JobOutcome:
        local_path = target.local_root / job.path
        try:
            if job.kind == JobKind.DELETE_LOCAL:
                await asyncio.to_thread(local_path.unlink, missing_ok=True)
                return JobOutcome()
            if job.kind == JobKind.FORGET:
                return JobOutcome()

            client = await self._registry.resolve_client(target.backend_id)
            if job.kind == JobKind.DELETE_REMOTE:
                await client.delete_object(job.key)
                return JobOutcome(remote_deleted=True)
            if job.kind == JobKind.UPLOAD:
                info = await client.upload_file(local_path, job.key, chunk_size=config.chunk_size)
                manifest, local_hash = await self._baseline(job, local_path, info)
                return JobOutcome(info.size, manifest, uploaded=info, local_hash=local_hash)
            if job.kind == JobKind.DOWNLOAD:
                info = await client.download_file(job.key, local_path, chunk_size=config.chunk_size)
                stamp = info.modified_at.timestamp()
                await asyncio.to_thread(os.utime, local_path, (stamp, stamp))
                manifest, _hash = await self._baseline(job, local_path, info)
                return JobOutcome(info.size, manifest)

            stat_info = await client.stat(job.key)
            if stat_info is None:
                raise StorageError(f"{job.key} disappeared before it was recorded", transient=True)
            manifest, _hash = await self._baseline(job, local_path, stat_info)
            return JobOutcome(manifest=manifest)
        except OSError as exc:
            raise StorageError(f"Local file error for {local_path}: {exc}") from exc

    async def _baseline(
        self, job: SyncJob, local_path: Path, info: ObjectInfo
    ) -> tuple[ManifestEntry, str]:
        stat = await asyncio.to_thread(local_path.stat)
        local_hash = await asyncio.to_thread(hash_file, local_path)
        entry = ManifestEntry(
            path=job.path,
            local_size=stat.st_size,
            local_mtime=stat.st_mtime,
            local_hash=local_hash,
            remote_size=info.size,
            remote_mtime=info.modified_at.timestamp(),
            remote_etag=info.etag,
        )
        return entry, local_hash

    async def _commit_job(self, target: SyncTarget, job: SyncJob, outcome: JobOutcome) -> None:
        """Persist a finished job: manifest, counters, cursor and remote metadata together."""
        client_id = self._settings.client_id
        async with self._store.write() as session:
            cursor = await self._locked_cursor(session, target.state_id)
            await session.execute(
                update(SyncState)
                .where(SyncState.id == target.state_id)
                .values(
                    cursor=dump_cursor(_without(cursor, job)),
                    files_synced=SyncState.files_synced + 1,
                    bytes_synced=SyncState.bytes_synced + outcome.bytes_transferred,
                    updated_at=now_utc(),
                )
            )
            row = await session.get(SyncManifest, (target.state_id, job.path))
            if outcome.manifest is None:
                if row is not None:
                    await session.delete(row)
            else:
                if row is None:
                    row = SyncManifest(sync_state_id=target.state_id, path=job.path)
                    session.add(row)
                row.local_size = outcome.manifest.local_size
                row.local_mtime = outcome.manifest.local_mtime
                row.local_hash = outcome.manifest.local_hash
                row.remote_size = outcome.manifest.remote_size
                row.remote_mtime = outcome.manifest.remote_mtime
                row.remote_etag = outcome.manifest.remote_etag
                row.synced_at = now_utc()

            if outcome.uploaded is not None:
                await file_service.upsert_file(
                    session,
                    target.backend_id,
                    job.key,
                    size=outcome.uploaded.size,
                    etag=outcome.uploaded.etag,
                    md5_hash=outcome.local_hash,
                    mime_type=outcome.uploaded.content_type,
                    modified_at=outcome.uploaded.modified_at,
                    client_id=client_id,
                    cache=self._cache,
                )
            elif outcome.remote_deleted:
                existing = await file_service.get_file(session, target.backend_id, job.key)
                if existing is not None:
                    await file_service.soft_delete_file(
                        session, target.backend_id, job.key, client_id=client_id, cache=self._cache
                    )
            await session.commit()

    async def _locked_cursor(self, session: AsyncSession, state_id: int) -> list[SyncJob]:
        stmt = select(SyncState.cursor).where(SyncState.id == state_id).with_for_update()
        return load_cursor((await session.execute(stmt)).scalar_one())

    async def _record_failure(self, target: SyncTarget, job: SyncJob | None, message: str) -> None:
        async with self._store.write() as session:
            values: dict[str, Any] = {
                "error_count": SyncState.error_count + 1,
                "last_error": message,
                "updated_at": now_utc(),
            }
            if job is not None:
                cursor = await self._locked_cursor(session, target.state_id)
                values["cursor"] = dump_cursor(_without(cursor, job))
            await session.execute(
                update(SyncState).where(SyncState.id == target.state_id).values(**values)
            )
            await session.commit()

    async def _finish_batch(self, target: SyncTarget, *, clean: bool) -> None:
        values: dict[str, Any] = {"cursor": None, "updated_at": now_utc()}
        if clean:
            values.update(last_sync_at=now_utc(), error_count=0, last_error=None)
        async with self._store.write() as session:
            await session.execute(
                update(SyncState).where(SyncState.id == target.state_id).values(**values)
            )
            await session.commit()


class SyncAgent:
    """Long-running scheduler: one loop per enabled config.

    Each loop runs on its interval or as soon as the debounced local watcher
    reports a change. The set of loops is refreshed from the store
    periodically so created, removed and disabled configs are picked up.
    """

    def __init__(self, engine: SyncEngine, store: MetadataStore, settings: Settings) -> None:
        self._engine = engine
        self._store = store
        self._settings = settings
        self._loops: dict[str, asyncio.Task[None]] = {}
        self._triggers: dict[str, asyncio.Event] = {}
        self._supervisor: asyncio.Task[None] | None = None

    @property
    def running(self) -> list[str]:
        return sorted(self._loops)

    def start(self) -> None:
        if self._supervisor is None:
            self._supervisor = asyncio.create_task(self._supervise(), name="objsync-agent")

    def trigger(self, name: str) -> None:
        event = self._triggers.get(name)
        if event is not None:
            event.set()

    async def refresh(self) -> None:
        async with self._store.session() as session:
            configs = await sync_config_service.list_sync_configs(session)
        wanted = {config.name: config for config in configs if config.enabled}
        for name in list(self._loops):
            if name not in wanted:
                await self._stop_loop(name)
        for name, config in wanted.items():
            if name not in self._loops:
                self._triggers[name] = asyncio.Event()
                self._loops[name] = asyncio.create_task(
                    self._config_loop(config), name=f"objsync-sync-{name}"
                )

    async def _supervise(self) -> None:
        while True:
            try:
                await self.refresh()
            except ObjSyncError as exc:
                logger.error("Sync agent could not refresh configurations: %s", exc)
            await asyncio.sleep(self._settings.agent_refresh_seconds)

    async def _config_loop(self, config: SyncConfig) -> None:
        name = config.name
        trigger = self._triggers[name]
        endpoints = sync_config_service.split_endpoints(config.source_path, config.dest_path)
        debouncer = Debouncer(self._settings.watch_debounce_seconds, trigger.set)
        watcher = LocalWatcher(
            Path(endpoints.local_dir),
            self._settings.watch_poll_seconds,
            debouncer.notify,
            ignore_patterns=sync_config_service.ignore_patterns(config),
        )
        watcher.start()
        try:
            while True:
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(trigger.wait(), timeout=config.interval_seconds)
                trigger.clear()
                try:
                    await self._engine.run(name)
                except ConflictError as exc:
                    logger.debug("Skipping scheduled run of %s: %s", name, exc)
                except ObjSyncError as exc:
                    logger.error("Scheduled sync %s failed: %s", name, exc)
        finally:
            debouncer.cancel()
            await watcher.stop()

    async def _stop_loop(self, name: str) -> None:
        task = self._loops.pop(name, None)
        self._triggers.pop(name, None)
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def stop(self) -> None:
        if self._supervisor is not None:
            self._supervisor.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._supervisor
            self._supervisor = None
        for name in list(self._loops):
            await self._stop_loop(name)
