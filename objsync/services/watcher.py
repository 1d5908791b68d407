"""Debounced local change notification for the sync agent."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING

from objsync.services.sync_service import is_ignored

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

logger = logging.getLogger(__name__)

Snapshot = dict[str, tuple[int, float]]


class Debouncer:
    """Coalesce bursts of notifications into one callback after ``delay`` seconds of quiet."""

    def __init__(self, delay: float, callback: Callable[[], object]) -> None:
        self.delay = delay
        self._callback = callback
        self._handle: asyncio.TimerHandle | None = None
        self.fired = 0

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def notify(self) -> None:
        """Restart the quiet window. Must be called from the event loop thread."""
        if self._handle is not None:
            self._handle.cancel()
        self._handle = asyncio.get_running_loop().call_later(self.delay, self._fire)

    def _fire(self) -> None:
        self._handle = None
        self.fired += 1
        self._callback()

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None


def snapshot_tree(root: Path, ignore_patterns: Iterable[str] = ()) -> Snapshot:
    """Map every visible file under ``root`` to its (size, mtime)."""
    patterns = list(ignore_patterns)
    snapshot: Snapshot = {}
    if not root.is_dir():
        return snapshot
    for dirpath, dirs, files in os.walk(root):
        dirs[:] = [d for d in dirs if not d.startswith(".")]
        for filename in files:
            if filename.startswith("."):
                continue
            full = Path(dirpath) / filename
            rel = full.relative_to(root).as_posix()
            if is_ignored(rel, patterns):
                continue
            try:
                stat = full.stat()
            except FileNotFoundError:
                continue
            snapshot[rel] = (stat.st_size, stat.st_mtime)
    return snapshot


class LocalWatcher:
    """Polls a directory tree and calls ``on_change`` whenever its snapshot differs."""

    def __init__(
        self,
        root: Path,
        interval: float,
        on_change: Callable[[], object],
        *,
        ignore_patterns: Iterable[str] = (),
    ) -> None:
        self.root = root
        self.interval = interval
        self._on_change = on_change
        self._ignore_patterns = list(ignore_patterns)
        self._task: asyncio.Task[None] | None = None

    async def poll_once(self, previous: Snapshot) -> Snapshot:
        current = await asyncio.to_thread(snapshot_tree, self.root, self._ignore_patterns)
        if current != previous:
            logger.debug("Local change detected under %s", self.root)
            self._on_change()
        return current

    async def _run(self) -> None:
        previous = await asyncio.to_thread(snapshot_tree, self.root, self._ignore_patterns)
        while True:
            await asyncio.sleep(self.interval)
            try:
                previous = await self.poll_once(previous)
            except OSError as exc:
                logger.warning("Cannot watch %s: %s", self.root, exc)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"objsync-watch-{self.root}")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
