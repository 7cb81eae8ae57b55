"""Watch mode: keep the graph in sync with file-system changes.

Watchdog observers run in their own threads; every event is handed to the
asyncio loop with ``call_soon_threadsafe`` and debounced per path, so a burst
of saves results in one re-index of the final content.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .filesystem import IgnoreRules
from .indexer import IndexingPipeline
from .models import ImportsMap
from .parser import drop_file_from_map

logger = logging.getLogger(__name__)

DEBOUNCE_SECONDS = 2.0

CHANGE = "change"
UNLINK = "unlink"


class Debouncer:
    """Per-key cancellable deferred actions on the event loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop, delay: float) -> None:
        self.loop = loop
        self.delay = delay
        self._handles: Dict[str, asyncio.TimerHandle] = {}
        self._running: Set["asyncio.Task[None]"] = set()

    def schedule(self, key: str, action: Callable[[], Awaitable[None]]) -> None:
        previous = self._handles.pop(key, None)
        if previous is not None:
            previous.cancel()
        self._handles[key] = self.loop.call_later(self.delay, self._fire, key, action)

    def _fire(self, key: str, action: Callable[[], Awaitable[None]]) -> None:
        self._handles.pop(key, None)
        task = self.loop.create_task(action())
        self._running.add(task)
        task.add_done_callback(self._running.discard)

    def cancel(self, prefix: str = "") -> None:
        for key in [k for k in self._handles if k.startswith(prefix)]:
            self._handles.pop(key).cancel()

    @property
    def pending(self) -> int:
        return len(self._handles)

    async def drain(self) -> None:
        """Wait for actions that already fired."""
        if self._running:
            await asyncio.gather(*list(self._running), return_exceptions=True)


class _ChangeHandler(FileSystemEventHandler):
    """Forwards watchdog events for one root to the watcher."""

    def __init__(self, watcher: "FileWatcher", root: str) -> None:
        super().__init__()
        self.watcher = watcher
        self.root = root

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self.watcher.handle_event(self.root, CHANGE, os.fsdecode(event.src_path))

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self.watcher.handle_event(self.root, CHANGE, os.fsdecode(event.src_path))

    def on_deleted(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self.watcher.handle_event(self.root, UNLINK, os.fsdecode(event.src_path))

    def on_moved(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self.watcher.handle_event(self.root, UNLINK, os.fsdecode(event.src_path))
            self.watcher.handle_event(self.root, CHANGE, os.fsdecode(event.dest_path))


@dataclass
class _WatchedRoot:
    root: str
    observer: Any
    ignore: IgnoreRules
    imports_map: ImportsMap = field(default_factory=dict)


class FileWatcher:
    """Watches directory roots and re-indexes files as they change."""

    def __init__(
        self,
        pipeline: IndexingPipeline,
        debounce_seconds: float = DEBOUNCE_SECONDS,
        observer_factory: Callable[[], Any] = Observer,
        on_synced: Optional[Callable[[str, str], None]] = None,
    ) -> None:
        self.pipeline = pipeline
        self.debounce_seconds = debounce_seconds
        self.observer_factory = observer_factory
        self.on_synced = on_synced
        self._roots: Dict[str, _WatchedRoot] = {}
        self._path_locks: Dict[str, asyncio.Lock] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._debouncer: Optional[Debouncer] = None

    def _ensure_loop(self) -> Debouncer:
        if self._debouncer is None:
            self._loop = asyncio.get_running_loop()
            self._debouncer = Debouncer(self._loop, self.debounce_seconds)
        return self._debouncer

    async def watch(self, path: str) -> bool:
        """Start watching *path*; returns ``False`` if it was already watched."""
        root = os.path.abspath(path)
        if root in self._roots:
            return False
        self._ensure_loop()
        ignore = IgnoreRules.for_root(root, self.pipeline.fs)
        imports_map = await self.pipeline.build_imports_map(root)

        observer = self.observer_factory()
        observer.schedule(_ChangeHandler(self, root), root, recursive=True)
        observer.start()
        self._roots[root] = _WatchedRoot(root, observer, ignore, imports_map)
        logger.info("Watching %s (%d known symbols)", root, len(imports_map))
        return True

    async def unwatch(self, path: str) -> bool:
        """Stop watching *path*; unknown roots are ignored."""
        root = os.path.abspath(path)
        watched = self._roots.pop(root, None)
        if watched is None:
            return False
        if self._debouncer is not None:
            self._debouncer.cancel(root + os.sep)
        for key in [p for p in self._path_locks if p.startswith(root + os.sep)]:
            del self._path_locks[key]
        await self._stop(watched)
        logger.info("Stopped watching %s", root)
        return True

    def get_watched_paths(self) -> List[str]:
        return sorted(self._roots)

    async def close_all(self) -> None:
        """Stop every observer, cancel pending timers and clear caches."""
        roots = list(self._roots.values())
        self._roots.clear()
        self._path_locks.clear()
        if self._debouncer is not None:
            self._debouncer.cancel()
        for watched in roots:
            await self._stop(watched)

    @staticmethod
    async def _stop(watched: _WatchedRoot) -> None:
        watched.observer.stop()
        await asyncio.to_thread(watched.observer.join)
        watched.imports_map.clear()

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def handle_event(self, root: str, kind: str, path: str) -> None:
        """Thread-safe entry point used by the observer threads."""
        if self._loop is None or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._on_event, root, kind, path)

    def _on_event(self, root: str, kind: str, path: str) -> None:
        watched = self._roots.get(root)
        if watched is None:
            return
        path = os.path.abspath(path)
        if self.pipeline.parser_for(path) is None or watched.ignore.is_ignored(path):
            return
        logger.debug("%s %s", kind, path)
        self._ensure_loop().schedule(path, lambda: self._settle(root, kind, path))

    async def _settle(self, root: str, kind: str, path: str) -> None:
        # Syncs of one path never overlap; a newer save runs after the current one.
        lock = self._path_locks.setdefault(path, asyncio.Lock())
        async with lock:
            await self._apply(root, kind, path)

    async def _apply(self, root: str, kind: str, path: str) -> None:
        watched = self._roots.get(root)
        if watched is None:
            return
        try:
            if kind == UNLINK or not self.pipeline.fs.exists(path):
                await self.pipeline.remove_file(path)
                drop_file_from_map(watched.imports_map, path)
                kind = UNLINK
            else:
                await self.pipeline.sync_file(path, root, watched.imports_map)
        except Exception as exc:
            logger.error("Failed to sync %s: %s", path, exc)
            return
        logger.info("Synced %s (%s)", path, kind)
        if self.on_synced is not None:
            self.on_synced(kind, path)

    async def drain(self) -> None:
        """Wait for re-index work that has already started."""
        if self._debouncer is not None:
            await self._debouncer.drain()
