"""Tests for watch mode."""

import asyncio
import os
import threading
from pathlib import Path
from typing import List
from unittest.mock import MagicMock

import pytest
from watchdog.events import DirModifiedEvent, FileDeletedEvent, FileModifiedEvent, FileMovedEvent

from codegraph_indexer.filesystem import LocalFileSystem
from codegraph_indexer.models import Location
from codegraph_indexer.watcher import CHANGE, UNLINK, FileWatcher, _ChangeHandler

from conftest import write_files

DEBOUNCE = 0.05


class FakePipeline:
    """Records sync/remove calls instead of touching a graph."""

    def __init__(self) -> None:
        self.fs = LocalFileSystem()
        self.synced: List[str] = []
        self.removed: List[str] = []

    def parser_for(self, path: str):
        return object() if path.endswith((".js", ".py")) else None

    async def build_imports_map(self, root: str):
        return {
            "a": [Location(os.path.join(root, "a.js"), 1)],
            "b": [Location(os.path.join(root, "b.js"), 1)],
        }

    async def sync_file(self, path, repo_path, imports_map):
        self.synced.append(path)

    async def remove_file(self, path):
        self.removed.append(path)


class SlowFirstSyncPipeline(FakePipeline):
    """The first sync stalls, as a slow enrichment call would."""

    def __init__(self) -> None:
        super().__init__()
        self.trace: List[str] = []

    async def sync_file(self, path, repo_path, imports_map):
        number = len([t for t in self.trace if t.startswith("start")]) + 1
        self.trace.append(f"start {number}")
        if number == 1:
            await asyncio.sleep(DEBOUNCE * 6)
        self.trace.append(f"end {number}")
        await super().sync_file(path, repo_path, imports_map)


@pytest.fixture
def watch_root(temp_dir: Path) -> Path:
    return write_files(temp_dir / "w", {
        "a.js": "function a() {}\n",
        "b.js": "function b() {}\n",
        "notes.md": "# notes\n",
        "node_modules/dep/index.js": "function dep() {}\n",
    })


@pytest.fixture
def observers() -> List[MagicMock]:
    return []


@pytest.fixture
def watcher(observers):
    def factory():
        observer = MagicMock()
        observers.append(observer)
        return observer

    return FileWatcher(FakePipeline(), debounce_seconds=DEBOUNCE, observer_factory=factory)


async def _settle(watcher: FileWatcher) -> None:
    await asyncio.sleep(DEBOUNCE * 3)
    await watcher.drain()


class TestWatchRegistry:
    """Tests for watch / unwatch bookkeeping."""

    @pytest.mark.asyncio
    async def test_watch_starts_observer(self, watcher, observers, watch_root: Path):
        """Test that watching schedules a recursive observer once."""
        assert await watcher.watch(str(watch_root)) is True
        assert await watcher.watch(str(watch_root)) is False
        assert len(observers) == 1
        observers[0].schedule.assert_called_once()
        call = observers[0].schedule.call_args
        assert call.args[1] == str(watch_root)
        assert call.kwargs["recursive"] is True
        observers[0].start.assert_called_once()
        assert watcher.get_watched_paths() == [str(watch_root)]

    @pytest.mark.asyncio
    async def test_unwatch(self, watcher, observers, watch_root: Path):
        """Test that unwatch stops the observer and unknown roots are ignored."""
        assert await watcher.unwatch(str(watch_root)) is False
        await watcher.watch(str(watch_root))
        assert await watcher.unwatch(str(watch_root)) is True
        observers[0].stop.assert_called_once()
        observers[0].join.assert_called_once()
        assert watcher.get_watched_paths() == []

    @pytest.mark.asyncio
    async def test_close_all(self, watcher, observers, temp_dir: Path):
        """Test that close_all stops every observer."""
        for name in ("one", "two"):
            (temp_dir / name).mkdir()
            await watcher.watch(str(temp_dir / name))
        await watcher.close_all()
        assert all(o.stop.called for o in observers)
        assert watcher.get_watched_paths() == []


class TestEvents:
    """Tests for debounced event handling."""

    @pytest.mark.asyncio
    async def test_burst_is_debounced(self, watcher, watch_root: Path):
        """Test that several saves of one file cause one re-index."""
        root = str(watch_root)
        await watcher.watch(root)
        for _ in range(3):
            watcher.handle_event(root, CHANGE, str(watch_root / "a.js"))
            await asyncio.sleep(DEBOUNCE / 5)
        await _settle(watcher)
        assert watcher.pipeline.synced == [str(watch_root / "a.js")]

    @pytest.mark.asyncio
    async def test_unlink_removes_file(self, watcher, watch_root: Path):
        """Test that deletions drop the file and its imports-map entries."""
        root = str(watch_root)
        seen = []
        watcher.on_synced = lambda kind, path: seen.append((kind, path))
        await watcher.watch(root)

        target = watch_root / "a.js"
        target.unlink()
        watcher.handle_event(root, UNLINK, str(target))
        await _settle(watcher)

        assert watcher.pipeline.removed == [str(target)]
        assert seen == [(UNLINK, str(target))]
        assert "a" not in watcher._roots[root].imports_map
        assert "b" in watcher._roots[root].imports_map

    @pytest.mark.asyncio
    async def test_change_to_missing_file_is_unlink(self, watcher, watch_root: Path):
        """Test that a change event for a vanished file removes it."""
        root = str(watch_root)
        await watcher.watch(root)
        (watch_root / "b.js").unlink()
        watcher.handle_event(root, CHANGE, str(watch_root / "b.js"))
        await _settle(watcher)
        assert watcher.pipeline.synced == []
        assert watcher.pipeline.removed == [str(watch_root / "b.js")]

    @pytest.mark.asyncio
    async def test_ignored_and_unsupported_paths(self, watcher, watch_root: Path):
        """Test that ignored directories and unknown extensions never sync."""
        root = str(watch_root)
        await watcher.watch(root)
        watcher.handle_event(root, CHANGE, str(watch_root / "node_modules" / "dep" / "index.js"))
        watcher.handle_event(root, CHANGE, str(watch_root / "notes.md"))
        watcher.handle_event("/not/watched", CHANGE, "/not/watched/x.js")
        await _settle(watcher)
        assert watcher.pipeline.synced == []
        assert watcher.pipeline.removed == []

    @pytest.mark.asyncio
    async def test_events_from_other_threads(self, watcher, watch_root: Path):
        """Test that observer threads can hand events to the loop."""
        root = str(watch_root)
        await watcher.watch(root)
        thread = threading.Thread(target=watcher.handle_event, args=(root, CHANGE, str(watch_root / "b.js")))
        thread.start()
        thread.join()
        await _settle(watcher)
        assert watcher.pipeline.synced == [str(watch_root / "b.js")]

    @pytest.mark.asyncio
    async def test_syncs_of_one_file_do_not_overlap(self, observers, watch_root: Path):
        """Test that a save settling mid-sync waits for the running sync."""
        pipeline = SlowFirstSyncPipeline()
        watcher = FileWatcher(pipeline, debounce_seconds=DEBOUNCE, observer_factory=MagicMock)
        root = str(watch_root)
        target = str(watch_root / "a.js")
        await watcher.watch(root)

        watcher.handle_event(root, CHANGE, target)
        await asyncio.sleep(DEBOUNCE * 2)
        assert pipeline.trace == ["start 1"]

        watcher.handle_event(root, CHANGE, target)
        await asyncio.sleep(DEBOUNCE * 2)
        assert pipeline.trace == ["start 1"]

        await watcher.drain()
        await _settle(watcher)
        assert pipeline.trace == ["start 1", "end 1", "start 2", "end 2"]
        assert pipeline.synced == [target, target]

    @pytest.mark.asyncio
    async def test_unwatch_cancels_pending(self, watcher, watch_root: Path):
        """Test that pending timers of an unwatched root never fire."""
        root = str(watch_root)
        await watcher.watch(root)
        watcher.handle_event(root, CHANGE, str(watch_root / "a.js"))
        await asyncio.sleep(0)
        await watcher.unwatch(root)
        await _settle(watcher)
        assert watcher.pipeline.synced == []


class TestChangeHandler:
    """Tests for the watchdog event adapter."""

    def test_event_kinds(self):
        """Test the mapping of watchdog events to change/unlink."""
        received = []

        class Recorder:
            def handle_event(self, root, kind, path):
                received.append((kind, path))

        handler = _ChangeHandler(Recorder(), "/r")
        handler.dispatch(FileModifiedEvent("/r/a.js"))
        handler.dispatch(FileDeletedEvent("/r/b.js"))
        handler.dispatch(FileMovedEvent("/r/c.js", "/r/d.js"))
        handler.dispatch(DirModifiedEvent("/r/src"))
        assert received == [
            (CHANGE, "/r/a.js"),
            (UNLINK, "/r/b.js"),
            (UNLINK, "/r/c.js"),
            (CHANGE, "/r/d.js"),
        ]
