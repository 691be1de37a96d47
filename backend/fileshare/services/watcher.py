"""Directory watcher for the upload folder.

watchdog's observer runs in its own thread; every callback is handed to the
asyncio loop with call_soon_threadsafe. A created or modified file is only
reported once its size and mtime stop changing for `stability_seconds`, so a
file still being written is never announced. Events go through one queue and a
single dispatcher task, which keeps delivery in arrival order.
"""
import asyncio
import logging
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

logger = logging.getLogger(__name__)


class StorageEventType(str, Enum):
    ADDED = "added"
    DELETED = "deleted"
    UPDATED = "updated"


@dataclass(frozen=True)
class StorageEvent:
    kind: StorageEventType
    filename: str


StorageListener = Callable[[StorageEvent], Awaitable[None]]


def is_hidden(filename: str) -> bool:
    """Dotfiles (including in-progress .part uploads) are never reported."""
    return filename.startswith(".")


class _LoopForwardingHandler(FileSystemEventHandler):
    """Runs in the observer thread; forwards file events to the event loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop, callback: Callable[[FileSystemEvent], None]):
        super().__init__()
        self._loop = loop
        self._callback = callback

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        try:
            self._loop.call_soon_threadsafe(self._callback, event)
        except RuntimeError:
            # Loop already closed during shutdown
            pass


class DirectoryWatcher:
    """Emits added/deleted/updated events for the top level of a directory."""

    def __init__(self, directory: Path, stability_seconds: float = 0.5, poll_seconds: float = 0.1):
        self.directory = Path(directory).resolve()
        self._stability_seconds = stability_seconds
        self._poll_seconds = poll_seconds
        self._listeners: list[StorageListener] = []
        self._known: set[str] = set()
        # Written by our own storage but not announced yet
        self._expected: set[str] = set()
        self._pending: dict[str, asyncio.Task] = {}
        self._queue: Optional[asyncio.Queue] = None
        self._dispatcher: Optional[asyncio.Task] = None
        self._observer: Optional[Observer] = None

    def add_listener(self, listener: StorageListener) -> None:
        self._listeners.append(listener)

    def expect(self, filename: str) -> None:
        """Mark a file this process is about to create.

        If it is removed before its added event goes out, a deleted event is
        still reported so listeners holding state for it can drop that state.
        """
        if self._observer is not None:
            self._expected.add(filename)

    def unexpect(self, filename: str) -> None:
        self._expected.discard(filename)

    async def start(self) -> None:
        """Start observing and report every file already present as added."""
        if self._observer is not None:
            return
        loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._dispatcher = asyncio.create_task(self._dispatch_loop())

        logger.info(f"Initializing file watcher for directory: {self.directory}")
        observer = Observer()
        observer.schedule(
            _LoopForwardingHandler(loop, self._on_fs_event),
            str(self.directory),
            recursive=False,
        )
        observer.start()
        self._observer = observer

        # Observer first, then scan: a file created in between is reported twice
        # (added + updated) rather than missed.
        for path in sorted(self.directory.iterdir()):
            if path.is_file() and not is_hidden(path.name):
                self._known.add(path.name)
                self._queue.put_nowait(StorageEvent(StorageEventType.ADDED, path.name))
        logger.info(f"Initial scan complete, {len(self._known)} file(s) present. Ready for changes.")

    async def close(self) -> None:
        observer, self._observer = self._observer, None
        if observer is not None:
            observer.stop()
            await asyncio.to_thread(observer.join, 5)

        tasks = list(self._pending.values())
        self._pending.clear()
        self._expected.clear()
        if self._dispatcher is not None:
            tasks.append(self._dispatcher)
            self._dispatcher = None
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"File watcher for {self.directory} closed")

    # ── watchdog callbacks (on the loop) ─────────────────────────────

    def _filename_of(self, raw_path) -> Optional[str]:
        if not raw_path:
            return None
        path = Path(os.fsdecode(raw_path))
        if path.parent != self.directory or is_hidden(path.name):
            return None
        return path.name

    def _on_fs_event(self, event: FileSystemEvent) -> None:
        if self._observer is None:
            return
        kind = event.event_type
        if kind == "moved":
            self._forget(self._filename_of(event.src_path))
            self._touch(self._filename_of(getattr(event, "dest_path", None)))
        elif kind == "deleted":
            self._forget(self._filename_of(event.src_path))
        elif kind in ("created", "modified", "closed"):
            self._touch(self._filename_of(event.src_path))

    def _touch(self, filename: Optional[str]) -> None:
        if filename is None or filename in self._pending:
            # An in-flight stability check already tracks further writes
            return
        self._pending[filename] = asyncio.create_task(self._await_write_finish(filename))

    def _forget(self, filename: Optional[str]) -> None:
        if filename is None:
            return
        task = self._pending.pop(filename, None)
        if task is not None:
            task.cancel()
        if filename in self._known or filename in self._expected:
            self._known.discard(filename)
            self._expected.discard(filename)
            logger.info(f"File {filename} has been removed")
            self._queue.put_nowait(StorageEvent(StorageEventType.DELETED, filename))

    async def _await_write_finish(self, filename: str) -> None:
        loop = asyncio.get_running_loop()
        path = self.directory / filename
        last_signature = None
        stable_since = loop.time()
        try:
            while True:
                try:
                    st = path.stat()
                except FileNotFoundError:
                    return
                signature = (st.st_size, st.st_mtime_ns)
                now = loop.time()
                if signature != last_signature:
                    last_signature, stable_since = signature, now
                elif now - stable_since >= self._stability_seconds:
                    break
                await asyncio.sleep(self._poll_seconds)
        finally:
            if self._pending.get(filename) is asyncio.current_task():
                del self._pending[filename]

        if filename in self._known:
            logger.info(f"File {filename} has been changed")
            kind = StorageEventType.UPDATED
        else:
            logger.info(f"File {filename} has been added")
            kind = StorageEventType.ADDED
        self._known.add(filename)
        self._expected.discard(filename)
        self._queue.put_nowait(StorageEvent(kind, filename))

    async def _dispatch_loop(self) -> None:
        while True:
            event = await self._queue.get()
            for listener in list(self._listeners):
                try:
                    await listener(event)
                except Exception as e:
                    logger.error(
                        f"Storage listener failed for {event.kind.value} {event.filename}: {e}",
                        exc_info=True,
                    )
            self._queue.task_done()
