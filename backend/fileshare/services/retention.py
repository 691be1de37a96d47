"""Retention scheduler: expires old blobs while any exist.

Wraps a BlobStorage and exposes the same interface, so the coordinator can use
it in place of the raw storage. The periodic sweep runs as an asyncio task that
only exists while the directory is non-empty:

    INACTIVE --(file added / saved, or non-empty at start)--> ACTIVE
    ACTIVE --(sweep or deletion leaves storage empty)--> INACTIVE

Expired blobs are removed through storage.delete only; metadata cleanup follows
from the watcher's deleted event.
"""
import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import List, Optional

from fileshare.services.file_storage import BlobStorage, StoredBlob
from fileshare.services.watcher import StorageEvent, StorageEventType, StorageListener

logger = logging.getLogger(__name__)

DEFAULT_FILE_TTL = 12 * 60 * 60  # seconds
DEFAULT_CLEANUP_INTERVAL = 6 * 60 * 60  # seconds
DEFAULT_SETTLE_DELAY = 0.1  # seconds


class SchedulerState(str, Enum):
    INACTIVE = "inactive"
    ACTIVE = "active"


class RetentionScheduler:
    """BlobStorage decorator that deletes files older than file_ttl."""

    def __init__(
        self,
        storage: BlobStorage,
        file_ttl: float = DEFAULT_FILE_TTL,
        cleanup_interval: float = DEFAULT_CLEANUP_INTERVAL,
        settle_delay: float = DEFAULT_SETTLE_DELAY,
    ):
        self._storage = storage
        self._file_ttl = file_ttl
        self._cleanup_interval = cleanup_interval
        self._settle_delay = settle_delay
        self._state = SchedulerState.INACTIVE
        self._sweep_task: Optional[asyncio.Task] = None
        self._settle_task: Optional[asyncio.Task] = None
        self._listeners: list[StorageListener] = []
        storage.subscribe(self._on_storage_event)

    # ── Overrides / introspection ────────────────────────────────────

    @property
    def file_ttl(self) -> float:
        return self._file_ttl

    @file_ttl.setter
    def file_ttl(self, ttl: float) -> None:
        if ttl < 0:
            raise ValueError("file_ttl must be non-negative")
        self._file_ttl = ttl

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state is SchedulerState.ACTIVE

    def force_start(self) -> None:
        self._activate()

    def force_stop(self) -> None:
        self._deactivate()

    # ── State machine ────────────────────────────────────────────────

    def _activate(self) -> None:
        if self._state is SchedulerState.ACTIVE:
            return
        logger.info(f"Starting file cleanup scheduler with interval: {self._cleanup_interval}s")
        self._state = SchedulerState.ACTIVE
        self._sweep_task = asyncio.create_task(self._sweep_loop())

    def _deactivate(self) -> None:
        if self._state is SchedulerState.INACTIVE:
            return
        logger.info("Stopping cleanup scheduler as no files exist")
        task, self._sweep_task = self._sweep_task, None
        self._state = SchedulerState.INACTIVE
        # When called from inside the sweep loop, the loop sees it is no longer
        # the current sweep task and exits on its own.
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _sweep_loop(self) -> None:
        me = asyncio.current_task()
        while self._sweep_task is me:
            await asyncio.sleep(self._cleanup_interval)
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Error during file cleanup: {e}", exc_info=True)

    async def _sync_with_storage(self) -> None:
        if await self._storage.list():
            self._activate()
        else:
            self._deactivate()

    def _schedule_settle_check(self) -> None:
        """Re-check emptiness after a short delay; a newer check replaces a pending one."""
        if self._settle_task is not None and not self._settle_task.done():
            self._settle_task.cancel()
        self._settle_task = asyncio.create_task(self._check_after_settle())

    async def _check_after_settle(self) -> None:
        await asyncio.sleep(self._settle_delay)
        try:
            await self._sync_with_storage()
        except Exception as e:
            logger.error(f"Scheduler state check failed: {e}", exc_info=True)

    # ── Sweep ────────────────────────────────────────────────────────

    async def sweep(self) -> int:
        """Delete every blob older than file_ttl. Returns the number deleted."""
        logger.info("Running file cleanup process...")
        now = datetime.now(timezone.utc)
        deleted_count = 0

        for blob in await self._storage.list():
            age = (now - blob.birth_time).total_seconds()
            if age <= self._file_ttl:
                continue
            try:
                logger.info(f"Deleting expired file: {blob.filename} (age: {age:.1f}s)")
                await self._storage.delete(blob.filename)
                deleted_count += 1
            except Exception as e:
                logger.error(f"Failed to delete expired file {blob.filename}: {e}")

        logger.info(f"Cleanup complete. Deleted {deleted_count} expired files.")

        if not await self._storage.list():
            self._deactivate()
        return deleted_count

    # ── Storage events ───────────────────────────────────────────────

    async def _on_storage_event(self, event: StorageEvent) -> None:
        if event.kind is StorageEventType.ADDED and not self.is_active:
            logger.info("New file detected, restarting cleanup scheduler")
            self._activate()
        elif event.kind is StorageEventType.DELETED:
            self._schedule_settle_check()

        for listener in list(self._listeners):
            try:
                await listener(event)
            except Exception as e:
                logger.error(f"Listener failed for {event.kind.value} {event.filename}: {e}", exc_info=True)

    # ── BlobStorage interface ────────────────────────────────────────

    async def save(self, desired_name: str, data: bytes) -> str:
        filename = await self._storage.save(desired_name, data)
        self._activate()
        return filename

    async def delete(self, filename: str) -> None:
        await self._storage.delete(filename)
        self._schedule_settle_check()

    async def read_path(self, filename: str) -> Optional[Path]:
        return await self._storage.read_path(filename)

    async def stat(self, filename: str) -> Optional[StoredBlob]:
        return await self._storage.stat(filename)

    async def list(self) -> List[StoredBlob]:
        return await self._storage.list()

    def subscribe(self, listener: StorageListener) -> None:
        self._listeners.append(listener)

    async def start(self) -> None:
        """Start the wrapped storage, then activate if files already exist."""
        await self._storage.start()
        await self._sync_with_storage()

    async def close(self) -> None:
        tasks = [t for t in (self._sweep_task, self._settle_task) if t is not None]
        self._sweep_task = None
        self._settle_task = None
        self._state = SchedulerState.INACTIVE
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self._storage.close()
