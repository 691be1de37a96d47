"""File lifecycle coordinator.

Keeps the metadata store in line with what is actually in blob storage and
publishes a single event stream for real-time subscribers:

- FileEvent.FILES_CHANGED whenever the listing may have changed
- FileProcessingEvent.STARTED / COMPLETED / ERROR around each upload, plus
  ERROR when background reconciliation fails

Storage is the source of truth for existence. Metadata rows are created when
storage reports a file as added and removed when it reports a deletion.
"""
import asyncio
import logging
import mimetypes
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional
from weakref import WeakValueDictionary

from fileshare.exceptions import (
    FileValidationError,
    MetadataConsistencyError,
    StorageIOError,
    safe_error_message,
)
from fileshare.schemas.file import (
    DEFAULT_MIME_TYPE,
    FileEvent,
    FileInfo,
    FileProcessingEvent,
    FileProcessingPayload,
)
from fileshare.services.events import EventBus
from fileshare.services.file_storage import BlobStorage, StoredBlob, display_name_from_filename
from fileshare.services.metadata_store import MetadataStore
from fileshare.services.watcher import StorageEvent, StorageEventType

logger = logging.getLogger(__name__)


def guess_mime_type(name: str, content_type: Optional[str] = None) -> str:
    if content_type and content_type != DEFAULT_MIME_TYPE:
        return content_type
    guessed, _ = mimetypes.guess_type(name)
    return guessed or DEFAULT_MIME_TYPE


class FileService:
    def __init__(
        self,
        storage: BlobStorage,
        metadata: MetadataStore,
        events: Optional[EventBus] = None,
        delete_delay_seconds: float = 0.0,
    ):
        self._storage = storage
        self._metadata = metadata
        self.events = events or EventBus()
        self._delete_delay_seconds = delete_delay_seconds
        # Serializes metadata writes per filename (upload vs. watcher reconciliation)
        self._locks: WeakValueDictionary[str, asyncio.Lock] = WeakValueDictionary()
        self._scheduled_deletions: dict[str, asyncio.Task] = {}
        storage.subscribe(self._on_storage_event)

    def _lock_for(self, filename: str) -> asyncio.Lock:
        lock = self._locks.get(filename)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[filename] = lock
        return lock

    async def _emit_processing(
        self,
        event: FileProcessingEvent,
        filename: str,
        file_info: Optional[FileInfo] = None,
        error: Optional[str] = None,
    ) -> None:
        payload = FileProcessingPayload(filename=filename, file_info=file_info, error=error)
        await self.events.emit(event, payload)

    async def _emit_files_changed(self, filename: Optional[str] = None) -> None:
        await self.events.emit(FileEvent.FILES_CHANGED, filename)

    # ── Lifecycle ────────────────────────────────────────────────────

    async def start(self) -> None:
        """Drop metadata rows whose blob disappeared while the server was down."""
        present = {blob.filename for blob in await self._storage.list()}
        orphans = await self._metadata.filenames() - present
        for filename in sorted(orphans):
            await self._metadata.delete(filename)
        if orphans:
            logger.info(f"Removed metadata for {len(orphans)} file(s) missing from storage")
            await self._emit_files_changed()

    async def close(self) -> None:
        tasks = list(self._scheduled_deletions.values())
        self._scheduled_deletions.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # ── Operations ───────────────────────────────────────────────────

    async def upload(
        self,
        data: Optional[bytes],
        original_name: Optional[str],
        delete_on_download: bool = False,
        content_type: Optional[str] = None,
    ) -> FileInfo:
        """Store an uploaded file and its metadata.

        Emits STARTED first and exactly one of COMPLETED / ERROR afterwards.
        Raises FileValidationError when no bytes were supplied (storage is not
        touched) and re-raises storage or metadata failures.
        """
        original_name = original_name or "Unknown file"
        await self._emit_processing(FileProcessingEvent.STARTED, original_name)

        if data is None:
            await self._emit_processing(FileProcessingEvent.ERROR, original_name, error="No file uploaded")
            raise FileValidationError("No file uploaded")

        try:
            filename = await self._storage.save(original_name, data)
            async with self._lock_for(filename):
                info = FileInfo(
                    filename=filename,
                    display_name=original_name,
                    size=len(data),
                    mime_type=guess_mime_type(original_name, content_type),
                    created_at=datetime.now(timezone.utc),
                    delete_on_download=delete_on_download,
                )
                await self._metadata.put(filename, info)
                info = await self._metadata.get(filename) or info
        except Exception as e:
            logger.error(f"Upload of {original_name} failed: {e}")
            await self._emit_processing(FileProcessingEvent.ERROR, original_name, error=safe_error_message(e))
            raise

        logger.info(f"Uploaded {original_name} as {filename} (deleteOnDownload={delete_on_download})")
        await self._emit_files_changed(filename)
        await self._emit_processing(FileProcessingEvent.COMPLETED, original_name, file_info=info)
        return info

    async def list(self) -> List[FileInfo]:
        return await self._metadata.list()

    async def get_path(self, filename: str) -> Optional[Path]:
        return await self._storage.read_path(filename)

    async def get_metadata(self, filename: str) -> Optional[FileInfo]:
        return await self._metadata.get(filename)

    async def delete(self, filename: str) -> None:
        """Remove metadata first so listings never show a file being deleted."""
        self._cancel_scheduled_deletion(filename)
        async with self._lock_for(filename):
            await self._metadata.delete(filename)
        await self._finish_delete(filename)

    async def _finish_delete(self, filename: str) -> None:
        await self._emit_files_changed(filename)
        await self._storage.delete(filename)
        logger.info(f"Deleted {filename}")

    async def consume_delete_on_download(self, filename: str) -> None:
        """Called once a download response has been fully sent.

        Deletes the file if it is flagged delete-on-download. A record that
        is already gone makes this a no-op, so concurrent downloads delete once.
        """
        async with self._lock_for(filename):
            info = await self._metadata.get(filename)
            if info is None or not info.delete_on_download:
                return
            if self._delete_delay_seconds > 0:
                if filename not in self._scheduled_deletions:
                    logger.info(f"Scheduling deletion of {filename} in {self._delete_delay_seconds}s")
                    self._scheduled_deletions[filename] = asyncio.create_task(self._delete_later(filename))
                return
            await self._metadata.delete(filename)
        logger.info(f"Response body for {filename} sent, deleting (delete-on-download)")
        await self._finish_delete(filename)

    async def _delete_later(self, filename: str) -> None:
        try:
            await asyncio.sleep(self._delete_delay_seconds)
            await self.delete(filename)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Scheduled deletion of {filename} failed: {e}")
        finally:
            if self._scheduled_deletions.get(filename) is asyncio.current_task():
                del self._scheduled_deletions[filename]

    def _cancel_scheduled_deletion(self, filename: str) -> None:
        task = self._scheduled_deletions.get(filename)
        if task is None or task is asyncio.current_task():
            return
        del self._scheduled_deletions[filename]
        task.cancel()

    # ── Reconciliation ───────────────────────────────────────────────

    async def _on_storage_event(self, event: StorageEvent) -> None:
        handlers = {
            StorageEventType.ADDED: self._reconcile_added,
            StorageEventType.DELETED: self._reconcile_deleted,
            StorageEventType.UPDATED: self._reconcile_updated,
        }
        try:
            await handlers[event.kind](event.filename)
        except (MetadataConsistencyError, StorageIOError) as e:
            logger.error(f"Reconciliation of {event.kind.value} {event.filename} failed: {e.message}")
            await self._emit_processing(FileProcessingEvent.ERROR, event.filename, error=e.message)
            return
        await self._emit_files_changed(event.filename)

    def _info_from_blob(self, blob: StoredBlob) -> FileInfo:
        display_name = display_name_from_filename(blob.filename)
        return FileInfo(
            filename=blob.filename,
            display_name=display_name,
            size=blob.size_bytes,
            mime_type=guess_mime_type(display_name),
            created_at=blob.birth_time,
            delete_on_download=False,
        )

    async def _stat(self, filename: str) -> Optional[StoredBlob]:
        try:
            return await self._storage.stat(filename)
        except StorageIOError:
            raise
        except Exception as e:
            raise StorageIOError(f"Failed to read {filename}: {e}", {"filename": filename}) from e

    async def _reconcile_added(self, filename: str) -> None:
        async with self._lock_for(filename):
            try:
                info = await self._metadata.get(filename)
            except Exception as e:
                raise MetadataConsistencyError("Failed to get metadata", {"filename": filename}) from e

            if info is None:
                blob = await self._stat(filename)
                if blob is None:
                    raise MetadataConsistencyError("File vanished before it was registered", {"filename": filename})
                info = self._info_from_blob(blob)
                logger.info(f"Registering externally added file {filename}")

            try:
                await self._metadata.put(filename, info)
            except Exception as e:
                raise MetadataConsistencyError("Failed to save metadata", {"filename": filename}) from e

    async def _reconcile_deleted(self, filename: str) -> None:
        self._cancel_scheduled_deletion(filename)
        async with self._lock_for(filename):
            try:
                await self._metadata.delete(filename)
            except Exception as e:
                raise MetadataConsistencyError("Failed to delete metadata", {"filename": filename}) from e

    async def _reconcile_updated(self, filename: str) -> None:
        async with self._lock_for(filename):
            try:
                info = await self._metadata.get(filename)
            except Exception as e:
                raise MetadataConsistencyError("Failed to get metadata", {"filename": filename}) from e
            if info is None:
                raise MetadataConsistencyError("No metadata for updated file", {"filename": filename})

            # Stored deleteOnDownload is kept as-is; only the size follows the blob
            blob = await self._stat(filename)
            if blob is not None:
                info = info.model_copy(update={"size": blob.size_bytes})
            try:
                await self._metadata.put(filename, info)
            except Exception as e:
                raise MetadataConsistencyError("Failed to save metadata", {"filename": filename}) from e
