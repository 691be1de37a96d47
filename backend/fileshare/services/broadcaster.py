"""Real-time broadcaster for connected WebSocket clients.

Every message has the shape {"event": <name>, "data": <payload>}:
- "files-changed": the full current file list (snapshot, never a delta)
- "file-processing-*": the processing payload relayed verbatim
"""
import logging
from typing import Any, Protocol

from fileshare.schemas.file import FileEvent, FileProcessingEvent, FileProcessingPayload
from fileshare.services.file_service import FileService

logger = logging.getLogger(__name__)


class Subscriber(Protocol):
    async def send_json(self, data: Any) -> None: ...


class FileBroadcaster:
    def __init__(self, service: FileService):
        self._service = service
        self._subscribers: set[Subscriber] = set()

        service.events.on(FileEvent.FILES_CHANGED, self._on_files_changed)
        for event in FileProcessingEvent:
            service.events.on(event, self._relay(event))

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def connect(self, subscriber: Subscriber) -> None:
        """Register an (already accepted) subscriber and send it the current list."""
        self._subscribers.add(subscriber)
        try:
            await subscriber.send_json(await self._files_message())
        except Exception as e:
            logger.warning(f"Could not send initial file list: {e}")
            self._subscribers.discard(subscriber)

    def disconnect(self, subscriber: Subscriber) -> None:
        self._subscribers.discard(subscriber)

    async def _files_message(self) -> dict:
        files = await self._service.list()
        return {
            "event": FileEvent.FILES_CHANGED.value,
            "data": [f.to_wire() for f in files],
        }

    async def broadcast(self, message: dict) -> None:
        for subscriber in list(self._subscribers):
            try:
                await subscriber.send_json(message)
            except Exception as e:
                logger.warning(f"Dropping subscriber after failed send: {e}")
                self._subscribers.discard(subscriber)

    async def _on_files_changed(self, filename) -> None:
        logger.debug(f"File changed notification: {filename}")
        await self.broadcast(await self._files_message())

    def _relay(self, event: FileProcessingEvent):
        async def handler(payload: FileProcessingPayload) -> None:
            logger.debug(f"Relaying {event.value} for {payload.filename}")
            await self.broadcast({
                "event": event.value,
                "data": payload.to_wire(exclude_none=True),
            })
        return handler
