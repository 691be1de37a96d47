"""In-process publish/subscribe used by the coordinator.

Handlers are awaited in registration order. A failing handler is logged and
does not prevent the remaining handlers from running.
"""
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

EventHandler = Callable[[Any], Awaitable[None]]


class EventBus:
    def __init__(self):
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)

    def on(self, event: str, handler: EventHandler) -> None:
        self._handlers[event].append(handler)

    async def emit(self, event: str, payload: Any = None) -> None:
        for handler in list(self._handlers.get(event, [])):
            try:
                await handler(payload)
            except Exception as e:
                logger.error(f"Handler for '{event}' failed: {e}", exc_info=True)
