"""In-process broadcast of sync status, record changes and import progress."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable

logger = logging.getLogger(__name__)

STATUS = "status"
RECORD_UPDATED = "record_updated"
IMPORT_PROGRESS = "import_progress"


@dataclass(frozen=True)
class SyncEvent:
    type: str
    data: Any


class EventBus:
    """Fan-out to asyncio queues (consumers that await) and plain callbacks.

    Queues are bounded; a slow subscriber loses its oldest events rather than
    blocking the sync loop.
    """

    def __init__(self, max_queue_size: int = 100):
        self.max_queue_size = max_queue_size
        self._queues: set[asyncio.Queue] = set()
        self._listeners: list[Callable[[SyncEvent], None]] = []

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue_size)
        self._queues.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._queues.discard(queue)

    def add_listener(self, callback: Callable[[SyncEvent], None]) -> None:
        self._listeners.append(callback)

    def remove_listener(self, callback: Callable[[SyncEvent], None]) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def publish(self, event_type: str, data: Any) -> SyncEvent:
        event = SyncEvent(event_type, data)
        for queue in list(self._queues):
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(event)
        for callback in list(self._listeners):
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Event listener failed on {event_type}: {e}")
        return event
