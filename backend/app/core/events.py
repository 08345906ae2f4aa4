"""
In-process event bus.

Surfaces operator-facing events (failed writes, queue overflow, geofence
alerts, stale calls, transitions) to any number of observers. Each observer
gets its own queue; a slow observer never blocks the publisher.
"""

import asyncio
import logging
from collections import deque
from typing import Awaitable, Callable, Deque, List, Optional

from backend.app.schemas.events import DispatchEvent, EventKind

logger = logging.getLogger(__name__)

Listener = Callable[[DispatchEvent], Awaitable[None]]


class EventBus:

    def __init__(self, history_size: int = 1000, queue_size: int = 1000):
        self._queues: List[asyncio.Queue] = []
        self._listeners: List[Listener] = []
        self._queue_size = queue_size
        self.history: Deque[DispatchEvent] = deque(maxlen=history_size)

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._queues.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._queues:
            self._queues.remove(queue)

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    async def publish(self, event: DispatchEvent) -> None:
        self.history.append(event)
        logger.info("Dispatch event", extra={"event_kind": event.kind.value, "actor_id": event.actor_id,
                                              "subject_id": event.subject_id})
        for queue in list(self._queues):
            if queue.full():
                # Drop the oldest so observers always see the latest state
                queue.get_nowait()
            queue.put_nowait(event)
        for listener in list(self._listeners):
            try:
                await listener(event)
            except Exception:
                logger.exception("Event listener failed", extra={"event_kind": event.kind.value})

    def of_kind(self, kind: EventKind, actor_id: Optional[str] = None) -> List[DispatchEvent]:
        """Events in history matching kind (and actor, if given)."""
        return [
            e for e in self.history
            if e.kind == kind and (actor_id is None or e.actor_id == actor_id)
        ]
