"""
Offline synchronization queue.

Buffers an actor's datastore writes while the network is down (or a write
fails) and replays them in enqueue order once connectivity returns.

State machine per actor:

    CONNECTED --(write fails / offline)--> QUEUING --(online)--> DRAINING --> CONNECTED
                                              ^                      |
                                              +----(replay fails)----+
"""

import asyncio
import logging
from collections import deque
from typing import Awaitable, Callable, Deque, List, Optional

from backend.app.core.clock import SystemClock
from backend.app.core.config import settings
from backend.app.core.events import EventBus
from backend.app.schemas.events import DispatchEvent, EventKind
from backend.app.schemas.sync import QueuedWrite, SyncState, WritePayload

logger = logging.getLogger(__name__)

Writer = Callable[[WritePayload], Awaitable[None]]


class OfflineSyncQueue:
    """
    FIFO write buffer for one actor.

    At most one write is in flight at a time, so replay order always equals
    enqueue order. Entries that fail ``max_attempts`` times are removed and
    surfaced as WRITE_FAILED events; when the buffer is full the oldest
    non-critical entry is evicted and QUEUE_OVERFLOW is raised.
    """

    def __init__(
        self,
        actor_id: str,
        writer: Writer,
        events: Optional[EventBus] = None,
        clock=None,
        capacity: int = None,
        max_attempts: int = None,
        write_timeout_seconds: float = None,
    ):
        self.actor_id = actor_id
        self.writer = writer
        self.events = events
        self.clock = clock or SystemClock()
        self.capacity = capacity or settings.offline_queue_capacity
        self.max_attempts = max_attempts or settings.offline_queue_max_attempts
        self.write_timeout_seconds = write_timeout_seconds or settings.datastore_write_timeout_seconds

        self.state = SyncState.CONNECTED
        self.online = True
        self._buffer: Deque[QueuedWrite] = deque()
        self._in_flight: Optional[QueuedWrite] = None
        self._lock = asyncio.Lock()
        self._closed = False

    @property
    def pending(self) -> int:
        return len(self._buffer)

    @property
    def closed(self) -> bool:
        return self._closed

    def snapshot(self) -> List[QueuedWrite]:
        return list(self._buffer)

    async def submit(self, payload: WritePayload) -> bool:
        """
        Write now if connected, otherwise queue.

        Returns True if the write reached the datastore during this call.
        """
        if self._closed:
            logger.warning("Write submitted after close", extra={"actor_id": self.actor_id, "key": payload.key})
            return False

        if self.state != SyncState.CONNECTED or self._buffer:
            await self._enqueue(payload)
            return False

        async with self._lock:
            # State may have changed while waiting for the in-flight write
            if self._closed or self.state != SyncState.CONNECTED or self._buffer:
                await self._enqueue(payload)
                return False
            try:
                await self._write(payload)
            except Exception as exc:
                logger.warning(
                    "Datastore write failed, switching to offline queue",
                    extra={"actor_id": self.actor_id, "table": payload.table, "error": repr(exc)}
                )
                self.state = SyncState.QUEUING
                await self._enqueue(payload, attempt=1, error=repr(exc))
                return False
        return True

    async def set_online(self, online: bool) -> int:
        """
        Apply a network reachability change.

        Going offline moves to QUEUING; coming back online drains the buffer.
        Returns the number of writes replayed.
        """
        self.online = online
        if not online:
            if self.state == SyncState.CONNECTED:
                logger.info("Network offline, queuing writes", extra={"actor_id": self.actor_id})
            self.state = SyncState.QUEUING
            return 0
        return await self.drain()

    async def drain(self) -> int:
        """Replay queued writes in order. Stops at the first failure."""
        if not self.online:
            return 0

        async with self._lock:
            if not self._buffer:
                if not self._closed:
                    self.state = SyncState.CONNECTED
                return 0

            self.state = SyncState.DRAINING
            replayed = 0
            while self._buffer:
                if self._closed or not self.online:
                    self.state = SyncState.QUEUING
                    return replayed

                head = self._buffer[0]
                head.attempt += 1
                self._in_flight = head
                try:
                    await self._write(head.payload)
                except Exception as exc:
                    head.last_error = repr(exc)
                    if head.attempt >= self.max_attempts:
                        self._discard(head)
                        await self._surface_failure(head)
                    self.state = SyncState.QUEUING
                    logger.warning(
                        "Replay failed, remaining writes stay queued",
                        extra={"actor_id": self.actor_id, "pending": len(self._buffer), "error": repr(exc)}
                    )
                    return replayed
                finally:
                    self._in_flight = None

                self._discard(head)
                replayed += 1

            self.state = SyncState.CONNECTED
            logger.info("Offline queue drained", extra={"actor_id": self.actor_id, "replayed": replayed})
            return replayed

    async def close(self) -> None:
        """
        Stop accepting writes and wait for an in-flight write to finish.

        Writes still queued are surfaced as WRITE_FAILED so they can be
        replayed from the dead letter queue.
        """
        self._closed = True
        async with self._lock:
            leftovers = list(self._buffer)
            self._buffer.clear()
        for entry in leftovers:
            entry.last_error = entry.last_error or "queue closed before the write was synced"
            await self._surface_failure(entry)

    async def _write(self, payload: WritePayload) -> None:
        await asyncio.wait_for(self.writer(payload), timeout=self.write_timeout_seconds)

    async def _enqueue(self, payload: WritePayload, attempt: int = 0, error: str = None) -> None:
        if len(self._buffer) >= self.capacity:
            # The write being replayed is never evicted
            candidates = [w for w in self._buffer if w is not self._in_flight]
            victim = next((w for w in candidates if not w.payload.critical), candidates[0] if candidates else None)
            if victim is not None:
                self._discard(victim)
                logger.warning(
                    "Offline queue full, evicted oldest entry",
                    extra={"actor_id": self.actor_id, "evicted_key": victim.payload.key, "capacity": self.capacity}
                )
                await self._publish(EventKind.QUEUE_OVERFLOW, victim)

        self._buffer.append(QueuedWrite(
            payload=payload,
            attempt=attempt,
            enqueued_at_ms=self.clock.now_ms(),
            last_error=error,
        ))

        if attempt >= self.max_attempts:
            # Only reachable with max_attempts=1: the direct write was the last try
            await self._surface_failure(self._buffer.pop())

    def _discard(self, entry: QueuedWrite) -> None:
        """Remove entry by identity; entries with equal fields are distinct writes."""
        for index, queued in enumerate(self._buffer):
            if queued is entry:
                del self._buffer[index]
                return

    async def _surface_failure(self, entry: QueuedWrite) -> None:
        logger.error(
            "Write exhausted retry attempts",
            extra={"actor_id": self.actor_id, "table": entry.payload.table, "key": entry.payload.key,
                   "attempts": entry.attempt, "error": entry.last_error}
        )
        await self._publish(EventKind.WRITE_FAILED, entry)

    async def _publish(self, kind: EventKind, entry: QueuedWrite) -> None:
        if self.events is None:
            return
        await self.events.publish(DispatchEvent(
            kind=kind,
            actor_id=self.actor_id,
            subject_id=entry.payload.key,
            detail={
                "table": entry.payload.table,
                "operation": entry.payload.operation.value,
                "attempt": entry.attempt,
                "error": entry.last_error,
                "payload": entry.payload.model_dump(mode="json"),
            },
            occurred_at_ms=self.clock.now_ms(),
        ))
