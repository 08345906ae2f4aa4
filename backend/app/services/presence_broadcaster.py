"""
Presence broadcasting service.

One PresenceBroadcaster per actor. It is an actor process: fixes arrive in
an inbox, pass through the stabilizer, and reach the datastore through the
actor's offline sync queue. It also watches everybody else's presence
through a PresenceDirectory.
"""

import asyncio
import logging
from typing import Dict, Optional

from backend.app.core.clock import SystemClock
from backend.app.core.events import EventBus
from backend.app.core.exceptions import DataInvalidError
from backend.app.models.dispatch_enums import ActorRole
from backend.app.schemas.position import Position, PresenceRecord
from backend.app.schemas.sync import WriteOperation, WritePayload
from backend.app.services.datastore import PRESENCE_TABLE, Datastore
from backend.app.services.offline_sync_queue import OfflineSyncQueue
from backend.app.services.position_stabilizer import DecisionReason, PositionStabilizer, StabilizerDecision
from backend.app.services.presence_directory import PresenceDirectory

logger = logging.getLogger(__name__)

_STOP = object()


async def apply_write(datastore: Datastore, payload: WritePayload) -> None:
    """Execute a queued write against the datastore."""
    if payload.operation == WriteOperation.UPSERT:
        await datastore.upsert(payload.table, payload.key, payload.row)
    else:
        await datastore.delete(payload.table, payload.key)


class PresenceBroadcaster:
    """
    Tracking process for a single actor.

    Args:
        actor_id: stable id of the actor
        role: reporter, vehicle or dispatcher
        display_name: name shown to observers
        datastore: shared datastore
        stabilizer: jitter filter (a fresh one by default)
        events: event bus for queue overflow / failed write events
        watch_others: keep a PresenceDirectory of the other actors
        retry_interval_seconds: how often an idle loop retries draining the queue
    """

    def __init__(
        self,
        actor_id: str,
        role: ActorRole,
        display_name: str,
        datastore: Datastore,
        stabilizer: Optional[PositionStabilizer] = None,
        events: Optional[EventBus] = None,
        clock=None,
        queue: Optional[OfflineSyncQueue] = None,
        watch_others: bool = True,
        retry_interval_seconds: float = 5.0,
        inbox_size: int = 100,
    ):
        self.actor_id = actor_id
        self.role = role
        self.display_name = display_name
        self.datastore = datastore
        self.stabilizer = stabilizer or PositionStabilizer()
        self.clock = clock or SystemClock()
        self.queue = queue or OfflineSyncQueue(actor_id, self._write, events=events, clock=self.clock)
        self.directory = (
            PresenceDirectory(datastore, clock=self.clock, exclude_actor_id=actor_id) if watch_others else None
        )
        self.retry_interval_seconds = retry_interval_seconds

        self.last_accepted: Optional[Position] = None
        self._inbox: asyncio.Queue = asyncio.Queue(maxsize=inbox_size)
        self._publish_lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self._stopping = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _write(self, payload: WritePayload) -> None:
        await apply_write(self.datastore, payload)

    async def publish(self, position: Position) -> StabilizerDecision:
        """
        Stabilize one fix and write the resulting presence.

        Accepted fixes move the record; rejected ones only refresh last_seen_ms.
        Datastore failures never raise here: the write is queued instead.
        """
        self._check_owner(position)
        if self._stopping:
            return StabilizerDecision(False, DecisionReason.STOPPED)
        return await self._handle(position)

    def _check_owner(self, position: Position) -> None:
        if position.actor_id != self.actor_id:
            raise DataInvalidError(
                "Position belongs to another actor",
                details={"expected": self.actor_id, "got": position.actor_id}
            )

    async def _handle(self, position: Position) -> StabilizerDecision:
        async with self._publish_lock:
            if self.queue.pending and self.queue.online:
                await self.queue.drain()

            decision = self.stabilizer.evaluate(position, self.last_accepted)
            if decision.accept:
                self.last_accepted = position
            elif self.last_accepted is None:
                return decision

            record = PresenceRecord(
                actor_id=self.actor_id,
                role=self.role,
                display_name=self.display_name,
                position=self.last_accepted,
                last_seen_ms=self.clock.now_ms(),
            )
            await self.queue.submit(WritePayload(
                operation=WriteOperation.UPSERT,
                table=PRESENCE_TABLE,
                key=self.actor_id,
                row=record.model_dump(mode="json"),
            ))

        if not decision.accept:
            logger.debug("Fix suppressed", extra={"actor_id": self.actor_id, "reason": decision.reason.value})
        return decision

    async def set_online(self, online: bool) -> int:
        return await self.queue.set_online(online)

    def feed(self, position: Position) -> None:
        """Hand a raw fix to the tracking loop. The oldest waiting fix is dropped when full."""
        self._check_owner(position)
        if self._stopping:
            return
        if self._inbox.full():
            self._inbox.get_nowait()
        self._inbox.put_nowait(position)

    async def start(self) -> None:
        if self.running:
            return
        self._stopping = False
        if self.directory is not None:
            await self.directory.start()
        self._task = asyncio.create_task(self._run())
        logger.info("Tracking started", extra={"actor_id": self.actor_id, "role": self.role.value})

    async def _run(self) -> None:
        while True:
            try:
                item = await asyncio.wait_for(self._inbox.get(), timeout=self.retry_interval_seconds)
            except asyncio.TimeoutError:
                if self.queue.pending and self.queue.online:
                    await self.queue.drain()
                continue

            if item is _STOP:
                return
            await self._handle(item)

    async def stop(self, remove_presence: bool = True) -> None:
        """
        Stop tracking.

        The subscription is closed and the loop works through the fixes already
        fed before exiting. Nothing fed or published after stop() is written. The presence
        record is removed unless remove_presence is False.
        """
        self._stopping = True
        if self.directory is not None:
            await self.directory.stop()

        if self._task is not None:
            if self._inbox.full():
                self._inbox.get_nowait()
            self._inbox.put_nowait(_STOP)
            await self._task
            self._task = None

        if remove_presence and not self.queue.closed:
            async with self._publish_lock:
                await self.queue.submit(WritePayload(
                    operation=WriteOperation.DELETE,
                    table=PRESENCE_TABLE,
                    key=self.actor_id,
                    critical=True,
                ))
        if self.queue.pending:
            logger.warning("Tracking stopped with unsynced writes",
                           extra={"actor_id": self.actor_id, "pending": self.queue.pending})
        await self.queue.close()
        self.stabilizer.forget(self.actor_id)
        logger.info("Tracking stopped", extra={"actor_id": self.actor_id})


class TrackingRegistry:
    """Live broadcasters by actor id, for the HTTP surface."""

    def __init__(self, datastore: Datastore, events: Optional[EventBus] = None, clock=None,
                 stabilizer_factory=PositionStabilizer):
        self.datastore = datastore
        self.events = events
        self.clock = clock or SystemClock()
        self.stabilizer_factory = stabilizer_factory
        self._broadcasters: Dict[str, PresenceBroadcaster] = {}

    def get(self, actor_id: str) -> Optional[PresenceBroadcaster]:
        return self._broadcasters.get(actor_id)

    async def get_or_start(self, actor_id: str, role: ActorRole, display_name: str) -> PresenceBroadcaster:
        broadcaster = self._broadcasters.get(actor_id)
        if broadcaster is None:
            broadcaster = PresenceBroadcaster(
                actor_id, role, display_name, self.datastore,
                stabilizer=self.stabilizer_factory(),
                events=self.events,
                clock=self.clock,
                watch_others=False,
            )
            self._broadcasters[actor_id] = broadcaster
            await broadcaster.start()
        return broadcaster

    async def stop(self, actor_id: str) -> bool:
        broadcaster = self._broadcasters.pop(actor_id, None)
        if broadcaster is None:
            return False
        await broadcaster.stop()
        return True

    async def stop_all(self) -> None:
        for actor_id in list(self._broadcasters):
            await self.stop(actor_id)
