"""
Presence directory.

Subscriber side of presence: keeps the latest PresenceRecord per actor from
the datastore change stream. The stream is at-least-once and only ordered per
actor, so an event older than the record already held is ignored.
"""

import asyncio
import logging
from typing import Dict, List, Optional

from pydantic import ValidationError

from backend.app.core.clock import SystemClock
from backend.app.core.config import settings
from backend.app.models.dispatch_enums import ActorRole
from backend.app.schemas.position import PresenceRecord
from backend.app.services.datastore import PRESENCE_TABLE, ChangeEvent, ChangeType, Datastore, Subscription

logger = logging.getLogger(__name__)


class PresenceDirectory:

    def __init__(self, datastore: Datastore, clock=None, exclude_actor_id: str = None,
                 live_seconds: float = None):
        self.datastore = datastore
        self.clock = clock or SystemClock()
        self.exclude_actor_id = exclude_actor_id
        self.live_window_ms = int(1000 * (live_seconds or settings.presence_live_seconds))
        self.records: Dict[str, PresenceRecord] = {}
        # last_seen_ms of deleted records; older or duplicate updates must not revive them
        self._tombstones: Dict[str, int] = {}
        self._subscription: Optional[Subscription] = None
        self._task: Optional[asyncio.Task] = None
        self._watchers: List[asyncio.Queue] = []

    async def start(self) -> None:
        if self._subscription is not None:
            return
        # Subscribe before the snapshot so nothing written in between is missed
        self._subscription = await self.datastore.subscribe(PRESENCE_TABLE)
        await self.resync()
        self._task = asyncio.create_task(self._consume())

    async def resync(self) -> None:
        """Reconcile with a fresh snapshot of the presence table."""
        rows = await self.datastore.list(PRESENCE_TABLE)
        present = {row["actor_id"] for row in rows}
        for actor_id in [a for a in self.records if a not in present]:
            self.apply(ChangeEvent(table=PRESENCE_TABLE, type=ChangeType.DELETE, key=actor_id))
        for row in rows:
            self.apply(ChangeEvent(table=PRESENCE_TABLE, type=ChangeType.UPDATE, key=row["actor_id"], row=row))

    async def stop(self) -> None:
        if self._subscription is not None:
            await self._subscription.close()
        if self._task is not None:
            await self._task
        self._subscription = None
        self._task = None

    async def _consume(self) -> None:
        async for event in self._subscription:
            self.apply(event)

    def apply(self, event: ChangeEvent) -> bool:
        """Apply one change. Returns True if the directory changed."""
        if event.key == self.exclude_actor_id:
            return False

        if event.type == ChangeType.DELETE:
            removed = self.records.pop(event.key, None)
            self._remember_delete(event, removed)
            if removed is not None:
                self._notify(event)
            return removed is not None

        try:
            record = PresenceRecord.model_validate(event.row)
        except ValidationError:
            logger.warning("Ignoring malformed presence row", extra={"key": event.key})
            return False

        current = self.records.get(record.actor_id)
        if current == record:
            return False
        tombstone = self._tombstones.get(record.actor_id)
        if current is None and tombstone is not None:
            if record.last_seen_ms <= tombstone:
                return False
            del self._tombstones[record.actor_id]
        if current is not None and (
            record.last_seen_ms < current.last_seen_ms
            or record.position.captured_at_ms < current.position.captured_at_ms
        ):
            return False

        self.records[record.actor_id] = record
        self._notify(event)
        return True

    def _remember_delete(self, event: ChangeEvent, removed: Optional[PresenceRecord]) -> None:
        last_seen = removed.last_seen_ms if removed is not None else None
        if last_seen is None and event.row:
            last_seen = event.row.get("last_seen_ms")
        if last_seen is not None:
            self._tombstones[event.key] = max(last_seen, self._tombstones.get(event.key, last_seen))

    def live(self, role: ActorRole = None) -> List[PresenceRecord]:
        now = self.clock.now_ms()
        return [
            r for r in self.records.values()
            if r.is_live(now, self.live_window_ms) and (role is None or r.role == role)
        ]

    def watch(self) -> asyncio.Queue:
        """Queue receiving every applied change, for streaming to display clients."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=1000)
        self._watchers.append(queue)
        return queue

    def unwatch(self, queue: asyncio.Queue) -> None:
        if queue in self._watchers:
            self._watchers.remove(queue)

    def _notify(self, event: ChangeEvent) -> None:
        for queue in list(self._watchers):
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(event)
