"""
Datastore boundary.

The tracking core shares state between independent clients only through a
keyed row store with a change-notification stream. This module defines that
boundary, the change events it emits and an in-process implementation used
for single-node deployments and tests.
"""

import abc
import asyncio
import copy
import enum
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel

logger = logging.getLogger(__name__)

PRESENCE_TABLE = "presence_records"
CALLS_TABLE = "emergency_calls"
CLAIMS_TABLE = "vehicle_claims"
ZONES_TABLE = "geofence_zones"

TABLES = (PRESENCE_TABLE, CALLS_TABLE, CLAIMS_TABLE, ZONES_TABLE)

Row = Dict[str, Any]


class ChangeType(str, enum.Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class ChangeEvent(BaseModel):
    """A row change delivered to subscribers."""
    table: str
    type: ChangeType
    key: str
    row: Optional[Row] = None


_CLOSED = object()


class Subscription:
    """
    Async iterator over change events for one table.

    Closing it deregisters from the feed and ends iteration.
    """

    def __init__(self, table: str, on_close: Callable[["Subscription"], Awaitable[None]] = None,
                 max_pending: int = 10000):
        self.table = table
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_pending)
        self._on_close = on_close
        self.closed = False

    def deliver(self, event: ChangeEvent) -> None:
        if self.closed:
            return
        if self._queue.full():
            logger.warning("Subscriber lagging, dropping oldest change", extra={"table": self.table})
            self._queue.get_nowait()
        self._queue.put_nowait(event)

    async def get(self, timeout: float = None) -> Optional[ChangeEvent]:
        """Next event, or None once closed (or on timeout)."""
        try:
            item = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        if item is _CLOSED:
            return None
        return item

    def __aiter__(self):
        return self

    async def __anext__(self) -> ChangeEvent:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._on_close is not None:
            await self._on_close(self)
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSED)


class LocalChangeFeed:
    """In-process fan-out of change events."""

    def __init__(self):
        self._subscriptions: Dict[str, List[Subscription]] = {}

    async def publish(self, event: ChangeEvent) -> None:
        for subscription in list(self._subscriptions.get(event.table, [])):
            subscription.deliver(event)

    async def subscribe(self, table: str) -> Subscription:
        subscription = Subscription(table, on_close=self._remove)
        self._subscriptions.setdefault(table, []).append(subscription)
        return subscription

    async def _remove(self, subscription: Subscription) -> None:
        subscriptions = self._subscriptions.get(subscription.table, [])
        if subscription in subscriptions:
            subscriptions.remove(subscription)


class Datastore(abc.ABC):
    """Keyed row store with change notifications. Eventually consistent, at-least-once."""

    @abc.abstractmethod
    async def get(self, table: str, key: str) -> Optional[Row]:
        ...

    @abc.abstractmethod
    async def list(self, table: str) -> List[Row]:
        ...

    @abc.abstractmethod
    async def upsert(self, table: str, key: str, row: Row) -> None:
        ...

    @abc.abstractmethod
    async def delete(self, table: str, key: str) -> bool:
        ...

    @abc.abstractmethod
    async def compare_and_set(self, table: str, key: str, field: str, expected: Any, row: Row) -> bool:
        """
        Atomically write ``row`` only if the stored ``field`` equals ``expected``.

        A missing row counts as ``field`` being None.
        """

    @abc.abstractmethod
    async def subscribe(self, table: str) -> Subscription:
        ...


class InMemoryDatastore(Datastore):
    """Datastore kept in process memory. Rows are copied in and out."""

    def __init__(self, feed: LocalChangeFeed = None):
        self._tables: Dict[str, Dict[str, Row]] = {}
        self._lock = asyncio.Lock()
        self.feed = feed or LocalChangeFeed()

    async def get(self, table: str, key: str) -> Optional[Row]:
        row = self._tables.get(table, {}).get(key)
        return copy.deepcopy(row) if row is not None else None

    async def list(self, table: str) -> List[Row]:
        return [copy.deepcopy(row) for row in self._tables.get(table, {}).values()]

    async def upsert(self, table: str, key: str, row: Row) -> None:
        async with self._lock:
            event = self._put(table, key, row)
        await self.feed.publish(event)

    async def delete(self, table: str, key: str) -> bool:
        async with self._lock:
            removed = self._tables.get(table, {}).pop(key, None)
        if removed is None:
            return False
        await self.feed.publish(ChangeEvent(table=table, type=ChangeType.DELETE, key=key, row=removed))
        return True

    async def compare_and_set(self, table: str, key: str, field: str, expected: Any, row: Row) -> bool:
        async with self._lock:
            current = self._tables.get(table, {}).get(key)
            current_value = current.get(field) if current is not None else None
            if current_value != expected:
                return False
            event = self._put(table, key, row)
        await self.feed.publish(event)
        return True

    async def subscribe(self, table: str) -> Subscription:
        return await self.feed.subscribe(table)

    def _put(self, table: str, key: str, row: Row) -> ChangeEvent:
        rows = self._tables.setdefault(table, {})
        change = ChangeType.UPDATE if key in rows else ChangeType.INSERT
        rows[key] = copy.deepcopy(row)
        return ChangeEvent(table=table, type=change, key=key, row=copy.deepcopy(row))
