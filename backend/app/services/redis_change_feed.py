"""
Change feed over Redis pub/sub.

Lets several backend processes share the datastore change stream: every
committed write is published on ``datastore:<table>`` and each subscriber
reads its own pub/sub connection.
"""

import asyncio
import logging

from pydantic import ValidationError

from backend.app.services.datastore import ChangeEvent, Subscription

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "datastore:"


def channel_for(table: str) -> str:
    return f"{CHANNEL_PREFIX}{table}"


class RedisChangeFeed:

    def __init__(self, redis_client):
        self.redis = redis_client
        self._readers = {}

    async def publish(self, event: ChangeEvent) -> None:
        try:
            await self.redis.publish(channel_for(event.table), event.model_dump_json())
        except Exception as exc:
            # The write itself is committed; subscribers resync on the next change
            logger.warning("Change publish failed", extra={"table": event.table, "key": event.key,
                                                            "error": repr(exc)})

    async def subscribe(self, table: str) -> Subscription:
        pubsub = self.redis.pubsub()
        await pubsub.subscribe(channel_for(table))
        subscription = Subscription(table, on_close=self._close)
        self._readers[id(subscription)] = (pubsub, asyncio.create_task(self._read(pubsub, subscription)))
        return subscription

    async def _read(self, pubsub, subscription: Subscription) -> None:
        async for message in pubsub.listen():
            if message.get("type") != "message":
                continue
            try:
                event = ChangeEvent.model_validate_json(message["data"])
            except ValidationError:
                logger.warning("Malformed change message", extra={"table": subscription.table})
                continue
            subscription.deliver(event)

    async def _close(self, subscription: Subscription) -> None:
        pubsub, reader = self._readers.pop(id(subscription), (None, None))
        if reader is not None:
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass
        if pubsub is not None:
            await pubsub.unsubscribe(channel_for(subscription.table))
            await pubsub.aclose()
