"""
Dead letter recording.

Writes that exhaust their offline replay attempts are surfaced as
write_failed events. This listener persists them so an operator can inspect
and replay them later.
"""

import logging
from datetime import datetime, timezone
from typing import List

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from backend.app.core.exceptions import ResourceNotFoundError
from backend.app.models.dlq import DeadLetterQueue, DLQStatus
from backend.app.schemas.events import DispatchEvent, EventKind
from backend.app.schemas.sync import WritePayload
from backend.app.services.datastore import Datastore
from backend.app.services.presence_broadcaster import apply_write

logger = logging.getLogger(__name__)


class DeadLetterRecorder:

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def __call__(self, event: DispatchEvent) -> None:
        if event.kind != EventKind.WRITE_FAILED:
            return
        await self.record(event)

    async def record(self, event: DispatchEvent) -> DeadLetterQueue:
        detail = event.detail
        item = DeadLetterQueue(
            task_name=f"{detail.get('operation')}:{detail.get('table')}",
            actor_id=event.actor_id,
            error_message=detail.get("error") or "unknown error",
            payload=detail.get("payload"),
            status=DLQStatus.FAILED,
            retry_count=detail.get("attempt", 0),
        )
        async with self.session_factory() as session:
            session.add(item)
            await session.commit()
            await session.refresh(item)
        logger.info("Failed write recorded", extra={"dlq_id": item.id, "task_name": item.task_name})
        return item

    async def list_failed(self, limit: int = 100) -> List[DeadLetterQueue]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(DeadLetterQueue)
                .where(DeadLetterQueue.status == DLQStatus.FAILED)
                .order_by(DeadLetterQueue.created_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def replay(self, dlq_id: int, datastore: Datastore) -> DeadLetterQueue:
        """
        Replay a failed write against the datastore.

        The item is marked PROCESSED on success; on failure it stays FAILED
        with its retry count bumped and the error propagates.
        """
        async with self.session_factory() as session:
            item = await session.get(DeadLetterQueue, dlq_id)
            if item is None:
                raise ResourceNotFoundError("Dead letter", dlq_id)

            item.status = DLQStatus.RETRYING
            item.retry_count += 1
            item.last_retry_at = datetime.now(timezone.utc)
            try:
                await apply_write(datastore, WritePayload.model_validate(item.payload))
            except Exception as exc:
                item.status = DLQStatus.FAILED
                item.error_message = repr(exc)
                await session.commit()
                raise

            item.status = DLQStatus.PROCESSED
            await session.commit()
            await session.refresh(item)
        logger.info("Dead letter replayed", extra={"dlq_id": dlq_id})
        return item

