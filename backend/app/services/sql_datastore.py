"""
SQL-backed datastore.

Persists presence, calls, vehicle claims and zones with SQLAlchemy async
sessions and publishes a change event after every committed write.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import async_sessionmaker

from backend.app.core.exceptions import TransientNetworkError
from backend.app.models.emergency_call import EmergencyCallRow
from backend.app.models.geofence_zone import GeofenceZoneRow
from backend.app.models.presence import PresenceRecordRow
from backend.app.models.vehicle_claim import VehicleClaim
from backend.app.services.datastore import (
    CALLS_TABLE, CLAIMS_TABLE, PRESENCE_TABLE, ZONES_TABLE,
    ChangeEvent, ChangeType, Datastore, LocalChangeFeed, Row, Subscription,
)

logger = logging.getLogger(__name__)

MODELS = {
    PRESENCE_TABLE: PresenceRecordRow,
    CALLS_TABLE: EmergencyCallRow,
    CLAIMS_TABLE: VehicleClaim,
    ZONES_TABLE: GeofenceZoneRow,
}


class SqlDatastore(Datastore):
    """
    Datastore over a relational database.

    Args:
        session_factory: async_sessionmaker bound to the engine
        feed: change feed to publish to (LocalChangeFeed or RedisChangeFeed)
    """

    def __init__(self, session_factory: async_sessionmaker, feed=None):
        self.session_factory = session_factory
        self.feed = feed or LocalChangeFeed()

    @staticmethod
    def _model(table: str):
        try:
            return MODELS[table]
        except KeyError:
            raise ValueError(f"Unknown table: {table}")

    @asynccontextmanager
    async def _session(self, table: str):
        """Session whose connection failures surface as TransientNetworkError."""
        try:
            async with self.session_factory() as db:
                yield db
        except (OperationalError, InterfaceError, OSError) as exc:
            logger.warning("Datastore unreachable", extra={"table": table, "error": repr(exc)})
            raise TransientNetworkError("Datastore unreachable", details={"table": table}) from exc

    async def get(self, table: str, key: str) -> Optional[Row]:
        model = self._model(table)
        async with self._session(table) as db:
            obj = await db.get(model, key)
            return obj.to_row() if obj is not None else None

    async def list(self, table: str) -> List[Row]:
        model = self._model(table)
        async with self._session(table) as db:
            result = await db.execute(select(model))
            return [obj.to_row() for obj in result.scalars().all()]

    async def upsert(self, table: str, key: str, row: Row) -> None:
        model = self._model(table)
        values = model.columns_from_row(row)

        async with self._session(table) as db:
            existing = await db.get(model, key)
            if existing is not None:
                for column, value in values.items():
                    setattr(existing, column, value)
                change = ChangeType.UPDATE
            else:
                db.add(model(**values))
                change = ChangeType.INSERT
            await db.commit()

        await self.feed.publish(ChangeEvent(table=table, type=change, key=key, row=row))

    async def delete(self, table: str, key: str) -> bool:
        model = self._model(table)
        async with self._session(table) as db:
            obj = await db.get(model, key)
            if obj is None:
                return False
            removed = obj.to_row()
            await db.delete(obj)
            await db.commit()

        await self.feed.publish(ChangeEvent(table=table, type=ChangeType.DELETE, key=key, row=removed))
        return True

    async def compare_and_set(self, table: str, key: str, field: str, expected: Any, row: Row) -> bool:
        """
        Conditional UPDATE; falls back to INSERT when the row is absent and
        expected is None. A concurrent INSERT loses on the primary key.
        """
        model = self._model(table)
        values = model.columns_from_row(row)
        key_column = getattr(model, model.key_column)
        column = getattr(model, field)
        condition = column.is_(None) if expected is None else column == expected

        async with self._session(table) as db:
            result = await db.execute(
                update(model).where(key_column == key, condition).values(**values)
            )
            if result.rowcount == 1:
                await db.commit()
                change = ChangeType.UPDATE
            elif expected is None and await db.get(model, key) is None:
                db.add(model(**values))
                try:
                    await db.commit()
                except IntegrityError:
                    await db.rollback()
                    logger.info("Compare-and-set lost insert race", extra={"table": table, "key": key})
                    return False
                change = ChangeType.INSERT
            else:
                await db.rollback()
                return False

        await self.feed.publish(ChangeEvent(table=table, type=change, key=key, row=row))
        return True

    async def subscribe(self, table: str) -> Subscription:
        return await self.feed.subscribe(table)
