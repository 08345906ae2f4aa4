"""
Geofence zone management.

Zone edits are plain datastore writes; the evaluator picks them up on its
next tick.
"""

import logging
import uuid
from typing import List

from backend.app.core.exceptions import ResourceNotFoundError
from backend.app.schemas.geofence import GeofenceZone, GeofenceZoneCreate, GeofenceZoneUpdate
from backend.app.services.datastore import ZONES_TABLE, Datastore

logger = logging.getLogger(__name__)


async def list_zones(datastore: Datastore) -> List[GeofenceZone]:
    zones = [GeofenceZone.model_validate(row) for row in await datastore.list(ZONES_TABLE)]
    return sorted(zones, key=lambda z: z.name)


async def get_zone(datastore: Datastore, zone_id: str) -> GeofenceZone:
    row = await datastore.get(ZONES_TABLE, zone_id)
    if row is None:
        raise ResourceNotFoundError("Geofence zone", zone_id)
    return GeofenceZone.model_validate(row)


async def create_zone(datastore: Datastore, data: GeofenceZoneCreate) -> GeofenceZone:
    zone = GeofenceZone(id=str(uuid.uuid4()), **data.model_dump())
    await datastore.upsert(ZONES_TABLE, zone.id, zone.model_dump(mode="json"))
    logger.info("Geofence zone created", extra={"zone_id": zone.id, "kind": zone.kind.value})
    return zone


async def update_zone(datastore: Datastore, zone_id: str, data: GeofenceZoneUpdate) -> GeofenceZone:
    zone = await get_zone(datastore, zone_id)
    changes = data.model_dump(exclude_unset=True, exclude_none=True)
    if "center" in changes:
        changes["center"] = data.center
    updated = zone.model_copy(update=changes)
    await datastore.upsert(ZONES_TABLE, zone_id, updated.model_dump(mode="json"))
    logger.info("Geofence zone updated", extra={"zone_id": zone_id, "fields": sorted(changes)})
    return updated


async def delete_zone(datastore: Datastore, zone_id: str) -> None:
    if not await datastore.delete(ZONES_TABLE, zone_id):
        raise ResourceNotFoundError("Geofence zone", zone_id)
    logger.info("Geofence zone deleted", extra={"zone_id": zone_id})
