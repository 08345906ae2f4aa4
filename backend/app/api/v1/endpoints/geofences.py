"""
Geofence API Endpoints.

Zone edits take effect on the next evaluation tick.
"""

from typing import List

from fastapi import APIRouter, Depends, Path, status

from backend.app.core.dependencies import ServiceContainer, get_container
from backend.app.schemas.geofence import GeofenceZone, GeofenceZoneCreate, GeofenceZoneUpdate
from backend.app.services import geofence_zones

router = APIRouter(prefix="/geofences", tags=["Geofences"])


@router.get("", response_model=List[GeofenceZone])
async def list_zones(services: ServiceContainer = Depends(get_container)):
    return await geofence_zones.list_zones(services.datastore)


@router.post("", response_model=GeofenceZone, status_code=status.HTTP_201_CREATED)
async def create_zone(
    data: GeofenceZoneCreate,
    services: ServiceContainer = Depends(get_container)
):
    return await geofence_zones.create_zone(services.datastore, data)


@router.put("/{zone_id}", response_model=GeofenceZone)
async def update_zone(
    data: GeofenceZoneUpdate,
    zone_id: str = Path(..., description="Zone ID"),
    services: ServiceContainer = Depends(get_container)
):
    return await geofence_zones.update_zone(services.datastore, zone_id, data)


@router.delete("/{zone_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_zone(
    zone_id: str = Path(..., description="Zone ID"),
    services: ServiceContainer = Depends(get_container)
):
    await geofence_zones.delete_zone(services.datastore, zone_id)
