"""
Geofence zone schemas.
"""

from pydantic import BaseModel, Field
from typing import Optional

from backend.app.models.dispatch_enums import ZoneKind
from backend.app.schemas.position import Coordinate


class GeofenceZone(BaseModel):
    """A named circular zone."""
    id: str
    name: str
    center: Coordinate
    radius_meters: float = Field(..., ge=0)
    kind: ZoneKind
    alerts_enabled: bool = True


class GeofenceZoneCreate(BaseModel):
    """Schema for creating a zone."""
    name: str = Field(..., min_length=1, max_length=255)
    center: Coordinate
    radius_meters: float = Field(..., gt=0)
    kind: ZoneKind
    alerts_enabled: bool = True


class GeofenceZoneUpdate(BaseModel):
    """Schema for editing a zone. Omitted fields keep their value."""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    center: Optional[Coordinate] = None
    radius_meters: Optional[float] = Field(None, gt=0)
    kind: Optional[ZoneKind] = None
    alerts_enabled: Optional[bool] = None
