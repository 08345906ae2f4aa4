"""
Routing schemas.
"""

from pydantic import BaseModel, Field
from typing import List

from backend.app.models.dispatch_enums import RouteSource
from backend.app.schemas.position import Coordinate


class RouteStep(BaseModel):
    """One turn-by-turn instruction."""
    instruction: str
    distance_meters: float
    duration_seconds: float


class ProviderRoute(BaseModel):
    """Normalized provider response."""
    distance_meters: float = Field(..., ge=0)
    duration_seconds: float = Field(..., ge=0)
    polyline: str = ""
    steps: List[RouteStep] = Field(default_factory=list)


class RouteEstimate(BaseModel):
    """Distance/ETA between two points and the fallback tier that produced it."""
    origin: Coordinate
    destination: Coordinate
    distance_km: float
    duration_minutes: float
    polyline: str = ""
    steps: List[RouteStep] = Field(default_factory=list)
    source: RouteSource
    computed_at_ms: int
