"""
Routing API Endpoints.

Distance and ETA between two points through the provider fallback chain.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from backend.app.core.dependencies import ServiceContainer, get_container
from backend.app.models.dispatch_enums import TravelMode
from backend.app.schemas.position import Coordinate
from backend.app.schemas.route import RouteEstimate

router = APIRouter(prefix="/routes", tags=["Routing"])


@router.get("", response_model=RouteEstimate)
async def resolve_route(
    origin_lat: float = Query(..., ge=-90, le=90),
    origin_lng: float = Query(..., ge=-180, le=180),
    dest_lat: float = Query(..., ge=-90, le=90),
    dest_lng: float = Query(..., ge=-180, le=180),
    mode: Optional[TravelMode] = Query(None, description="Speed assumed by the straight-line estimate"),
    services: ServiceContainer = Depends(get_container)
):
    """
    Resolve a route.

    Always answers: the source field says which tier produced the estimate
    (providerA, providerB, cache or straightLine).
    """
    return await services.resolver.resolve(
        Coordinate(latitude=origin_lat, longitude=origin_lng),
        Coordinate(latitude=dest_lat, longitude=dest_lng),
        mode,
    )
