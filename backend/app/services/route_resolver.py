"""
Route resolution service.

Fallback chain for distance/ETA between two points:

1. fresh cache entry for the same grid cells (source=cache)
2. provider A, GraphHopper (source=providerA)
3. provider B, OSRM (source=providerB)
4. when offline, the last known cached route for the pair (source=cache)
5. straight line at an assumed average speed (source=straightLine), which
   always succeeds

A failing provider falls through immediately; nothing is retried within one
resolution.
"""

import logging
from typing import Callable, List, Optional

import httpx

from backend.app.core.clock import SystemClock
from backend.app.core.config import settings
from backend.app.core.reliability import CircuitBreaker
from backend.app.models.dispatch_enums import RouteSource, TravelMode
from backend.app.schemas.position import Coordinate
from backend.app.schemas.route import RouteEstimate
from backend.app.services.geo_math import TRAVEL_SPEED_KMH, distance_km, eta_minutes
from backend.app.services.route_cache import RouteCache
from backend.app.services.routing_providers import (
    GraphHopperProvider, OsrmProvider, RouteOk, RoutingProvider,
)

logger = logging.getLogger(__name__)


class RouteResolver:

    def __init__(
        self,
        providers: List[RoutingProvider],
        cache: Optional[RouteCache] = None,
        connectivity: Callable[[], bool] = None,
        clock=None,
        assumed_speed_kmh: float = None,
    ):
        self.providers = providers
        self.cache = cache
        self.connectivity = connectivity or (lambda: True)
        self.clock = clock or SystemClock()
        self.assumed_speed_kmh = assumed_speed_kmh or settings.default_speed_kmh

    async def resolve(self, origin, destination, mode: Optional[TravelMode] = None) -> RouteEstimate:
        origin = Coordinate(latitude=origin.latitude, longitude=origin.longitude)
        destination = Coordinate(latitude=destination.latitude, longitude=destination.longitude)

        if self.cache is not None:
            fresh = await self.cache.get_fresh(origin, destination)
            if fresh is not None:
                return self._from_cache(fresh, origin, destination)

        for provider in self.providers:
            result = await provider.fetch(origin, destination)
            if isinstance(result, RouteOk):
                estimate = RouteEstimate(
                    origin=origin,
                    destination=destination,
                    distance_km=result.route.distance_meters / 1000,
                    duration_minutes=result.route.duration_seconds / 60,
                    polyline=result.route.polyline,
                    steps=result.route.steps,
                    source=provider.source,
                    computed_at_ms=self.clock.now_ms(),
                )
                if self.cache is not None:
                    await self.cache.store(estimate)
                return estimate

            logger.warning(
                "Routing provider failed, falling through",
                extra={"provider": provider.name, "reason": result.reason, "detail": result.detail}
            )

        if self.cache is not None and not self.connectivity():
            last_known = await self.cache.get_last_known(origin, destination)
            if last_known is not None:
                logger.info("Offline, using last known route", extra={"computed_at_ms": last_known.computed_at_ms})
                return self._from_cache(last_known, origin, destination)

        return self.straight_line(origin, destination, mode)

    def straight_line(self, origin, destination, mode: Optional[TravelMode] = None) -> RouteEstimate:
        """Great-circle estimate at the travel mode's speed, or the assumed average speed."""
        distance = distance_km(origin, destination)
        speed_kmh = TRAVEL_SPEED_KMH[TravelMode(mode)] if mode else self.assumed_speed_kmh
        return RouteEstimate(
            origin=Coordinate(latitude=origin.latitude, longitude=origin.longitude),
            destination=Coordinate(latitude=destination.latitude, longitude=destination.longitude),
            distance_km=distance,
            duration_minutes=eta_minutes(distance, speed_kmh),
            polyline=(
                f"{origin.latitude},{origin.longitude};{destination.latitude},{destination.longitude}"
            ),
            source=RouteSource.STRAIGHT_LINE,
            computed_at_ms=self.clock.now_ms(),
        )

    @staticmethod
    def _from_cache(entry: RouteEstimate, origin: Coordinate, destination: Coordinate) -> RouteEstimate:
        return entry.model_copy(update={
            "origin": origin,
            "destination": destination,
            "source": RouteSource.CACHE,
        })


def build_route_resolver(http_client: httpx.AsyncClient, redis_client=None,
                         connectivity: Callable[[], bool] = None, clock=None) -> RouteResolver:
    """Wire the GraphHopper -> OSRM chain from settings."""
    clock = clock or SystemClock()
    providers = [
        GraphHopperProvider(
            http_client,
            base_url=settings.graphhopper_url,
            api_key=settings.graphhopper_api_key,
            timeout_seconds=settings.provider_a_timeout_seconds,
            breaker=CircuitBreaker(
                name="graphhopper",
                failure_threshold=settings.provider_failure_threshold,
                reset_timeout=settings.provider_reset_timeout_seconds,
                clock=clock,
            ),
        ),
        OsrmProvider(
            http_client,
            base_url=settings.osrm_url,
            timeout_seconds=settings.provider_b_timeout_seconds,
            breaker=CircuitBreaker(
                name="osrm",
                failure_threshold=settings.provider_failure_threshold,
                reset_timeout=settings.provider_reset_timeout_seconds,
                clock=clock,
            ),
        ),
    ]
    cache = RouteCache(redis_client, clock=clock) if redis_client is not None else None
    return RouteResolver(providers, cache=cache, connectivity=connectivity, clock=clock)
