"""
Route Caching Service.

Caches resolved route estimates in Redis keyed by the grid cells of origin
and destination. An entry is "fresh" for a short TTL (repeated queries skip
the providers) and kept as "last known" for a longer retention so an offline
client can still answer with the most recent route for that pair.
"""

import logging
from typing import Optional

from pydantic import ValidationError

from backend.app.core.clock import SystemClock
from backend.app.core.config import settings
from backend.app.schemas.route import RouteEstimate
from backend.app.services.geo_math import grid_cell

logger = logging.getLogger(__name__)


class RouteCache:

    def __init__(self, redis_client, clock=None, ttl_seconds: int = None,
                 retention_seconds: int = None, precision: int = None):
        self.redis = redis_client
        self.clock = clock or SystemClock()
        self.ttl_ms = 1000 * (ttl_seconds if ttl_seconds is not None else settings.route_cache_ttl_seconds)
        self.retention_seconds = retention_seconds or settings.route_cache_retention_seconds
        self.precision = precision if precision is not None else settings.route_cache_grid_precision

    def key_for(self, origin, destination) -> str:
        o_lat, o_lng = grid_cell(origin.latitude, origin.longitude, self.precision)
        d_lat, d_lng = grid_cell(destination.latitude, destination.longitude, self.precision)
        return f"route:{o_lat}:{o_lng}:{d_lat}:{d_lng}"

    async def get_fresh(self, origin, destination) -> Optional[RouteEstimate]:
        entry = await self._load(origin, destination)
        if entry is None:
            return None
        if self.clock.now_ms() - entry.computed_at_ms > self.ttl_ms:
            return None
        return entry

    async def get_last_known(self, origin, destination) -> Optional[RouteEstimate]:
        return await self._load(origin, destination)

    async def store(self, estimate: RouteEstimate) -> None:
        key = self.key_for(estimate.origin, estimate.destination)
        try:
            await self.redis.set(key, estimate.model_dump_json(), ex=self.retention_seconds)
        except Exception as exc:
            logger.warning("Route cache write failed", extra={"key": key, "error": repr(exc)})

    async def _load(self, origin, destination) -> Optional[RouteEstimate]:
        key = self.key_for(origin, destination)
        try:
            raw = await self.redis.get(key)
        except Exception as exc:
            logger.warning("Route cache read failed", extra={"key": key, "error": repr(exc)})
            return None
        if not raw:
            return None
        try:
            return RouteEstimate.model_validate_json(raw)
        except ValidationError:
            logger.warning("Discarding malformed route cache entry", extra={"key": key})
            return None
