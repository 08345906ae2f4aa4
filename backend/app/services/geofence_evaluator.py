"""
Geofence evaluation service.

Runs on a fixed interval. Each tick reloads the zones, so edits take effect
on the next tick, and checks every live vehicle against every zone with
alerts enabled. Containment is remembered per (vehicle, zone) pair so an
entry alerts once, not on every tick spent inside.
"""

import logging
from typing import List, Optional, Set, Tuple

from pydantic import ValidationError

from backend.app.core.clock import SystemClock
from backend.app.core.config import settings
from backend.app.core.events import EventBus
from backend.app.models.dispatch_enums import ActorRole, ZoneKind
from backend.app.schemas.events import DispatchEvent, EventKind
from backend.app.schemas.geofence import GeofenceZone
from backend.app.schemas.position import PresenceRecord
from backend.app.services.datastore import PRESENCE_TABLE, ZONES_TABLE, Datastore
from backend.app.services.geo_math import distance_km, is_inside_zone

logger = logging.getLogger(__name__)

Pair = Tuple[str, str]


class GeofenceEvaluator:

    def __init__(self, datastore: Datastore, events: Optional[EventBus] = None, clock=None,
                 live_seconds: float = None):
        self.datastore = datastore
        self.events = events
        self.clock = clock or SystemClock()
        self.live_window_ms = int(1000 * (live_seconds or settings.presence_live_seconds))
        # (actor_id, zone_id) pairs currently inside
        self.inside: Set[Pair] = set()

    async def load_zones(self) -> List[GeofenceZone]:
        zones = []
        for row in await self.datastore.list(ZONES_TABLE):
            try:
                zones.append(GeofenceZone.model_validate(row))
            except ValidationError:
                logger.warning("Skipping malformed zone", extra={"zone_id": row.get("id")})
        return zones

    async def live_vehicles(self) -> List[PresenceRecord]:
        now = self.clock.now_ms()
        vehicles = []
        for row in await self.datastore.list(PRESENCE_TABLE):
            try:
                record = PresenceRecord.model_validate(row)
            except ValidationError:
                continue
            if record.role == ActorRole.VEHICLE and record.is_live(now, self.live_window_ms):
                vehicles.append(record)
        return vehicles

    async def evaluate(self) -> List[DispatchEvent]:
        """
        Run one evaluation tick.

        Returns:
            events raised by this tick, in order
        """
        now = self.clock.now_ms()
        zones = [z for z in await self.load_zones() if z.alerts_enabled]
        vehicles = await self.live_vehicles()

        raised: List[DispatchEvent] = []
        seen: Set[Pair] = set()

        for vehicle in vehicles:
            for zone in zones:
                pair = (vehicle.actor_id, zone.id)
                seen.add(pair)
                inside = is_inside_zone(vehicle.position, zone)
                was_inside = pair in self.inside

                if inside and not was_inside:
                    self.inside.add(pair)
                    raised.append(self._event(EventKind.GEOFENCE_ENTERED, vehicle, zone, now))
                    if zone.kind == ZoneKind.DANGER:
                        raised.append(self._event(EventKind.GEOFENCE_ALERT, vehicle, zone, now))
                elif was_inside and not inside:
                    self.inside.discard(pair)
                    raised.append(self._event(EventKind.GEOFENCE_EXITED, vehicle, zone, now))

        # Zone deleted or alerts disabled, or vehicle gone: a later entry alerts again
        dropped = self.inside - seen
        if dropped:
            self.inside -= dropped
            logger.debug("Reset geofence state", extra={"pairs": len(dropped)})

        for event in raised:
            if self.events is not None:
                await self.events.publish(event)
        if raised:
            logger.info("Geofence tick raised events", extra={"count": len(raised)})
        return raised

    @staticmethod
    def _event(kind: EventKind, vehicle: PresenceRecord, zone: GeofenceZone, now: int) -> DispatchEvent:
        return DispatchEvent(
            kind=kind,
            actor_id=vehicle.actor_id,
            subject_id=zone.id,
            detail={
                "zone_name": zone.name,
                "zone_kind": zone.kind.value,
                "distance_meters": round(distance_km(vehicle.position, zone.center) * 1000, 1),
            },
            occurred_at_ms=now,
        )
