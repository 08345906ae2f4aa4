"""
Dispatch state machine.

Moves emergency calls through received -> en_route -> arrived -> completed.

- Transitions only move one step forward; anything else is rejected with no
  state change.
- Going en route claims a vehicle with a compare-and-set on its claim row, so
  two dispatchers can never send the same vehicle to two calls.
- The call row itself is written with a compare-and-set on its status, so
  concurrent transitions of one call cannot both land.
"""

import logging
import uuid
from typing import List, Optional, Tuple

from pydantic import ValidationError

from backend.app.core.clock import SystemClock
from backend.app.core.config import settings
from backend.app.core.events import EventBus
from backend.app.core.exceptions import (
    InvalidTransitionError,
    NoVehicleAvailableError,
    ResourceNotFoundError,
    VehicleConflictError,
)
from backend.app.models.dispatch_enums import ActorRole, CallPriority, CallStatus
from backend.app.schemas.emergency_call import (
    EmergencyCall,
    EmergencyCallCreate,
    StatusHistoryEntry,
    TransitionResponse,
)
from backend.app.schemas.events import DispatchEvent, EventKind
from backend.app.schemas.position import Coordinate, PresenceRecord
from backend.app.schemas.route import RouteEstimate
from backend.app.services.datastore import CALLS_TABLE, CLAIMS_TABLE, PRESENCE_TABLE, Datastore
from backend.app.services.geo_math import distance_km, format_distance
from backend.app.services.route_resolver import RouteResolver

logger = logging.getLogger(__name__)

# A vehicle reporting within this distance of the incident has arrived
ARRIVAL_RADIUS_KM = 0.1

SEVERITY_PRIORITY = {
    "severe": CallPriority.CRITICAL,
    "critical": CallPriority.CRITICAL,
    "moderate": CallPriority.HIGH,
    "minor": CallPriority.MEDIUM,
}


def priority_from_severity(severity: Optional[str]) -> CallPriority:
    """Map a reporter-supplied severity to a call priority. Unknown values are medium."""
    if not severity:
        return CallPriority.MEDIUM
    return SEVERITY_PRIORITY.get(severity.strip().lower(), CallPriority.MEDIUM)


class DispatchStateMachine:

    def __init__(
        self,
        datastore: Datastore,
        resolver: RouteResolver,
        events: Optional[EventBus] = None,
        clock=None,
        live_seconds: float = None,
        stale_call_minutes: float = None,
    ):
        self.datastore = datastore
        self.resolver = resolver
        self.events = events
        self.clock = clock or SystemClock()
        self.live_window_ms = int(1000 * (live_seconds or settings.presence_live_seconds))
        self.stale_window_ms = int(60_000 * (stale_call_minutes or settings.stale_call_minutes))

    # Queries

    async def get_call(self, call_id: str) -> EmergencyCall:
        row = await self.datastore.get(CALLS_TABLE, call_id)
        if row is None:
            raise ResourceNotFoundError("Emergency call", call_id)
        return EmergencyCall.model_validate(row)

    async def list_calls(self, status: CallStatus = None) -> List[EmergencyCall]:
        calls = [EmergencyCall.model_validate(row) for row in await self.datastore.list(CALLS_TABLE)]
        if status is not None:
            calls = [c for c in calls if c.status == status]
        return sorted(calls, key=lambda c: c.created_at_ms, reverse=True)

    async def critical_calls(self) -> List[EmergencyCall]:
        """Critical-priority calls that are not completed yet."""
        return [
            c for c in await self.list_calls()
            if c.priority == CallPriority.CRITICAL and not c.is_terminal
        ]

    async def live_vehicles(self) -> List[PresenceRecord]:
        now = self.clock.now_ms()
        vehicles = []
        for row in await self.datastore.list(PRESENCE_TABLE):
            try:
                record = PresenceRecord.model_validate(row)
            except ValidationError:
                logger.warning("Skipping malformed presence row", extra={"actor_id": row.get("actor_id")})
                continue
            if record.role == ActorRole.VEHICLE and record.is_live(now, self.live_window_ms):
                vehicles.append(record)
        return vehicles

    async def nearest_vehicle(self, location, exclude_claimed: bool = True) -> Optional[Tuple[PresenceRecord, float]]:
        """
        Nearest live vehicle to a location.

        Args:
            location: anything with latitude / longitude
            exclude_claimed: skip vehicles already en route to a call

        Returns:
            (presence record, distance in km), or None if no vehicle qualifies.
            Ties on distance go to the most recent fix.
        """
        claimed = set()
        if exclude_claimed:
            claimed = {
                row["vehicle_id"] for row in await self.datastore.list(CLAIMS_TABLE)
                if row.get("call_id") is not None
            }

        candidates = [
            (record, distance_km(record.position, location))
            for record in await self.live_vehicles()
            if record.actor_id not in claimed
        ]
        if not candidates:
            return None
        return min(candidates, key=lambda c: (c[1], -c[0].position.captured_at_ms))

    # Commands

    async def create_call(self, report: EmergencyCallCreate) -> EmergencyCall:
        now = self.clock.now_ms()
        call = EmergencyCall(
            id=str(uuid.uuid4()),
            report_id=report.report_id,
            location=report.location,
            priority=report.priority or priority_from_severity(report.severity),
            patient=report.patient,
            created_at_ms=now,
            updated_at_ms=now,
            status_history=[StatusHistoryEntry(status=CallStatus.RECEIVED, at_ms=now)],
        )
        await self.datastore.upsert(CALLS_TABLE, call.id, call.model_dump(mode="json"))
        logger.info("Emergency call received", extra={"call_id": call.id, "priority": call.priority.value})
        return call

    async def claim_vehicle(self, vehicle_id: str, call_id: str) -> None:
        """
        Claim a vehicle for a call.

        Raises:
            VehicleConflictError: the vehicle is already en route to another call
        """
        claimed = await self.datastore.compare_and_set(
            CLAIMS_TABLE, vehicle_id, "call_id", None,
            {"vehicle_id": vehicle_id, "call_id": call_id, "claimed_at_ms": self.clock.now_ms()},
        )
        if not claimed:
            current = await self.datastore.get(CLAIMS_TABLE, vehicle_id) or {}
            logger.warning(
                "Vehicle claim lost",
                extra={"vehicle_id": vehicle_id, "call_id": call_id, "held_by": current.get("call_id")}
            )
            raise VehicleConflictError(vehicle_id, current.get("call_id"))

    async def release_vehicle(self, vehicle_id: str, call_id: str) -> bool:
        """Release a claim held by call_id. Claims held by other calls are left alone."""
        return await self.datastore.compare_and_set(
            CLAIMS_TABLE, vehicle_id, "call_id", call_id,
            {"vehicle_id": vehicle_id, "call_id": None, "claimed_at_ms": None},
        )

    async def transition(
        self,
        call_id: str,
        target: CallStatus,
        vehicle_id: str = None,
        vehicle_location: Coordinate = None,
        hospital: Coordinate = None,
        notes: str = None,
    ) -> TransitionResponse:
        """
        Advance a call by one status.

        Raises:
            ResourceNotFoundError: unknown call
            InvalidTransitionError: target is not the next status, or the call
                moved concurrently
            NoVehicleAvailableError: en route requested without a vehicle and none is live
            VehicleConflictError: the vehicle is already claimed
        """
        call = await self.get_call(call_id)
        target = CallStatus(target)
        if call.status.next() != target:
            raise InvalidTransitionError(call.id, call.status.value, target.value)

        now = self.clock.now_ms()
        update = {"status": target, "updated_at_ms": now, "stale_flagged": False}
        route: Optional[RouteEstimate] = None
        claimed_here: Optional[str] = None

        if target == CallStatus.EN_ROUTE:
            origin = vehicle_location
            if vehicle_id is None:
                nearest = await self.nearest_vehicle(call.location)
                if nearest is None:
                    raise NoVehicleAvailableError(call.id)
                vehicle_id = nearest[0].actor_id
                origin = origin or nearest[0].position

            await self.claim_vehicle(vehicle_id, call.id)
            claimed_here = vehicle_id
            update["assigned_vehicle_id"] = vehicle_id

            try:
                origin = origin or await self._vehicle_position(vehicle_id)
                if origin is not None:
                    route = await self.resolver.resolve(origin, call.location)
                    update["distance_km"] = route.distance_km
                    update["eta_minutes"] = route.duration_minutes
                else:
                    logger.warning("Dispatched vehicle has no known position", extra={"vehicle_id": vehicle_id})
            except Exception:
                await self.release_vehicle(vehicle_id, call.id)
                raise

        elif target == CallStatus.ARRIVED:
            vehicle_id = call.assigned_vehicle_id
            position = vehicle_location or (await self._vehicle_position(vehicle_id) if vehicle_id else None)
            if position is not None:
                gap_km = distance_km(position, call.location)
                check = "validated" if gap_km <= ARRIVAL_RADIUS_KM else "not validated"
                arrival_note = f"Arrival {check}: {format_distance(gap_km)} from incident"
                notes = f"{notes}; {arrival_note}" if notes else arrival_note

        elif target == CallStatus.COMPLETED:
            vehicle_id = call.assigned_vehicle_id
            update["completed_at_ms"] = now
            destination = hospital or call.hospital
            if destination is not None:
                route = await self.resolver.resolve(call.location, destination)
                update["hospital"] = destination

        entry = StatusHistoryEntry(status=target, at_ms=now, vehicle_id=vehicle_id, notes=notes)
        update["status_history"] = call.status_history + [entry]
        updated = call.model_copy(update=update)

        try:
            written = await self.datastore.compare_and_set(
                CALLS_TABLE, call.id, "status", call.status.value, updated.model_dump(mode="json")
            )
        except Exception:
            if claimed_here:
                await self.release_vehicle(claimed_here, call.id)
            raise

        if not written:
            if claimed_here:
                await self.release_vehicle(claimed_here, call.id)
            current = await self.get_call(call.id)
            raise InvalidTransitionError(call.id, current.status.value, target.value)

        if target == CallStatus.COMPLETED and vehicle_id:
            await self.release_vehicle(vehicle_id, call.id)

        logger.info(
            "Call transitioned",
            extra={"call_id": call.id, "from": call.status.value, "to": target.value, "vehicle_id": vehicle_id}
        )
        await self._publish(DispatchEvent(
            kind=EventKind.CALL_TRANSITIONED,
            actor_id=vehicle_id,
            subject_id=call.id,
            detail={"from": call.status.value, "to": target.value,
                    "route_source": route.source.value if route else None},
            occurred_at_ms=now,
        ))
        return TransitionResponse(call=updated, route=route)

    async def sweep_stale_calls(self) -> List[str]:
        """
        Flag open calls with no recent activity.

        Activity is the later of the call's last update and its vehicle's
        last presence refresh. Flagged calls are never completed here; the
        flag clears once activity resumes.

        Returns:
            ids of calls newly flagged
        """
        now = self.clock.now_ms()
        flagged = []
        for call in await self.list_calls():
            if call.is_terminal:
                continue

            last_activity = call.updated_at_ms
            if call.assigned_vehicle_id:
                presence = await self.datastore.get(PRESENCE_TABLE, call.assigned_vehicle_id)
                if presence is not None:
                    last_activity = max(last_activity, presence.get("last_seen_ms", 0))

            stale = now - last_activity > self.stale_window_ms
            if stale == call.stale_flagged:
                continue

            updated = call.model_copy(update={"stale_flagged": stale})
            written = await self.datastore.compare_and_set(
                CALLS_TABLE, call.id, "status", call.status.value, updated.model_dump(mode="json")
            )
            if not written:
                # Transitioned meanwhile, which counts as activity
                continue

            if stale:
                flagged.append(call.id)
                logger.warning(
                    "Call has gone stale",
                    extra={"call_id": call.id, "status": call.status.value, "idle_ms": now - last_activity}
                )
                await self._publish(DispatchEvent(
                    kind=EventKind.CALL_STALE,
                    actor_id=call.assigned_vehicle_id,
                    subject_id=call.id,
                    detail={"status": call.status.value, "last_activity_ms": last_activity},
                    occurred_at_ms=now,
                ))
            else:
                logger.info("Stale flag cleared", extra={"call_id": call.id})
        return flagged

    async def _vehicle_position(self, vehicle_id: str):
        row = await self.datastore.get(PRESENCE_TABLE, vehicle_id)
        if row is None:
            return None
        return PresenceRecord.model_validate(row).position

    async def _publish(self, event: DispatchEvent) -> None:
        if self.events is not None:
            await self.events.publish(event)
