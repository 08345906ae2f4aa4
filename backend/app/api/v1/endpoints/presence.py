"""
Presence API Endpoints.

Actors post raw GPS fixes; display clients read or stream live presence.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Path, Query, WebSocket, WebSocketDisconnect, status

from backend.app.core.dependencies import ServiceContainer, get_container
from backend.app.core.exceptions import ResourceNotFoundError
from backend.app.models.dispatch_enums import ActorRole
from backend.app.schemas.position import (
    ConnectivityUpdate,
    Position,
    PositionReport,
    PositionReportResponse,
    PresenceRecord,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/presence", tags=["Presence"])


def _report_response(broadcaster, accepted: bool, reason: str) -> PositionReportResponse:
    return PositionReportResponse(
        actor_id=broadcaster.actor_id,
        accepted=accepted,
        reason=reason,
        queued_writes=broadcaster.queue.pending,
        sync_state=broadcaster.queue.state.value,
    )


@router.post("/{actor_id}/positions", response_model=PositionReportResponse)
async def report_position(
    report: PositionReport,
    actor_id: str = Path(..., min_length=1, max_length=64),
    services: ServiceContainer = Depends(get_container)
):
    """
    Submit a raw GPS fix for an actor.

    Starts tracking on the first fix. The fix is stabilized before it is
    written; a suppressed fix still refreshes the actor's liveness.
    """
    position = Position.from_fix(
        actor_id=actor_id,
        latitude=report.latitude,
        longitude=report.longitude,
        accuracy=report.accuracy,
        heading=report.heading,
        speed_mps=report.speed_mps,
        captured_at_ms=report.captured_at_ms if report.captured_at_ms is not None else services.clock.now_ms(),
    )
    broadcaster = await services.tracking.get_or_start(actor_id, report.role, report.display_name)
    decision = await broadcaster.publish(position)
    return _report_response(broadcaster, decision.accept, decision.reason.value)


@router.post("/{actor_id}/connectivity", response_model=PositionReportResponse)
async def report_connectivity(
    update: ConnectivityUpdate,
    actor_id: str = Path(..., min_length=1, max_length=64),
    services: ServiceContainer = Depends(get_container)
):
    """Report an actor's network reachability. Coming back online replays queued writes."""
    broadcaster = services.tracking.get(actor_id)
    if broadcaster is None:
        raise ResourceNotFoundError("Tracked actor", actor_id)
    replayed = await broadcaster.set_online(update.online)
    return _report_response(broadcaster, update.online, f"replayed_{replayed}")


@router.delete("/{actor_id}", status_code=status.HTTP_204_NO_CONTENT)
async def stop_tracking(
    actor_id: str = Path(..., min_length=1, max_length=64),
    services: ServiceContainer = Depends(get_container)
):
    """Stop tracking an actor and remove its presence."""
    if not await services.tracking.stop(actor_id):
        raise ResourceNotFoundError("Tracked actor", actor_id)


@router.get("", response_model=List[PresenceRecord])
async def list_presence(
    role: Optional[ActorRole] = Query(None, description="Only actors with this role"),
    services: ServiceContainer = Depends(get_container)
):
    """Live presence records, optionally filtered by role."""
    await services.directory.resync()
    return services.directory.live(role)


@router.websocket("/stream")
async def stream_presence(
    websocket: WebSocket,
    services: ServiceContainer = Depends(get_container)
):
    """Push every presence change to a display client, starting with a snapshot."""
    await websocket.accept()
    queue = services.directory.watch()
    try:
        await websocket.send_json({
            "type": "snapshot",
            "records": [r.model_dump(mode="json") for r in services.directory.live()],
        })
        while True:
            event = await queue.get()
            await websocket.send_json({"type": event.type.value, "key": event.key, "row": event.row})
    except WebSocketDisconnect:
        logger.debug("Presence stream client disconnected")
    finally:
        services.directory.unwatch(queue)
