"""
Operations API Endpoints.

Operator view of raised events, failed writes and process connectivity.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query, status
from pydantic import BaseModel

from backend.app.core.dependencies import ServiceContainer, get_container
from backend.app.schemas.events import DispatchEvent, EventKind
from backend.app.schemas.position import ConnectivityUpdate

router = APIRouter(prefix="/ops", tags=["Operations"])


class DeadLetterResponse(BaseModel):
    id: int
    task_name: str
    actor_id: Optional[str] = None
    error_message: str
    status: str
    retry_count: int


def _require_dead_letters(services: ServiceContainer):
    if services.dead_letters is None:
        raise HTTPException(
            status_code=status.HTTP_501_NOT_IMPLEMENTED,
            detail="Failed writes are only recorded with the sql datastore"
        )
    return services.dead_letters


@router.get("/events", response_model=List[DispatchEvent])
async def list_events(
    kind: Optional[EventKind] = Query(None),
    actor_id: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    services: ServiceContainer = Depends(get_container)
):
    """Recent events, newest first."""
    events = list(services.events.history)
    if kind is not None:
        events = services.events.of_kind(kind, actor_id)
    elif actor_id is not None:
        events = [e for e in events if e.actor_id == actor_id]
    return list(reversed(events))[:limit]


@router.post("/connectivity")
async def set_connectivity(
    update: ConnectivityUpdate,
    services: ServiceContainer = Depends(get_container)
):
    """Mark upstream networks reachable or not. Offline enables last-known cached routes."""
    services.connectivity.online = update.online
    return {"online": services.connectivity.online}


@router.get("/dead-letters", response_model=List[DeadLetterResponse])
async def list_dead_letters(services: ServiceContainer = Depends(get_container)):
    recorder = _require_dead_letters(services)
    items = await recorder.list_failed()
    return [
        DeadLetterResponse(
            id=item.id,
            task_name=item.task_name,
            actor_id=item.actor_id,
            error_message=item.error_message,
            status=item.status.value,
            retry_count=item.retry_count,
        )
        for item in items
    ]


@router.post("/dead-letters/{dlq_id}/retry")
async def retry_dead_letter(
    dlq_id: int = Path(..., description="Dead letter ID"),
    services: ServiceContainer = Depends(get_container)
):
    """Replay a failed write against the datastore."""
    recorder = _require_dead_letters(services)
    item = await recorder.replay(dlq_id, services.datastore)
    return {"message": f"Write {item.task_name} replayed", "status": item.status.value}
