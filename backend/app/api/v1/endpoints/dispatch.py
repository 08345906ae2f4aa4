"""
Emergency Call API Endpoints.

Calls are opened from incoming reports and advanced by dispatchers.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Path, Query, status

from backend.app.core.dependencies import ServiceContainer, get_container
from backend.app.models.dispatch_enums import CallStatus
from backend.app.schemas.emergency_call import (
    EmergencyCall,
    EmergencyCallCreate,
    TransitionRequest,
    TransitionResponse,
)

router = APIRouter(prefix="/calls", tags=["Emergency Calls"])


@router.post("", response_model=EmergencyCall, status_code=status.HTTP_201_CREATED)
async def create_call(
    report: EmergencyCallCreate,
    services: ServiceContainer = Depends(get_container)
):
    """Open a call in the received state."""
    return await services.dispatch.create_call(report)


@router.get("", response_model=List[EmergencyCall])
async def list_calls(
    status_filter: Optional[CallStatus] = Query(None, alias="status"),
    services: ServiceContainer = Depends(get_container)
):
    """All calls, newest first."""
    return await services.dispatch.list_calls(status_filter)


@router.get("/critical", response_model=List[EmergencyCall])
async def list_critical_calls(services: ServiceContainer = Depends(get_container)):
    """Critical calls that are not completed."""
    return await services.dispatch.critical_calls()


@router.get("/{call_id}", response_model=EmergencyCall)
async def get_call(
    call_id: str = Path(..., description="Call ID"),
    services: ServiceContainer = Depends(get_container)
):
    return await services.dispatch.get_call(call_id)


@router.post("/{call_id}/transitions", response_model=TransitionResponse)
async def transition_call(
    request: TransitionRequest,
    call_id: str = Path(..., description="Call ID"),
    services: ServiceContainer = Depends(get_container)
):
    """
    Advance a call one step.

    Moving to en_route without a vehicle picks the nearest live, unclaimed
    vehicle. Returns 409 for an out-of-order transition or a vehicle that is
    already claimed; on a claim conflict the caller should retry, which
    re-resolves the nearest vehicle.
    """
    return await services.dispatch.transition(
        call_id,
        request.target,
        vehicle_id=request.vehicle_id,
        vehicle_location=request.vehicle_location,
        hospital=request.hospital,
        notes=request.notes,
    )
