"""
Emergency call schemas.
"""

from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional

from backend.app.models.dispatch_enums import CallPriority, CallStatus
from backend.app.schemas.position import Coordinate
from backend.app.schemas.route import RouteEstimate


class StatusHistoryEntry(BaseModel):
    """One entry of a call's status history."""
    status: CallStatus
    at_ms: int
    vehicle_id: Optional[str] = None
    notes: Optional[str] = None


class CallLocation(Coordinate):
    """Incident location as supplied by the reporter."""
    address: Optional[str] = None


class EmergencyCall(BaseModel):
    """An emergency call and its lifecycle state."""
    id: str
    report_id: str
    status: CallStatus = CallStatus.RECEIVED
    location: CallLocation
    priority: CallPriority = CallPriority.MEDIUM
    assigned_vehicle_id: Optional[str] = None
    hospital: Optional[Coordinate] = None
    patient: Dict[str, Any] = Field(default_factory=dict)
    distance_km: Optional[float] = None
    eta_minutes: Optional[float] = None
    stale_flagged: bool = False
    created_at_ms: int
    updated_at_ms: int
    completed_at_ms: Optional[int] = None
    status_history: List[StatusHistoryEntry] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status == CallStatus.COMPLETED


class EmergencyCallCreate(BaseModel):
    """Schema for opening a call from an incoming report."""
    report_id: str = Field(..., min_length=1)
    location: CallLocation
    priority: Optional[CallPriority] = None
    severity: Optional[str] = None  # Used when priority is not given
    patient: Dict[str, Any] = Field(default_factory=dict)


class TransitionRequest(BaseModel):
    """Schema for advancing a call."""
    target: CallStatus
    vehicle_id: Optional[str] = None
    vehicle_location: Optional[Coordinate] = None  # Reported on arrival
    hospital: Optional[Coordinate] = None
    notes: Optional[str] = Field(None, max_length=1000)


class TransitionResponse(BaseModel):
    """Result of a transition."""
    call: EmergencyCall
    route: Optional[RouteEstimate] = None
