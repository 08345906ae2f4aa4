"""
Dispatch event schemas.
"""

import enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class EventKind(str, enum.Enum):
    """Kinds of events raised by the tracking and dispatch core."""
    WRITE_FAILED = "write_failed"  # Queued write exhausted its attempts
    QUEUE_OVERFLOW = "queue_overflow"  # Offline queue evicted an entry
    GEOFENCE_ENTERED = "geofence_entered"
    GEOFENCE_EXITED = "geofence_exited"
    GEOFENCE_ALERT = "geofence_alert"  # Entry into a danger zone
    CALL_STALE = "call_stale"
    CALL_TRANSITIONED = "call_transitioned"


class DispatchEvent(BaseModel):
    """Event published on the event bus."""
    kind: EventKind
    actor_id: Optional[str] = None
    subject_id: Optional[str] = None  # Zone, call or table key the event is about
    detail: Dict[str, Any] = Field(default_factory=dict)
    occurred_at_ms: int
