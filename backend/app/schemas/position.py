"""
Position and presence schemas.
"""

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from typing import Optional

from backend.app.core.exceptions import DataInvalidError
from backend.app.models.dispatch_enums import ActorRole


class Coordinate(BaseModel):
    """A bare latitude/longitude pair."""
    model_config = ConfigDict(frozen=True)

    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class Position(BaseModel):
    """
    A single GPS fix for an actor.

    Immutable once created; a newer Position supersedes the prior one for the
    same actor.
    """
    model_config = ConfigDict(frozen=True)

    actor_id: str = Field(..., min_length=1)
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    accuracy: float = Field(0.0, ge=0)  # meters
    heading: Optional[float] = Field(None, ge=0, lt=360)
    speed_mps: Optional[float] = Field(None, ge=0)
    captured_at_ms: int = Field(..., ge=0)

    @classmethod
    def from_fix(cls, **fields) -> "Position":
        """Build a Position, raising DataInvalidError instead of ValidationError."""
        try:
            return cls(**fields)
        except ValidationError as exc:
            raise DataInvalidError(
                "Invalid position fix",
                details={"errors": [{"loc": list(e["loc"]), "msg": e["msg"]} for e in exc.errors()]}
            )


class PresenceRecord(BaseModel):
    """An actor's last accepted position and liveness timestamp."""
    actor_id: str
    role: ActorRole
    display_name: str
    position: Position
    last_seen_ms: int

    def is_live(self, now_ms: int, live_window_ms: int) -> bool:
        return now_ms - self.last_seen_ms <= live_window_ms


class PositionReport(BaseModel):
    """Schema for posting a raw GPS fix over HTTP."""
    role: ActorRole
    display_name: str = Field(..., min_length=1, max_length=255)
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    accuracy: float = Field(0.0, ge=0)
    heading: Optional[float] = Field(None, ge=0, lt=360)
    speed_mps: Optional[float] = Field(None, ge=0)
    captured_at_ms: Optional[int] = Field(None, ge=0)


class PositionReportResponse(BaseModel):
    """Response after submitting a fix."""
    actor_id: str
    accepted: bool
    reason: str
    queued_writes: int
    sync_state: str


class ConnectivityUpdate(BaseModel):
    """Network reachability reported by a client."""
    online: bool
