"""
Dispatch-related enumerations.
"""

import enum


class ActorRole(str, enum.Enum):
    """Role of an actor publishing presence."""
    REPORTER = "reporter"  # Member of the public who raised a report
    VEHICLE = "vehicle"  # Ambulance
    DISPATCHER = "dispatcher"  # Operator console


class CallStatus(str, enum.Enum):
    """Emergency call lifecycle. Order matters: transitions only move forward one step."""
    RECEIVED = "received"
    EN_ROUTE = "en_route"
    ARRIVED = "arrived"
    COMPLETED = "completed"

    def next(self):
        members = list(CallStatus)
        index = members.index(self)
        return members[index + 1] if index + 1 < len(members) else None


class CallPriority(str, enum.Enum):
    """Emergency call priority."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ZoneKind(str, enum.Enum):
    """Geofence zone kind."""
    HOSPITAL = "hospital"
    DANGER = "danger"
    RESTRICTED = "restricted"


class RouteSource(str, enum.Enum):
    """Which tier of the routing fallback chain produced an estimate."""
    PROVIDER_A = "providerA"
    PROVIDER_B = "providerB"
    CACHE = "cache"
    STRAIGHT_LINE = "straightLine"


class TravelMode(str, enum.Enum):
    """How the traveller moves, for straight-line travel time estimates."""
    WALKING = "walking"
    DRIVING = "driving"
    EMERGENCY = "emergency"  # Vehicle running lights and sirens
