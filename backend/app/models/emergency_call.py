"""
Emergency call database model.
"""

from sqlalchemy import Column, String, Float, BigInteger, Boolean, JSON
from backend.app.db.session import Base


class EmergencyCallRow(Base):
    """
    Emergency call model.

    Mutated only through dispatch transitions, never deleted. The status
    history is stored with the row so each transition is a single write.
    """
    __tablename__ = "emergency_calls"
    key_column = "id"

    id = Column(String(64), primary_key=True)
    report_id = Column(String(64), nullable=False, index=True)
    status = Column(String(20), nullable=False, index=True)
    priority = Column(String(20), nullable=False)

    # Incident location (owned by the reporting side)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    address = Column(String(500), nullable=True)
    patient = Column(JSON, nullable=True)

    # Assignment
    assigned_vehicle_id = Column(String(64), nullable=True, index=True)
    hospital = Column(JSON, nullable=True)
    distance_km = Column(Float, nullable=True)
    eta_minutes = Column(Float, nullable=True)
    stale_flagged = Column(Boolean, default=False, nullable=False)

    # Timing
    created_at_ms = Column(BigInteger, nullable=False)
    updated_at_ms = Column(BigInteger, nullable=False)
    completed_at_ms = Column(BigInteger, nullable=True)

    status_history = Column(JSON, nullable=False, default=list)

    @classmethod
    def columns_from_row(cls, row: dict) -> dict:
        location = row["location"]
        return {
            "id": row["id"],
            "report_id": row["report_id"],
            "status": row["status"],
            "priority": row["priority"],
            "latitude": location["latitude"],
            "longitude": location["longitude"],
            "address": location.get("address"),
            "patient": row.get("patient") or {},
            "assigned_vehicle_id": row.get("assigned_vehicle_id"),
            "hospital": row.get("hospital"),
            "distance_km": row.get("distance_km"),
            "eta_minutes": row.get("eta_minutes"),
            "stale_flagged": bool(row.get("stale_flagged")),
            "created_at_ms": row["created_at_ms"],
            "updated_at_ms": row["updated_at_ms"],
            "completed_at_ms": row.get("completed_at_ms"),
            "status_history": row.get("status_history") or [],
        }

    def to_row(self) -> dict:
        return {
            "id": self.id,
            "report_id": self.report_id,
            "status": self.status,
            "priority": self.priority,
            "location": {"latitude": self.latitude, "longitude": self.longitude, "address": self.address},
            "patient": self.patient or {},
            "assigned_vehicle_id": self.assigned_vehicle_id,
            "hospital": self.hospital,
            "distance_km": self.distance_km,
            "eta_minutes": self.eta_minutes,
            "stale_flagged": self.stale_flagged,
            "created_at_ms": self.created_at_ms,
            "updated_at_ms": self.updated_at_ms,
            "completed_at_ms": self.completed_at_ms,
            "status_history": list(self.status_history or []),
        }

    def __repr__(self):
        return f"<EmergencyCallRow(id={self.id}, status={self.status}, vehicle={self.assigned_vehicle_id})>"
