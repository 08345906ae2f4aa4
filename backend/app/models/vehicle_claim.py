"""
Vehicle Claim database model.

Ensures a vehicle is en route for at most one emergency call at a time.
"""

from sqlalchemy import Column, String, BigInteger
from backend.app.db.session import Base


class VehicleClaim(Base):
    """
    Vehicle Claim model.

    One row per vehicle. call_id is set with a compare-and-set (only while it
    is NULL) when a call goes en route, and cleared when the call completes.
    """
    __tablename__ = "vehicle_claims"
    key_column = "vehicle_id"

    vehicle_id = Column(String(64), primary_key=True)

    # Claim lifecycle
    call_id = Column(String(64), nullable=True, index=True)
    claimed_at_ms = Column(BigInteger, nullable=True)

    @classmethod
    def columns_from_row(cls, row: dict) -> dict:
        return {
            "vehicle_id": row["vehicle_id"],
            "call_id": row.get("call_id"),
            "claimed_at_ms": row.get("claimed_at_ms"),
        }

    def to_row(self) -> dict:
        return {
            "vehicle_id": self.vehicle_id,
            "call_id": self.call_id,
            "claimed_at_ms": self.claimed_at_ms,
        }

    def __repr__(self):
        return f"<VehicleClaim(vehicle_id={self.vehicle_id}, call_id={self.call_id}, active={self.call_id is not None})>"
