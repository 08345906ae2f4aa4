"""
Presence record database model.

One live row per actor holding the last accepted GPS fix.
"""

from sqlalchemy import Column, String, Float, BigInteger
from backend.app.db.session import Base


class PresenceRecordRow(Base):
    """
    Presence model.

    Upserted on every accepted fix; last_seen_ms alone is refreshed when a
    fix is suppressed as jitter. Deleted when the actor stops sharing.
    """
    __tablename__ = "presence_records"
    key_column = "actor_id"

    actor_id = Column(String(64), primary_key=True)
    role = Column(String(20), nullable=False, index=True)
    display_name = Column(String(255), nullable=False)

    # GPS fix
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    accuracy = Column(Float, nullable=False, default=0.0)  # meters
    heading = Column(Float, nullable=True)
    speed_mps = Column(Float, nullable=True)
    captured_at_ms = Column(BigInteger, nullable=False)

    # Liveness
    last_seen_ms = Column(BigInteger, nullable=False, index=True)

    @classmethod
    def columns_from_row(cls, row: dict) -> dict:
        position = row["position"]
        return {
            "actor_id": row["actor_id"],
            "role": row["role"],
            "display_name": row["display_name"],
            "latitude": position["latitude"],
            "longitude": position["longitude"],
            "accuracy": position.get("accuracy", 0.0),
            "heading": position.get("heading"),
            "speed_mps": position.get("speed_mps"),
            "captured_at_ms": position["captured_at_ms"],
            "last_seen_ms": row["last_seen_ms"],
        }

    def to_row(self) -> dict:
        return {
            "actor_id": self.actor_id,
            "role": self.role,
            "display_name": self.display_name,
            "position": {
                "actor_id": self.actor_id,
                "latitude": self.latitude,
                "longitude": self.longitude,
                "accuracy": self.accuracy,
                "heading": self.heading,
                "speed_mps": self.speed_mps,
                "captured_at_ms": self.captured_at_ms,
            },
            "last_seen_ms": self.last_seen_ms,
        }

    def __repr__(self):
        return f"<PresenceRecordRow(actor_id={self.actor_id}, lat={self.latitude}, lng={self.longitude})>"
