"""
Geofence zone database model.
"""

from sqlalchemy import Column, String, Float, Boolean
from backend.app.db.session import Base


class GeofenceZoneRow(Base):
    """
    Geofence zone model.

    Edited by operators, read-only to the geofence evaluator.
    """
    __tablename__ = "geofence_zones"
    key_column = "id"

    id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False)
    kind = Column(String(20), nullable=False, index=True)  # hospital, danger, restricted

    center_latitude = Column(Float, nullable=False)
    center_longitude = Column(Float, nullable=False)
    radius_meters = Column(Float, nullable=False)

    alerts_enabled = Column(Boolean, default=True, nullable=False)

    @classmethod
    def columns_from_row(cls, row: dict) -> dict:
        return {
            "id": row["id"],
            "name": row["name"],
            "kind": row["kind"],
            "center_latitude": row["center"]["latitude"],
            "center_longitude": row["center"]["longitude"],
            "radius_meters": row["radius_meters"],
            "alerts_enabled": bool(row.get("alerts_enabled", True)),
        }

    def to_row(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "kind": self.kind,
            "center": {"latitude": self.center_latitude, "longitude": self.center_longitude},
            "radius_meters": self.radius_meters,
            "alerts_enabled": self.alerts_enabled,
        }

    def __repr__(self):
        return f"<GeofenceZoneRow(id={self.id}, name='{self.name}', kind={self.kind})>"
