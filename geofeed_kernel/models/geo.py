"""Geographic primitives — points, zones and proximity-indexed documents."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class GeoPoint(BaseModel):
    """A WGS-84 coordinate in degrees."""

    model_config = ConfigDict(frozen=True)

    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)


class Zone(BaseModel):
    """A circular chat geofence. Roaming entities may not enter it."""

    model_config = ConfigDict(frozen=True)

    id: str
    center: GeoPoint
    radius_m: float = Field(ge=0)

    @classmethod
    def from_document(cls, doc: "IndexedDocument") -> "Zone":
        """Build a zone from a chat-zone document carrying a ``radius_m`` payload."""
        extra = doc.model_extra or {}
        return cls(id=doc.id, center=doc.position, radius_m=float(extra.get("radius_m", 0.0)))


class IndexedDocument(BaseModel):
    """
    A store-resident record that participates in proximity queries.

    ``geohash`` is computed once from ``position`` at write time. Any extra
    payload fields (text, author, radius...) are carried through untouched.
    """

    model_config = ConfigDict(extra="allow")

    id: str
    geohash: str
    position: GeoPoint
    created_at: Optional[datetime] = None   # None while a server timestamp is pending
    expires_at: Optional[datetime] = None
