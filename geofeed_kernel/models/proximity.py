"""Proximity query declarations and recenter configuration."""

from typing import Optional

from pydantic import BaseModel, Field

from geofeed_kernel.models.geo import GeoPoint


class ProximityQuery(BaseModel):
    """A circular live query over one document collection."""

    collection: str                         # e.g., "chats", "shouts", "moods"
    center: GeoPoint
    radius_m: float = Field(gt=0)
    geohash_field: str = "geohash"
    ttl_field: Optional[str] = None         # Explicit deadline field, e.g. "expires_at"
    lifetime_seconds: Optional[float] = None  # Implicit deadline: created_at + lifetime


class ThrottleConfig(BaseModel):
    """Configuration for the recenter throttle."""

    threshold_m: float = Field(gt=0, default=300.0)
