"""Write-side helpers for proximity-indexed documents."""

from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from geofeed_kernel.geo.ranges import GEOHASH_PRECISION, encode_geohash
from geofeed_kernel.models.geo import GeoPoint
from geofeed_kernel.store.base import SERVER_TIMESTAMP
from geofeed_kernel.utils.time import now_utc


def build_indexed_document(
    position: GeoPoint,
    payload: Optional[Dict[str, Any]] = None,
    lifetime_seconds: Optional[float] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Document body ready for ``DocumentStore.add``.

    The geohash is computed here, once, and never rewritten afterwards.
    With ``lifetime_seconds`` an explicit ``expires_at`` deadline is stamped;
    otherwise an ``expires_at`` already in the payload is kept.
    """
    body: Dict[str, Any] = dict(payload or {})
    for reserved in ("id", "geohash", "position", "created_at"):
        body.pop(reserved, None)

    body.update({
        "geohash": encode_geohash(position, GEOHASH_PRECISION),
        "position": {"lat": position.lat, "lng": position.lng},
        "created_at": SERVER_TIMESTAMP,
    })
    if lifetime_seconds is not None:
        body["expires_at"] = (now or now_utc()) + timedelta(seconds=lifetime_seconds)
    return body
