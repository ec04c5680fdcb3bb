"""
Geohash Range Aggregator — covering ranges and great-circle math.

A circular query region is approximated by a small set of geohash string
ranges. Every document whose geohash falls inside one of the ranges is a
candidate; candidates outside the true circle are false positives and must
be dropped downstream with an exact distance check.

Behavioral Contract:
- query_bounds() never produces false negatives for points inside the circle
- Ranges are inclusive on both ends; '~' sorts after every base-32 character
- distance_meters() is symmetric and zero for identical points
- point_at_bearing() is the inverse of distance_meters() for a given bearing
"""

import math
from typing import List, Optional, Sequence, Tuple

from geofeed_kernel.models.geo import GeoPoint

BASE32 = "0123456789bcdefghjkmnpqrstuvwxyz"
BITS_PER_CHAR = 5
GEOHASH_PRECISION = 10
MAXIMUM_BITS_PRECISION = 22 * BITS_PER_CHAR
RANGE_END = "~"

EARTH_RADIUS_M = 6_371_000.0
EARTH_MERIDIONAL_CIRCUMFERENCE_M = 40_007_860.0
EARTH_EQUATORIAL_RADIUS_M = 6_378_137.0
METERS_PER_DEGREE_LATITUDE = 110_574.0
ECCENTRICITY_SQUARED = 0.00669447819799
EPSILON = 1e-12

GeohashRange = Tuple[str, str]


# --- Encoding ---

def encode_geohash(point: GeoPoint, precision: int = GEOHASH_PRECISION) -> str:
    """Encode a point as a base-32 geohash of ``precision`` characters."""
    if precision < 1:
        raise ValueError("precision must be at least 1")

    lat_range = [-90.0, 90.0]
    lng_range = [-180.0, 180.0]
    chars = []
    value = 0
    bits = 0
    even = True

    while len(chars) < precision:
        coord = point.lng if even else point.lat
        rng = lng_range if even else lat_range
        mid = (rng[0] + rng[1]) / 2
        if coord > mid:
            value = (value << 1) + 1
            rng[0] = mid
        else:
            value = value << 1
            rng[1] = mid
        even = not even

        if bits < 4:
            bits += 1
        else:
            chars.append(BASE32[value])
            bits = 0
            value = 0

    return "".join(chars)


# --- Distance and bearing ---

def distance_meters(a: GeoPoint, b: GeoPoint) -> float:
    """Haversine great-circle distance in meters."""
    lat1 = math.radians(a.lat)
    lat2 = math.radians(b.lat)
    d_lat = math.radians(b.lat - a.lat)
    d_lng = math.radians(b.lng - a.lng)

    h = (
        math.sin(d_lat / 2) ** 2
        + math.cos(lat1) * math.cos(lat2) * math.sin(d_lng / 2) ** 2
    )
    h = min(1.0, max(0.0, h))
    return 2 * EARTH_RADIUS_M * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def is_within(point: Optional[GeoPoint], center: GeoPoint, radius_m: float) -> bool:
    """True if ``point`` lies inside or on the circle."""
    if point is None:
        return False
    return distance_meters(point, center) <= radius_m


def point_at_bearing(origin: GeoPoint, distance_m: float, bearing_rad: float) -> GeoPoint:
    """
    Destination reached by travelling ``distance_m`` along a great circle
    from ``origin`` at ``bearing_rad`` (clockwise from true north).
    """
    delta = distance_m / EARTH_RADIUS_M
    lat1 = math.radians(origin.lat)
    lng1 = math.radians(origin.lng)

    sin_lat2 = (
        math.sin(lat1) * math.cos(delta)
        + math.cos(lat1) * math.sin(delta) * math.cos(bearing_rad)
    )
    lat2 = math.asin(min(1.0, max(-1.0, sin_lat2)))
    lng2 = lng1 + math.atan2(
        math.sin(bearing_rad) * math.sin(delta) * math.cos(lat1),
        math.cos(delta) - math.sin(lat1) * math.sin(lat2),
    )

    return GeoPoint(lat=math.degrees(lat2), lng=wrap_longitude(math.degrees(lng2)))


def initial_bearing(a: GeoPoint, b: GeoPoint) -> float:
    """Initial great-circle bearing from ``a`` to ``b`` in radians, in [0, 2*pi)."""
    lat1 = math.radians(a.lat)
    lat2 = math.radians(b.lat)
    d_lng = math.radians(b.lng - a.lng)
    y = math.sin(d_lng) * math.cos(lat2)
    x = math.cos(lat1) * math.sin(lat2) - math.sin(lat1) * math.cos(lat2) * math.cos(d_lng)
    return math.atan2(y, x) % (2 * math.pi)


def wrap_longitude(lng: float) -> float:
    """Wrap a longitude into [-180, 180]."""
    if -180 <= lng <= 180:
        return lng
    adjusted = lng + 180
    if adjusted > 0:
        return (adjusted % 360) - 180
    return 180 - (-adjusted % 360)


# --- Covering ranges ---

def _meters_to_longitude_degrees(distance_m: float, latitude: float) -> float:
    radians = math.radians(latitude)
    num = math.cos(radians) * EARTH_EQUATORIAL_RADIUS_M * math.pi / 180
    denom = 1 / math.sqrt(1 - ECCENTRICITY_SQUARED * math.sin(radians) ** 2)
    delta_deg = num * denom
    if delta_deg < EPSILON:
        return 360.0 if distance_m > 0 else 0.0
    return min(360.0, distance_m / delta_deg)


def _longitude_bits_for_resolution(resolution_m: float, latitude: float) -> float:
    degs = _meters_to_longitude_degrees(resolution_m, latitude)
    return max(1.0, math.log2(360 / degs)) if abs(degs) > 0.000001 else 1.0


def _latitude_bits_for_resolution(resolution_m: float) -> float:
    return min(
        math.log2(EARTH_MERIDIONAL_CIRCUMFERENCE_M / 2 / resolution_m),
        float(MAXIMUM_BITS_PRECISION),
    )


def _bounding_box_bits(center: GeoPoint, size_m: float) -> int:
    lat_delta = size_m / METERS_PER_DEGREE_LATITUDE
    lat_north = min(90.0, center.lat + lat_delta)
    lat_south = max(-90.0, center.lat - lat_delta)
    bits_lat = math.floor(_latitude_bits_for_resolution(size_m)) * 2
    bits_lng_north = math.floor(_longitude_bits_for_resolution(size_m, lat_north)) * 2 - 1
    bits_lng_south = math.floor(_longitude_bits_for_resolution(size_m, lat_south)) * 2 - 1
    return min(bits_lat, bits_lng_north, bits_lng_south, MAXIMUM_BITS_PRECISION)


def _bounding_box_points(center: GeoPoint, radius_m: float) -> List[GeoPoint]:
    """The center, the four edge midpoints and the four corners of the box."""
    lat_deg = radius_m / METERS_PER_DEGREE_LATITUDE
    lat_north = min(90.0, center.lat + lat_deg)
    lat_south = max(-90.0, center.lat - lat_deg)
    lng_deg = max(
        _meters_to_longitude_degrees(radius_m, lat_north),
        _meters_to_longitude_degrees(radius_m, lat_south),
    )
    west = wrap_longitude(center.lng - lng_deg)
    east = wrap_longitude(center.lng + lng_deg)

    return [
        GeoPoint(lat=center.lat, lng=center.lng),
        GeoPoint(lat=center.lat, lng=west),
        GeoPoint(lat=center.lat, lng=east),
        GeoPoint(lat=lat_north, lng=center.lng),
        GeoPoint(lat=lat_north, lng=west),
        GeoPoint(lat=lat_south, lng=center.lng),
        GeoPoint(lat=lat_south, lng=west),
        GeoPoint(lat=lat_north, lng=east),
        GeoPoint(lat=lat_south, lng=east),
    ]


def _range_for_cell(geohash: str, bits: int) -> GeohashRange:
    """The key range covering the cell of ``geohash`` truncated to ``bits`` bits."""
    precision = math.ceil(bits / BITS_PER_CHAR)
    if len(geohash) < precision:
        return geohash, geohash + RANGE_END

    ghash = geohash[:precision]
    base = ghash[:-1]
    last_value = BASE32.index(ghash[-1])
    significant_bits = bits - len(base) * BITS_PER_CHAR
    unused_bits = BITS_PER_CHAR - significant_bits

    start_value = (last_value >> unused_bits) << unused_bits
    end_value = start_value + (1 << unused_bits)
    if end_value > 31:
        return base + BASE32[start_value], base + RANGE_END
    return base + BASE32[start_value], base + BASE32[end_value]


def query_bounds(center: GeoPoint, radius_m: float) -> List[GeohashRange]:
    """
    Covering ranges for the circle (center, radius_m).

    Returns an ordered, de-duplicated list of inclusive ``(start, end)``
    geohash ranges whose union contains every point inside the circle.
    """
    if radius_m <= 0:
        raise ValueError("radius_m must be positive")

    query_bits = max(1, _bounding_box_bits(center, radius_m))
    precision = math.ceil(query_bits / BITS_PER_CHAR)

    ranges: List[GeohashRange] = []
    for point in _bounding_box_points(center, radius_m):
        rng = _range_for_cell(encode_geohash(point, precision), query_bits)
        if rng not in ranges:
            ranges.append(rng)
    return ranges


def in_range(geohash: str, bounds: Sequence[GeohashRange]) -> bool:
    """True if ``geohash`` falls inside any of the inclusive ranges."""
    return any(start <= geohash <= end for start, end in bounds)
