"""
Nearest-point and along-path distance queries over street geometries.

Snapping never interpolates: a query point is replaced by the closest
existing vertex of the geometry, found with a linear scan over squared
planar (degree-space) distance.  Distances along the geometry are summed
with the Haversine formula and reported in meters.

Coordinates are (lon, lat) pairs throughout, matching GeoJSON order.
"""

import math
from typing import Sequence, Union

from segment_ingest import Coordinate
from street_geometry import StreetGeometry

EARTH_RADIUS_KM = 6371.0

GeometryLike = Union[StreetGeometry, Sequence[Coordinate]]


# =============================================================================
# GEOMETRY HELPERS
# =============================================================================

def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Haversine distance between two points, returned in kilometers."""
    lat1_r, lon1_r = math.radians(lat1), math.radians(lon1)
    lat2_r, lon2_r = math.radians(lat2), math.radians(lon2)

    dlat = lat2_r - lat1_r
    dlon = lon2_r - lon1_r

    a = (math.sin(dlat / 2) ** 2
         + math.cos(lat1_r) * math.cos(lat2_r) * math.sin(dlon / 2) ** 2)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_KM * c


def _coords_of(geometry: GeometryLike) -> Sequence[Coordinate]:
    if isinstance(geometry, StreetGeometry):
        coords = geometry.coordinates
    else:
        coords = geometry
    if coords is None or len(coords) < 2:
        raise ValueError("geometry must contain at least 2 coordinates")
    return coords


def validate_coordinates(lat: float, lon: float) -> bool:
    """True if lat/lon are finite and within WGS84 ranges."""
    if math.isnan(lat) or math.isnan(lon):
        return False
    return -90 <= lat <= 90 and -180 <= lon <= 180


# =============================================================================
# SNAP / DISTANCE
# =============================================================================

def nearest_index(point: Coordinate, coordinates: Sequence[Coordinate]) -> int:
    """Index of the vertex nearest to point.  Ties go to the lowest index.

    Returns -1 when nothing compares closer than infinity, i.e. a
    non-finite point or an empty coordinate list.
    """
    px, py = point[0], point[1]
    best_idx = -1
    best_dist = math.inf
    for idx, coord in enumerate(coordinates):
        dx = px - coord[0]
        dy = py - coord[1]
        dist = dx * dx + dy * dy
        if dist < best_dist:
            best_dist = dist
            best_idx = idx
    return best_idx


def snap_to_path(point: Coordinate, geometry: GeometryLike) -> Coordinate:
    """Replace point with the nearest existing vertex of geometry.

    Raises ValueError for geometries with fewer than 2 coordinates; the
    merge stage never produces those.
    """
    coords = _coords_of(geometry)
    idx = nearest_index(point, coords)
    if idx < 0:
        raise ValueError(f"cannot snap non-finite point {point!r}")
    return tuple(coords[idx])


def path_distance_m(start: Coordinate, end: Coordinate, geometry: GeometryLike) -> float:
    """Distance in meters along geometry between the vertices nearest start and end.

    Symmetric in start/end.  Returns 0.0 when both snap to the same vertex.
    Also 0.0 when either point cannot be snapped (non-finite coordinates).
    """
    coords = _coords_of(geometry)
    i = nearest_index(start, coords)
    j = nearest_index(end, coords)
    if i < 0 or j < 0:
        return 0.0
    lo, hi = min(i, j), max(i, j)

    total_km = 0.0
    for k in range(lo, hi):
        lon1, lat1 = coords[k][0], coords[k][1]
        lon2, lat2 = coords[k + 1][0], coords[k + 1][1]
        total_km += haversine_km(lat1, lon1, lat2, lon2)
    return total_km * 1000


# =============================================================================
# WHOLE-PATH MEASURES
# =============================================================================

def path_length_km(coordinates: Sequence[Coordinate]) -> float:
    """Sum of Haversine leg lengths; 0.0 for fewer than 2 points."""
    total = 0.0
    for k in range(len(coordinates) - 1):
        total += haversine_km(
            coordinates[k][1], coordinates[k][0],
            coordinates[k + 1][1], coordinates[k + 1][0],
        )
    return total


def path_deviation(coordinates: Sequence[Coordinate]) -> float:
    """How far a path strays from the straight line between its ends.

    L = 1 - straight / actual, clamped to [0, 1].  0 means straight.
    Degenerate paths (fewer than 2 points, zero length, or a loop that
    ends where it started) return 0.
    """
    if len(coordinates) < 2:
        return 0.0

    actual = path_length_km(coordinates)
    if actual == 0:
        return 0.0

    first, last = coordinates[0], coordinates[-1]
    straight = haversine_km(first[1], first[0], last[1], last[0])
    if straight == 0:
        return 0.0

    return max(0.0, min(1.0, 1 - straight / actual))


def min_distance_to_point_km(
    coordinates: Sequence[Coordinate], lat: float, lon: float
) -> float:
    """Minimum Haversine distance (km) from any vertex to (lat, lon).

    Returns infinity for an empty coordinate list.
    """
    best = math.inf
    for c_lon, c_lat in ((c[0], c[1]) for c in coordinates):
        dist = haversine_km(c_lat, c_lon, lat, lon)
        if dist < best:
            best = dist
    return best
