"""
Street geometry reconstruction from fragmented OpenStreetMap ways.

OSM frequently stores one real street as several unordered, disconnected
way fragments.  This module stitches them back together:

  1. Segment ingestion (segment_ingest.py) turns an Overpass response into
     independent (lon, lat) chains.
  2. merge_segments() greedily joins chains whose endpoints lie within a
     tolerance and keeps the longest resulting chain.
  3. fetch_street_geometry() walks an ordered list of Overpass query
     strategies, one at a time, and merges the first non-empty result.

Limitations:
  - The merge tolerance is a planar distance in raw degree space, not a
    geodesic distance.  One longitude degree is shorter than one latitude
    degree away from the equator, so the effective tolerance is ~89 m
    north-south and ~63 m east-west at 45°N.
  - The merge is greedy and first-match.  For pathological topologies (an
    endpoint within tolerance of two unrelated chains) the result depends
    on segment and scan order; ties always go to the lowest cluster index.
  - Only the longest merged chain (by point count) is kept.  Disjoint
    stretches of the same street name are discarded.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from bbp_trace import traced_stage
from overpass_http import OverpassQueryError, OverpassRateLimitError, overpass_query
from segment_ingest import (
    MIN_SEGMENT_POINTS,
    Coordinate,
    Segment,
    extract_ways,
    parse_overpass_response,
)

logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

# Endpoint join tolerance in degrees.  At ~45°N, 0.001° is ~111 m of
# latitude or ~78 m of longitude, so 0.0008° spans roughly 60-90 m.
MERGE_TOLERANCE_DEG = 0.0008

# Per-attempt HTTP timeout for the fallback chain (seconds).
STRATEGY_TIMEOUT_S = 25

# Milan, the product's launch city.  Used when the caller has no bbox.
DEFAULT_BBOX = {
    "min_lat": 45.3568,
    "min_lon": 9.0976,
    "max_lat": 45.5155,
    "max_lon": 9.2767,
}

# Rough meters per degree at ~45°N, for nearby-street distances.
METERS_PER_DEG_LAT = 111_000
METERS_PER_DEG_LON = 78_000


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass(frozen=True)
class StreetBounds:
    min_lat: float
    max_lat: float
    min_lon: float
    max_lon: float


@dataclass
class StreetGeometry:
    """Canonical geometry for a named street.

    ``coordinates`` always holds at least 2 (lon, lat) pairs.  Owned by the
    caller once returned; nothing in this package mutates it afterwards.
    """
    name: str
    coordinates: List[Coordinate]
    bounds: StreetBounds

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "coordinates": [[lon, lat] for lon, lat in self.coordinates],
            "bounds": {
                "minLat": self.bounds.min_lat,
                "maxLat": self.bounds.max_lat,
                "minLon": self.bounds.min_lon,
                "maxLon": self.bounds.max_lon,
            },
        }


@dataclass
class NearbyStreet:
    name: str
    distance_m: int
    highway_type: Optional[str] = None


@dataclass
class QueryStrategy:
    """One entry of the fallback chain."""
    key: str          # "exact", "exact_qt", "highway", "partial", "broad"
    query: str
    timeout_s: int = STRATEGY_TIMEOUT_S


# =============================================================================
# CLUSTER MERGE
# =============================================================================

def _dist_sq(a: Coordinate, b: Coordinate) -> float:
    dx = a[0] - b[0]
    dy = a[1] - b[1]
    return dx * dx + dy * dy


def _try_join(c1: List[Coordinate], c2: List[Coordinate], tol_sq: float) -> Optional[List[Coordinate]]:
    """Join c2 onto c1 if any endpoint pair is within tolerance.

    Checks end-start, end-end, start-end, start-start in that order and
    drops the duplicated shared endpoint.  Returns None if no pair is close.
    """
    c1_start, c1_end = c1[0], c1[-1]
    c2_start, c2_end = c2[0], c2[-1]

    if _dist_sq(c1_end, c2_start) < tol_sq:
        return c1 + c2[1:]
    if _dist_sq(c1_end, c2_end) < tol_sq:
        return c1 + c2[::-1][1:]
    if _dist_sq(c1_start, c2_end) < tol_sq:
        return c2[:-1] + c1
    if _dist_sq(c1_start, c2_start) < tol_sq:
        return c2[::-1][:-1] + c1
    return None


def merge_segments(
    segments: Sequence[Sequence[Coordinate]],
    tolerance: float = MERGE_TOLERANCE_DEG,
) -> Optional[List[Coordinate]]:
    """Merge endpoint-adjacent segments and return the longest chain.

    Every segment starts as its own cluster, sorted by point count
    (longest first; equal lengths keep input order).  Each pass scans
    pairs (i, j), i < j, and on the first pair within tolerance merges j
    into i and restarts.  Stops when a full pass merges nothing or one
    cluster remains.

    Returns the coordinates of the longest cluster, or None when no
    segment has at least 2 points.  Inputs are never mutated.
    """
    clusters: List[List[Coordinate]] = [
        [tuple(pt) for pt in seg]
        for seg in segments
        if seg is not None and len(seg) >= MIN_SEGMENT_POINTS
    ]
    if not clusters:
        return None

    clusters.sort(key=len, reverse=True)
    tol_sq = tolerance * tolerance

    merged = True
    passes = 0
    while merged and len(clusters) > 1:
        merged = False
        passes += 1
        for i in range(len(clusters)):
            for j in range(i + 1, len(clusters)):
                joined = _try_join(clusters[i], clusters[j], tol_sq)
                if joined is not None:
                    clusters[i] = joined
                    del clusters[j]
                    merged = True
                    break
            if merged:
                break

    logger.debug(
        "Merging complete after %d passes, %d cluster(s) remain",
        passes, len(clusters),
    )

    clusters.sort(key=len, reverse=True)
    best = clusters[0]
    if len(best) < MIN_SEGMENT_POINTS:
        return None
    return best


def compute_bounds(coordinates: Sequence[Coordinate]) -> StreetBounds:
    lons = [c[0] for c in coordinates]
    lats = [c[1] for c in coordinates]
    return StreetBounds(
        min_lat=min(lats),
        max_lat=max(lats),
        min_lon=min(lons),
        max_lon=max(lons),
    )


def build_street_geometry(
    name: str,
    segments: Sequence[Sequence[Coordinate]],
    tolerance: float = MERGE_TOLERANCE_DEG,
) -> Optional[StreetGeometry]:
    """Merge segments into a StreetGeometry, or None if nothing usable."""
    coordinates = merge_segments(segments, tolerance=tolerance)
    if coordinates is None:
        logger.warning("Not enough coordinates for %r", name)
        return None
    return StreetGeometry(
        name=name,
        coordinates=coordinates,
        bounds=compute_bounds(coordinates),
    )


# =============================================================================
# OVERPASS QUERY STRATEGIES
# =============================================================================

def escape_overpass_string(value: str) -> str:
    """Escape backslashes, then double quotes, for an Overpass QL string."""
    return value.replace("\\", "\\\\").replace('"', '\\"')


def _bbox_clause(bbox: Dict[str, float]) -> str:
    return (
        f"[bbox:{bbox['min_lat']},{bbox['min_lon']},"
        f"{bbox['max_lat']},{bbox['max_lon']}]"
    )


def build_street_queries(
    street_name: str,
    bbox: Optional[Dict[str, float]] = None,
    timeout_s: int = STRATEGY_TIMEOUT_S,
) -> List[QueryStrategy]:
    """Ordered query strategies for a street name, most specific first."""
    header = f"[out:json][timeout:{timeout_s}]{_bbox_clause(bbox or DEFAULT_BBOX)};"
    name = escape_overpass_string(street_name)

    return [
        QueryStrategy("exact", f'{header}(way["name"="{name}"];);out geom;', timeout_s),
        QueryStrategy("exact_qt", f'{header}(way["name"="{name}"];);out geom qt;', timeout_s),
        QueryStrategy("highway", f'{header}(way["name"="{name}"]["highway"];);out geom;', timeout_s),
        QueryStrategy("partial", f'{header}(way["name"~"{name}"];);out geom;', timeout_s),
        QueryStrategy("broad", f'{header}(way["highway"]["name"~"{name}"];);out geom;', timeout_s),
    ]


Fetcher = Callable[..., object]


def fetch_street_segments(
    street_name: str,
    bbox: Optional[Dict[str, float]] = None,
    fetcher: Optional[Fetcher] = None,
    timeout_s: int = STRATEGY_TIMEOUT_S,
) -> Tuple[List[Segment], Optional[str]]:
    """Run the fallback chain and return (segments, winning strategy key).

    Strategies run strictly in order; the first one whose response parses
    into at least one segment wins.  A strategy that raises an Overpass
    error or returns nothing usable is logged and skipped.  Returns
    ([], None) when every strategy is exhausted.
    """
    fetch = fetcher or overpass_query
    strategies = build_street_queries(street_name, bbox, timeout_s)
    failed = 0
    last_error: Optional[Exception] = None

    for attempt, strategy in enumerate(strategies, start=1):
        logger.info(
            "Overpass attempt %d/%d (%s) for street %r",
            attempt, len(strategies), strategy.key, street_name,
        )
        try:
            response = fetch(
                strategy.query,
                caller=f"street_geometry.{strategy.key}",
                timeout=strategy.timeout_s,
            )
        except (OverpassQueryError, OverpassRateLimitError) as e:
            failed += 1
            last_error = e
            logger.warning("Overpass attempt %d failed: %s", attempt, e)
            continue

        segments = parse_overpass_response(response)
        if segments:
            logger.info(
                "Overpass attempt %d (%s) found %d way(s) for %r",
                attempt, strategy.key, len(segments), street_name,
            )
            return segments, strategy.key

    logger.warning(
        "No geometry found for %r after %d failed queries (last error: %s)",
        street_name, failed, last_error,
    )
    return [], None


def fetch_street_geometry(
    street_name: str,
    bbox: Optional[Dict[str, float]] = None,
    fetcher: Optional[Fetcher] = None,
    tolerance: float = MERGE_TOLERANCE_DEG,
    timeout_s: int = STRATEGY_TIMEOUT_S,
) -> Optional[StreetGeometry]:
    """Fetch and merge the canonical geometry of a named street.

    Returns None when no strategy yields usable data.  Never raises for
    external-service failures.
    """
    with traced_stage("street_geometry") as stage:
        segments, key = fetch_street_segments(street_name, bbox, fetcher, timeout_s)
        geometry = build_street_geometry(street_name, segments, tolerance) if segments else None
        stage.result = key if geometry is not None else "none"

    if geometry is not None:
        logger.info(
            "Street geometry for %r: %d coordinate points",
            street_name, len(geometry.coordinates),
        )
    return geometry


# =============================================================================
# NEARBY STREETS
# =============================================================================

def _approx_distance_m(lon: float, lat: float, coord: Coordinate) -> float:
    dx = (coord[0] - lon) * METERS_PER_DEG_LON
    dy = (coord[1] - lat) * METERS_PER_DEG_LAT
    return (dx * dx + dy * dy) ** 0.5


def find_nearby_streets(
    lat: float,
    lon: float,
    radius_m: int = 50,
    fetcher: Optional[Fetcher] = None,
) -> List[NearbyStreet]:
    """Named highways within radius_m of a point, nearest first.

    One entry per unique name.  Returns an empty list on any Overpass
    failure (graceful degradation).
    """
    lat_deg = radius_m / METERS_PER_DEG_LAT
    lon_deg = radius_m / METERS_PER_DEG_LON
    bbox = {
        "min_lat": lat - lat_deg,
        "min_lon": lon - lon_deg,
        "max_lat": lat + lat_deg,
        "max_lon": lon + lon_deg,
    }
    query = (
        f"[out:json][timeout:{STRATEGY_TIMEOUT_S}]{_bbox_clause(bbox)};"
        f'(way["highway"]["name"](around:{radius_m},{lat},{lon}););out geom;'
    )

    fetch = fetcher or overpass_query
    with traced_stage("nearby_streets") as stage:
        try:
            response = fetch(query, caller="nearby_streets", timeout=STRATEGY_TIMEOUT_S)
        except (OverpassQueryError, OverpassRateLimitError):
            logger.warning("Nearby street lookup failed at (%s, %s)", lat, lon, exc_info=True)
            stage.result = "failed"
            return []

        streets: List[NearbyStreet] = []
        seen = set()
        for way in extract_ways(response):
            if not way.name or way.name in seen:
                continue
            seen.add(way.name)
            nearest = min(_approx_distance_m(lon, lat, c) for c in way.coordinates)
            streets.append(NearbyStreet(
                name=way.name,
                distance_m=int(nearest + 0.5),
                highway_type=way.highway,
            ))
        stage.result = str(len(streets))

    streets.sort(key=lambda s: s.distance_m)
    logger.info("Found %d unique streets near (%s, %s)", len(streets), lat, lon)
    return streets
