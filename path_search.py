"""
Ranking of published paths for a start/end street pair.

Match levels, best first:
  - exact:   both street names appear in the path   -> no penalty
  - partial: one name matches, the other query point lies within the
             nearby threshold of the path geometry  -> penalty on one side
  - nearby:  no name match, geometry within the threshold of both
             query points                           -> penalty on both sides

The proximity penalty is linear: PROXIMITY_PENALTY_PER_KM points per km
of average endpoint distance, subtracted from the stored path score.
"""

import functools
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from path_query import min_distance_to_point_km, path_length_km
from segment_ingest import Coordinate

logger = logging.getLogger(__name__)

PROXIMITY_PENALTY_PER_KM = 15
DEFAULT_NEARBY_THRESHOLD_KM = 2.0

# Used when a path has no stored score or geometry.
DEFAULT_PATH_SCORE = 50.0
DEFAULT_DISTANCE_KM = 5.0
DEFAULT_TRAVEL_MINUTES = 20
AVERAGE_CYCLING_KMH = 15.0

# Adjusted scores closer than this are treated as tied.
SCORE_TIE_MARGIN = 1.0

_MATCH_ORDER = {"exact": 0, "partial": 1, "nearby": 2}


@dataclass
class PathStreet:
    street_id: str
    name: str
    current_status: Optional[str] = None


@dataclass
class PublishedPath:
    path_id: str
    name: str
    streets: List[PathStreet] = field(default_factory=list)
    score: Optional[float] = None
    coordinates: Optional[List[Coordinate]] = None


@dataclass
class RouteMatch:
    path_id: str
    name: str
    match_type: str           # "exact" | "partial" | "nearby"
    score: float              # after proximity penalty
    original_score: float
    proximity_penalty: float
    distance_km: float
    travel_time_minutes: int
    streets: List[PathStreet]
    coordinates: Optional[List[Coordinate]] = None


def _match(
    path: PublishedPath,
    start_name: str,
    end_name: str,
    start_point: Optional[Coordinate],
    end_point: Optional[Coordinate],
    threshold_km: float,
):
    """Return (match_type, start_km, end_km) or None."""
    names = [s.name.lower() for s in path.streets if s.name]
    has_start = any(start_name.lower() in n for n in names)
    has_end = any(end_name.lower() in n for n in names)

    if has_start and has_end:
        return "exact", 0.0, 0.0

    if start_point is None or end_point is None or not path.coordinates:
        return None

    start_km = min_distance_to_point_km(path.coordinates, start_point[1], start_point[0])
    end_km = min_distance_to_point_km(path.coordinates, end_point[1], end_point[0])

    if has_start and end_km <= threshold_km:
        return "partial", 0.0, end_km
    if has_end and start_km <= threshold_km:
        return "partial", start_km, 0.0
    if start_km <= threshold_km and end_km <= threshold_km:
        return "nearby", start_km, end_km
    return None


def find_routes(
    paths: Sequence[PublishedPath],
    start_street: str,
    end_street: str,
    start_point: Optional[Coordinate] = None,
    end_point: Optional[Coordinate] = None,
    nearby_threshold_km: float = DEFAULT_NEARBY_THRESHOLD_KM,
) -> Optional[List[RouteMatch]]:
    """Rank published paths connecting two streets.

    start_point/end_point are optional (lon, lat) query locations; without
    both, only exact name matches are returned.  Returns None when nothing
    matches.
    """
    routes: List[RouteMatch] = []

    for path in paths:
        if not path.streets:
            continue
        matched = _match(
            path, start_street, end_street, start_point, end_point, nearby_threshold_km,
        )
        if matched is None:
            continue
        match_type, start_km, end_km = matched

        original = path.score if path.score is not None else DEFAULT_PATH_SCORE
        penalty = round(PROXIMITY_PENALTY_PER_KM * (start_km + end_km) / 2, 2)

        if path.coordinates:
            distance_km = round(path_length_km(path.coordinates), 2)
            minutes = int(distance_km / AVERAGE_CYCLING_KMH * 60 + 0.5)
        else:
            distance_km = DEFAULT_DISTANCE_KM
            minutes = DEFAULT_TRAVEL_MINUTES

        routes.append(RouteMatch(
            path_id=path.path_id,
            name=path.name,
            match_type=match_type,
            score=max(0.0, original - penalty),
            original_score=original,
            proximity_penalty=penalty,
            distance_km=distance_km,
            travel_time_minutes=minutes,
            streets=list(path.streets),
            coordinates=path.coordinates,
        ))

    if not routes:
        logger.info("No paths match %r -> %r", start_street, end_street)
        return None

    routes.sort(key=functools.cmp_to_key(_compare_routes))
    return routes


def _compare_routes(a: RouteMatch, b: RouteMatch) -> int:
    """Score descending unless within the tie margin, then
    exact < partial < nearby, then smaller penalty.
    """
    diff = b.score - a.score
    if abs(diff) > SCORE_TIE_MARGIN:
        return 1 if diff > 0 else -1
    match_diff = _MATCH_ORDER[a.match_type] - _MATCH_ORDER[b.match_type]
    if match_diff:
        return match_diff
    penalty_diff = a.proximity_penalty - b.proximity_penalty
    if penalty_diff:
        return 1 if penalty_diff > 0 else -1
    return 0
