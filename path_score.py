"""
Composite path quality score.

    Score = clamp(a*P + b*S - g*O*100 - d*L*100, 0, 100)

    P  average user rating (1-5) normalized to 0-100
    S  average street-condition status score (0-100)
    O  active obstacles reported since the last review
    L  route deviation ratio (0 = straight line)

Weights (a=0.1, b=0.3, g=0.6, d=0.15) live in scoring_config.py.  One
active obstacle costs 60 points while P and S together top out at 40,
so a single active obstacle drives the score to zero.

compute_score() does no validation.  Only the result is clamped, so
out-of-contract inputs still produce a score in [0, 100].
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Optional, Sequence

from obstacle_lifecycle import ObstacleRecord, is_active
from path_query import path_deviation
from scoring_config import SCORING_MODEL, STATUS_SCORES, PathStatus, parse_status
from segment_ingest import Coordinate

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QualityScoreInputs:
    P: float   # normalized rating, 0-100
    S: float   # aggregated status score, 0-100
    O: int     # active obstacle count
    L: float   # deviation ratio, >= 0


@dataclass
class PathScoreBreakdown:
    """Score plus the inputs that produced it, for persistence and debugging."""
    score: float
    inputs: QualityScoreInputs
    rating_source: str        # "community" | "trip" | "default"
    status_source: str        # "streets" | "default"
    model_version: str = SCORING_MODEL.version


# =============================================================================
# Component helpers
# =============================================================================

def normalize_rating(rating: float) -> float:
    """Map a 1-5 rating onto 0-100: 1 -> 0, 3 -> 50, 5 -> 100."""
    return (rating - 1) / 4 * 100


def status_score(status) -> Optional[float]:
    """Point value of a status, or None for an unknown label."""
    s = parse_status(status)
    return STATUS_SCORES[s] if s is not None else None


def count_active_obstacles(
    obstacles: Iterable[ObstacleRecord],
    since: Optional[datetime] = None,
) -> int:
    """Obstacles that are neither REJECTED nor EXPIRED.

    With ``since``, only obstacles created at or after it are counted.
    """
    if since is not None and since.tzinfo is None:
        since = since.replace(tzinfo=timezone.utc)

    count = 0
    for obstacle in obstacles:
        if not is_active(obstacle.status):
            continue
        if since is not None:
            created = obstacle.created_at
            if created.tzinfo is None:
                created = created.replace(tzinfo=timezone.utc)
            if created < since:
                continue
        count += 1
    return count


# =============================================================================
# Score
# =============================================================================

def compute_score(P: float, S: float, O: float, L: float = 0.0) -> float:
    """Composite score, clamped to [0, 100]."""
    w = SCORING_MODEL.weights
    raw = (
        w.rating * P
        + w.status * S
        - (w.obstacle * 100) * O
        - (w.deviation * 100) * L
    )
    return max(SCORING_MODEL.score_min, min(SCORING_MODEL.score_max, raw))


def compute_score_from_inputs(inputs: QualityScoreInputs) -> float:
    return compute_score(inputs.P, inputs.S, inputs.O, inputs.L)


def score_path(
    report_ratings: Iterable[Optional[float]] = (),
    trip_rating: Optional[float] = None,
    street_statuses: Iterable[Optional[PathStatus]] = (),
    obstacles: Iterable[ObstacleRecord] = (),
    last_review_at: Optional[datetime] = None,
    coordinates: Optional[Sequence[Coordinate]] = None,
) -> PathScoreBreakdown:
    """Assemble P, S, O, L from raw path data and score the path.

    P: mean of community report ratings; else the trip owner's rating;
       else the neutral default (50).
    S: mean status score of streets that have a status; else 50.
    O: active obstacles created since the last review (all active
       obstacles when there has been no review).
    L: deviation of the path geometry; 0 without at least 2 points.
    """
    default = SCORING_MODEL.default_component

    ratings = [r for r in report_ratings if r is not None]
    if ratings:
        P = normalize_rating(sum(ratings) / len(ratings))
        rating_source = "community"
    elif trip_rating is not None:
        P = normalize_rating(trip_rating)
        rating_source = "trip"
    else:
        P = default
        rating_source = "default"

    scores = [
        s for s in (status_score(st) for st in street_statuses if st is not None)
        if s is not None
    ]
    if scores:
        S = sum(scores) / len(scores)
        status_source = "streets"
    else:
        S = default
        status_source = "default"

    O = count_active_obstacles(obstacles, since=last_review_at)

    L = path_deviation(coordinates) if coordinates and len(coordinates) >= 2 else 0.0

    inputs = QualityScoreInputs(P=P, S=S, O=O, L=L)
    score = compute_score_from_inputs(inputs)
    logger.info(
        "Path score %.2f (P=%.1f[%s] S=%.1f[%s] O=%d L=%.3f) model=%s",
        score, P, rating_source, S, status_source, O, L, SCORING_MODEL.version,
    )
    return PathScoreBreakdown(
        score=score,
        inputs=inputs,
        rating_source=rating_source,
        status_source=status_source,
    )
