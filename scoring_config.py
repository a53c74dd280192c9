"""
Scoring model configuration for path quality.

Owns every numeric constant that affects the path quality score and the
status aggregation.  Geometry tolerances stay in street_geometry.py and
HTTP settings in overpass_http.py.

Frozen dataclasses provide type checking and IDE support without
the indirection of YAML/JSON config files.
"""

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional, Tuple


class PathStatus(str, Enum):
    OPTIMAL = "optimal"
    MEDIUM = "medium"
    SUFFICIENT = "sufficient"
    REQUIRES_MAINTENANCE = "requires_maintenance"


# =============================================================================
# Dataclasses
# =============================================================================

@dataclass(frozen=True)
class FreshnessBand:
    """Reports younger than ``max_age_days`` get ``weight``.

    Bands are evaluated youngest-first: the first band whose
    max_age_days > the report's age is used.
    """
    max_age_days: float
    weight: float


@dataclass(frozen=True)
class ScoreWeights:
    """Coefficients of the composite path score.

    Score = rating * P + status * S - obstacle * O * 100 - deviation * L * 100
    """
    rating: float = 0.1      # alpha
    status: float = 0.3      # beta
    obstacle: float = 0.6    # gamma, per active obstacle
    deviation: float = 0.15  # delta


@dataclass(frozen=True)
class ScoringModel:
    """Top-level container for all scoring parameters.

    A single module-level instance (SCORING_MODEL) is the source of truth.
    Bump `version` on every change that alters score outputs.
    """
    version: str
    weights: ScoreWeights
    freshness_bands: Tuple[FreshnessBand, ...]
    report_window_days: float     # reports at or beyond this age are ignored
    recency_bonus_max: float
    default_component: float      # P or S when no data backs them
    score_min: float = 0.0
    score_max: float = 100.0


# =============================================================================
# Lookup tables
# =============================================================================

# Ordinal rank used for weighted averaging of statuses.
STATUS_RANKS: Mapping[PathStatus, int] = MappingProxyType({
    PathStatus.OPTIMAL: 4,
    PathStatus.MEDIUM: 3,
    PathStatus.SUFFICIENT: 2,
    PathStatus.REQUIRES_MAINTENANCE: 1,
})

RANK_TO_STATUS: Mapping[int, PathStatus] = MappingProxyType(
    {rank: status for status, rank in STATUS_RANKS.items()}
)

# Point value of a status inside the composite score (already 0-100).
STATUS_SCORES: Mapping[PathStatus, float] = MappingProxyType({
    PathStatus.OPTIMAL: 100,
    PathStatus.MEDIUM: 70,
    PathStatus.SUFFICIENT: 50,
    PathStatus.REQUIRES_MAINTENANCE: 20,
})


def parse_status(value) -> Optional[PathStatus]:
    """Coerce a raw status label into PathStatus, or None if unknown."""
    if isinstance(value, PathStatus):
        return value
    try:
        return PathStatus(value)
    except ValueError:
        return None


def round_half_up(value: float) -> int:
    """Round to the nearest integer, .5 going up.

    Uses floor(x + 0.5) instead of Python's round() to avoid banker's
    rounding (round(2.5) -> 2), which would bias averaged statuses
    toward the even ranks.
    """
    return int(value + 0.5)


# =============================================================================
# SCORING_MODEL — current production values
# =============================================================================

_FRESHNESS_BANDS = (
    FreshnessBand(max_age_days=7, weight=1.0),
    FreshnessBand(max_age_days=14, weight=0.8),
    FreshnessBand(max_age_days=30, weight=0.5),
)


SCORING_MODEL = ScoringModel(
    version="1.0.0",
    weights=ScoreWeights(
        rating=0.1,
        status=0.3,
        obstacle=0.6,
        deviation=0.15,
    ),
    freshness_bands=_FRESHNESS_BANDS,
    report_window_days=30,
    recency_bonus_max=10.0,
    default_component=50.0,
)


# Validate the tables at import time (ValueError, not assert,
# so validation is never stripped by python -O).
if set(STATUS_RANKS) != set(PathStatus) or set(STATUS_SCORES) != set(PathStatus):
    raise ValueError("Status tables must cover every PathStatus")

_ordered = sorted(PathStatus, key=lambda s: STATUS_RANKS[s])
for _lo, _hi in zip(_ordered, _ordered[1:]):
    if STATUS_SCORES[_lo] >= STATUS_SCORES[_hi]:
        raise ValueError(
            f"STATUS_SCORES must increase with rank: {_lo.value} >= {_hi.value}"
        )

_prev_age, _prev_weight = 0.0, 1.0
for _band in SCORING_MODEL.freshness_bands:
    if _band.max_age_days <= _prev_age or _band.weight > _prev_weight:
        raise ValueError(f"Freshness bands must be monotonic, got {_band!r}")
    _prev_age, _prev_weight = _band.max_age_days, _band.weight
if _prev_age != SCORING_MODEL.report_window_days:
    raise ValueError("Last freshness band must end at report_window_days")
