"""
Time-decayed aggregation of community street-condition reports.

Folds a street's report history into a single current status:

  1. Each report gets a freshness weight from its age (step bands in
     scoring_config.SCORING_MODEL; 0 at and beyond 30 days).
  2. Statuses map to ordinal ranks (optimal=4 ... requires_maintenance=1).
  3. The weighted mean rank is rounded half-up and mapped back to a status.

When nothing carries weight the result is None rather than a default
status: an empty or fully stale history says nothing about the street.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Sequence

from scoring_config import (
    RANK_TO_STATUS,
    SCORING_MODEL,
    STATUS_RANKS,
    PathStatus,
    parse_status,
    round_half_up,
)

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60


@dataclass
class Report:
    """One community report about a street or path segment."""
    status: PathStatus
    created_at: datetime
    weight: Optional[float] = None    # derived from created_at when None
    rating: Optional[float] = None    # 1-5 user rating, if given
    is_publishable: bool = True


@dataclass
class WeightedReport:
    status: PathStatus
    weight: float


# =============================================================================
# FRESHNESS
# =============================================================================

def _now(now: Optional[datetime]) -> datetime:
    return now if now is not None else datetime.now(timezone.utc)


def age_in_days(created_at: datetime, now: Optional[datetime] = None) -> float:
    """Age of a timestamp in fractional days.  Naive datetimes are taken as UTC."""
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    now = _now(now)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return (now - created_at).total_seconds() / SECONDS_PER_DAY


def freshness_weight_for_age(age_days: float) -> float:
    """Weight in [0, 1] for a report age.  Negative ages count as brand new."""
    for band in SCORING_MODEL.freshness_bands:
        if age_days < band.max_age_days:
            return band.weight
    return 0.0


def freshness_weight(created_at: datetime, now: Optional[datetime] = None) -> float:
    """Freshness weight of a report created at created_at.

    - < 7 days: 1.0
    - 7-14 days: 0.8
    - 14-30 days: 0.5
    - >= 30 days: 0 (ignored)
    """
    return freshness_weight_for_age(age_in_days(created_at, now))


def recency_bonus(reports: Sequence[Report], now: Optional[datetime] = None) -> float:
    """Bonus in [0, 10] that shrinks linearly with the reports' average age.

    10 * (1 - avg_age / 30), clamped.  Exactly 0 once the average age
    reaches 30 days, which is always the case when every report is at
    least that old.  An empty collection earns nothing.
    """
    if not reports:
        return 0.0
    now = _now(now)
    ages = [max(0.0, age_in_days(r.created_at, now)) for r in reports]
    avg_age = sum(ages) / len(ages)
    window = SCORING_MODEL.report_window_days
    cap = SCORING_MODEL.recency_bonus_max
    return max(0.0, min(cap, cap * (1 - avg_age / window)))


# =============================================================================
# WEIGHTED STATUS
# =============================================================================

def weighted_status(reports: Iterable[WeightedReport]) -> Optional[PathStatus]:
    """Weighted mean status of reports, rounded to the nearest status.

    Reports with weight <= 0 or an unknown status are ignored.  Returns
    None when the collection is empty or nothing carries weight.
    """
    total_value = 0.0
    total_weight = 0.0

    for report in reports:
        if report.weight is None or report.weight <= 0:
            continue
        status = parse_status(report.status)
        if status is None:
            continue
        total_value += STATUS_RANKS[status] * report.weight
        total_weight += report.weight

    if total_weight == 0:
        return None

    return RANK_TO_STATUS.get(round_half_up(total_value / total_weight))


def aggregate_street_status(
    reports: Sequence[Report],
    now: Optional[datetime] = None,
) -> Optional[PathStatus]:
    """Current status of a street from its full report history.

    Only publishable reports inside the report window take part.  A report
    with an explicit weight keeps it; otherwise the weight comes from
    its age.
    """
    now = _now(now)
    window = SCORING_MODEL.report_window_days

    weighted: List[WeightedReport] = []
    for r in reports:
        if not r.is_publishable:
            continue
        if age_in_days(r.created_at, now) >= window:
            continue
        weight = r.weight if r.weight is not None else freshness_weight(r.created_at, now)
        weighted.append(WeightedReport(status=r.status, weight=weight))

    if not weighted:
        logger.info("No usable reports inside the %s-day window", window)
        return None

    winner = weighted_status(weighted)
    logger.info(
        "Aggregated %d report(s) into status %s",
        len(weighted), winner.value if winner else None,
    )
    return winner


def path_status_from_streets(
    street_statuses: Iterable[Optional[PathStatus]],
) -> Optional[PathStatus]:
    """Unweighted mean status over a path's streets.

    Streets without a current status are skipped; None if none remain.
    """
    ranks = [
        STATUS_RANKS[s]
        for s in (parse_status(raw) for raw in street_statuses if raw is not None)
        if s is not None
    ]
    if not ranks:
        return None
    return RANK_TO_STATUS.get(round_half_up(sum(ranks) / len(ranks)))
