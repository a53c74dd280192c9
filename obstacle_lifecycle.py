"""
Obstacle report lifecycle.

Community-flagged obstacles move through a small state machine:

    PENDING   -> CONFIRMED | REJECTED | CORRECTED | EXPIRED
    CORRECTED -> CONFIRMED | EXPIRED
    CONFIRMED -> EXPIRED
    REJECTED, EXPIRED: terminal

transition() only validates the edge.  Who may request a transition is
decided by the caller, and the caller must apply the new status with a
compare-and-swap against the persisted status, since two requests can
each hold a stale ``current`` value.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import FrozenSet, Iterable, List, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)


class ObstacleStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    REJECTED = "REJECTED"
    CORRECTED = "CORRECTED"
    EXPIRED = "EXPIRED"


VALID_TRANSITIONS: Mapping[ObstacleStatus, FrozenSet[ObstacleStatus]] = MappingProxyType({
    ObstacleStatus.PENDING: frozenset({
        ObstacleStatus.CONFIRMED,
        ObstacleStatus.REJECTED,
        ObstacleStatus.CORRECTED,
        ObstacleStatus.EXPIRED,
    }),
    ObstacleStatus.CONFIRMED: frozenset({ObstacleStatus.EXPIRED}),
    ObstacleStatus.CORRECTED: frozenset({ObstacleStatus.CONFIRMED, ObstacleStatus.EXPIRED}),
    ObstacleStatus.REJECTED: frozenset(),
    ObstacleStatus.EXPIRED: frozenset(),
})

INACTIVE_STATUSES = frozenset({ObstacleStatus.REJECTED, ObstacleStatus.EXPIRED})

# Obstacles not validated within this many days may be expired.
OBSTACLE_EXPIRY_DAYS = 30


@dataclass(frozen=True)
class TransitionResult:
    success: bool
    new_status: ObstacleStatus
    error: Optional[str] = None


@dataclass(frozen=True)
class ObstacleRecord:
    """An obstacle flagged on a route.  Never deleted, only transitioned."""
    status: ObstacleStatus
    type: str                 # e.g. "pothole", "construction", "debris"
    lat: float
    lon: float
    created_at: datetime
    owner_id: str
    description: Optional[str] = None
    obstacle_id: Optional[str] = None


def _coerce(status) -> Optional[ObstacleStatus]:
    if isinstance(status, ObstacleStatus):
        return status
    try:
        return ObstacleStatus(status)
    except ValueError:
        return None


def allowed_transitions(status) -> FrozenSet[ObstacleStatus]:
    s = _coerce(status)
    return VALID_TRANSITIONS.get(s, frozenset()) if s is not None else frozenset()


def is_valid_transition(current, target) -> bool:
    t = _coerce(target)
    return t is not None and t in allowed_transitions(current)


def is_terminal(status) -> bool:
    return not allowed_transitions(status)


def is_active(status) -> bool:
    """Active obstacles count against a path's score."""
    s = _coerce(status)
    return s is not None and s not in INACTIVE_STATUSES


def transition(current, target) -> TransitionResult:
    """Validate current -> target.  Never raises.

    On an invalid edge the status is left unchanged and ``error`` names
    the attempted pair.
    """
    if not is_valid_transition(current, target):
        cur = _coerce(current)
        cur_label = cur.value if cur is not None else str(current)
        tgt = _coerce(target)
        tgt_label = tgt.value if tgt is not None else str(target)
        return TransitionResult(
            success=False,
            new_status=cur if cur is not None else current,
            error=f"Invalid transition: {cur_label} -> {tgt_label}",
        )
    return TransitionResult(success=True, new_status=_coerce(target))


def new_obstacle(
    type: str,
    lat: float,
    lon: float,
    owner_id: str,
    created_at: Optional[datetime] = None,
    description: Optional[str] = None,
    obstacle_id: Optional[str] = None,
) -> ObstacleRecord:
    """Create an obstacle in its initial PENDING state."""
    return ObstacleRecord(
        status=ObstacleStatus.PENDING,
        type=type,
        lat=lat,
        lon=lon,
        created_at=created_at or datetime.now(timezone.utc),
        owner_id=owner_id,
        description=description,
        obstacle_id=obstacle_id,
    )


def apply_transition(
    record: ObstacleRecord, target
) -> Tuple[ObstacleRecord, TransitionResult]:
    """Return (updated record, result).  The input record is not modified."""
    result = transition(record.status, target)
    if not result.success:
        logger.info(
            "Rejected obstacle transition id=%s: %s",
            record.obstacle_id, result.error,
        )
        return record, result
    return replace(record, status=result.new_status), result


def is_stale(
    record: ObstacleRecord,
    now: Optional[datetime] = None,
    expiry_days: float = OBSTACLE_EXPIRY_DAYS,
) -> bool:
    """True if the obstacle is older than expiry_days."""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    created = record.created_at
    if created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    return (now - created).total_seconds() > expiry_days * 24 * 60 * 60


def expire_stale(
    records: Iterable[ObstacleRecord],
    now: Optional[datetime] = None,
    expiry_days: float = OBSTACLE_EXPIRY_DAYS,
) -> List[ObstacleRecord]:
    """EXPIRED copies of every stale record that may legally expire."""
    expired = []
    for record in records:
        if not is_stale(record, now, expiry_days):
            continue
        updated, result = apply_transition(record, ObstacleStatus.EXPIRED)
        if result.success:
            expired.append(updated)
    if expired:
        logger.info("Expiring %d stale obstacle(s)", len(expired))
    return expired
