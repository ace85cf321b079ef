"""
Critical failure tracking and the approval override check.

A critical item moving to ``"fail"`` opens a CriticalFailure; moving away
from ``"fail"`` resolves the most recent open failure for that item. The
unique partial index on open failures makes the open step atomic per item:
when two writers race, the loser's insert is rejected and it treats the
failure as already open.

Overrides are never applied implicitly. A reviewer records one against the
set of failures open at that moment, and it only remains valid while every
currently open failure is in that set.
"""

import logging
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .db import utcnow
from .models import CriticalFailure, CriticalOverride, ModuleItem, Trip
from .permissions import Actor
from .scoring import is_failing

logger = logging.getLogger(__name__)


def open_failures(db: Session, trip_id: int) -> List[CriticalFailure]:
    """Get unresolved critical failures for a trip, oldest first."""
    return db.query(CriticalFailure).filter(
        CriticalFailure.trip_id == trip_id,
        CriticalFailure.resolved.is_(False)
    ).order_by(CriticalFailure.id).all()


def open_failure_ids(db: Session, trip_id: int) -> List[int]:
    return [failure.id for failure in open_failures(db, trip_id)]


def _open_failure(db: Session, item: ModuleItem, trip_id: int, now: datetime) -> Optional[CriticalFailure]:
    failure = CriticalFailure(
        trip_id=trip_id,
        module_item_id=item.id,
        description=f"Critical item failed: {item.label}",
        points=item.points,
        resolved=False,
        created_at=now
    )
    db.add(failure)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.debug("Critical failure already open for item %s", item.id)
        return None
    logger.info("Opened critical failure %s on trip %s (item %s)", failure.id, trip_id, item.id)
    return failure


def _resolve_latest(db: Session, item: ModuleItem, user_id: str, now: datetime) -> Optional[CriticalFailure]:
    failure = db.query(CriticalFailure).filter(
        CriticalFailure.module_item_id == item.id,
        CriticalFailure.resolved.is_(False)
    ).order_by(CriticalFailure.created_at.desc(), CriticalFailure.id.desc()).first()

    if failure is None:
        return None

    failure.resolved = True
    failure.resolved_at = now
    failure.resolved_by = user_id
    db.commit()
    logger.info("Resolved critical failure %s on trip %s", failure.id, failure.trip_id)
    return failure


def on_item_change(
    db: Session,
    item: ModuleItem,
    previous_value: Optional[str],
    user_id: str,
    now: Optional[datetime] = None
) -> Tuple[Optional[CriticalFailure], Optional[CriticalFailure]]:
    """
    React to a committed change of ``item.value``.

    Returns ``(opened, resolved)``; either may be None. Non-critical items
    and changes that do not cross the fail boundary are ignored.
    """
    if not item.critical:
        return None, None

    now = now or utcnow()
    was_failing = is_failing(previous_value)
    now_failing = is_failing(item.value)

    if now_failing and not was_failing:
        return _open_failure(db, item, item.module.trip_id, now), None
    if was_failing and not now_failing:
        return None, _resolve_latest(db, item, user_id, now)
    return None, None


def latest_override(db: Session, trip_id: int) -> Optional[CriticalOverride]:
    return db.query(CriticalOverride).filter(
        CriticalOverride.trip_id == trip_id
    ).order_by(CriticalOverride.created_at.desc(), CriticalOverride.id.desc()).first()


def record_override(
    db: Session,
    trip: Trip,
    actor: Actor,
    note: str,
    now: Optional[datetime] = None
) -> CriticalOverride:
    """Record an override covering the failures open right now. The caller commits."""
    override = CriticalOverride(
        trip_id=trip.id,
        reviewer_id=actor.user_id,
        reviewer_role=actor.role,
        note=note,
        failure_ids=open_failure_ids(db, trip.id),
        created_at=now or utcnow()
    )
    db.add(override)
    logger.info("Override recorded on trip %s by %s for failures %s",
                trip.id, actor.user_id, override.failure_ids)
    return override


def override_check(db: Session, trip_id: int) -> Tuple[bool, List[int]]:
    """
    Whether the trip may be approved.

    Returns ``(can_approve, open_failure_ids)``. Approval is allowed when
    nothing is open, or when the latest override was issued against a set
    that still covers every open failure. A failure opened after the
    override was recorded blocks approval again.
    """
    open_ids = open_failure_ids(db, trip_id)
    if not open_ids:
        return True, []

    override = latest_override(db, trip_id)
    if override is None:
        return False, open_ids

    covered = set(override.failure_ids or [])
    return set(open_ids) <= covered, open_ids
