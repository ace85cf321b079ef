import logging
from datetime import datetime
from typing import Optional
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from .models import EnforcementAction, Trip
from .db import utcnow
from .lifecycle import CRITICAL_SEVERITIES, refresh_risk

logger = logging.getLogger(__name__)

def record_action(
    db: Session,
    trip: Trip,
    violation_type: str,
    action_taken: str,
    action_severity: str,
    rule_id: Optional[int] = None,
    violation_value: Optional[float] = None,
    threshold_value: Optional[float] = None,
    automated: bool = False,
    executed_by: Optional[str] = None,
    action_result: Optional[str] = None,
    escalation_level: int = 1,
    source_ref: Optional[str] = None,
    now: Optional[datetime] = None
) -> Optional[EnforcementAction]:
    """
    Persist an enforcement action.

    Returns None when an action already exists for the same
    (rule, trip, source_ref); the unique constraint makes that check atomic.
    Critical and emergency actions refresh the trip's risk level.
    """
    action = EnforcementAction(
        rule_id=rule_id,
        trip_id=trip.id,
        driver_id=trip.driver_id,
        violation_type=violation_type,
        violation_value=violation_value,
        threshold_value=threshold_value,
        action_taken=action_taken,
        action_severity=action_severity,
        automated=automated,
        executed_by=executed_by,
        execution_timestamp=now or utcnow(),
        action_result=action_result,
        escalation_level=escalation_level,
        source_ref=source_ref
    )
    db.add(action)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.debug("Action for rule %s on trip %s already taken for %s", rule_id, trip.id, source_ref)
        return None

    logger.info("Enforcement action %s on trip %s: %s (%s)",
                action.id, trip.id, action_taken, action_severity)

    if action_severity in CRITICAL_SEVERITIES:
        refresh_risk(db, trip.id)

    return action
