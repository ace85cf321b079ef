"""
Automated enforcement rule evaluation.

A sweep evaluates every active rule in scope against every active trip in
scope and records at most one action per (rule, trip, source). The source
is the violation, fatigue sample or alert the rule fired on, so running the
sweep again over unchanged telemetry produces nothing new.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from .actions import record_action
from .alerts import advance_escalations, raise_alert
from .audit import record_audit
from .config import config
from .db import utcnow
from .errors import Forbidden, ValidationError
from .lifecycle import CRITICAL_SEVERITIES, get_trip
from .models import Alert, EnforcementAction, EnforcementRule, FatigueSample, SpeedViolation, Trip, TripStatus
from .permissions import Action, Actor, Role, authorize, can_perform
from .schemas import EnforcementRuleRequest, ManualActionRequest

logger = logging.getLogger(__name__)

# Alerts the engine raises for its own actions; never counted as rule input.
AUTOMATED_ALERT_TYPE = "automated_enforcement"
MANUAL_ALERT_TYPE = "enforcement_action"
ENFORCEMENT_ALERT_TYPES = (AUTOMATED_ALERT_TYPE, MANUAL_ALERT_TYPE)


def _evaluate_speed_limit(db: Session, rule: EnforcementRule, trip: Trip, now: datetime) -> Optional[Dict]:
    since = now - timedelta(minutes=config.speed_lookback_minutes)
    violation = db.query(SpeedViolation).filter(
        SpeedViolation.trip_id == trip.id,
        SpeedViolation.violation_timestamp >= since
    ).order_by(SpeedViolation.violation_timestamp.desc(), SpeedViolation.id.desc()).first()

    if violation is None or violation.recorded_speed <= rule.threshold_value:
        return None
    return dict(
        value=violation.recorded_speed,
        severity="critical" if violation.severity == "critical" else "warning",
        description=(f"Speed violation detected: {violation.recorded_speed:g} km/h exceeds "
                     f"limit of {rule.threshold_value:g} km/h"),
        source_ref=f"speed_violation:{violation.id}"
    )


def _evaluate_hours_of_service(db: Session, rule: EnforcementRule, trip: Trip, now: datetime) -> Optional[Dict]:
    sample = db.query(FatigueSample).filter(
        FatigueSample.trip_id == trip.id
    ).order_by(FatigueSample.timestamp.desc(), FatigueSample.id.desc()).first()

    if sample is None or sample.hours_driven is None or sample.hours_driven <= rule.threshold_value:
        return None
    return dict(
        value=sample.hours_driven,
        severity="critical" if sample.alert_level == "critical" else "warning",
        description=(f"Hours of service violation: {sample.hours_driven:g} hours exceeds "
                     f"limit of {rule.threshold_value:g} hours"),
        source_ref=f"fatigue:{sample.id}"
    )


def _evaluate_critical_alerts(db: Session, rule: EnforcementRule, trip: Trip, now: datetime) -> Optional[Dict]:
    since = now - timedelta(minutes=config.alert_lookback_minutes)
    alerts = db.query(Alert).filter(
        Alert.trip_id == trip.id,
        Alert.severity == "critical",
        Alert.acknowledged.is_(False),
        Alert.alert_type.notin_(ENFORCEMENT_ALERT_TYPES),
        Alert.alert_timestamp >= since
    ).order_by(Alert.id).all()

    if not alerts or len(alerts) < rule.threshold_value:
        return None
    return dict(
        value=len(alerts),
        severity="critical",
        description=f"{len(alerts)} unacknowledged critical alerts detected",
        source_ref=f"critical_alerts:{alerts[-1].id}"
    )


EVALUATORS: Dict[str, Callable[..., Optional[Dict]]] = {
    "speed_limit": _evaluate_speed_limit,
    "hours_of_service": _evaluate_hours_of_service,
    "critical_alerts": _evaluate_critical_alerts,
}


def evaluate_rule(db: Session, rule: EnforcementRule, trip: Trip, now: Optional[datetime] = None) -> Optional[Dict]:
    evaluator = EVALUATORS.get(rule.rule_type)
    if evaluator is None:
        logger.debug("No evaluator for rule type %s (rule %s)", rule.rule_type, rule.id)
        return None
    return evaluator(db, rule, trip, now or utcnow())


def rule_applies(rule: EnforcementRule, trip: Trip) -> bool:
    if rule.org_id is not None and rule.org_id != trip.org_id:
        return False
    vehicle_types = rule.applies_to_vehicle_types or []
    if vehicle_types and trip.vehicle_type not in vehicle_types:
        return False
    driver_roles = rule.applies_to_driver_roles or []
    if driver_roles and Role.DRIVER not in driver_roles:
        return False
    return True


def _sweep_scope(actor: Actor, scope_org_id: Optional[str]) -> Optional[str]:
    if actor.is_super_admin:
        return scope_org_id
    if scope_org_id is not None and scope_org_id != actor.org_id:
        raise Forbidden("Sweeps are limited to your own organisation")
    return actor.org_id


def active_rules(db: Session, org_id: Optional[str]) -> List[EnforcementRule]:
    """Active rules for ``org_id`` plus global ones; every active rule when org_id is None."""
    query = db.query(EnforcementRule).filter(EnforcementRule.is_active.is_(True))
    if org_id is not None:
        query = query.filter(or_(EnforcementRule.org_id == org_id, EnforcementRule.org_id.is_(None)))
    return query.order_by(EnforcementRule.id).all()


def active_trips(db: Session, org_id: Optional[str]) -> List[Trip]:
    query = db.query(Trip).filter(Trip.status.in_(TripStatus.ACTIVE))
    if org_id is not None:
        query = query.filter(Trip.org_id == org_id)
    return query.order_by(Trip.id).all()


def _apply_hit(db: Session, rule: EnforcementRule, trip: Trip, hit: Dict, now: datetime) -> Optional[EnforcementAction]:
    action = record_action(
        db, trip,
        rule_id=rule.id,
        violation_type=rule.rule_type,
        violation_value=hit["value"],
        threshold_value=rule.threshold_value,
        action_taken=rule.action_triggered,
        action_severity=hit["severity"],
        automated=True,
        executed_by="system",
        action_result=hit["description"],
        source_ref=hit["source_ref"],
        now=now
    )
    if action is not None and action.action_severity in CRITICAL_SEVERITIES:
        raise_alert(
            db, trip,
            alert_type=AUTOMATED_ALERT_TYPE,
            severity=action.action_severity,
            title=f"Automated Enforcement: {rule.rule_name}",
            message=hit["description"],
            now=now
        )
    return action


def run_sweep(
    db: Session,
    actor: Actor,
    scope_org_id: Optional[str] = None,
    now: Optional[datetime] = None
) -> Dict:
    """
    Evaluate active rules against active trips.

    A failure while evaluating one trip is logged and counted in ``errors``;
    it does not stop the sweep and contributes no action.
    """
    authorize(actor, Action.ENFORCEMENT_SWEEP)
    org_id = _sweep_scope(actor, scope_org_id)
    now = now or utcnow()

    rules = active_rules(db, org_id)
    trips = active_trips(db, org_id)

    actions_triggered = 0
    critical_actions = 0
    errors = 0

    for rule in rules:
        for trip in trips:
            if not rule_applies(rule, trip):
                continue
            try:
                hit = evaluate_rule(db, rule, trip, now)
                if hit is None:
                    continue
                action = _apply_hit(db, rule, trip, hit, now)
            except Exception:
                db.rollback()
                errors += 1
                logger.exception("Rule %s failed on trip %s", rule.id, trip.id)
                continue

            if action is not None:
                actions_triggered += 1
                if action.action_severity in CRITICAL_SEVERITIES:
                    critical_actions += 1

    escalations = advance_escalations(db, org_id, now)

    result = {
        "rules_checked": len(rules),
        "trips_checked": len(trips),
        "actions_triggered": actions_triggered,
        "critical_actions": critical_actions,
        "escalations": escalations,
        "errors": errors,
    }
    record_audit(db, actor.user_id, "enforcement.sweep", None, {"scope_org_id": org_id, **result})
    db.commit()

    logger.info("Enforcement sweep (org=%s): %s", org_id or "all", result)
    return result


def infer_severity(action_taken: str) -> str:
    """Severity of a manual action named without one."""
    if "immediate_stop" in action_taken or "emergency" in action_taken:
        return "emergency"
    if "trip_suspension" in action_taken or "critical" in action_taken:
        return "critical"
    return "warning"


def trigger_action(
    db: Session,
    actor: Actor,
    request: ManualActionRequest,
    now: Optional[datetime] = None
) -> EnforcementAction:
    """Record a manual enforcement action against a trip."""
    trip = get_trip(db, request.trip_id, actor, Action.ENFORCEMENT_TRIGGER)
    severity = request.action_severity or infer_severity(request.action_taken)
    now = now or utcnow()

    action = record_action(
        db, trip,
        violation_type=request.violation_type,
        violation_value=request.violation_value,
        threshold_value=request.threshold_value,
        action_taken=request.action_taken,
        action_severity=severity,
        automated=False,
        executed_by=actor.user_id,
        action_result=request.action_result,
        escalation_level=request.escalation_level,
        now=now
    )

    if severity in CRITICAL_SEVERITIES:
        raise_alert(
            db, trip,
            alert_type=MANUAL_ALERT_TYPE,
            severity=severity,
            title=f"Enforcement Action: {request.action_taken}",
            message=request.action_result or f"Enforcement action executed: {request.action_taken}",
            now=now
        )

    record_audit(db, actor.user_id, "enforcement.trigger", trip.id, {
        "action_id": action.id,
        "action_taken": action.action_taken,
        "severity": severity,
    })
    db.commit()
    return action


def create_rule(db: Session, actor: Actor, request: EnforcementRuleRequest) -> EnforcementRule:
    """
    Create an enforcement rule.

    Rules belong to the actor's organisation; only a super admin may create
    global rules (org_id None) or rules for another organisation.
    """
    authorize(actor, Action.RULE_MANAGE)

    if actor.is_super_admin:
        org_id = request.org_id
    else:
        if request.org_id is not None and request.org_id != actor.org_id:
            raise Forbidden("Rules can only be created for your own organisation")
        org_id = actor.org_id
    if org_id is None and not can_perform(actor, Action.RULE_MANAGE_GLOBAL):
        raise ValidationError("org_id is required")

    rule = EnforcementRule(
        org_id=org_id,
        rule_name=request.rule_name,
        rule_type=request.rule_type,
        threshold_value=request.threshold_value,
        threshold_unit=request.threshold_unit,
        action_triggered=request.action_triggered,
        is_active=request.is_active,
        applies_to_vehicle_types=list(request.applies_to_vehicle_types),
        applies_to_driver_roles=list(request.applies_to_driver_roles),
        created_by=actor.user_id
    )
    db.add(rule)
    db.flush()
    record_audit(db, actor.user_id, "rule.create", None, {"rule_id": rule.id, "org_id": org_id})
    db.commit()
    logger.info("Enforcement rule %s (%s) created for %s", rule.id, rule.rule_type, org_id or "all organisations")
    return rule


def rule_to_dict(rule: EnforcementRule) -> Dict:
    return {
        "id": rule.id,
        "org_id": rule.org_id,
        "rule_name": rule.rule_name,
        "rule_type": rule.rule_type,
        "threshold_value": rule.threshold_value,
        "threshold_unit": rule.threshold_unit,
        "action_triggered": rule.action_triggered,
        "is_active": rule.is_active,
        "applies_to_vehicle_types": rule.applies_to_vehicle_types or [],
        "applies_to_driver_roles": rule.applies_to_driver_roles or [],
    }


def action_to_dict(action: EnforcementAction) -> Dict:
    return {
        "id": action.id,
        "rule_id": action.rule_id,
        "trip_id": action.trip_id,
        "violation_type": action.violation_type,
        "violation_value": action.violation_value,
        "threshold_value": action.threshold_value,
        "action_taken": action.action_taken,
        "action_severity": action.action_severity,
        "automated": action.automated,
        "executed_by": action.executed_by,
        "execution_timestamp": action.execution_timestamp.isoformat() if action.execution_timestamp else None,
        "action_result": action.action_result,
        "escalation_level": action.escalation_level,
    }
