"""
Alert creation and escalation.

Critical and emergency alerts escalate through the organisation's active
escalation workflow. The first level is notified when the alert is raised;
later levels are reached by ``advance_escalations`` once the workflow's
intervals elapse without the alert being acknowledged. An organisation
without a matching workflow simply gets no escalation.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from .actions import record_action
from .audit import record_audit
from .config import config
from .db import to_utc_naive, utcnow
from .errors import Forbidden, NoOpUpdate, NotFound, ValidationError
from .lifecycle import CRITICAL_SEVERITIES, get_trip
from .models import Alert, EnforcementAction, EscalationWorkflow, Trip
from .permissions import Action, Actor, authorize
from .schemas import AlertUpdateRequest, CreateAlertRequest, EscalationWorkflowRequest

logger = logging.getLogger(__name__)

ESCALATION_VIOLATION = "alert_escalation"


def _trigger_conditions(severity: str) -> List[str]:
    if severity == "emergency":
        return ["emergency_alert", "critical_alert"]
    if severity == "critical":
        return ["critical_alert"]
    return []


def find_workflow(db: Session, org_id: str, severity: str) -> Optional[EscalationWorkflow]:
    """Active workflow for ``org_id`` whose trigger matches ``severity``, if any."""
    for condition in _trigger_conditions(severity):
        workflow = db.query(EscalationWorkflow).filter(
            EscalationWorkflow.org_id == org_id,
            EscalationWorkflow.trigger_condition == condition,
            EscalationWorkflow.is_active.is_(True)
        ).order_by(EscalationWorkflow.id.desc()).first()
        if workflow is not None:
            return workflow
    return None


def _intervals(workflow: EscalationWorkflow) -> List[int]:
    return list(workflow.escalation_intervals or config.default_escalation_intervals)


def _escalate_to(
    db: Session,
    alert: Alert,
    trip: Trip,
    workflow: EscalationWorkflow,
    level: int,
    now: datetime
) -> Optional[EnforcementAction]:
    levels = workflow.escalation_levels or []
    target = levels[level - 1] if level <= len(levels) else None
    action = record_action(
        db, trip,
        violation_type=ESCALATION_VIOLATION,
        action_taken=f"escalate_to_{target}" if target else "escalate",
        action_severity=alert.severity,
        automated=True,
        executed_by="system",
        action_result=f"Alert {alert.id} escalated via '{workflow.workflow_name}' to level {level}",
        escalation_level=level,
        source_ref=f"alert:{alert.id}",
        now=now
    )
    alert.escalated = True
    record_audit(db, None, "alert.escalate", trip.id, {
        "alert_id": alert.id,
        "workflow_id": workflow.id,
        "level": level,
        "target": target,
        "channels": list(workflow.notification_channels or []),
        "targets": list(workflow.notification_targets or []),
    })
    db.commit()
    logger.info("Alert %s escalated to level %s (%s)", alert.id, level, target)
    return action


def escalate(db: Session, alert: Alert, now: Optional[datetime] = None) -> Optional[EnforcementAction]:
    """Start escalation for a critical/emergency alert. No workflow means no escalation."""
    if alert.severity not in CRITICAL_SEVERITIES or alert.escalated:
        return None

    workflow = find_workflow(db, alert.org_id, alert.severity)
    if workflow is None:
        logger.debug("No escalation workflow for org %s, alert %s not escalated", alert.org_id, alert.id)
        return None

    trip = db.get(Trip, alert.trip_id)
    return _escalate_to(db, alert, trip, workflow, 1, now or utcnow())


def _current_level(db: Session, alert: Alert) -> int:
    actions = db.query(EnforcementAction).filter(
        EnforcementAction.trip_id == alert.trip_id,
        EnforcementAction.violation_type == ESCALATION_VIOLATION,
        EnforcementAction.source_ref == f"alert:{alert.id}"
    ).all()
    return max((a.escalation_level for a in actions), default=0)


def due_level(elapsed_minutes: float, intervals: List[int], level_count: int) -> int:
    """Escalation level an unacknowledged alert should have reached by now."""
    level = 1 + sum(1 for minutes in intervals if elapsed_minutes >= minutes)
    return max(1, min(level, level_count))


def advance_escalations(db: Session, org_id: Optional[str] = None, now: Optional[datetime] = None) -> int:
    """
    Move escalated, still unacknowledged alerts up their workflow's levels.

    Returns the number of escalation steps taken.
    """
    now = now or utcnow()
    query = db.query(Alert).filter(
        Alert.escalated.is_(True),
        Alert.acknowledged.is_(False),
        Alert.resolved.is_(False)
    )
    if org_id is not None:
        query = query.filter(Alert.org_id == org_id)

    steps = 0
    for alert in query.all():
        workflow = find_workflow(db, alert.org_id, alert.severity)
        if workflow is None or not workflow.auto_escalate:
            continue

        elapsed = (now - alert.alert_timestamp).total_seconds() / 60
        target = due_level(elapsed, _intervals(workflow), len(workflow.escalation_levels or []))
        current = _current_level(db, alert)
        if target <= current:
            continue

        trip = db.get(Trip, alert.trip_id)
        for level in range(current + 1, target + 1):
            _escalate_to(db, alert, trip, workflow, level, now)
            steps += 1

    return steps


def raise_alert(
    db: Session,
    trip: Trip,
    alert_type: str,
    severity: str,
    title: str,
    message: Optional[str] = None,
    lat: Optional[float] = None,
    lon: Optional[float] = None,
    auto_generated: bool = True,
    timestamp: Optional[datetime] = None,
    now: Optional[datetime] = None
) -> Alert:
    """Persist an alert and escalate it if its severity calls for it."""
    now = now or utcnow()
    alert = Alert(
        trip_id=trip.id,
        driver_id=trip.driver_id,
        org_id=trip.org_id,
        alert_type=alert_type,
        severity=severity,
        title=title,
        message=message,
        lat=lat,
        lon=lon,
        auto_generated=auto_generated,
        alert_timestamp=to_utc_naive(timestamp) if timestamp else now
    )
    db.add(alert)
    db.commit()
    logger.info("Alert %s raised on trip %s: %s (%s)", alert.id, trip.id, title, severity)

    if severity in CRITICAL_SEVERITIES:
        escalate(db, alert, now)

    return alert


def create_alert(
    db: Session,
    trip_id: int,
    actor: Actor,
    request: CreateAlertRequest,
    now: Optional[datetime] = None
) -> Alert:
    """Manually raise an alert on a trip."""
    trip = get_trip(db, trip_id, actor, Action.ALERT_CREATE)
    alert = raise_alert(
        db, trip,
        alert_type=request.alert_type,
        severity=request.severity,
        title=request.title,
        message=request.message,
        lat=request.lat,
        lon=request.lon,
        auto_generated=request.auto_generated,
        timestamp=request.timestamp,
        now=now
    )
    record_audit(db, actor.user_id, "alert.create", trip.id, {"alert_id": alert.id})
    db.commit()
    return alert


def update_alert(
    db: Session,
    alert_id: int,
    actor: Actor,
    request: AlertUpdateRequest,
    now: Optional[datetime] = None
) -> Alert:
    """Acknowledge and/or resolve an alert. Both flags are idempotent."""
    if not (request.acknowledge or request.resolve):
        raise NoOpUpdate("Nothing to update: set acknowledge or resolve")

    alert = db.get(Alert, alert_id)
    if alert is None:
        raise NotFound(f"Alert {alert_id} not found")
    trip = db.get(Trip, alert.trip_id)
    authorize(actor, Action.ALERT_UPDATE, trip)

    now = now or utcnow()
    changed = []
    if request.acknowledge and not alert.acknowledged:
        alert.acknowledged = True
        alert.acknowledged_by = actor.user_id
        alert.acknowledged_at = now
        changed.append("acknowledged")
    if request.resolve and not alert.resolved:
        alert.resolved = True
        alert.resolved_by = actor.user_id
        alert.resolved_at = now
        changed.append("resolved")

    if changed:
        record_audit(db, actor.user_id, "alert.update", alert.trip_id, {
            "alert_id": alert.id,
            "changed": changed,
        })
        db.commit()
    return alert


def create_workflow(db: Session, actor: Actor, request: EscalationWorkflowRequest) -> EscalationWorkflow:
    """Define an escalation workflow for the actor's organisation."""
    authorize(actor, Action.WORKFLOW_MANAGE)

    org_id = actor.org_id
    if request.org_id is not None and request.org_id != actor.org_id:
        if not actor.is_super_admin:
            raise Forbidden("Workflows can only be created for your own organisation")
        org_id = request.org_id
    if not org_id:
        raise ValidationError("org_id is required")

    workflow = EscalationWorkflow(
        org_id=org_id,
        workflow_name=request.workflow_name,
        trigger_condition=request.trigger_condition,
        escalation_levels=list(request.escalation_levels),
        escalation_intervals=list(request.escalation_intervals or config.default_escalation_intervals),
        notification_channels=list(request.notification_channels),
        notification_targets=list(request.notification_targets),
        auto_escalate=request.auto_escalate,
        is_active=request.is_active,
        created_by=actor.user_id
    )
    db.add(workflow)
    db.flush()
    record_audit(db, actor.user_id, "workflow.create", None, {"workflow_id": workflow.id})
    db.commit()
    logger.info("Escalation workflow %s created for org %s", workflow.id, org_id)
    return workflow


def alerts_for_trip(db: Session, trip_id: int, actor: Actor, unresolved_only: bool = False) -> List[Alert]:
    """Get alerts for a trip, newest first."""
    get_trip(db, trip_id, actor)
    query = db.query(Alert).filter(Alert.trip_id == trip_id)
    if unresolved_only:
        query = query.filter(Alert.resolved.is_(False))
    return query.order_by(Alert.alert_timestamp.desc(), Alert.id.desc()).all()


def alert_to_dict(alert: Alert) -> Dict:
    return {
        "id": alert.id,
        "trip_id": alert.trip_id,
        "alert_type": alert.alert_type,
        "severity": alert.severity,
        "title": alert.title,
        "message": alert.message,
        "auto_generated": alert.auto_generated,
        "timestamp": alert.alert_timestamp.isoformat() if alert.alert_timestamp else None,
        "acknowledged": alert.acknowledged,
        "acknowledged_by": alert.acknowledged_by,
        "resolved": alert.resolved,
        "resolved_by": alert.resolved_by,
        "escalated": alert.escalated,
    }
