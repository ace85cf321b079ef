from fastapi import APIRouter, Depends, Header, HTTPException, Query
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from typing import List, Dict, Any, Optional
from .. import alerts, detection, enforcement, lifecycle, regulatory, risk
from ..audit import get_trip_audit
from ..config import config
from ..db import get_db
from ..models import ModuleItem, Trip, TripModule
from ..permissions import Actor, require_actor
from ..schemas import (
    AddModuleRequest, AlertUpdateRequest, CreateAlertRequest, CreateTripRequest, DecisionRequest,
    EnforcementRuleRequest, EscalationWorkflowRequest, ItemUpdateRequest, ManualActionRequest,
    OverrideRequest, PostTripInspectionRequest, RegulatorySubmissionRequest, SweepRequest,
    TelemetrySample
)

router = APIRouter()

def get_actor(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
    x_org_id: Optional[str] = Header(None)
) -> Actor:
    """Actor identity as asserted by the upstream identity provider."""
    return require_actor(Actor(user_id=x_user_id or "", role=x_user_role or "", org_id=x_org_id))

def get_gateway() -> regulatory.RegulatoryGateway:
    """Regulatory gateway dependency; overridden where a real integration exists."""
    return regulatory.default_gateway

def _database_error(e: Exception) -> HTTPException:
    return HTTPException(status_code=500, detail=f"Database error: {str(e)}")

def item_to_dict(item: ModuleItem) -> Dict[str, Any]:
    return {
        "id": item.id,
        "module_id": item.module_id,
        "label": item.label,
        "field_type": item.field_type,
        "critical": item.critical,
        "points": item.points,
        "value": item.value,
        "remarks": item.remarks
    }

def module_to_dict(module: TripModule) -> Dict[str, Any]:
    return {
        "id": module.id,
        "step": module.step,
        "name": module.name,
        "score": module.score,
        "max_score": module.max_score,
        "risk_level": module.risk_level,
        "status": module.status,
        "items": [item_to_dict(item) for item in module.items]
    }

def trip_to_dict(trip: Trip, include_modules: bool = False) -> Dict[str, Any]:
    trip_data = {
        "id": trip.id,
        "driver_id": trip.driver_id,
        "org_id": trip.org_id,
        "trip_date": trip.trip_date.isoformat() if trip.trip_date else None,
        "route": trip.route,
        "vehicle_type": trip.vehicle_type,
        "status": trip.status,
        "aggregate_score": trip.aggregate_score,
        "risk_level": trip.risk_level,
        "has_critical_failures": trip.has_critical_failures,
        "critical_override": trip.critical_override,
        "created_at": trip.created_at.isoformat() if trip.created_at else None
    }
    if include_modules:
        trip_data["modules"] = [module_to_dict(module) for module in trip.modules]
    return trip_data

# Trips

@router.post("/trips", status_code=201)
def create_trip(
    request: CreateTripRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor)
) -> Dict[str, Any]:
    """Create a draft trip with the full inspection checklist."""
    try:
        trip = lifecycle.create_trip(db, actor, request)
        return trip_to_dict(trip, include_modules=True)
    except SQLAlchemyError as e:
        raise _database_error(e)

@router.get("/trips/{trip_id}")
def get_trip(
    trip_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor)
) -> Dict[str, Any]:
    """Get a trip with its modules and items."""
    try:
        trip = lifecycle.get_trip(db, trip_id, actor)
        return trip_to_dict(trip, include_modules=True)
    except SQLAlchemyError as e:
        raise _database_error(e)

@router.delete("/trips/{trip_id}")
def delete_trip(
    trip_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor)
) -> Dict[str, Any]:
    """Delete a draft trip."""
    try:
        return lifecycle.delete_trip(db, trip_id, actor)
    except SQLAlchemyError as e:
        raise _database_error(e)

@router.post("/trips/{trip_id}/modules", status_code=201)
def add_module(
    trip_id: int,
    request: AddModuleRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor)
) -> Dict[str, Any]:
    """Add an ad hoc module to an editable trip."""
    try:
        module = lifecycle.add_module(db, trip_id, actor, request)
        return module_to_dict(module)
    except SQLAlchemyError as e:
        raise _database_error(e)

@router.patch("/items/{item_id}")
def update_item(
    item_id: int,
    request: ItemUpdateRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor)
) -> Dict[str, Any]:
    """Record a checklist item's value and/or remarks."""
    try:
        result = lifecycle.update_item(db, item_id, actor, request)
        result["item"] = item_to_dict(result["item"])
        return result
    except SQLAlchemyError as e:
        raise _database_error(e)

@router.post("/trips/{trip_id}/submit")
def submit_trip(
    trip_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor)
) -> Dict[str, Any]:
    """Submit a draft trip for review."""
    try:
        return lifecycle.submit(db, trip_id, actor)
    except SQLAlchemyError as e:
        raise _database_error(e)

@router.post("/trips/{trip_id}/review")
def start_review(
    trip_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor)
) -> Dict[str, Any]:
    try:
        return lifecycle.start_review(db, trip_id, actor)
    except SQLAlchemyError as e:
        raise _database_error(e)

@router.post("/trips/{trip_id}/override")
def record_override(
    trip_id: int,
    request: OverrideRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor)
) -> Dict[str, Any]:
    """Record a reviewer override of the trip's open critical failures."""
    try:
        return lifecycle.record_override(db, trip_id, actor, request)
    except SQLAlchemyError as e:
        raise _database_error(e)

@router.post("/trips/{trip_id}/decision")
def decide_trip(
    trip_id: int,
    request: DecisionRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor)
) -> Dict[str, Any]:
    """Approve or reject a submitted trip."""
    try:
        return lifecycle.decide(db, trip_id, actor, request)
    except SQLAlchemyError as e:
        raise _database_error(e)

@router.post("/trips/{trip_id}/reopen")
def reopen_trip(
    trip_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor)
) -> Dict[str, Any]:
    try:
        return lifecycle.reopen(db, trip_id, actor)
    except SQLAlchemyError as e:
        raise _database_error(e)

@router.post("/trips/{trip_id}/start")
def start_trip(
    trip_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor)
) -> Dict[str, Any]:
    try:
        return lifecycle.start_trip(db, trip_id, actor)
    except SQLAlchemyError as e:
        raise _database_error(e)

@router.post("/trips/{trip_id}/complete")
def complete_trip(
    trip_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor)
) -> Dict[str, Any]:
    try:
        return lifecycle.complete_trip(db, trip_id, actor)
    except SQLAlchemyError as e:
        raise _database_error(e)

@router.post("/trips/{trip_id}/post-trip", status_code=201)
def complete_post_trip(
    trip_id: int,
    request: PostTripInspectionRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor)
) -> Dict[str, Any]:
    """Store the post-trip inspection and schedule maintenance."""
    try:
        return lifecycle.complete_post_trip(db, trip_id, actor, request)
    except SQLAlchemyError as e:
        raise _database_error(e)

@router.post("/trips/{trip_id}/finalize")
def finalize_trip(
    trip_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor)
) -> Dict[str, Any]:
    try:
        return lifecycle.finalize(db, trip_id, actor)
    except SQLAlchemyError as e:
        raise _database_error(e)

@router.post("/trips/{trip_id}/recalculate")
def recalculate_trip(
    trip_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor)
) -> Dict[str, Any]:
    """Recompute the trip's aggregate score and risk level."""
    try:
        return lifecycle.recalculate(db, trip_id, actor)
    except SQLAlchemyError as e:
        raise _database_error(e)

@router.get("/trips/{trip_id}/risk")
def get_risk_breakdown(
    trip_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor)
) -> Dict[str, Any]:
    """Get the multi-phase risk breakdown for a trip."""
    try:
        return risk.risk_breakdown(db, trip_id, actor)
    except SQLAlchemyError as e:
        raise _database_error(e)

@router.get("/trips/{trip_id}/audit")
def get_audit_trail(
    trip_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    limit: int = Query(100, ge=1, le=500)
) -> List[Dict[str, Any]]:
    """Get the audit trail for a trip, newest first."""
    try:
        lifecycle.get_trip(db, trip_id, actor)
        return [
            {
                "id": entry.id,
                "user_id": entry.user_id,
                "action": entry.action,
                "meta": entry.meta,
                "created_at": entry.created_at.isoformat() if entry.created_at else None
            }
            for entry in get_trip_audit(db, trip_id, limit)
        ]
    except SQLAlchemyError as e:
        raise _database_error(e)

# Monitoring

@router.post("/trips/{trip_id}/telemetry")
def ingest_telemetry(
    trip_id: int,
    sample: TelemetrySample,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor)
) -> Dict[str, Any]:
    """Ingest one GPS / fatigue / incident sample for an active trip."""
    try:
        return detection.ingest(db, trip_id, actor, sample)
    except SQLAlchemyError as e:
        raise _database_error(e)

@router.post("/trips/{trip_id}/alerts", status_code=201)
def create_alert(
    trip_id: int,
    request: CreateAlertRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor)
) -> Dict[str, Any]:
    try:
        alert = alerts.create_alert(db, trip_id, actor, request)
        return alerts.alert_to_dict(alert)
    except SQLAlchemyError as e:
        raise _database_error(e)

@router.get("/trips/{trip_id}/alerts")
def list_alerts(
    trip_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    unresolved_only: bool = Query(False, description="Only alerts not yet resolved")
) -> List[Dict[str, Any]]:
    """Get alerts for a trip, newest first."""
    try:
        return [alerts.alert_to_dict(a) for a in alerts.alerts_for_trip(db, trip_id, actor, unresolved_only)]
    except SQLAlchemyError as e:
        raise _database_error(e)

@router.patch("/alerts/{alert_id}")
def update_alert(
    alert_id: int,
    request: AlertUpdateRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor)
) -> Dict[str, Any]:
    """Acknowledge and/or resolve an alert."""
    try:
        alert = alerts.update_alert(db, alert_id, actor, request)
        return {"alert": alerts.alert_to_dict(alert)}
    except SQLAlchemyError as e:
        raise _database_error(e)

# Enforcement

@router.post("/enforcement/rules", status_code=201)
def create_rule(
    request: EnforcementRuleRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor)
) -> Dict[str, Any]:
    try:
        rule = enforcement.create_rule(db, actor, request)
        return enforcement.rule_to_dict(rule)
    except SQLAlchemyError as e:
        raise _database_error(e)

@router.post("/enforcement/sweep")
def run_sweep(
    request: SweepRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor)
) -> Dict[str, Any]:
    """Evaluate active rules against active trips."""
    try:
        return enforcement.run_sweep(db, actor, request.scope_org_id)
    except SQLAlchemyError as e:
        raise _database_error(e)

@router.post("/enforcement/actions", status_code=201)
def trigger_action(
    request: ManualActionRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor)
) -> Dict[str, Any]:
    """Record a manual enforcement action."""
    try:
        action = enforcement.trigger_action(db, actor, request)
        return enforcement.action_to_dict(action)
    except SQLAlchemyError as e:
        raise _database_error(e)

@router.post("/workflows", status_code=201)
def create_workflow(
    request: EscalationWorkflowRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor)
) -> Dict[str, Any]:
    try:
        workflow = alerts.create_workflow(db, actor, request)
        return {
            "id": workflow.id,
            "org_id": workflow.org_id,
            "workflow_name": workflow.workflow_name,
            "trigger_condition": workflow.trigger_condition,
            "escalation_levels": workflow.escalation_levels,
            "escalation_intervals": workflow.escalation_intervals,
            "is_active": workflow.is_active
        }
    except SQLAlchemyError as e:
        raise _database_error(e)

@router.post("/trips/{trip_id}/regulatory")
def submit_regulatory(
    trip_id: int,
    request: RegulatorySubmissionRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    gateway: regulatory.RegulatoryGateway = Depends(get_gateway)
) -> Dict[str, Any]:
    """Submit the trip's compliance record to the regulator."""
    try:
        return regulatory.submit_to_regulator(db, trip_id, actor, request, gateway)
    except SQLAlchemyError as e:
        raise _database_error(e)

# Settings

@router.get("/settings")
def get_settings(actor: Actor = Depends(get_actor)) -> Dict[str, Any]:
    """Get the active detection and enforcement settings."""
    return {
        "detection": config.get_detection_config(),
        "enforcement": config.get_enforcement_config()
    }
