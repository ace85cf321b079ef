"""
Trip lifecycle state machine.

Every status change goes through ``_transition``, which checks the source
state and then writes the new status with a conditional UPDATE, so two
concurrent callers can never both move a trip out of the same state.

``recompute_trip`` is the only code that writes a trip's aggregate score,
risk level and critical failure flag.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, Iterable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import critical
from .audit import record_audit
from .checklist import CHECKLIST_MODULES, REQUIRED_STEPS
from .db import utcnow
from .errors import Conflict, CriticalFailuresBlocking, InvalidStateTransition, NotFound, ValidationError
from .models import (
    Alert, EnforcementAction, InspectionItem, MaintenanceTask, ModuleItem,
    PostTripInspection, Trip, TripModule, TripStatus
)
from .permissions import Action, Actor, authorize, can_perform
from .schemas import (
    AddModuleRequest, CreateTripRequest, DecisionRequest, ItemUpdateRequest, OverrideRequest, PostTripInspectionRequest
)
from .scoring import (
    aggregate_score, derive_risk_level, module_points, module_status, percentage, risk_level_from_score
)

logger = logging.getLogger(__name__)

CRITICAL_SEVERITIES = ("critical", "emergency")

# Days until a scheduled maintenance task falls due, by priority
MAINTENANCE_DUE_DAYS = {"urgent": 1, "high": 3, "medium": 7, "low": 14}


def get_trip(db: Session, trip_id: int, actor: Actor, action: str = Action.TRIP_VIEW) -> Trip:
    """Load a trip and authorise ``action`` on it."""
    trip = db.get(Trip, trip_id)
    if trip is None:
        raise NotFound(f"Trip {trip_id} not found")
    authorize(actor, action, trip)
    return trip


def _transition(db: Session, trip: Trip, allowed_from: Iterable[str], target: str):
    current = trip.status
    if current not in allowed_from:
        raise InvalidStateTransition(
            f"Cannot move trip {trip.id} from '{current}' to '{target}'",
            current=current, target=target
        )

    updated = db.query(Trip).filter(
        Trip.id == trip.id,
        Trip.status == current
    ).update({Trip.status: target}, synchronize_session=False)

    if not updated:
        db.rollback()
        raise InvalidStateTransition(
            f"Trip {trip.id} left '{current}' before the move to '{target}'",
            current=current, target=target
        )
    trip.status = target


def _ensure_editable(trip: Trip, actor: Actor):
    if trip.status in TripStatus.EDITABLE or can_perform(actor, Action.ALWAYS_WRITE, trip):
        return
    raise InvalidStateTransition(
        f"Trip {trip.id} cannot be edited while '{trip.status}'",
        current=trip.status, target="edit"
    )


def recompute_module(module: TripModule):
    """Refresh a module's points, status and risk from its items."""
    achieved, maximum = module_points(module.items)
    module.score = achieved
    module.max_score = maximum
    module.status = module_status(module.items)
    if module.status == "failed":
        module.risk_level = "critical"
    elif maximum > 0:
        module.risk_level = risk_level_from_score(percentage(achieved, maximum))
    else:
        module.risk_level = "low"


def critical_action_count(db: Session, trip_id: int) -> int:
    return db.query(EnforcementAction).filter(
        EnforcementAction.trip_id == trip_id,
        EnforcementAction.action_severity.in_(CRITICAL_SEVERITIES)
    ).count()


def recompute_trip(db: Session, trip: Trip) -> Dict:
    """
    Recompute aggregate score and risk level from current module data,
    open critical failures and critical enforcement actions.

    Idempotent: running it twice against unchanged inputs writes the same
    values. The caller commits.
    """
    scores = {}
    for module in trip.modules:
        recompute_module(module)
        scores[module.id] = (module.score, module.max_score)

    open_count = len(critical.open_failures(db, trip.id))
    score = aggregate_score(scores)

    trip.aggregate_score = score
    trip.risk_level = derive_risk_level(score, open_count, critical_action_count(db, trip.id))
    trip.has_critical_failures = open_count > 0

    return {
        "aggregate_score": trip.aggregate_score,
        "risk_level": trip.risk_level,
        "has_critical_failures": trip.has_critical_failures,
    }


def create_trip(db: Session, actor: Actor, request: CreateTripRequest) -> Trip:
    """Create a draft trip seeded with the full inspection checklist."""
    authorize(actor, Action.TRIP_CREATE)
    if not actor.org_id:
        raise ValidationError("Actor has no organisation")

    trip = Trip(
        driver_id=actor.user_id,
        org_id=actor.org_id,
        trip_date=request.trip_date,
        route=request.route,
        vehicle_type=request.vehicle_type,
        status=TripStatus.DRAFT
    )
    for template in CHECKLIST_MODULES:
        module = TripModule(step=template.step, name=template.name)
        module.items = [
            ModuleItem(
                label=item.label,
                field_type=item.field_type,
                critical=item.critical,
                points=item.points
            )
            for item in template.items
        ]
        recompute_module(module)
        trip.modules.append(module)

    db.add(trip)
    db.flush()
    record_audit(db, actor.user_id, "trip.create", trip.id, {"route": trip.route})
    db.commit()
    logger.info("Trip %s created by %s", trip.id, actor.user_id)
    return trip


def add_module(db: Session, trip_id: int, actor: Actor, request: AddModuleRequest) -> TripModule:
    """Attach an ad hoc module to an editable trip; steps are unique per trip."""
    trip = get_trip(db, trip_id, actor, Action.ITEM_UPDATE)
    _ensure_editable(trip, actor)
    if any(module.step == request.step for module in trip.modules):
        raise Conflict(f"Trip {trip.id} already has a module for step {request.step}")

    module = TripModule(step=request.step, name=request.name)
    module.items = [ModuleItem(**item.model_dump()) for item in request.items]
    recompute_module(module)
    trip.modules.append(module)
    db.flush()
    record_audit(db, actor.user_id, "module.create", trip.id, {"module_id": module.id, "step": module.step})
    db.commit()
    return module


def update_item(
    db: Session,
    item_id: int,
    actor: Actor,
    request: ItemUpdateRequest,
    now: Optional[datetime] = None
) -> Dict:
    """Write an item's value/remarks and recompute the trip's failures and scores."""
    item = db.get(ModuleItem, item_id)
    if item is None:
        raise NotFound(f"Item {item_id} not found")
    trip = item.module.trip
    authorize(actor, Action.ITEM_UPDATE, trip)
    _ensure_editable(trip, actor)

    previous_value = item.value
    if "value" in request.model_fields_set:
        item.value = request.value
    if "remarks" in request.model_fields_set:
        item.remarks = request.remarks
    db.commit()

    opened, resolved = critical.on_item_change(db, item, previous_value, actor.user_id, now)

    recompute_trip(db, trip)
    record_audit(db, actor.user_id, "item.update", trip.id, {
        "item_id": item.id,
        "previous_value": previous_value,
        "value": item.value,
    })
    db.commit()

    return {
        "item": item,
        "critical_failure_opened": opened is not None,
        "critical_failure_resolved": resolved is not None,
        "critical_failure_id": (opened or resolved).id if (opened or resolved) else None,
    }


def submit(db: Session, trip_id: int, actor: Actor) -> Dict:
    """draft -> submitted. Critical failures are recorded, not blocking."""
    trip = get_trip(db, trip_id, actor, Action.TRIP_SUBMIT)
    if trip.status != TripStatus.DRAFT:
        raise InvalidStateTransition(
            f"Cannot move trip {trip.id} from '{trip.status}' to '{TripStatus.SUBMITTED}'",
            current=trip.status, target=TripStatus.SUBMITTED
        )

    missing = REQUIRED_STEPS - {module.step for module in trip.modules}
    if missing:
        raise ValidationError(f"Trip {trip.id} is missing modules for steps {sorted(missing)}")

    _transition(db, trip, (TripStatus.DRAFT,), TripStatus.SUBMITTED)
    result = recompute_trip(db, trip)
    record_audit(db, actor.user_id, "trip.submit", trip.id, result)
    db.commit()

    logger.info("Trip %s submitted: score=%s risk=%s critical=%s",
                trip.id, trip.aggregate_score, trip.risk_level, trip.has_critical_failures)
    return {"status": trip.status, **result}


def start_review(db: Session, trip_id: int, actor: Actor) -> Dict:
    trip = get_trip(db, trip_id, actor, Action.TRIP_REVIEW)
    _transition(db, trip, (TripStatus.SUBMITTED,), TripStatus.UNDER_REVIEW)
    record_audit(db, actor.user_id, "trip.review", trip.id)
    db.commit()
    return {"status": trip.status}


def record_override(
    db: Session,
    trip_id: int,
    actor: Actor,
    request: OverrideRequest,
    now: Optional[datetime] = None
) -> Dict:
    """Record a reviewer override against the trip's open critical failures."""
    trip = get_trip(db, trip_id, actor, Action.TRIP_OVERRIDE)
    if trip.status not in (TripStatus.SUBMITTED, TripStatus.UNDER_REVIEW):
        raise InvalidStateTransition(
            f"Cannot override failures on trip {trip.id} while '{trip.status}'",
            current=trip.status, target="override"
        )
    if not critical.open_failures(db, trip.id):
        raise ValidationError(f"Trip {trip.id} has no open critical failures")

    override = critical.record_override(db, trip, actor, request.note, now)
    record_audit(db, actor.user_id, "trip.override", trip.id, {"failure_ids": override.failure_ids})
    db.commit()
    return {"override_id": override.id, "failure_ids": override.failure_ids}


def decide(
    db: Session,
    trip_id: int,
    actor: Actor,
    request: DecisionRequest,
    now: Optional[datetime] = None
) -> Dict:
    """
    submitted|under_review -> approved|rejected.

    Approval needs the override check to pass. An override note in the
    request is recorded first when the actor may override; otherwise open
    critical failures raise CriticalFailuresBlocking.
    """
    trip = get_trip(db, trip_id, actor, Action.TRIP_DECIDE)
    allowed_from = (TripStatus.SUBMITTED, TripStatus.UNDER_REVIEW)
    target = TripStatus.APPROVED if request.approved else TripStatus.REJECTED

    if trip.status not in allowed_from:
        raise InvalidStateTransition(
            f"Cannot move trip {trip.id} from '{trip.status}' to '{target}'",
            current=trip.status, target=target
        )

    overridden = False
    if request.approved:
        can_approve, open_ids = critical.override_check(db, trip.id)
        if not can_approve and request.override_note:
            authorize(actor, Action.TRIP_OVERRIDE, trip)
            critical.record_override(db, trip, actor, request.override_note, now)
            can_approve = True
        if not can_approve:
            raise CriticalFailuresBlocking(
                f"Trip {trip.id} has {len(open_ids)} unresolved critical failure(s)",
                open_failure_ids=open_ids
            )
        overridden = bool(open_ids)

    _transition(db, trip, allowed_from, target)
    trip.critical_override = overridden
    record_audit(db, actor.user_id, f"trip.{target}", trip.id, {
        "notes": request.notes,
        "critical_override": overridden,
    })
    db.commit()

    logger.info("Trip %s %s by %s", trip.id, target, actor.user_id)
    return {"status": trip.status, "critical_override": overridden}


def reopen(db: Session, trip_id: int, actor: Actor) -> Dict:
    """rejected -> draft, so the driver can correct and resubmit."""
    trip = get_trip(db, trip_id, actor, Action.TRIP_REOPEN)
    _transition(db, trip, (TripStatus.REJECTED,), TripStatus.DRAFT)
    trip.critical_override = False
    record_audit(db, actor.user_id, "trip.reopen", trip.id)
    db.commit()
    return {"status": trip.status}


def start_trip(db: Session, trip_id: int, actor: Actor) -> Dict:
    trip = get_trip(db, trip_id, actor, Action.TRIP_OPERATE)
    _transition(db, trip, (TripStatus.APPROVED,), TripStatus.IN_PROGRESS)
    record_audit(db, actor.user_id, "trip.start", trip.id)
    db.commit()
    logger.info("Trip %s started", trip.id)
    return {"status": trip.status}


def complete_trip(db: Session, trip_id: int, actor: Actor) -> Dict:
    trip = get_trip(db, trip_id, actor, Action.TRIP_OPERATE)
    _transition(db, trip, (TripStatus.IN_PROGRESS,), TripStatus.COMPLETED)
    record_audit(db, actor.user_id, "trip.complete", trip.id)
    db.commit()
    logger.info("Trip %s completed", trip.id)
    return {"status": trip.status}


def inspection_risk_level(points_deducted: int) -> str:
    if points_deducted <= 3:
        return "low"
    if points_deducted <= 8:
        return "medium"
    return "high"


def complete_post_trip(
    db: Session,
    trip_id: int,
    actor: Actor,
    request: PostTripInspectionRequest,
    now: Optional[datetime] = None
) -> Dict:
    """
    completed -> post_trip_completed.

    Stores the post-trip inspection and schedules a maintenance task for
    every item flagged as requiring maintenance.
    """
    trip = get_trip(db, trip_id, actor, Action.TRIP_POST_TRIP)
    now = now or utcnow()

    existing = db.query(PostTripInspection).filter(PostTripInspection.trip_id == trip.id).first()
    if existing is not None:
        raise Conflict(f"Post-trip inspection already exists for trip {trip.id}")

    _transition(db, trip, (TripStatus.COMPLETED,), TripStatus.POST_TRIP_COMPLETED)

    deducted = sum(item.points_deducted for item in request.items)
    inspection = PostTripInspection(
        trip_id=trip.id,
        inspector_id=actor.user_id,
        inspection_date=now,
        journey_completion_verified=request.journey_completion_verified,
        total_distance_km=request.total_distance_km,
        total_score=deducted,
        risk_level=inspection_risk_level(deducted),
        status="completed",
        findings_summary=request.findings_summary
    )
    inspection.items = [InspectionItem(**item.model_dump()) for item in request.items]
    db.add(inspection)
    db.flush()

    tasks = []
    for item in inspection.items:
        if not item.requires_maintenance:
            continue
        days = MAINTENANCE_DUE_DAYS.get(item.maintenance_priority, MAINTENANCE_DUE_DAYS["low"])
        task = MaintenanceTask(
            trip_id=trip.id,
            inspection_item_id=item.id,
            description=item.notes or item.item_label,
            priority=item.maintenance_priority,
            due_date=(now + timedelta(days=days)).date(),
            status="scheduled"
        )
        db.add(task)
        tasks.append(task)

    record_audit(db, actor.user_id, "trip.post_trip", trip.id, {
        "inspection_points": deducted,
        "maintenance_tasks": len(tasks),
    })
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise Conflict(f"Post-trip inspection already exists for trip {trip.id}")

    logger.info("Post-trip inspection %s stored for trip %s (%d maintenance tasks)",
                inspection.id, trip.id, len(tasks))
    return {
        "status": trip.status,
        "inspection_id": inspection.id,
        "risk_level": inspection.risk_level,
        "maintenance_tasks_created": len(tasks),
    }


def finalize(db: Session, trip_id: int, actor: Actor) -> Dict:
    trip = get_trip(db, trip_id, actor, Action.TRIP_FINALIZE)
    _transition(db, trip, (TripStatus.POST_TRIP_COMPLETED,), TripStatus.FULLY_COMPLETED)
    record_audit(db, actor.user_id, "trip.finalize", trip.id)
    db.commit()
    logger.info("Trip %s fully completed", trip.id)
    return {"status": trip.status}


def recalculate(db: Session, trip_id: int, actor: Actor) -> Dict:
    """Explicit score/risk recomputation, valid in any state."""
    trip = get_trip(db, trip_id, actor, Action.TRIP_RECALCULATE)
    result = recompute_trip(db, trip)
    record_audit(db, actor.user_id, "trip.recalculate", trip.id, result)
    db.commit()
    return {"status": trip.status, **result}


def refresh_risk(db: Session, trip_id: int) -> Optional[str]:
    """Recompute a trip after an enforcement action; no actor involved."""
    trip = db.get(Trip, trip_id)
    if trip is None:
        return None
    recompute_trip(db, trip)
    db.commit()
    return trip.risk_level


def delete_trip(db: Session, trip_id: int, actor: Actor) -> Dict:
    """Delete a draft trip with its modules, items and failures."""
    trip = get_trip(db, trip_id, actor, Action.TRIP_DELETE)
    if trip.status != TripStatus.DRAFT:
        raise InvalidStateTransition(
            f"Trip {trip.id} can only be deleted while draft, not '{trip.status}'",
            current=trip.status, target="deleted"
        )

    db.query(Alert).filter(Alert.trip_id == trip.id).delete(synchronize_session=False)
    db.query(EnforcementAction).filter(EnforcementAction.trip_id == trip.id).delete(synchronize_session=False)
    db.delete(trip)
    record_audit(db, actor.user_id, "trip.delete", trip_id)
    db.commit()
    logger.info("Trip %s deleted by %s", trip_id, actor.user_id)
    return {"deleted": True, "trip_id": trip_id}
