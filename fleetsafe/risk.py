"""
Multi-phase risk breakdown.

Each phase (pre-trip checklist, in-trip telemetry, post-trip inspection)
accumulates risk points; the total weights them 40/40/20. Higher is worse,
the opposite direction of the aggregate compliance score.

This is a read-only report. It never writes the trip's persisted risk
level, which belongs to the lifecycle recomputation path.
"""

from typing import Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from .checklist import CRITICAL_ITEM_WEIGHTS, MODULE_RISK_MULTIPLIERS, module_key_for_name
from .lifecycle import get_trip
from .models import Alert, FatigueSample, IncidentReport, PostTripInspection, SpeedViolation, Trip, TripModule, TripStatus
from .permissions import Actor

PHASE_WEIGHTS = {"pre_trip": 0.4, "in_trip": 0.4, "post_trip": 0.2}

INCIDENT_POINTS = {"fatal": 10, "critical": 10, "major": 5, "minor": 2}
ALERT_POINTS = {"emergency": 5, "critical": 3, "warning": 1, "info": 0.5}
MAINTENANCE_MULTIPLIERS = {"urgent": 3, "high": 2, "medium": 1, "low": 0.5}
MISSING_INSPECTION_POINTS = 15

# Statuses from which a post-trip inspection is expected
POST_TRIP_DUE = (
    TripStatus.COMPLETED, TripStatus.POST_TRIP_COMPLETED, TripStatus.FULLY_COMPLETED
)


def _factor(category: str, weight: float, score: float, impact: str, description: str) -> Dict:
    return {
        "category": category,
        "weight": weight,
        "score": score,
        "impact": impact,
        "description": description,
    }


def _item_failed(item) -> bool:
    value = (item.value or "").strip().lower()
    if item.field_type.startswith("pass_fail"):
        return value == "fail"
    if item.field_type == "yes_no":
        return value == "no"
    return False


def _item_risk(item) -> float:
    if item.field_type == "number":
        try:
            points = max(0.0, float(item.value or 0))
        except ValueError:
            points = 0.0
    elif _item_failed(item):
        points = item.points or 1
    else:
        points = 0
    return points * CRITICAL_ITEM_WEIGHTS.get(item.label, 1.0)


def module_risk(module: TripModule) -> Tuple[int, List[Dict]]:
    """Risk points of one checklist module from its critical items."""
    critical_items = [item for item in module.items if item.critical]
    multiplier = MODULE_RISK_MULTIPLIERS.get(module_key_for_name(module.name), 1.0)
    score = round(sum(_item_risk(item) for item in critical_items) * multiplier)

    factors = []
    failures = [item for item in critical_items if _item_failed(item)]
    if failures:
        factors.append(_factor(
            "Critical Failures", 3.0, len(failures) * 5,
            "critical" if len(failures) > 2 else "high",
            f"{len(failures)} critical item failures in {module.name}"
        ))
    return score, factors


def pre_trip_risk(trip: Trip) -> Tuple[float, List[Dict]]:
    if not trip.modules:
        return 0, []

    score = 0
    factors = []
    for module in trip.modules:
        module_score, module_factors = module_risk(module)
        score += module_score
        factors.extend(module_factors)

    complete = sum(1 for m in trip.modules if m.status == "complete")
    completion = complete / len(trip.modules)
    if completion < 1.0:
        factors.append(_factor(
            "Pre-trip Completion", 2.0, round((1.0 - completion) * 20, 2),
            "high" if completion < 0.8 else "medium",
            f"{round((1.0 - completion) * 100)}% of pre-trip modules incomplete"
        ))
    return score, factors


def fatigue_risk(sample: FatigueSample) -> Tuple[float, str]:
    score, impact = {
        "critical": (15, "critical"),
        "warning": (8, "high"),
        "caution": (4, "medium"),
    }.get(sample.alert_level, (0, "low"))

    hours = sample.hours_driven or 0
    if hours > 12:
        score += 10
        impact = "critical"
    elif hours > 8:
        score += 5
        impact = "critical" if impact == "critical" else "high"
    return score, impact


def _severity_impact(score: float, critical_above: float = 10, high_above: float = 5) -> str:
    if score > critical_above:
        return "critical"
    if score > high_above:
        return "high"
    return "medium"


def in_trip_risk(db: Session, trip: Trip) -> Tuple[float, List[Dict]]:
    score = 0
    factors = []

    violations = db.query(SpeedViolation).filter(SpeedViolation.trip_id == trip.id).all()
    if violations:
        points = sum(v.points_deducted or 0 for v in violations)
        score += points
        factors.append(_factor(
            "Speed Violations", 3.0, points, _severity_impact(points),
            f"{len(violations)} speed violations detected ({points} points)"
        ))

    latest = db.query(FatigueSample).filter(
        FatigueSample.trip_id == trip.id
    ).order_by(FatigueSample.timestamp.desc(), FatigueSample.id.desc()).first()
    if latest is not None:
        points, impact = fatigue_risk(latest)
        if points > 0:
            score += points
            factors.append(_factor(
                "Driver Fatigue", 2.5, points, impact,
                f"Fatigue level: {latest.alert_level} (Score: {latest.fatigue_score})"
            ))

    incidents = db.query(IncidentReport).filter(IncidentReport.trip_id == trip.id).all()
    if incidents:
        points = sum(INCIDENT_POINTS.get(i.severity, 1) for i in incidents)
        score += points
        factors.append(_factor(
            "In-trip Incidents", 4.0, points, _severity_impact(points),
            f"{len(incidents)} incidents reported during trip"
        ))

    alerts = db.query(Alert).filter(
        Alert.trip_id == trip.id,
        Alert.acknowledged.is_(False)
    ).all()
    if alerts:
        points = sum(ALERT_POINTS.get(a.severity, 0.5) for a in alerts)
        score += points
        factors.append(_factor(
            "Unacknowledged Alerts", 2.0, points, "high" if points > 5 else "medium",
            f"{len(alerts)} unacknowledged alerts"
        ))

    return score, factors


def post_trip_risk(db: Session, trip: Trip) -> Tuple[float, List[Dict]]:
    inspection: Optional[PostTripInspection] = db.query(PostTripInspection).filter(
        PostTripInspection.trip_id == trip.id
    ).first()

    if inspection is None:
        if trip.status not in POST_TRIP_DUE:
            return 0, []
        return MISSING_INSPECTION_POINTS, [_factor(
            "Post-trip Inspection", 3.0, MISSING_INSPECTION_POINTS, "high",
            "Post-trip inspection not conducted"
        )]

    score = inspection.total_score or 0
    factors = []
    flagged = [item for item in inspection.items if item.requires_maintenance]
    if flagged:
        points = sum(
            item.points_deducted * MAINTENANCE_MULTIPLIERS.get(item.maintenance_priority, 0.5)
            for item in flagged
        )
        score += points
        factors.append(_factor(
            "Maintenance Requirements", 2.0, points, "high" if points > 10 else "medium",
            f"{len(flagged)} maintenance items required"
        ))
    return score, factors


def breakdown_risk_level(total: float) -> str:
    if total <= 10:
        return "low"
    if total <= 25:
        return "medium"
    if total <= 50:
        return "high"
    return "critical"


def compliance_status(pre: float, in_trip: float, post: float, level: str) -> str:
    if level == "critical" or in_trip > 30:
        return "non_compliant"
    if level == "high" or pre > 15 or post > 10:
        return "conditional"
    return "compliant"


def risk_breakdown(db: Session, trip_id: int, actor: Actor) -> Dict:
    """Weighted pre/in/post-trip risk report for a trip."""
    trip = get_trip(db, trip_id, actor)

    pre, pre_factors = pre_trip_risk(trip)
    in_trip, in_factors = in_trip_risk(db, trip)
    post, post_factors = post_trip_risk(db, trip)

    total = round(
        pre * PHASE_WEIGHTS["pre_trip"]
        + in_trip * PHASE_WEIGHTS["in_trip"]
        + post * PHASE_WEIGHTS["post_trip"]
    )
    level = breakdown_risk_level(total)

    return {
        "trip_id": trip.id,
        "pre_trip_score": pre,
        "in_trip_score": in_trip,
        "post_trip_score": post,
        "total_score": total,
        "risk_level": level,
        "compliance_status": compliance_status(pre, in_trip, post, level),
        "factors": pre_factors + in_factors + post_factors,
    }
