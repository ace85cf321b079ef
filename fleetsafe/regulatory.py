"""
Regulatory submission through an injected gateway.

The gateway is any object with ``submit(payload) -> SubmissionResult``.
It is called exactly once per submission; a failure is stored on the
submission record and reported as UpstreamFailure, never retried here.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional, Protocol

from sqlalchemy.orm import Session

from .audit import record_audit
from .critical import open_failures
from .db import utcnow
from .errors import Conflict, InvalidStateTransition, UpstreamFailure
from .lifecycle import critical_action_count, get_trip
from .models import RegulatorySubmission, SpeedViolation, Trip, TripStatus
from .permissions import Action, Actor
from .schemas import RegulatorySubmissionRequest

logger = logging.getLogger(__name__)


@dataclass
class SubmissionResult:
    success: bool
    reference_number: Optional[str] = None
    error: Optional[str] = None


class RegulatoryGateway(Protocol):
    def submit(self, payload: Dict) -> SubmissionResult:
        ...


class UnconfiguredGateway:
    """Gateway used when no regulator integration is wired in; always refuses."""

    def submit(self, payload: Dict) -> SubmissionResult:
        return SubmissionResult(success=False, error="No regulatory gateway configured")


default_gateway = UnconfiguredGateway()


def build_payload(db: Session, trip: Trip, submission_type: str) -> Dict:
    violations = db.query(SpeedViolation).filter(SpeedViolation.trip_id == trip.id).count()
    return {
        "submission_type": submission_type,
        "trip_id": trip.id,
        "driver_id": trip.driver_id,
        "org_id": trip.org_id,
        "trip_date": trip.trip_date.isoformat() if trip.trip_date else None,
        "route": trip.route,
        "vehicle_type": trip.vehicle_type,
        "status": trip.status,
        "aggregate_score": trip.aggregate_score,
        "risk_level": trip.risk_level,
        "critical_override": trip.critical_override,
        "speed_violations": violations,
        "open_critical_failures": len(open_failures(db, trip.id)),
        "critical_actions": critical_action_count(db, trip.id),
    }


def submit_to_regulator(
    db: Session,
    trip_id: int,
    actor: Actor,
    request: RegulatorySubmissionRequest,
    gateway: Optional[RegulatoryGateway] = None,
    now: Optional[datetime] = None
) -> Dict:
    """Send a trip's compliance payload to the regulator and persist the verdict."""
    trip = get_trip(db, trip_id, actor, Action.REGULATORY_SUBMIT)
    if trip.status == TripStatus.DRAFT:
        raise InvalidStateTransition(
            f"Trip {trip.id} must be submitted before it can be reported",
            current=trip.status, target="regulatory_submission"
        )

    accepted = db.query(RegulatorySubmission).filter(
        RegulatorySubmission.trip_id == trip.id,
        RegulatorySubmission.submission_type == request.submission_type,
        RegulatorySubmission.status == "submitted"
    ).first()
    if accepted is not None:
        raise Conflict(f"Trip {trip.id} already has an accepted {request.submission_type} submission")

    gateway = gateway or default_gateway
    submission = RegulatorySubmission(
        trip_id=trip.id,
        submission_type=request.submission_type,
        payload=build_payload(db, trip, request.submission_type),
        status="pending",
        submitted_by=actor.user_id,
        submitted_at=now or utcnow()
    )
    db.add(submission)
    db.commit()

    try:
        result = gateway.submit(dict(submission.payload))
    except Exception as e:
        logger.exception("Regulatory gateway raised for submission %s", submission.id)
        result = SubmissionResult(success=False, error=str(e) or type(e).__name__)

    if result.success:
        submission.status = "submitted"
        submission.reference_number = result.reference_number
    else:
        submission.status = "rejected"
        submission.error = result.error or "Submission rejected"

    record_audit(db, actor.user_id, "regulatory.submit", trip.id, {
        "submission_id": submission.id,
        "status": submission.status,
        "reference_number": submission.reference_number,
    })
    db.commit()

    if not result.success:
        logger.warning("Regulatory submission %s for trip %s failed: %s",
                       submission.id, trip.id, submission.error)
        raise UpstreamFailure(f"Regulatory submission failed: {submission.error}")

    logger.info("Regulatory submission %s accepted with reference %s", submission.id, submission.reference_number)
    return {
        "submission_id": submission.id,
        "status": submission.status,
        "reference_number": submission.reference_number,
    }
