import logging
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from .alerts import raise_alert
from .config import config
from .db import to_utc_naive, utcnow
from .errors import InvalidStateTransition
from .lifecycle import get_trip
from .models import FatigueSample, GpsPoint, IncidentReport, SpeedViolation, Trip, TripStatus
from .permissions import Action, Actor
from .ratelimit import RateLimiter
from .schemas import FatigueReading, GpsReading, IncidentReading, TelemetrySample

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1)

# Points deducted per speed severity band
SPEED_POINTS = {"minor": 1, "major": 3, "critical": 5}

FATIGUE_ALERT_SEVERITY = {
    "normal": "info",
    "caution": "info",
    "warning": "warning",
    "critical": "critical",
}

EMERGENCY_INCIDENT_SEVERITIES = ("critical", "fatal")

# Shared telemetry budget per (user, trip)
rate_limiter = RateLimiter(config.telemetry_rate_limit, config.telemetry_rate_window_seconds)

def classify_speed(
    recorded_kph: float,
    limit_kph: float,
    minor_overage: Optional[float] = None,
    major_overage: Optional[float] = None
) -> Optional[Tuple[str, int]]:
    """Return (severity, points_deducted) for a speed sample, or None if within the limit."""
    minor_overage = config.minor_overage_kph if minor_overage is None else minor_overage
    major_overage = config.major_overage_kph if major_overage is None else major_overage

    overage = recorded_kph - limit_kph
    if overage <= 0:
        return None
    if overage <= minor_overage:
        severity = "minor"
    elif overage <= major_overage:
        severity = "major"
    else:
        severity = "critical"
    return severity, SPEED_POINTS[severity]

def fatigue_alert_severity(alert_level: str) -> Optional[str]:
    """Alert severity for a fatigue level; None when no alert is due."""
    if alert_level == "normal":
        return None
    return FATIGUE_ALERT_SEVERITY.get(alert_level, "info")

def bucket_start(ts: datetime, width_seconds: Optional[int] = None) -> datetime:
    """
    Truncate a naive UTC timestamp to the start of its wall-clock bucket.

    With the default 60 s width this is the start of the minute. Samples
    that straddle a boundary land in different buckets, so two violations a
    second apart may both be kept; that imprecision is accepted.
    """
    width = config.violation_bucket_seconds if width_seconds is None else width_seconds
    if width <= 0:
        raise ValueError(f"Bucket width must be positive, got {width}")
    seconds = int((ts - _EPOCH).total_seconds())
    return _EPOCH + timedelta(seconds=seconds - seconds % width)

def _record_violation(db: Session, trip: Trip, gps: GpsReading, ts: datetime) -> Optional[SpeedViolation]:
    classification = classify_speed(gps.speed, gps.speed_limit)
    if classification is None:
        return None

    severity, points = classification
    violation = SpeedViolation(
        trip_id=trip.id,
        driver_id=trip.driver_id,
        lat=gps.lat,
        lon=gps.lon,
        recorded_speed=gps.speed,
        speed_limit=gps.speed_limit,
        violation_type=gps.violation_type,
        severity=severity,
        points_deducted=points,
        violation_timestamp=ts,
        bucket_start=bucket_start(ts)
    )
    db.add(violation)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.debug("Speed violation already recorded for trip %s in bucket %s", trip.id, bucket_start(ts))
        return None

    logger.info("Speed violation %s on trip %s: %.1f in %.1f (%s)",
                violation.id, trip.id, gps.speed, gps.speed_limit, severity)
    return violation

def _handle_gps(db: Session, trip: Trip, gps: GpsReading, ts: datetime, result: Dict):
    db.add(GpsPoint(
        trip_id=trip.id,
        driver_id=trip.driver_id,
        lat=gps.lat,
        lon=gps.lon,
        speed_kph=gps.speed,
        heading=gps.heading,
        timestamp=ts
    ))
    db.commit()

    if gps.speed is None or gps.speed_limit is None:
        return

    violation = _record_violation(db, trip, gps, ts)
    if violation is not None:
        result["violation_created"] = True
        result["violation_id"] = violation.id
        result["severity"] = violation.severity
        result["points_deducted"] = violation.points_deducted
    elif classify_speed(gps.speed, gps.speed_limit) is not None:
        result["duplicate"] = True

def _handle_fatigue(db: Session, trip: Trip, fatigue: FatigueReading, ts: datetime, now: datetime, result: Dict):
    db.add(FatigueSample(
        trip_id=trip.id,
        driver_id=trip.driver_id,
        hours_driven=fatigue.hours_driven,
        hours_on_duty=fatigue.hours_on_duty,
        rest_hours=fatigue.rest_hours,
        fatigue_score=fatigue.fatigue_score,
        alert_level=fatigue.alert_level,
        recommendation=fatigue.recommendation,
        timestamp=ts
    ))
    db.commit()

    severity = fatigue_alert_severity(fatigue.alert_level)
    if severity is None:
        return

    score = "n/a" if fatigue.fatigue_score is None else fatigue.fatigue_score
    alert = raise_alert(
        db, trip,
        alert_type="fatigue_warning",
        severity=severity,
        title=f"Fatigue {fatigue.alert_level.capitalize()}",
        message=fatigue.recommendation or f"Fatigue level: {fatigue.alert_level} (Score: {score})",
        timestamp=ts,
        now=now
    )
    result["alert_created"] = True
    result["alert_ids"].append(alert.id)

def _handle_incident(db: Session, trip: Trip, incident: IncidentReading, ts: datetime, now: datetime, result: Dict):
    report = IncidentReport(
        trip_id=trip.id,
        driver_id=trip.driver_id,
        incident_type=incident.incident_type,
        severity=incident.severity,
        lat=incident.lat,
        lon=incident.lon,
        description=incident.description,
        incident_timestamp=ts
    )
    db.add(report)
    db.commit()
    result["incident_id"] = report.id

    if incident.severity not in EMERGENCY_INCIDENT_SEVERITIES:
        return

    alert = raise_alert(
        db, trip,
        alert_type="emergency",
        severity="emergency",
        title=f"Emergency: {incident.incident_type.replace('_', ' ').upper()}",
        message=incident.description or f"{incident.severity} incident reported",
        lat=incident.lat,
        lon=incident.lon,
        timestamp=ts,
        now=now
    )
    result["alert_created"] = True
    result["alert_ids"].append(alert.id)

def ingest(
    db: Session,
    trip_id: int,
    actor: Actor,
    sample: TelemetrySample,
    now: Optional[datetime] = None,
    rate_limited: bool = True
) -> Dict:
    """
    Process one telemetry sample for an active trip.

    Raw readings are stored; speed overages become at most one violation per
    trip per bucket (a repeat in the same bucket is a silent no-op); fatigue
    and serious incidents raise alerts.
    """
    trip = get_trip(db, trip_id, actor, Action.TELEMETRY_INGEST)
    if trip.status not in TripStatus.ACTIVE:
        raise InvalidStateTransition(
            f"Trip {trip.id} does not accept telemetry while '{trip.status}'",
            current=trip.status, target="telemetry"
        )

    if rate_limited:
        rate_limiter.hit((actor.user_id, trip.id))

    now = now or utcnow()
    ts = to_utc_naive(sample.timestamp) if sample.timestamp else now

    result = {
        "trip_id": trip.id,
        "violation_created": False,
        "violation_id": None,
        "severity": None,
        "points_deducted": 0,
        "duplicate": False,
        "alert_created": False,
        "alert_ids": [],
    }

    if sample.gps is not None:
        _handle_gps(db, trip, sample.gps, ts, result)
    if sample.fatigue is not None:
        _handle_fatigue(db, trip, sample.fatigue, ts, now, result)
    if sample.incident is not None:
        _handle_incident(db, trip, sample.incident, ts, now, result)

    return result
