import pytest
from datetime import datetime, timedelta, timezone
from fleetsafe.detection import (
    bucket_start,
    classify_speed,
    fatigue_alert_severity,
    ingest,
    rate_limiter
)
from fleetsafe.errors import InvalidState, NotFound, RateLimited
from fleetsafe.models import Alert, FatigueSample, GpsPoint, IncidentReport, SpeedViolation
from fleetsafe.ratelimit import RateLimiter
from fleetsafe.schemas import TelemetrySample
from conftest import DRIVER, NOW, OUTSIDER

def gps_sample(speed, limit=100.0, ts=NOW):
    return TelemetrySample(timestamp=ts, gps={"lat": -15.4, "lon": 28.3, "speed": speed, "speed_limit": limit})

class TestSpeedClassification:
    """Test speed severity banding."""

    def test_within_limit(self):
        assert classify_speed(100, 100) is None
        assert classify_speed(80, 100) is None

    def test_critical_overage(self):
        """135 in a 100 zone is a critical violation worth 5 points."""
        assert classify_speed(135, 100) == ("critical", 5)

    @pytest.mark.parametrize("speed,expected", [
        (100.5, ("minor", 1)),
        (110, ("minor", 1)),
        (110.1, ("major", 3)),
        (120, ("major", 3)),
        (120.1, ("critical", 5)),
    ])
    def test_band_boundaries(self, speed, expected):
        assert classify_speed(speed, 100) == expected

    def test_custom_bands(self):
        assert classify_speed(108, 100, minor_overage=5, major_overage=15) == ("major", 3)

class TestFatigueSeverity:
    """Test fatigue level to alert severity mapping."""

    @pytest.mark.parametrize("level,severity", [
        ("normal", None),
        ("caution", "info"),
        ("warning", "warning"),
        ("critical", "critical"),
    ])
    def test_mapping(self, level, severity):
        assert fatigue_alert_severity(level) == severity

class TestBucketStart:
    """Test wall-clock bucketing of sample timestamps."""

    def test_truncates_to_minute(self):
        assert bucket_start(datetime(2026, 3, 2, 10, 4, 59)) == datetime(2026, 3, 2, 10, 4)

    def test_boundary_samples_split(self):
        """Samples one second apart across a boundary land in different buckets."""
        assert bucket_start(datetime(2026, 3, 2, 10, 4, 59)) != bucket_start(datetime(2026, 3, 2, 10, 5, 0))

    def test_custom_width(self):
        assert bucket_start(datetime(2026, 3, 2, 10, 7, 30), width_seconds=300) == datetime(2026, 3, 2, 10, 5)

    @pytest.mark.parametrize("width", [0, -60])
    def test_non_positive_width_is_rejected(self, width):
        with pytest.raises(ValueError):
            bucket_start(datetime(2026, 3, 2, 10, 7, 30), width_seconds=width)

class TestIngest:
    """Test telemetry ingestion for an active trip."""

    def test_critical_speed_creates_violation(self, db, active_trip):
        result = ingest(db, active_trip.id, DRIVER, gps_sample(135), now=NOW)
        assert result["violation_created"] is True
        assert result["severity"] == "critical"
        assert result["points_deducted"] == 5
        violation = db.get(SpeedViolation, result["violation_id"])
        assert violation.bucket_start == NOW
        assert db.query(GpsPoint).filter(GpsPoint.trip_id == active_trip.id).count() == 1

    def test_speed_violations_do_not_raise_alerts(self, db, active_trip):
        result = ingest(db, active_trip.id, DRIVER, gps_sample(135), now=NOW)
        assert result["alert_created"] is False
        assert db.query(Alert).count() == 0

    def test_same_bucket_is_deduplicated(self, db, active_trip):
        ingest(db, active_trip.id, DRIVER, gps_sample(135, ts=NOW + timedelta(seconds=5)), now=NOW)
        result = ingest(db, active_trip.id, DRIVER, gps_sample(112, ts=NOW + timedelta(seconds=40)), now=NOW)
        assert result["violation_created"] is False
        assert result["duplicate"] is True
        assert db.query(SpeedViolation).count() == 1
        # Raw positions are still kept
        assert db.query(GpsPoint).count() == 2

    def test_next_bucket_creates_new_violation(self, db, active_trip):
        ingest(db, active_trip.id, DRIVER, gps_sample(135, ts=NOW), now=NOW)
        result = ingest(db, active_trip.id, DRIVER, gps_sample(135, ts=NOW + timedelta(minutes=1)), now=NOW)
        assert result["violation_created"] is True
        assert db.query(SpeedViolation).count() == 2

    def test_within_limit_is_not_duplicate(self, db, active_trip):
        result = ingest(db, active_trip.id, DRIVER, gps_sample(90), now=NOW)
        assert result["violation_created"] is False
        assert result["duplicate"] is False

    def test_aware_timestamp_is_normalised(self, db, active_trip):
        aware = datetime(2026, 3, 2, 12, 0, 30, tzinfo=timezone(timedelta(hours=2)))
        result = ingest(db, active_trip.id, DRIVER, gps_sample(135, ts=aware), now=NOW)
        assert db.get(SpeedViolation, result["violation_id"]).bucket_start == NOW

    def test_draft_trip_is_invalid_state(self, db, trip):
        with pytest.raises(InvalidState):
            ingest(db, trip.id, DRIVER, gps_sample(135), now=NOW)

    def test_other_org_gets_not_found(self, db, active_trip):
        with pytest.raises(NotFound):
            ingest(db, active_trip.id, OUTSIDER, gps_sample(135), now=NOW)

    def test_fatigue_warning_raises_alert(self, db, active_trip):
        sample = TelemetrySample(timestamp=NOW, fatigue={
            "hours_driven": 9.5, "fatigue_score": 72, "alert_level": "warning"
        })
        result = ingest(db, active_trip.id, DRIVER, sample, now=NOW)
        assert result["alert_created"] is True
        alert = db.get(Alert, result["alert_ids"][0])
        assert alert.alert_type == "fatigue_warning"
        assert alert.severity == "warning"
        assert alert.auto_generated is True
        assert db.query(FatigueSample).count() == 1

    def test_normal_fatigue_is_stored_silently(self, db, active_trip):
        sample = TelemetrySample(timestamp=NOW, fatigue={"hours_driven": 2})
        result = ingest(db, active_trip.id, DRIVER, sample, now=NOW)
        assert result["alert_created"] is False
        assert db.query(FatigueSample).count() == 1

    def test_fatal_incident_raises_emergency(self, db, active_trip):
        sample = TelemetrySample(timestamp=NOW, incident={
            "incident_type": "collision", "severity": "fatal", "lat": -15.4, "lon": 28.3
        })
        result = ingest(db, active_trip.id, DRIVER, sample, now=NOW)
        alert = db.get(Alert, result["alert_ids"][0])
        assert alert.severity == "emergency"
        assert alert.title == "Emergency: COLLISION"
        assert db.get(IncidentReport, result["incident_id"]).severity == "fatal"

    def test_minor_incident_has_no_alert(self, db, active_trip):
        sample = TelemetrySample(incident={"incident_type": "near_miss", "severity": "minor"})
        result = ingest(db, active_trip.id, DRIVER, sample, now=NOW)
        assert result["alert_created"] is False

class TestTelemetryRateLimit:
    """Test the per-actor, per-trip telemetry budget."""

    def test_excess_samples_are_rejected(self, db, active_trip):
        rate_limiter.configure(limit=2)
        ingest(db, active_trip.id, DRIVER, gps_sample(90), now=NOW)
        ingest(db, active_trip.id, DRIVER, gps_sample(90), now=NOW)
        with pytest.raises(RateLimited) as exc:
            ingest(db, active_trip.id, DRIVER, gps_sample(135), now=NOW)
        assert exc.value.retry_after >= 1
        # Rejected samples are not processed
        assert db.query(SpeedViolation).count() == 0

    def test_replay_bypasses_budget(self, db, active_trip):
        rate_limiter.configure(limit=1)
        ingest(db, active_trip.id, DRIVER, gps_sample(90), now=NOW)
        result = ingest(db, active_trip.id, DRIVER, gps_sample(135), now=NOW, rate_limited=False)
        assert result["violation_created"] is True

class TestRateLimiter:
    """Test the fixed-window limiter directly."""

    def test_allows_up_to_limit(self):
        limiter = RateLimiter(limit=3, window_seconds=60)
        for _ in range(3):
            limiter.hit("k", now=100.0)
        assert limiter.remaining("k", now=100.0) == 0

    def test_retry_after_counts_to_window_end(self):
        limiter = RateLimiter(limit=1, window_seconds=60)
        limiter.hit("k", now=100.0)
        with pytest.raises(RateLimited) as exc:
            limiter.hit("k", now=130.2)
        assert exc.value.retry_after == 30

    def test_window_resets(self):
        limiter = RateLimiter(limit=1, window_seconds=60)
        limiter.hit("k", now=100.0)
        limiter.hit("k", now=160.0)
        assert limiter.remaining("k", now=160.0) == 0

    def test_keys_are_independent(self):
        limiter = RateLimiter(limit=1, window_seconds=60)
        limiter.hit(("driver-1", 1), now=0.0)
        limiter.hit(("driver-1", 2), now=0.0)
        assert limiter.remaining(("driver-2", 1), now=0.0) == 1

    def test_uses_injected_clock(self):
        ticks = iter([0.0, 1.0])
        limiter = RateLimiter(limit=1, window_seconds=60, clock=lambda: next(ticks))
        limiter.hit("k")
        with pytest.raises(RateLimited):
            limiter.hit("k")
