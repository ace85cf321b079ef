import pytest
from datetime import datetime
from types import SimpleNamespace
from fleetsafe.errors import InvalidState, ValidationError
from fleetsafe.models import GpsPoint, SpeedViolation
from fleetsafe.simulator import haversine_km, load_track, replay_csv, segment_speed_kph
from conftest import DRIVER

TRACK = """time,latitude,longitude,speed_kph
2026-03-02T10:00:40Z,-15.42,28.30,125
2026-03-02T10:00:05Z,-15.40,28.30,90
2026-03-02T10:00:20Z,-15.41,28.30,130
2026-03-02T10:01:10Z,-15.43,28.30,112
"""

def write_track(tmp_path, text=TRACK):
    path = tmp_path / "track.csv"
    path.write_text(text)
    return str(path)

class TestGeometry:
    """Test distance and speed helpers."""

    def test_one_degree_of_latitude(self):
        assert haversine_km((0, 0), (1, 0)) == pytest.approx(111.19, abs=0.01)

    def test_same_point(self):
        assert haversine_km((-15.4, 28.3), (-15.4, 28.3)) == 0

    def test_speed(self):
        t1 = datetime(2026, 3, 2, 10, 0, 0)
        t2 = datetime(2026, 3, 2, 11, 0, 0)
        start = SimpleNamespace(latitude=0, longitude=0, time=t1)
        end = SimpleNamespace(latitude=1, longitude=0, time=t2)
        assert segment_speed_kph(start, end) == pytest.approx(111.19, abs=0.01)

    def test_zero_elapsed_time(self):
        t = datetime(2026, 3, 2, 10, 0, 0)
        start = SimpleNamespace(latitude=0, longitude=0, time=t)
        end = SimpleNamespace(latitude=1, longitude=0, time=t)
        assert segment_speed_kph(start, end) == 0.0

class TestLoadTrack:
    """Test reading recorded GPS tracks."""

    def test_rows_sorted_by_time(self, tmp_path):
        df = load_track(write_track(tmp_path))
        assert list(df['speed_kph']) == [90, 130, 125, 112]
        assert df['time'].iloc[0] == datetime(2026, 3, 2, 10, 0, 5)

    def test_speed_derived_when_missing(self, tmp_path):
        path = write_track(tmp_path, "time,latitude,longitude\n"
                                     "2026-03-02T10:00:00Z,0.0,0.0\n"
                                     "2026-03-02T11:00:00Z,1.0,0.0\n")
        df = load_track(path)
        assert df['speed_kph'].iloc[0] == 0.0
        assert df['speed_kph'].iloc[1] == pytest.approx(111.19, abs=0.01)

    def test_missing_columns(self, tmp_path):
        path = write_track(tmp_path, "time,lat,lon\n2026-03-02T10:00:00Z,0,0\n")
        with pytest.raises(ValidationError):
            load_track(path)

class TestReplay:
    """Test replaying a track into an active trip."""

    def test_replay_detects_and_deduplicates(self, db, active_trip, tmp_path):
        summary = replay_csv(db, active_trip.id, write_track(tmp_path), DRIVER, speed_limit=100)
        assert summary == {
            "points": 4,
            "violations_created": 2,
            "duplicates": 1,
            "alerts_created": 0,
        }
        assert db.query(GpsPoint).count() == 4
        severities = sorted(v.severity for v in db.query(SpeedViolation))
        assert severities == ["critical", "major"]

    def test_per_row_speed_limit(self, db, active_trip, tmp_path):
        path = write_track(tmp_path, "time,latitude,longitude,speed_kph,speed_limit\n"
                                     "2026-03-02T10:00:00Z,0,0,70,60\n"
                                     "2026-03-02T10:01:00Z,0,0,70,80\n")
        summary = replay_csv(db, active_trip.id, path, DRIVER, speed_limit=50)
        assert summary["violations_created"] == 1

    def test_no_limit_means_no_violations(self, db, active_trip, tmp_path):
        summary = replay_csv(db, active_trip.id, write_track(tmp_path), DRIVER)
        assert summary["violations_created"] == 0
        assert summary["points"] == 4

    def test_replay_into_draft_trip(self, db, trip, tmp_path):
        with pytest.raises(InvalidState):
            replay_csv(db, trip.id, write_track(tmp_path), DRIVER, speed_limit=100)
