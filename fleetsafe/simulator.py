import logging
import math
from typing import Dict, Optional, Tuple
import pandas as pd
from sqlalchemy.orm import Session
from .detection import ingest
from .errors import ValidationError
from .permissions import Actor
from .schemas import GpsReading, TelemetrySample

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ("time", "latitude", "longitude")

EARTH_RADIUS_KM = 6371.0

def haversine_km(origin: Tuple[float, float], destination: Tuple[float, float]) -> float:
    """Great-circle distance in km between two (lat, lon) points."""
    lat1, lon1 = map(math.radians, origin)
    lat2, lon2 = map(math.radians, destination)
    h = (math.sin((lat2 - lat1) / 2) ** 2
         + math.cos(lat1) * math.cos(lat2) * math.sin((lon2 - lon1) / 2) ** 2)
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(h))

def segment_speed_kph(prev, cur) -> float:
    """Average speed between two track rows; 0 when no time has passed."""
    hours = (cur.time - prev.time).total_seconds() / 3600
    if hours <= 0:
        return 0.0
    return haversine_km((prev.latitude, prev.longitude), (cur.latitude, cur.longitude)) / hours

def load_track(csv_path: str) -> pd.DataFrame:
    """Read a recorded GPS track sorted by time, with a speed_kph column."""
    df = pd.read_csv(csv_path)
    missing = [c for c in REQUIRED_COLUMNS if c not in df.columns]
    if missing:
        raise ValidationError(f"Track {csv_path} is missing columns: {', '.join(missing)}")

    df['time'] = pd.to_datetime(df['time'], utc=True).dt.tz_localize(None)
    df = df.sort_values('time').reset_index(drop=True)

    if 'speed_kph' not in df.columns:
        speeds = [0.0]
        for prev, cur in zip(df.iloc[:-1].itertuples(), df.iloc[1:].itertuples()):
            speeds.append(segment_speed_kph(prev, cur))
        df['speed_kph'] = speeds[:len(df)]

    return df

def replay_csv(
    db: Session,
    trip_id: int,
    csv_path: str,
    actor: Actor,
    speed_limit: Optional[float] = None
) -> Dict:
    """
    Feed a recorded GPS track through telemetry ingestion.

    Rows carry their own ``speed_limit`` column when present, otherwise
    ``speed_limit`` applies to the whole track. The replay is a batch
    import, so the per-request telemetry budget does not apply.
    """
    df = load_track(csv_path)
    logger.info("Replaying %d points from %s into trip %s", len(df), csv_path, trip_id)

    summary = {
        "points": 0,
        "violations_created": 0,
        "duplicates": 0,
        "alerts_created": 0,
    }

    for _, row in df.iterrows():
        limit = row['speed_limit'] if 'speed_limit' in df.columns and pd.notna(row['speed_limit']) else speed_limit
        sample = TelemetrySample(
            timestamp=row['time'].to_pydatetime(),
            gps=GpsReading(
                lat=float(row['latitude']),
                lon=float(row['longitude']),
                speed=float(row['speed_kph']),
                speed_limit=float(limit) if limit else None
            )
        )
        result = ingest(db, trip_id, actor, sample, rate_limited=False)

        summary["points"] += 1
        summary["violations_created"] += int(result["violation_created"])
        summary["duplicates"] += int(result["duplicate"])
        summary["alerts_created"] += len(result["alert_ids"])

        if summary["points"] % 100 == 0:
            logger.debug("Replayed %d/%d points for trip %s", summary["points"], len(df), trip_id)

    logger.info("Replay into trip %s finished: %s", trip_id, summary)
    return summary
