from typing import Dict, Optional
from sqlalchemy.orm import Session
from .models import AuditLog
from .db import utcnow

def record_audit(
    db: Session,
    user_id: Optional[str],
    action: str,
    trip_id: Optional[int] = None,
    meta: Dict = None
) -> AuditLog:
    """Add an audit entry to the current unit of work; the caller commits."""
    entry = AuditLog(
        user_id=user_id,
        trip_id=trip_id,
        action=action,
        meta=meta or {},
        created_at=utcnow()
    )
    db.add(entry)
    return entry

def get_trip_audit(db: Session, trip_id: int, limit: int = 100):
    """Get audit entries for a trip, newest first."""
    return db.query(AuditLog).filter(
        AuditLog.trip_id == trip_id
    ).order_by(AuditLog.id.desc()).limit(limit).all()
