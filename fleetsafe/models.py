from sqlalchemy import (
    Column, Integer, String, Float, Date, DateTime, Boolean, Text, ForeignKey, JSON,
    Index, UniqueConstraint, text
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()


class TripStatus:
    DRAFT = "draft"
    SUBMITTED = "submitted"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    POST_TRIP_COMPLETED = "post_trip_completed"
    FULLY_COMPLETED = "fully_completed"

    # Trips watched by telemetry ingestion and enforcement sweeps
    ACTIVE = (SUBMITTED, UNDER_REVIEW, IN_PROGRESS)
    # Trips whose modules and items may be edited
    EDITABLE = (DRAFT, UNDER_REVIEW)


class Trip(Base):
    __tablename__ = "trips"
    id = Column(Integer, primary_key=True)
    driver_id = Column(String(128), nullable=False, index=True)
    org_id = Column(String(128), nullable=False, index=True)
    trip_date = Column(Date)
    route = Column(String(255))
    vehicle_type = Column(String(64))
    status = Column(String(32), nullable=False, default=TripStatus.DRAFT, index=True)
    aggregate_score = Column(Integer)
    risk_level = Column(String(16))
    has_critical_failures = Column(Boolean, nullable=False, default=False)
    critical_override = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    modules = relationship(
        "TripModule", back_populates="trip", cascade="all, delete-orphan",
        order_by="TripModule.step"
    )
    critical_failures = relationship("CriticalFailure", back_populates="trip", cascade="all, delete-orphan")
    overrides = relationship("CriticalOverride", back_populates="trip", cascade="all, delete-orphan")


class TripModule(Base):
    __tablename__ = "trip_modules"
    id = Column(Integer, primary_key=True)
    trip_id = Column(Integer, ForeignKey("trips.id"), nullable=False, index=True)
    step = Column(Integer, nullable=False)
    name = Column(String(255), nullable=False)
    score = Column(Integer, nullable=False, default=0)
    max_score = Column(Integer, nullable=False, default=0)
    risk_level = Column(String(16))
    status = Column(String(16), nullable=False, default="incomplete")

    trip = relationship("Trip", back_populates="modules")
    items = relationship("ModuleItem", back_populates="module", cascade="all, delete-orphan",
                         order_by="ModuleItem.id")


class ModuleItem(Base):
    __tablename__ = "module_items"
    id = Column(Integer, primary_key=True)
    module_id = Column(Integer, ForeignKey("trip_modules.id"), nullable=False, index=True)
    label = Column(String(255), nullable=False)
    field_type = Column(String(32), nullable=False)
    critical = Column(Boolean, nullable=False, default=False)
    points = Column(Integer, nullable=False, default=0)
    value = Column(String(255))
    remarks = Column(Text)

    module = relationship("TripModule", back_populates="items")


class CriticalFailure(Base):
    __tablename__ = "critical_failures"
    id = Column(Integer, primary_key=True)
    trip_id = Column(Integer, ForeignKey("trips.id"), nullable=False, index=True)
    module_item_id = Column(Integer, ForeignKey("module_items.id"), nullable=False)
    description = Column(String(512))
    points = Column(Integer, nullable=False, default=0)
    resolved = Column(Boolean, nullable=False, default=False)
    resolved_at = Column(DateTime)
    resolved_by = Column(String(128))
    created_at = Column(DateTime, nullable=False)

    trip = relationship("Trip", back_populates="critical_failures")
    item = relationship("ModuleItem")

    __table_args__ = (
        # At most one open failure per item
        Index(
            "uq_open_critical_failure_per_item", "module_item_id", unique=True,
            sqlite_where=text("resolved = 0"),
            postgresql_where=text("resolved = false"),
        ),
    )


class CriticalOverride(Base):
    __tablename__ = "critical_overrides"
    id = Column(Integer, primary_key=True)
    trip_id = Column(Integer, ForeignKey("trips.id"), nullable=False, index=True)
    reviewer_id = Column(String(128), nullable=False)
    reviewer_role = Column(String(32), nullable=False)
    note = Column(Text, nullable=False)
    failure_ids = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, nullable=False)

    trip = relationship("Trip", back_populates="overrides")


class EnforcementRule(Base):
    __tablename__ = "enforcement_rules"
    id = Column(Integer, primary_key=True)
    org_id = Column(String(128), index=True)  # NULL means global
    rule_name = Column(String(255), nullable=False)
    rule_type = Column(String(64), nullable=False)
    threshold_value = Column(Float, nullable=False)
    threshold_unit = Column(String(32))
    action_triggered = Column(String(128), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    applies_to_vehicle_types = Column(JSON, nullable=False, default=list)
    applies_to_driver_roles = Column(JSON, nullable=False, default=list)
    created_by = Column(String(128))
    created_at = Column(DateTime, server_default=func.now())


class EnforcementAction(Base):
    __tablename__ = "enforcement_actions"
    id = Column(Integer, primary_key=True)
    rule_id = Column(Integer, ForeignKey("enforcement_rules.id"))
    trip_id = Column(Integer, ForeignKey("trips.id"), nullable=False, index=True)
    driver_id = Column(String(128))
    violation_type = Column(String(64), nullable=False)
    violation_value = Column(Float)
    threshold_value = Column(Float)
    action_taken = Column(String(128), nullable=False)
    action_severity = Column(String(16), nullable=False)
    automated = Column(Boolean, nullable=False, default=False)
    executed_by = Column(String(128))
    execution_timestamp = Column(DateTime, nullable=False)
    action_result = Column(Text)
    escalation_level = Column(Integer, nullable=False, default=1)
    source_ref = Column(String(128))

    __table_args__ = (
        UniqueConstraint("rule_id", "trip_id", "source_ref", name="uq_action_per_source"),
    )


class GpsPoint(Base):
    __tablename__ = "gps_tracking"
    id = Column(Integer, primary_key=True)
    trip_id = Column(Integer, ForeignKey("trips.id"), nullable=False, index=True)
    driver_id = Column(String(128))
    lat = Column(Float)
    lon = Column(Float)
    speed_kph = Column(Float)
    heading = Column(Float)
    timestamp = Column(DateTime, nullable=False)


class SpeedViolation(Base):
    __tablename__ = "speed_violations"
    id = Column(Integer, primary_key=True)
    trip_id = Column(Integer, ForeignKey("trips.id"), nullable=False, index=True)
    driver_id = Column(String(128))
    lat = Column(Float)
    lon = Column(Float)
    recorded_speed = Column(Float, nullable=False)
    speed_limit = Column(Float, nullable=False)
    violation_type = Column(String(32))
    severity = Column(String(16), nullable=False)
    points_deducted = Column(Integer, nullable=False)
    violation_timestamp = Column(DateTime, nullable=False)
    bucket_start = Column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("trip_id", "bucket_start", name="uq_violation_per_bucket"),
    )


class FatigueSample(Base):
    __tablename__ = "fatigue_monitoring"
    id = Column(Integer, primary_key=True)
    trip_id = Column(Integer, ForeignKey("trips.id"), nullable=False, index=True)
    driver_id = Column(String(128))
    hours_driven = Column(Float)
    hours_on_duty = Column(Float)
    rest_hours = Column(Float)
    fatigue_score = Column(Float)
    alert_level = Column(String(16), nullable=False, default="normal")
    recommendation = Column(Text)
    timestamp = Column(DateTime, nullable=False)


class IncidentReport(Base):
    __tablename__ = "in_trip_incidents"
    id = Column(Integer, primary_key=True)
    trip_id = Column(Integer, ForeignKey("trips.id"), nullable=False, index=True)
    driver_id = Column(String(128))
    incident_type = Column(String(64), nullable=False)
    severity = Column(String(16), nullable=False)
    lat = Column(Float)
    lon = Column(Float)
    description = Column(Text)
    incident_timestamp = Column(DateTime, nullable=False)


class Alert(Base):
    __tablename__ = "real_time_alerts"
    id = Column(Integer, primary_key=True)
    trip_id = Column(Integer, ForeignKey("trips.id"), nullable=False, index=True)
    driver_id = Column(String(128))
    org_id = Column(String(128))
    alert_type = Column(String(64), nullable=False)
    severity = Column(String(16), nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(Text)
    lat = Column(Float)
    lon = Column(Float)
    auto_generated = Column(Boolean, nullable=False, default=False)
    alert_timestamp = Column(DateTime, nullable=False)
    acknowledged = Column(Boolean, nullable=False, default=False)
    acknowledged_by = Column(String(128))
    acknowledged_at = Column(DateTime)
    resolved = Column(Boolean, nullable=False, default=False)
    resolved_by = Column(String(128))
    resolved_at = Column(DateTime)
    escalated = Column(Boolean, nullable=False, default=False)


class EscalationWorkflow(Base):
    __tablename__ = "escalation_workflows"
    id = Column(Integer, primary_key=True)
    org_id = Column(String(128), nullable=False, index=True)
    workflow_name = Column(String(255), nullable=False)
    trigger_condition = Column(String(64), nullable=False)
    escalation_levels = Column(JSON, nullable=False, default=list)
    escalation_intervals = Column(JSON, nullable=False, default=list)
    notification_channels = Column(JSON, nullable=False, default=list)
    notification_targets = Column(JSON, nullable=False, default=list)
    auto_escalate = Column(Boolean, nullable=False, default=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_by = Column(String(128))
    created_at = Column(DateTime, server_default=func.now())


class PostTripInspection(Base):
    __tablename__ = "post_trip_inspections"
    id = Column(Integer, primary_key=True)
    trip_id = Column(Integer, ForeignKey("trips.id"), nullable=False, unique=True)
    inspector_id = Column(String(128), nullable=False)
    inspection_date = Column(DateTime, nullable=False)
    journey_completion_verified = Column(Boolean, nullable=False, default=False)
    total_distance_km = Column(Float)
    total_score = Column(Integer, nullable=False, default=0)
    risk_level = Column(String(16))
    status = Column(String(16), nullable=False, default="completed")
    findings_summary = Column(Text)

    items = relationship("InspectionItem", back_populates="inspection", cascade="all, delete-orphan")


class InspectionItem(Base):
    __tablename__ = "post_trip_inspection_items"
    id = Column(Integer, primary_key=True)
    inspection_id = Column(Integer, ForeignKey("post_trip_inspections.id"), nullable=False, index=True)
    category = Column(String(64))
    item_label = Column(String(255), nullable=False)
    condition_status = Column(String(32))
    requires_maintenance = Column(Boolean, nullable=False, default=False)
    maintenance_priority = Column(String(16), nullable=False, default="low")
    points_deducted = Column(Integer, nullable=False, default=0)
    critical = Column(Boolean, nullable=False, default=False)
    notes = Column(Text)

    inspection = relationship("PostTripInspection", back_populates="items")


class MaintenanceTask(Base):
    __tablename__ = "maintenance_tasks"
    id = Column(Integer, primary_key=True)
    trip_id = Column(Integer, ForeignKey("trips.id"), nullable=False, index=True)
    inspection_item_id = Column(Integer, ForeignKey("post_trip_inspection_items.id"), nullable=False)
    description = Column(String(512))
    priority = Column(String(16), nullable=False)
    due_date = Column(Date, nullable=False)
    status = Column(String(16), nullable=False, default="scheduled")
    created_at = Column(DateTime, server_default=func.now())


class RegulatorySubmission(Base):
    __tablename__ = "regulatory_submissions"
    id = Column(Integer, primary_key=True)
    trip_id = Column(Integer, ForeignKey("trips.id"), nullable=False, index=True)
    submission_type = Column(String(64), nullable=False)
    payload = Column(JSON, nullable=False)
    status = Column(String(16), nullable=False, default="pending")
    reference_number = Column(String(128))
    error = Column(Text)
    submitted_by = Column(String(128), nullable=False)
    submitted_at = Column(DateTime, nullable=False)


class AuditLog(Base):
    __tablename__ = "audit_logs"
    id = Column(Integer, primary_key=True)
    user_id = Column(String(128))
    trip_id = Column(Integer)
    action = Column(String(128), nullable=False)
    meta = Column(JSON)
    created_at = Column(DateTime, nullable=False)
