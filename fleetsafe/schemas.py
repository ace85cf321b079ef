"""
Typed request objects, one per engine operation.

Bodies are validated here, at the boundary, so the engine only ever sees
well-formed input.
"""

from datetime import date, datetime
from typing import List, Literal, Optional, Type, TypeVar

import pydantic
from pydantic import BaseModel, Field, field_validator, model_validator

from .errors import ValidationError

AlertSeverity = Literal["info", "warning", "critical", "emergency"]
FatigueLevel = Literal["normal", "caution", "warning", "critical"]
FieldType = Literal["pass_fail", "pass_fail_na", "yes_no", "number", "text", "select", "date", "signature"]
RuleType = Literal["speed_limit", "hours_of_service", "critical_alerts"]

M = TypeVar("M", bound=BaseModel)


def parse_request(model: Type[M], data) -> M:
    """Validate a raw body into ``model``, reporting failures as ValidationError."""
    try:
        return model.model_validate(data)
    except pydantic.ValidationError as e:
        raise ValidationError(_describe(e)) from e


def _describe(error: pydantic.ValidationError) -> str:
    parts = []
    for err in error.errors():
        location = ".".join(str(p) for p in err.get("loc", ())) or "body"
        parts.append(f"{location}: {err.get('msg')}")
    return "; ".join(parts)


def _blank_to_none(value):
    if isinstance(value, str) and not value.strip():
        return None
    return value


class CreateTripRequest(BaseModel):
    route: str = Field(min_length=1, max_length=255)
    trip_date: date
    vehicle_type: Optional[str] = None


class ItemUpdateRequest(BaseModel):
    value: Optional[str] = Field(default=None, max_length=255)
    remarks: Optional[str] = None

    @model_validator(mode="after")
    def _require_change(self):
        if not ({"value", "remarks"} & self.model_fields_set):
            raise ValueError("value or remarks is required")
        return self


class ModuleItemInput(BaseModel):
    label: str = Field(min_length=1, max_length=255)
    field_type: FieldType = "pass_fail"
    critical: bool = False
    points: int = Field(default=0, ge=0)


class AddModuleRequest(BaseModel):
    step: int = Field(ge=1)
    name: str = Field(min_length=1, max_length=255)
    items: List[ModuleItemInput] = Field(default_factory=list)


class DecisionRequest(BaseModel):
    approved: bool
    override_note: Optional[str] = None
    notes: Optional[str] = None

    _strip_note = field_validator("override_note", mode="before")(_blank_to_none)


class OverrideRequest(BaseModel):
    note: str = Field(min_length=1)

    @field_validator("note")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("note must not be blank")
        return v.strip()


class GpsReading(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lon: float = Field(ge=-180, le=180)
    speed: Optional[float] = Field(default=None, ge=0)
    speed_limit: Optional[float] = Field(default=None, gt=0)
    heading: Optional[float] = None
    violation_type: str = "highway"


class FatigueReading(BaseModel):
    hours_driven: float = Field(ge=0)
    hours_on_duty: Optional[float] = Field(default=None, ge=0)
    rest_hours: Optional[float] = Field(default=None, ge=0)
    fatigue_score: Optional[float] = None
    alert_level: FatigueLevel = "normal"
    recommendation: Optional[str] = None


class IncidentReading(BaseModel):
    incident_type: str = Field(min_length=1)
    severity: Literal["minor", "major", "critical", "fatal"]
    lat: Optional[float] = None
    lon: Optional[float] = None
    description: Optional[str] = None


class TelemetrySample(BaseModel):
    timestamp: Optional[datetime] = None
    gps: Optional[GpsReading] = None
    fatigue: Optional[FatigueReading] = None
    incident: Optional[IncidentReading] = None

    @model_validator(mode="after")
    def _require_reading(self):
        if self.gps is None and self.fatigue is None and self.incident is None:
            raise ValueError("sample must carry gps, fatigue or incident data")
        return self


class CreateAlertRequest(BaseModel):
    alert_type: str = Field(min_length=1)
    severity: AlertSeverity
    title: str = Field(min_length=1, max_length=255)
    message: Optional[str] = None
    lat: Optional[float] = None
    lon: Optional[float] = None
    auto_generated: bool = False
    timestamp: Optional[datetime] = None


class AlertUpdateRequest(BaseModel):
    acknowledge: bool = False
    resolve: bool = False


class EnforcementRuleRequest(BaseModel):
    rule_name: str = Field(min_length=1, max_length=255)
    rule_type: RuleType
    threshold_value: float = Field(ge=0)
    threshold_unit: Optional[str] = None
    action_triggered: str = Field(min_length=1)
    is_active: bool = True
    applies_to_vehicle_types: List[str] = Field(default_factory=list)
    applies_to_driver_roles: List[str] = Field(default_factory=list)
    org_id: Optional[str] = None


class ManualActionRequest(BaseModel):
    trip_id: int
    violation_type: str = Field(min_length=1)
    action_taken: str = Field(min_length=1)
    action_severity: Optional[AlertSeverity] = None
    violation_value: Optional[float] = None
    threshold_value: Optional[float] = None
    action_result: Optional[str] = None
    escalation_level: int = Field(default=1, ge=1)


class EscalationWorkflowRequest(BaseModel):
    workflow_name: str = Field(min_length=1, max_length=255)
    trigger_condition: Literal["critical_alert", "emergency_alert"]
    escalation_levels: List[str] = Field(min_length=1)
    escalation_intervals: Optional[List[int]] = None
    notification_channels: List[str] = Field(default_factory=lambda: ["email"])
    notification_targets: List[str] = Field(default_factory=list)
    auto_escalate: bool = True
    is_active: bool = True
    org_id: Optional[str] = None

    @field_validator("escalation_intervals")
    @classmethod
    def _ordered_intervals(cls, v):
        if v is None:
            return v
        if any(minutes <= 0 for minutes in v):
            raise ValueError("escalation intervals must be positive")
        if any(b <= a for a, b in zip(v, v[1:])):
            raise ValueError("escalation intervals must be strictly increasing")
        return v


class SweepRequest(BaseModel):
    scope_org_id: Optional[str] = None


class InspectionItemInput(BaseModel):
    item_label: str = Field(min_length=1)
    category: Optional[str] = None
    condition_status: Optional[str] = None
    requires_maintenance: bool = False
    maintenance_priority: Literal["low", "medium", "high", "urgent"] = "low"
    points_deducted: int = Field(default=0, ge=0)
    critical: bool = False
    notes: Optional[str] = None


class PostTripInspectionRequest(BaseModel):
    items: List[InspectionItemInput] = Field(default_factory=list)
    journey_completion_verified: bool = False
    total_distance_km: Optional[float] = Field(default=None, ge=0)
    findings_summary: Optional[str] = None


class RegulatorySubmissionRequest(BaseModel):
    submission_type: Literal["trip_compliance", "violation_report", "safety_certificate"] = "trip_compliance"
