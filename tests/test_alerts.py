import pytest
from datetime import timedelta
from fleetsafe.alerts import (
    ESCALATION_VIOLATION,
    advance_escalations,
    alerts_for_trip,
    create_alert,
    create_workflow,
    due_level,
    find_workflow,
    update_alert
)
from fleetsafe.errors import Forbidden, NoOpUpdate, NotFound, ValidationError
from fleetsafe.models import AuditLog, EnforcementAction
from fleetsafe.schemas import (
    AlertUpdateRequest,
    CreateAlertRequest,
    EscalationWorkflowRequest,
    parse_request
)
from conftest import DRIVER, NOW, ORG_ADMIN, OUTSIDER, SUPER_ADMIN, SUPERVISOR

LEVELS = ["supervisor", "fleet_manager", "safety_director"]

def make_workflow(db, trigger="critical_alert", intervals=(5, 15), actor=ORG_ADMIN, **kwargs):
    request = EscalationWorkflowRequest(
        workflow_name=f"{trigger} workflow",
        trigger_condition=trigger,
        escalation_levels=LEVELS,
        escalation_intervals=list(intervals),
        notification_targets=["ops@example.com"],
        **kwargs
    )
    return create_workflow(db, actor, request)

def raise_manual(db, trip, severity="critical", ts=NOW):
    request = CreateAlertRequest(alert_type="manual", severity=severity, title="Check driver", timestamp=ts)
    return create_alert(db, trip.id, SUPERVISOR, request, now=ts)

def escalation_actions(db, alert):
    return db.query(EnforcementAction).filter(
        EnforcementAction.violation_type == ESCALATION_VIOLATION,
        EnforcementAction.source_ref == f"alert:{alert.id}"
    ).order_by(EnforcementAction.escalation_level).all()

class TestEscalationStart:
    """Test first-level escalation when an alert is raised."""

    def test_no_workflow_no_escalation(self, db, active_trip):
        alert = raise_manual(db, active_trip)
        assert alert.escalated is False
        assert escalation_actions(db, alert) == []

    def test_critical_alert_escalates_to_level_one(self, db, active_trip):
        make_workflow(db)
        alert = raise_manual(db, active_trip)
        assert alert.escalated is True

        action = escalation_actions(db, alert)[0]
        assert action.escalation_level == 1
        assert action.action_taken == "escalate_to_supervisor"
        assert action.automated is True

        audit = db.query(AuditLog).filter(AuditLog.action == "alert.escalate").one()
        assert audit.meta["level"] == 1
        assert audit.meta["targets"] == ["ops@example.com"]

    def test_warning_never_escalates(self, db, active_trip):
        make_workflow(db)
        alert = raise_manual(db, active_trip, severity="warning")
        assert alert.escalated is False

    def test_emergency_falls_back_to_critical_workflow(self, db, active_trip):
        workflow = make_workflow(db)
        assert find_workflow(db, "org-1", "emergency").id == workflow.id
        alert = raise_manual(db, active_trip, severity="emergency")
        assert alert.escalated is True

    def test_emergency_prefers_emergency_workflow(self, db):
        make_workflow(db)
        emergency = make_workflow(db, trigger="emergency_alert")
        assert find_workflow(db, "org-1", "emergency").id == emergency.id
        assert find_workflow(db, "org-1", "critical").trigger_condition == "critical_alert"

    def test_inactive_workflow_is_ignored(self, db, active_trip):
        make_workflow(db, is_active=False)
        assert raise_manual(db, active_trip).escalated is False

    def test_other_org_workflow_is_ignored(self, db, active_trip):
        make_workflow(db, actor=SUPER_ADMIN, org_id="org-2")
        assert raise_manual(db, active_trip).escalated is False

class TestEscalationAdvance:
    """Test level advancement while an alert stays unacknowledged."""

    @pytest.mark.parametrize("elapsed,level", [
        (0, 1), (4.9, 1), (5, 2), (14, 2), (15, 3), (90, 3),
    ])
    def test_due_level(self, elapsed, level):
        assert due_level(elapsed, [5, 15], 3) == level

    def test_due_level_is_capped_by_levels(self):
        assert due_level(60, [5, 15, 30], 2) == 2

    def test_advances_after_intervals(self, db, active_trip):
        make_workflow(db)
        alert = raise_manual(db, active_trip)

        assert advance_escalations(db, now=NOW + timedelta(minutes=2)) == 0
        assert advance_escalations(db, now=NOW + timedelta(minutes=6)) == 1
        assert advance_escalations(db, now=NOW + timedelta(minutes=20)) == 1
        assert advance_escalations(db, now=NOW + timedelta(minutes=60)) == 0

        levels = [a.escalation_level for a in escalation_actions(db, alert)]
        assert levels == [1, 2, 3]
        assert escalation_actions(db, alert)[-1].action_taken == "escalate_to_safety_director"

    def test_skipped_levels_are_all_recorded(self, db, active_trip):
        make_workflow(db)
        alert = raise_manual(db, active_trip)
        assert advance_escalations(db, now=NOW + timedelta(minutes=30)) == 2
        assert [a.escalation_level for a in escalation_actions(db, alert)] == [1, 2, 3]

    def test_acknowledged_alert_stops(self, db, active_trip):
        make_workflow(db)
        alert = raise_manual(db, active_trip)
        update_alert(db, alert.id, SUPERVISOR, AlertUpdateRequest(acknowledge=True), now=NOW)
        assert advance_escalations(db, now=NOW + timedelta(minutes=30)) == 0

    def test_manual_workflow_does_not_advance(self, db, active_trip):
        make_workflow(db, auto_escalate=False)
        raise_manual(db, active_trip)
        assert advance_escalations(db, now=NOW + timedelta(minutes=30)) == 0

    def test_scoped_to_org(self, db, active_trip):
        make_workflow(db)
        raise_manual(db, active_trip)
        assert advance_escalations(db, org_id="org-2", now=NOW + timedelta(minutes=30)) == 0

class TestAlertUpdates:
    """Test acknowledging and resolving alerts."""

    def test_empty_update_is_no_op(self, db, active_trip):
        alert = raise_manual(db, active_trip)
        with pytest.raises(NoOpUpdate):
            update_alert(db, alert.id, SUPERVISOR, AlertUpdateRequest())

    def test_no_op_checked_before_lookup(self, db):
        with pytest.raises(NoOpUpdate):
            update_alert(db, 999, SUPERVISOR, AlertUpdateRequest())

    def test_unknown_alert(self, db):
        with pytest.raises(NotFound):
            update_alert(db, 999, SUPERVISOR, AlertUpdateRequest(acknowledge=True))

    def test_acknowledge_is_idempotent(self, db, active_trip):
        alert = raise_manual(db, active_trip)
        update_alert(db, alert.id, SUPERVISOR, AlertUpdateRequest(acknowledge=True), now=NOW)
        later = NOW + timedelta(minutes=5)
        updated = update_alert(db, alert.id, DRIVER, AlertUpdateRequest(acknowledge=True), now=later)
        assert updated.acknowledged_by == SUPERVISOR.user_id
        assert updated.acknowledged_at == NOW

    def test_resolve_and_acknowledge_together(self, db, active_trip):
        alert = raise_manual(db, active_trip)
        updated = update_alert(db, alert.id, DRIVER, AlertUpdateRequest(acknowledge=True, resolve=True))
        assert updated.acknowledged is True
        assert updated.resolved is True

    def test_outsider_gets_not_found(self, db, active_trip):
        alert = raise_manual(db, active_trip)
        with pytest.raises(NotFound):
            update_alert(db, alert.id, OUTSIDER, AlertUpdateRequest(acknowledge=True))

    def test_listing_filters_resolved(self, db, active_trip):
        first = raise_manual(db, active_trip)
        raise_manual(db, active_trip, ts=NOW + timedelta(minutes=1))
        update_alert(db, first.id, SUPERVISOR, AlertUpdateRequest(resolve=True))
        assert len(alerts_for_trip(db, active_trip.id, DRIVER)) == 2
        assert len(alerts_for_trip(db, active_trip.id, DRIVER, unresolved_only=True)) == 1

class TestWorkflowManagement:
    """Test workflow validation and ownership."""

    def test_default_intervals(self, db):
        request = EscalationWorkflowRequest(
            workflow_name="Default", trigger_condition="critical_alert", escalation_levels=LEVELS
        )
        workflow = create_workflow(db, ORG_ADMIN, request)
        assert workflow.escalation_intervals == [5, 15, 30]
        assert workflow.notification_channels == ["email"]

    @pytest.mark.parametrize("intervals", [[15, 5], [5, 5], [0, 10], [-1]])
    def test_intervals_must_increase(self, intervals):
        with pytest.raises(ValidationError):
            parse_request(EscalationWorkflowRequest, {
                "workflow_name": "Bad",
                "trigger_condition": "critical_alert",
                "escalation_levels": LEVELS,
                "escalation_intervals": intervals,
            })

    def test_levels_required(self):
        with pytest.raises(ValidationError):
            parse_request(EscalationWorkflowRequest, {
                "workflow_name": "Bad", "trigger_condition": "critical_alert", "escalation_levels": []
            })

    def test_other_org_is_forbidden(self, db):
        with pytest.raises(Forbidden):
            make_workflow(db, org_id="org-2")

    def test_supervisor_cannot_manage_workflows(self, db):
        with pytest.raises(Forbidden):
            make_workflow(db, actor=SUPERVISOR)
