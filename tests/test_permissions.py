import pytest
from types import SimpleNamespace
from fleetsafe.errors import Forbidden, NotFound, Unauthorized
from fleetsafe.permissions import (
    ROLE_CAPABILITIES,
    Action,
    Actor,
    Role,
    authorize,
    can_perform,
    require_actor
)
from conftest import DRIVER, MECHANIC, ORG_ADMIN, OTHER_DRIVER, OUTSIDER, STAFF, SUPER_ADMIN, SUPERVISOR

OWN_TRIP = SimpleNamespace(driver_id="driver-1", org_id="org-1")
ORG_TRIP = SimpleNamespace(driver_id="driver-7", org_id="org-1")
FOREIGN_TRIP = SimpleNamespace(driver_id="driver-1", org_id="org-2")

class TestCapabilityMapping:
    """Test the role to capability table."""

    def test_every_role_is_mapped(self):
        assert set(ROLE_CAPABILITIES) == set(Role.ALL)

    def test_super_admin_holds_every_action(self):
        actions = {v for k, v in vars(Action).items() if k.isupper()}
        assert set(ROLE_CAPABILITIES[Role.SUPER_ADMIN]) == actions

    def test_only_super_admin_manages_global_rules(self):
        holders = [role for role, caps in ROLE_CAPABILITIES.items() if Action.RULE_MANAGE_GLOBAL in caps]
        assert holders == [Role.SUPER_ADMIN]

class TestCanPerform:
    """Test scoped capability checks."""

    def test_driver_acts_on_own_trip_only(self):
        assert can_perform(DRIVER, Action.TRIP_SUBMIT, OWN_TRIP)
        assert not can_perform(OTHER_DRIVER, Action.TRIP_SUBMIT, OWN_TRIP)
        assert not can_perform(DRIVER, Action.TRIP_SUBMIT, FOREIGN_TRIP)

    def test_driver_cannot_decide(self):
        assert not can_perform(DRIVER, Action.TRIP_DECIDE, OWN_TRIP)

    def test_supervisor_scope_is_organisation(self):
        assert can_perform(SUPERVISOR, Action.TRIP_DECIDE, ORG_TRIP)
        assert not can_perform(SUPERVISOR, Action.TRIP_DECIDE, FOREIGN_TRIP)
        assert can_perform(OUTSIDER, Action.TRIP_DECIDE, FOREIGN_TRIP)

    def test_mechanic_and_staff(self):
        assert can_perform(MECHANIC, Action.TRIP_POST_TRIP, ORG_TRIP)
        assert not can_perform(MECHANIC, Action.TRIP_DECIDE, ORG_TRIP)
        assert can_perform(STAFF, Action.TRIP_VIEW, ORG_TRIP)
        assert not can_perform(STAFF, Action.ITEM_UPDATE, ORG_TRIP)

    def test_org_admin_manages_rules_but_not_items(self):
        assert can_perform(ORG_ADMIN, Action.RULE_MANAGE)
        assert not can_perform(ORG_ADMIN, Action.ITEM_UPDATE, ORG_TRIP)

    def test_super_admin_everywhere(self):
        assert can_perform(SUPER_ADMIN, Action.ALWAYS_WRITE, FOREIGN_TRIP)
        assert can_perform(SUPER_ADMIN, Action.TRIP_DECIDE, ORG_TRIP)

    def test_actor_without_org_has_no_org_scope(self):
        orphan = Actor(user_id="s", role=Role.SUPERVISOR, org_id=None)
        assert not can_perform(orphan, Action.TRIP_VIEW, SimpleNamespace(driver_id="d", org_id=None))

class TestAuthorize:
    """Test the raising authorisation helper."""

    def test_missing_identity_is_unauthorized(self):
        with pytest.raises(Unauthorized):
            require_actor(None)
        with pytest.raises(Unauthorized):
            require_actor(Actor(user_id="", role="driver"))

    def test_unknown_role_is_forbidden(self):
        with pytest.raises(Forbidden):
            require_actor(Actor(user_id="x", role="pilot"))

    def test_invisible_resource_is_not_found(self):
        """Out-of-scope records are reported as missing, not forbidden."""
        with pytest.raises(NotFound):
            authorize(OUTSIDER, Action.TRIP_DECIDE, ORG_TRIP)

    def test_visible_but_not_allowed_is_forbidden(self):
        with pytest.raises(Forbidden):
            authorize(STAFF, Action.TRIP_DECIDE, ORG_TRIP)

    def test_allowed_returns_actor(self):
        assert authorize(SUPERVISOR, Action.TRIP_DECIDE, ORG_TRIP) is SUPERVISOR
