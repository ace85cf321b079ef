"""
Actor identity and the centralised capability check.

Role strings are mapped to capabilities in exactly one place,
``ROLE_CAPABILITIES``. Each capability carries a scope:

- ``own``: only trips the actor drives
- ``org``: any trip in the actor's organisation
- ``all``: any trip, in any organisation

Handlers and engine components never branch on role names; they ask
``can_perform(actor, action, resource)``.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from .errors import Forbidden, NotFound, Unauthorized


class Role:
    DRIVER = "driver"
    SUPERVISOR = "supervisor"
    MECHANIC = "mechanic"
    ORG_ADMIN = "org_admin"
    SUPER_ADMIN = "super_admin"
    STAFF = "staff"

    ALL = (DRIVER, SUPERVISOR, MECHANIC, ORG_ADMIN, SUPER_ADMIN, STAFF)


class Action:
    TRIP_VIEW = "trip.view"
    TRIP_CREATE = "trip.create"
    TRIP_SUBMIT = "trip.submit"
    TRIP_REVIEW = "trip.review"
    TRIP_DECIDE = "trip.decide"
    TRIP_OVERRIDE = "trip.override"
    TRIP_REOPEN = "trip.reopen"
    TRIP_OPERATE = "trip.operate"
    TRIP_POST_TRIP = "trip.post_trip"
    TRIP_FINALIZE = "trip.finalize"
    TRIP_RECALCULATE = "trip.recalculate"
    TRIP_DELETE = "trip.delete"
    ITEM_UPDATE = "item.update"
    TELEMETRY_INGEST = "telemetry.ingest"
    ALERT_CREATE = "alert.create"
    ALERT_UPDATE = "alert.update"
    RULE_MANAGE = "rule.manage"
    RULE_MANAGE_GLOBAL = "rule.manage_global"
    ENFORCEMENT_SWEEP = "enforcement.sweep"
    ENFORCEMENT_TRIGGER = "enforcement.trigger"
    WORKFLOW_MANAGE = "workflow.manage"
    REGULATORY_SUBMIT = "regulatory.submit"
    ALWAYS_WRITE = "trip.always_write"


OWN, ORG, ALL = "own", "org", "all"

_SUPER_ADMIN_ACTIONS = {
    name: ALL for key, name in vars(Action).items() if key.isupper()
}

ROLE_CAPABILITIES: Dict[str, Dict[str, str]] = {
    Role.DRIVER: {
        Action.TRIP_VIEW: OWN,
        Action.TRIP_CREATE: OWN,
        Action.TRIP_SUBMIT: OWN,
        Action.TRIP_REOPEN: OWN,
        Action.TRIP_OPERATE: OWN,
        Action.TRIP_POST_TRIP: OWN,
        Action.TRIP_DELETE: OWN,
        Action.ITEM_UPDATE: OWN,
        Action.TELEMETRY_INGEST: OWN,
        Action.ALERT_CREATE: OWN,
        Action.ALERT_UPDATE: OWN,
    },
    Role.SUPERVISOR: {
        Action.TRIP_VIEW: ORG,
        Action.TRIP_REVIEW: ORG,
        Action.TRIP_DECIDE: ORG,
        Action.TRIP_OVERRIDE: ORG,
        Action.TRIP_POST_TRIP: ORG,
        Action.TRIP_FINALIZE: ORG,
        Action.TRIP_RECALCULATE: ORG,
        Action.ITEM_UPDATE: ORG,
        Action.ALERT_CREATE: ORG,
        Action.ALERT_UPDATE: ORG,
        Action.ENFORCEMENT_SWEEP: ORG,
        Action.ENFORCEMENT_TRIGGER: ORG,
        Action.REGULATORY_SUBMIT: ORG,
    },
    Role.MECHANIC: {
        Action.TRIP_VIEW: ORG,
        Action.TRIP_POST_TRIP: ORG,
        Action.ITEM_UPDATE: ORG,
        Action.ALERT_CREATE: ORG,
        Action.ALERT_UPDATE: ORG,
    },
    Role.ORG_ADMIN: {
        Action.TRIP_VIEW: ORG,
        Action.TRIP_REVIEW: ORG,
        Action.TRIP_DECIDE: ORG,
        Action.TRIP_OVERRIDE: ORG,
        Action.TRIP_POST_TRIP: ORG,
        Action.TRIP_FINALIZE: ORG,
        Action.TRIP_RECALCULATE: ORG,
        Action.ALERT_CREATE: ORG,
        Action.ALERT_UPDATE: ORG,
        Action.RULE_MANAGE: ORG,
        Action.ENFORCEMENT_SWEEP: ORG,
        Action.ENFORCEMENT_TRIGGER: ORG,
        Action.WORKFLOW_MANAGE: ORG,
        Action.REGULATORY_SUBMIT: ORG,
    },
    Role.SUPER_ADMIN: _SUPER_ADMIN_ACTIONS,
    Role.STAFF: {
        Action.TRIP_VIEW: ORG,
    },
}


@dataclass(frozen=True)
class Actor:
    """Identity supplied by the upstream identity provider."""
    user_id: str
    role: str
    org_id: Optional[str] = None

    @property
    def is_super_admin(self) -> bool:
        return self.role == Role.SUPER_ADMIN


def capability_scope(actor: Actor, action: str) -> Optional[str]:
    return ROLE_CAPABILITIES.get(actor.role, {}).get(action)


def in_scope(actor: Actor, scope: Optional[str], resource: Any) -> bool:
    """Whether ``resource`` (anything with driver_id/org_id) falls in ``scope``."""
    if scope is None:
        return False
    if scope == ALL or resource is None:
        return True
    if scope == ORG:
        return actor.org_id is not None and getattr(resource, "org_id", None) == actor.org_id
    if scope == OWN:
        return (getattr(resource, "driver_id", None) == actor.user_id
                and getattr(resource, "org_id", actor.org_id) == actor.org_id)
    return False


def can_perform(actor: Actor, action: str, resource: Any = None) -> bool:
    """Single authorisation check: may ``actor`` perform ``action`` on ``resource``?"""
    return in_scope(actor, capability_scope(actor, action), resource)


def can_view(actor: Actor, resource: Any) -> bool:
    return can_perform(actor, Action.TRIP_VIEW, resource)


def require_actor(actor: Optional[Actor]) -> Actor:
    if actor is None or not actor.user_id or not actor.role:
        raise Unauthorized("Actor identity is required")
    if actor.role not in Role.ALL:
        raise Forbidden(f"Unknown role '{actor.role}'")
    return actor


def authorize(actor: Optional[Actor], action: str, resource: Any = None) -> Actor:
    """
    Enforce ``action`` on ``resource``.

    Resources the actor cannot even see are reported as NotFound so the
    existence of out-of-scope records is never confirmed.
    """
    actor = require_actor(actor)
    if resource is not None and not can_view(actor, resource):
        raise NotFound(f"{type(resource).__name__} not found")
    if not can_perform(actor, action, resource):
        raise Forbidden(f"Role '{actor.role}' may not perform '{action}'")
    return actor
