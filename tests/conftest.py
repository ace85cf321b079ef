import os

# Point the engine at a private in-memory database before fleetsafe is imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["LOG_FILE"] = ""

from datetime import date, datetime

import pytest

from fleetsafe import lifecycle
from fleetsafe.config import config
from fleetsafe.db import SessionLocal, engine
from fleetsafe.detection import rate_limiter
from fleetsafe.models import Base, Trip
from fleetsafe.permissions import Actor
from fleetsafe.schemas import CreateTripRequest

NOW = datetime(2026, 3, 2, 10, 0, 0)

DRIVER = Actor(user_id="driver-1", role="driver", org_id="org-1")
OTHER_DRIVER = Actor(user_id="driver-2", role="driver", org_id="org-1")
SUPERVISOR = Actor(user_id="supervisor-1", role="supervisor", org_id="org-1")
MECHANIC = Actor(user_id="mechanic-1", role="mechanic", org_id="org-1")
ORG_ADMIN = Actor(user_id="admin-1", role="org_admin", org_id="org-1")
SUPER_ADMIN = Actor(user_id="root", role="super_admin", org_id=None)
STAFF = Actor(user_id="staff-1", role="staff", org_id="org-1")
OUTSIDER = Actor(user_id="supervisor-9", role="supervisor", org_id="org-2")

PASSING_VALUES = {
    "pass_fail": "pass",
    "pass_fail_na": "pass",
    "yes_no": "yes",
    "number": "0",
    "text": "recorded",
    "select": "truck",
    "date": "2026-03-02",
    "signature": "signed",
}


@pytest.fixture(autouse=True)
def reset_state():
    """Fresh schema and telemetry budget for every test."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    rate_limiter.reset()
    rate_limiter.configure(limit=config.telemetry_rate_limit,
                           window_seconds=config.telemetry_rate_window_seconds)
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def create_trip(db, actor=DRIVER, route="Lusaka - Kabwe", vehicle_type="truck") -> Trip:
    request = CreateTripRequest(route=route, trip_date=date(2026, 3, 2), vehicle_type=vehicle_type)
    return lifecycle.create_trip(db, actor, request)


def fill_passing(db, trip: Trip):
    """Answer every checklist item with a passing value."""
    for module in trip.modules:
        for item in module.items:
            item.value = PASSING_VALUES[item.field_type]
        lifecycle.recompute_module(module)
    db.commit()


def find_item(trip: Trip, label: str):
    for module in trip.modules:
        for item in module.items:
            if item.label == label:
                return item
    raise KeyError(label)


def submitted_trip(db, actor=DRIVER, **kwargs) -> Trip:
    trip = create_trip(db, actor, **kwargs)
    fill_passing(db, trip)
    lifecycle.submit(db, trip.id, actor)
    return trip


@pytest.fixture
def trip(db):
    return create_trip(db)


@pytest.fixture
def active_trip(db):
    """A submitted trip, which accepts telemetry and enforcement."""
    return submitted_trip(db)
