from datetime import datetime, timedelta, timezone

import pytest

from escape_gateway.config import EngineConfig
from escape_gateway.context import EngineContext
from escape_gateway.gateway import EscapeGateway
from escape_gateway.store import InMemoryDocumentStore, WriteOp


class FakeClock:
    """Settable UTC clock for datetime-based timestamps."""

    def __init__(self, now=None):
        self.now = now or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class FakeEpoch:
    """Settable epoch-seconds clock for the rate limiter."""

    def __init__(self, t=1_780_000_000.0):
        self.t = t

    def __call__(self):
        return self.t


def put(store, collection, doc_id, data):
    store._commit_ops([WriteOp("set", collection, doc_id, dict(data))], {})


def seed_family(store):
    put(store, "families", "fam-1", {"name": "Family One", "guardianUids": ["parent-1", "victim-1"]})
    put(store, "families", "fam-2", {"name": "Family Two", "guardianUids": ["other-parent"]})
    put(store, "users", "child-1", {"familyId": "fam-1"})
    put(store, "users", "parent-1", {"familyId": "fam-1", "email": "parent@example.com"})
    put(store, "users", "victim-1", {"familyIds": ["fam-1"], "email": "victim@example.com"})
    put(store, "users", "outsider", {"familyId": "fam-2"})
    put(store, "familyMemberships", "parent-1_fam-1", {
        "userId": "parent-1", "familyId": "fam-1", "role": "parent", "isActive": True,
    })
    put(store, "familyMemberships", "child-1_fam-1", {
        "userId": "child-1", "familyId": "fam-1", "role": "child", "isActive": True,
    })
    put(store, "safetyRequests", "req-1", {
        "status": "in-progress",
        "familyId": "fam-1",
        "verificationChecklist": {
            "accountOwnershipVerified": True,
            "idMatched": False,
            "phoneVerified": False,
            "safeContactConfirmed": False,
        },
        "requestedActions": {},
        "completedActions": {},
        "submittedBy": "victim-1",
        "adminNotes": [],
    })
    put(store, "devices", "dev-1", {"childId": "child-1", "familyId": "fam-1", "status": "active"})
    put(store, "devices", "dev-2", {"childId": "child-1", "familyId": "fam-1", "status": "unenrolled"})
    put(store, "notificationQueue", "n-loc", {
        "targetUserId": "child-1", "familyId": "fam-1", "status": "pending", "type": "location-arrived",
    })
    put(store, "notificationQueue", "n-chore", {
        "targetUserId": "child-1", "familyId": "fam-1", "status": "pending", "type": "chore-reminder",
    })
    put(store, "notificationQueue", "n-sent", {
        "targetUserId": "child-1", "familyId": "fam-1", "status": "sent", "type": "location-departed",
    })
    put(store, "locationHistory", "lh-1", {
        "childId": "child-1",
        "familyId": "fam-1",
        "location": {"lat": 1.0, "lng": 2.0},
        "locationName": "Home",
        "event": "arrived",
        "address": "1 Main St",
        "coordinates": [1.0, 2.0],
        "timestamp": "2026-02-01T08:00:00+00:00",
    })
    put(store, "familyAuditLog", "fa-1", {
        "familyId": "fam-1", "action": "rule-changed", "timestamp": "2026-02-01T09:00:00+00:00",
    })
    return store


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def epoch():
    return FakeEpoch()


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def seeded(store):
    return seed_family(store)


@pytest.fixture
def ctx(seeded, clock):
    return EngineContext(seeded, EngineConfig(), None, clock)


@pytest.fixture
def gateway(seeded, clock, epoch):
    return EscapeGateway(store=seeded, config=EngineConfig(), clock=clock, rate_clock=epoch)
