"""Shared fixtures for the allocation engine tests."""

from __future__ import annotations

import itertools
from datetime import datetime, timedelta, timezone

import pytest

from bloodalloc.engine import AllocationEngine
from bloodalloc.ledger import InventoryLedger
from bloodalloc.models import BloodType, DonationType, InventoryUnit, Request, Urgency
from bloodalloc.notifications import MemorySink, QueuedEmitter
from bloodalloc.planner import AllocationPlanner

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def make_unit():
    counter = itertools.count(1)

    def _make(blood_type="O-", units=1, expires_in_days=10, donation_type="whole_blood",
              facility_id="central@bloodbank.org", unit_id=None):
        expires_at = NOW + timedelta(days=expires_in_days)
        return InventoryUnit(
            unit_id=unit_id or f"unit-{next(counter)}",
            blood_type=BloodType.parse(blood_type),
            donation_type=DonationType.parse(donation_type),
            units=units,
            collected_at=expires_at - timedelta(days=42),
            expires_at=expires_at,
            facility_id=facility_id,
        )

    return _make


@pytest.fixture
def make_request():
    counter = itertools.count(1)

    def _make(blood_type="O-", units=1, urgency="Medium", donation_type="whole_blood",
              minutes_ago=60, request_id=None, requester="city-general@hospital.org"):
        return Request(
            request_id=request_id or f"req-{next(counter)}",
            blood_type=BloodType.parse(blood_type),
            donation_type=DonationType.parse(donation_type),
            units=units,
            urgency=Urgency.parse(urgency),
            created_at=NOW - timedelta(minutes=minutes_ago),
            requester=requester,
        )

    return _make


@pytest.fixture
def ledger():
    return InventoryLedger(lock_timeout=0.5)


@pytest.fixture
def planner():
    ids = itertools.count(1)
    return AllocationPlanner(id_factory=lambda: f"rec-{next(ids)}")


@pytest.fixture
def sink():
    return MemorySink()


@pytest.fixture
def emitter(sink):
    emitter = QueuedEmitter(sink, maxsize=100)
    yield emitter
    emitter.close()


@pytest.fixture
def engine(emitter):
    return AllocationEngine(emitter=emitter, clock=lambda: NOW, lock_timeout=0.5)
