"""
Blood Allocation Engine - Demo Snapshot
========================================
Builds a realistic snapshot relative to "now": donated units spread over
the demo facilities in proportion to the population's blood type
distribution, and a mix of open requests across urgency tiers.

The stock of O- red cells is deliberately thin so that the Critical O-
request in every sample produces a shortage and an emergency broadcast.
"""

from __future__ import annotations

import random
from datetime import datetime, timedelta
from typing import Optional

from bloodalloc.config import (
    BLOOD_TYPE_DISTRIBUTION,
    DEMO_FACILITIES,
    DONATION_TYPE_MIX,
    SHELF_LIFE_DAYS,
    URGENCY_MIX,
)
from bloodalloc.data_sources import Snapshot
from bloodalloc.models import (
    BloodType,
    DonationType,
    InventoryUnit,
    Request,
    Urgency,
    utcnow,
)

STORAGE_CONDITIONS = {
    "whole_blood": "Refrigerated 1-6°C",
    "red_blood_cells": "Refrigerated 1-6°C",
    "plasma": "Frozen ≤ -18°C",
}

HOSPITALS = [f for f in DEMO_FACILITIES if f.endswith("@hospital.org")]


def _weighted(rng: random.Random, weights: dict) -> str:
    keys = list(weights)
    return rng.choices(keys, weights=[weights[k] for k in keys], k=1)[0]


def build_sample_snapshot(now: Optional[datetime] = None,
                          donations: int = 60,
                          requests: int = 14,
                          seed: int = 7) -> Snapshot:
    """
    Generate a demo snapshot.

    Args:
        now: reference time (defaults to the current UTC time)
        donations: number of random inventory units
        requests: number of random requests (a Critical O- request is always added)
        seed: RNG seed, so the same arguments give the same snapshot
    """
    now = now or utcnow()
    rng = random.Random(seed)
    snapshot = Snapshot()

    # ── Inventory ──
    for i in range(donations):
        blood_type = _weighted(rng, BLOOD_TYPE_DISTRIBUTION)
        donation_type = _weighted(rng, DONATION_TYPE_MIX)
        if blood_type == "O-" and donation_type == "red_blood_cells":
            donation_type = "whole_blood"

        shelf_life = SHELF_LIFE_DAYS[donation_type]
        age_days = rng.randint(0, shelf_life - 1)
        collected_at = now - timedelta(days=age_days, hours=rng.randint(0, 23))
        snapshot.units.append(InventoryUnit(
            unit_id=f"unit-{i + 1:04d}",
            blood_type=BloodType(blood_type),
            donation_type=DonationType(donation_type),
            units=rng.randint(1, 6),
            collected_at=collected_at,
            expires_at=collected_at + timedelta(days=shelf_life),
            facility_id=rng.choice(list(DEMO_FACILITIES)),
            storage_conditions=STORAGE_CONDITIONS[donation_type],
        ))

    # One thin O- red cell unit, a few days from expiry
    collected_at = now - timedelta(days=SHELF_LIFE_DAYS["red_blood_cells"] - 3)
    snapshot.units.append(InventoryUnit(
        unit_id=f"unit-{donations + 1:04d}",
        blood_type=BloodType.O_NEG,
        donation_type=DonationType.RED_BLOOD_CELLS,
        units=2,
        collected_at=collected_at,
        expires_at=collected_at + timedelta(days=SHELF_LIFE_DAYS["red_blood_cells"]),
        facility_id="central@bloodbank.org",
        storage_conditions=STORAGE_CONDITIONS["red_blood_cells"],
    ))

    # ── Requests ──
    for i in range(requests):
        snapshot.requests.append(Request(
            request_id=f"req-{i + 1:04d}",
            blood_type=BloodType(_weighted(rng, BLOOD_TYPE_DISTRIBUTION)),
            donation_type=DonationType(_weighted(rng, DONATION_TYPE_MIX)),
            units=rng.randint(1, 8),
            urgency=Urgency(_weighted(rng, URGENCY_MIX)),
            created_at=now - timedelta(hours=rng.randint(1, 48)),
            requester=rng.choice(HOSPITALS),
        ))

    snapshot.requests.append(Request(
        request_id=f"req-{requests + 1:04d}",
        blood_type=BloodType.O_NEG,
        donation_type=DonationType.RED_BLOOD_CELLS,
        units=6,
        urgency=Urgency.CRITICAL,
        created_at=now - timedelta(minutes=30),
        requester="city-general@hospital.org",
    ))
    return snapshot
