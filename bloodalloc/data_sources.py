"""
Blood Allocation Engine - Snapshot Loading
===========================================
Parses the persistence layer's snapshot of requests and inventory units
into core types. Both the host application's camelCase documents
(`bloodType`, `collectionDate`, `_id`, ...) and snake_case keys are
accepted.

Input validation happens here: nonpositive unit counts raise
InvalidQuantity and never reach the planner.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from bloodalloc.config import SHELF_LIFE_DAYS
from bloodalloc.errors import InvalidQuantity, SnapshotError
from bloodalloc.models import (
    BloodType,
    DonationType,
    InventoryUnit,
    Request,
    RequestStatus,
    Urgency,
    parse_timestamp,
)

_MISSING = object()


@dataclass
class Snapshot:
    requests: list[Request] = field(default_factory=list)
    units: list[InventoryUnit] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "requests": [request_to_document(r) for r in self.requests],
            "inventory": [unit_to_document(u) for u in self.units],
        }


# ═══════════════════════════════════════════════════════════════════════════
# PUBLIC API
# ═══════════════════════════════════════════════════════════════════════════

def load_snapshot(data: dict) -> Snapshot:
    """Parse a snapshot dict with `requests` and `inventory` arrays."""
    if not isinstance(data, dict):
        raise SnapshotError("Snapshot must be a JSON object")

    snapshot = Snapshot()
    for i, doc in enumerate(data.get("inventory", []) or []):
        snapshot.units.append(_with_context("inventory", i, parse_unit, doc))
    for i, doc in enumerate(data.get("requests", []) or []):
        snapshot.requests.append(_with_context("requests", i, parse_request, doc))
    return snapshot


def load_snapshot_file(path: str) -> Snapshot:
    if not os.path.exists(path):
        raise SnapshotError(f"No snapshot file at {path}")
    with open(path, "r", encoding="utf-8") as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise SnapshotError(f"{path}: invalid JSON ({e})") from e
    return load_snapshot(data)


def save_snapshot_file(snapshot: Snapshot, path: str) -> None:
    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(snapshot.to_dict(), f, indent=2)


def default_expiration(collected_at, donation_type: DonationType):
    """Expiration derived from the donation type's shelf life."""
    return collected_at + timedelta(days=SHELF_LIFE_DAYS[donation_type.value])


# ═══════════════════════════════════════════════════════════════════════════
# RECORD PARSERS
# ═══════════════════════════════════════════════════════════════════════════

def parse_unit(doc: dict) -> InventoryUnit:
    donation_type = DonationType.parse(_field(doc, "donationType", "donation_type"))
    collected_at = parse_timestamp(_field(doc, "collectionDate", "collected_at"))
    expires_raw = _field(doc, "expirationDate", "expires_at", default=None)
    expires_at = (parse_timestamp(expires_raw) if expires_raw
                  else default_expiration(collected_at, donation_type))

    return InventoryUnit(
        unit_id=str(_field(doc, "_id", "id", "unit_id")),
        blood_type=BloodType.parse(_field(doc, "bloodType", "blood_type")),
        donation_type=donation_type,
        units=_count(_field(doc, "units")),
        collected_at=collected_at,
        expires_at=expires_at,
        facility_id=str(_field(doc, "location", "facility_id", "facility")),
        storage_conditions=str(_field(doc, "storageConditions", "storage_conditions", default="") or ""),
    )


def parse_request(doc: dict) -> Request:
    expires_raw = _field(doc, "expiresAt", "expires_at", default=None)
    return Request(
        request_id=str(_field(doc, "_id", "id", "request_id")),
        blood_type=BloodType.parse(_field(doc, "bloodType", "blood_type")),
        donation_type=DonationType.parse(_field(doc, "donationType", "donation_type")),
        units=_count(_field(doc, "units")),
        urgency=Urgency.parse(_field(doc, "urgency")),
        created_at=parse_timestamp(_field(doc, "date", "created_at")),
        requester=str(_field(doc, "requester", default="") or ""),
        status=RequestStatus.parse(_field(doc, "status", default="Pending")),
        allocated_units=int(_field(doc, "allocatedUnits", "allocated_units", default=0) or 0),
        expires_at=parse_timestamp(expires_raw) if expires_raw else None,
    )


def unit_to_document(unit: InventoryUnit) -> dict:
    return {
        "_id": unit.unit_id,
        "bloodType": unit.blood_type.value,
        "donationType": unit.donation_type.value,
        "units": unit.units,
        "collectionDate": unit.collected_at.isoformat(),
        "expirationDate": unit.expires_at.isoformat(),
        "location": unit.facility_id,
        "storageConditions": unit.storage_conditions,
    }


def request_to_document(request: Request) -> dict:
    doc = {
        "_id": request.request_id,
        "date": request.created_at.isoformat(),
        "bloodType": request.blood_type.value,
        "donationType": request.donation_type.value,
        "units": request.units,
        "urgency": request.urgency.value,
        "status": request.status.value,
        "requester": request.requester,
        "allocatedUnits": request.allocated_units,
    }
    if request.expires_at is not None:
        doc["expiresAt"] = request.expires_at.isoformat()
    return doc


# ═══════════════════════════════════════════════════════════════════════════
# HELPERS
# ═══════════════════════════════════════════════════════════════════════════

def _field(doc: dict, *names: str, default: Any = _MISSING) -> Any:
    for name in names:
        if name in doc and doc[name] is not None:
            return doc[name]
    if default is _MISSING:
        raise SnapshotError(f"Missing field {names[0]!r}")
    return default


def _count(value: Any) -> int:
    """Unit counts must be positive whole numbers."""
    if isinstance(value, bool):
        raise InvalidQuantity(f"Invalid unit count: {value!r}")
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    elif isinstance(value, str) and value.strip().lstrip("-").isdigit():
        value = int(value.strip())
    if not isinstance(value, int) or value <= 0:
        raise InvalidQuantity(f"Unit count must be a positive integer, got {value!r}")
    return value


def _with_context(section: str, index: int, parser, doc: Any):
    if not isinstance(doc, dict):
        raise SnapshotError(f"{section}[{index}]: expected an object")
    try:
        return parser(doc)
    except InvalidQuantity as e:
        raise InvalidQuantity(f"{section}[{index}]: {e}") from e
    except (SnapshotError, ValueError, TypeError) as e:
        raise SnapshotError(f"{section}[{index}]: {e}") from e
