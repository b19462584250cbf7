"""
Blood Allocation Engine - Data Models
======================================
Dataclass and enum definitions for everything flowing through the core.
Used by the ledger, planner and tracker and serialised to JSON for the
audit/notification collaborators.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from bloodalloc.config import URGENCY_RANK
from bloodalloc.errors import InvalidQuantity, InvalidTransition


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value) -> datetime:
    """Parse an ISO-8601 string (or datetime) into an aware UTC datetime."""
    if isinstance(value, datetime):
        ts = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        ts = datetime.fromisoformat(text)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════
# ENUMERATIONS
# ═══════════════════════════════════════════════════════════════════════════

class BloodType(Enum):
    """ABO/Rh blood group."""
    A_POS = "A+"
    A_NEG = "A-"
    B_POS = "B+"
    B_NEG = "B-"
    AB_POS = "AB+"
    AB_NEG = "AB-"
    O_POS = "O+"
    O_NEG = "O-"

    @property
    def abo(self) -> str:
        return self.value[:-1]

    @property
    def rh_positive(self) -> bool:
        return self.value.endswith("+")

    @classmethod
    def parse(cls, value) -> "BloodType":
        """Accept "O-", "O−" (unicode minus), "o neg", "AB positive" and friends."""
        if isinstance(value, cls):
            return value
        text = str(value).strip().upper().replace("−", "-").replace(" ", "")
        text = text.replace("POSITIVE", "+").replace("NEGATIVE", "-")
        text = text.replace("POS", "+").replace("NEG", "-")
        try:
            return cls(text)
        except ValueError:
            raise ValueError(f"Unknown blood type: {value!r}") from None

    def __str__(self):
        return self.value


class DonationType(Enum):
    WHOLE_BLOOD = "whole_blood"
    PLASMA = "plasma"
    RED_BLOOD_CELLS = "red_blood_cells"

    @classmethod
    def parse(cls, value) -> "DonationType":
        if isinstance(value, cls):
            return value
        text = str(value).strip().lower().replace(" ", "_").replace("-", "_")
        try:
            return cls(text)
        except ValueError:
            raise ValueError(f"Unknown donation type: {value!r}") from None

    @property
    def label(self) -> str:
        return self.value.replace("_", " ")

    def __str__(self):
        return self.value


class Urgency(Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"

    @property
    def rank(self) -> int:
        return URGENCY_RANK[self.value]

    @classmethod
    def parse(cls, value) -> "Urgency":
        if isinstance(value, cls):
            return value
        text = str(value).strip().capitalize()
        try:
            return cls(text)
        except ValueError:
            raise ValueError(f"Unknown urgency: {value!r}") from None

    def __str__(self):
        return self.value


class RequestStatus(Enum):
    PENDING = "Pending"
    IN_PROGRESS = "In Progress"
    FULFILLED = "Fulfilled"
    DECLINED = "Declined"
    EXPIRED = "Expired"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @classmethod
    def parse(cls, value) -> "RequestStatus":
        if isinstance(value, cls):
            return value
        text = str(value).strip().replace("_", " ").title()
        text = STATUS_ALIASES.get(text, text)
        try:
            return cls(text)
        except ValueError:
            raise ValueError(f"Unknown request status: {value!r}") from None

    def __str__(self):
        return self.value


# Statuses the host application stores that the engine folds into its own
STATUS_ALIASES = {
    "Matched": "In Progress",
}

TERMINAL_STATUSES = frozenset({
    RequestStatus.FULFILLED,
    RequestStatus.DECLINED,
    RequestStatus.EXPIRED,
})

# Allowed forward moves; everything else is an InvalidTransition
STATUS_TRANSITIONS = {
    RequestStatus.PENDING: {
        RequestStatus.IN_PROGRESS,
        RequestStatus.FULFILLED,
        RequestStatus.DECLINED,
        RequestStatus.EXPIRED,
    },
    RequestStatus.IN_PROGRESS: {
        RequestStatus.FULFILLED,
        RequestStatus.DECLINED,
        RequestStatus.EXPIRED,
    },
    RequestStatus.FULFILLED: set(),
    RequestStatus.DECLINED: set(),
    RequestStatus.EXPIRED: set(),
}


# ═══════════════════════════════════════════════════════════════════════════
# INVENTORY
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class InventoryUnit:
    """
    A batch of blood product held by one facility.

    `units` is the original count at receipt; the ledger tracks what
    remains after reservations.
    """
    unit_id: str
    blood_type: BloodType
    donation_type: DonationType
    units: int
    collected_at: datetime
    expires_at: datetime
    facility_id: str
    storage_conditions: str = ""

    def __post_init__(self):
        if not isinstance(self.units, int) or isinstance(self.units, bool) or self.units <= 0:
            raise InvalidQuantity(
                f"Unit {self.unit_id}: unit count must be a positive integer, got {self.units!r}"
            )
        if self.expires_at <= self.collected_at:
            raise ValueError(
                f"Unit {self.unit_id}: expiration must be after collection"
            )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def to_dict(self) -> dict:
        return {
            "unit_id": self.unit_id,
            "blood_type": self.blood_type.value,
            "donation_type": self.donation_type.value,
            "units": self.units,
            "collected_at": self.collected_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "facility_id": self.facility_id,
            "storage_conditions": self.storage_conditions,
        }


@dataclass(frozen=True)
class UnitStock:
    """Point-in-time view of a unit and what remains of it."""
    unit: InventoryUnit
    remaining: int


# ═══════════════════════════════════════════════════════════════════════════
# REQUESTS
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class Request:
    """A request for blood product raised by a hospital or individual."""
    request_id: str
    blood_type: BloodType
    donation_type: DonationType
    units: int
    urgency: Urgency
    created_at: datetime
    requester: str = ""
    status: RequestStatus = RequestStatus.PENDING
    allocated_units: int = 0
    expires_at: Optional[datetime] = None

    def __post_init__(self):
        if not isinstance(self.units, int) or isinstance(self.units, bool) or self.units <= 0:
            raise InvalidQuantity(
                f"Request {self.request_id}: unit count must be a positive integer, got {self.units!r}"
            )
        if self.allocated_units < 0 or self.allocated_units > self.units:
            raise InvalidQuantity(
                f"Request {self.request_id}: allocated units out of range"
            )

    @property
    def remaining(self) -> int:
        return self.units - self.allocated_units

    @property
    def is_open(self) -> bool:
        return not self.status.is_terminal

    def transition(self, target: RequestStatus) -> None:
        """Move to `target`, enforcing the monotonic lifecycle."""
        if target == self.status:
            return
        if target not in STATUS_TRANSITIONS[self.status]:
            raise InvalidTransition(self.request_id, self.status, target)
        self.status = target

    def to_dict(self) -> dict:
        return {
            "request_id": self.request_id,
            "blood_type": self.blood_type.value,
            "donation_type": self.donation_type.value,
            "units": self.units,
            "urgency": self.urgency.value,
            "created_at": self.created_at.isoformat(),
            "requester": self.requester,
            "status": self.status.value,
            "allocated_units": self.allocated_units,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }


@dataclass(frozen=True)
class StatusChange:
    request_id: str
    previous: RequestStatus
    current: RequestStatus

    def to_dict(self) -> dict:
        return {
            "request_id": self.request_id,
            "from": self.previous.value,
            "to": self.current.value,
        }


# ═══════════════════════════════════════════════════════════════════════════
# AUDIT RECORDS
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Draw:
    """Units taken from (or returned to) a single inventory unit."""
    unit_id: str
    units: int
    blood_type: BloodType
    facility_id: str
    expires_at: datetime

    def to_dict(self) -> dict:
        return {
            "unit_id": self.unit_id,
            "units": self.units,
            "blood_type": self.blood_type.value,
            "facility_id": self.facility_id,
            "expires_at": self.expires_at.isoformat(),
        }


@dataclass(frozen=True)
class AllocationRecord:
    """Audit link between a request and the physical units it consumed."""
    record_id: str
    request_id: str
    draws: tuple[Draw, ...]
    allocated_at: datetime

    @property
    def total_units(self) -> int:
        return sum(d.units for d in self.draws)

    def to_dict(self) -> dict:
        return {
            "record_id": self.record_id,
            "request_id": self.request_id,
            "draws": [d.to_dict() for d in self.draws],
            "total_units": self.total_units,
            "allocated_at": self.allocated_at.isoformat(),
        }


@dataclass(frozen=True)
class ReleaseRecord:
    """Units handed back to the ledger after a withdrawal or decline."""
    record_id: str
    request_id: str
    draws: tuple[Draw, ...]
    reason: str
    released_at: datetime

    @property
    def total_units(self) -> int:
        return sum(d.units for d in self.draws)

    def to_dict(self) -> dict:
        return {
            "record_id": self.record_id,
            "request_id": self.request_id,
            "draws": [d.to_dict() for d in self.draws],
            "total_units": self.total_units,
            "reason": self.reason,
            "released_at": self.released_at.isoformat(),
        }


@dataclass(frozen=True)
class ShortageEntry:
    blood_type: BloodType
    donation_type: DonationType
    urgency: Urgency
    unmet_units: int
    generated_at: datetime

    def to_dict(self) -> dict:
        return {
            "blood_type": self.blood_type.value,
            "donation_type": self.donation_type.value,
            "urgency": self.urgency.value,
            "unmet_units": self.unmet_units,
            "generated_at": self.generated_at.isoformat(),
        }


@dataclass(frozen=True)
class EscalationSignal:
    """Emergency broadcast trigger for an unmet Critical demand."""
    blood_type: BloodType
    donation_type: DonationType
    unmet_units: int
    request_ids: tuple[str, ...]
    message: str
    raised_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "blood_type": self.blood_type.value,
            "donation_type": self.donation_type.value,
            "unmet_units": self.unmet_units,
            "request_ids": list(self.request_ids),
            "message": self.message,
            "raised_at": self.raised_at.isoformat(),
        }
