"""
Blood Allocation Engine
=======================
Deterministic matching of blood requests to inventory units across
facilities: compatibility rules, FEFO ledger, allocation planning,
shortage escalation and audit emission.
"""

from bloodalloc.models import (
    BloodType,
    DonationType,
    Urgency,
    RequestStatus,
    InventoryUnit,
    Request,
    AllocationRecord,
    ReleaseRecord,
    ShortageEntry,
    EscalationSignal,
)
from bloodalloc.compatibility import is_compatible, compatible_donors
from bloodalloc.ledger import InventoryLedger
from bloodalloc.planner import AllocationPlanner, AllocationPlan
from bloodalloc.shortage import ShortageTracker
from bloodalloc.engine import AllocationEngine, CycleReport

__version__ = "1.0.0"
