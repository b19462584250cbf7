"""
Blood Allocation Engine - Allocation Planner
=============================================
Decides which inventory units satisfy which requests in one allocation
cycle.

Order of service:
  1. Urgency tier, Critical first.
  2. Creation time within a tier, oldest first (fairness tie-break).

Unit selection for a request, across every compatible donor type:
  a. exact blood-type match before a cross-type compatible match
  b. soonest expiration (first-expire-first-out)
  c. fewer distinct units, i.e. the larger remaining stock first
  then the compatibility table's donor preference and the unit id, so
  the outcome is fully deterministic.

Units are reserved greedily. A short request is left In Progress and
its remainder is reported as unmet demand for the shortage tracker.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable, Optional

from bloodalloc.compatibility import compatible_donors, donor_preference, ensure_compatible
from bloodalloc.errors import (
    AllocationError,
    InsufficientQuantity,
    UnitExpired,
    UnitNotFound,
)
from bloodalloc.ledger import InventoryLedger
from bloodalloc.models import (
    AllocationRecord,
    BloodType,
    DonationType,
    Draw,
    Request,
    RequestStatus,
    StatusChange,
    UnitStock,
    Urgency,
)

logger = logging.getLogger(__name__)

# How many times a request may re-list candidates after losing units to
# a concurrent reservation or expiry
MAX_SELECTION_PASSES = 3


def new_record_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class RequestOutcome:
    """What one cycle did for one request."""
    request_id: str
    blood_type: BloodType
    donation_type: DonationType
    urgency: Urgency
    previous_status: RequestStatus
    status: RequestStatus
    allocated_units: int      # drawn in this cycle
    unmet_units: int          # still outstanding after this cycle

    @property
    def status_change(self) -> Optional[StatusChange]:
        if self.previous_status == self.status:
            return None
        return StatusChange(self.request_id, self.previous_status, self.status)

    def to_dict(self) -> dict:
        return {
            "request_id": self.request_id,
            "blood_type": self.blood_type.value,
            "donation_type": self.donation_type.value,
            "urgency": self.urgency.value,
            "previous_status": self.previous_status.value,
            "status": self.status.value,
            "allocated_units": self.allocated_units,
            "unmet_units": self.unmet_units,
        }


@dataclass
class AllocationPlan:
    """Result of one allocation cycle."""
    generated_at: datetime
    records: list[AllocationRecord] = field(default_factory=list)
    outcomes: list[RequestOutcome] = field(default_factory=list)

    @property
    def allocated_units(self) -> int:
        return sum(r.total_units for r in self.records)

    @property
    def unmet(self) -> list[RequestOutcome]:
        return [o for o in self.outcomes if o.unmet_units > 0]

    @property
    def status_changes(self) -> list[StatusChange]:
        return [o.status_change for o in self.outcomes if o.status_change]

    def records_for(self, request_id: str) -> list[AllocationRecord]:
        return [r for r in self.records if r.request_id == request_id]

    def to_dict(self) -> dict:
        return {
            "generated_at": self.generated_at.isoformat(),
            "allocated_units": self.allocated_units,
            "records": [r.to_dict() for r in self.records],
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


def service_order(requests: Iterable[Request]) -> list[Request]:
    """Open requests in the order they are served."""
    open_requests = [r for r in requests if r.is_open]
    return sorted(
        open_requests,
        key=lambda r: (-r.urgency.rank, r.created_at, r.request_id),
    )


class AllocationPlanner:
    """
    Greedy, urgency-ordered allocator over an InventoryLedger.

    The planner mutates the requests it is given (allocated units and
    status) and the ledger's reservation state; it performs no I/O.
    """

    def __init__(self, id_factory: Callable[[], str] = new_record_id):
        self.id_factory = id_factory

    def plan(self, requests: Iterable[Request], ledger: InventoryLedger, now: datetime,
             facilities: Optional[Iterable[str]] = None) -> AllocationPlan:
        """
        Run one allocation cycle.

        Args:
            requests: request snapshot; terminal requests are ignored
            ledger: inventory to draw from
            now: allocation timestamp; units expiring at or before it are never used
            facilities: restrict drawing to these facility partitions

        Returns:
            AllocationPlan with one record per request that received units
            and one outcome per open request considered.
        """
        scope = None if facilities is None else sorted(set(facilities))
        plan = AllocationPlan(generated_at=now)

        for request in service_order(requests):
            previous = request.status
            draws = self._allocate(request, ledger, now, scope)

            if draws:
                record = AllocationRecord(
                    record_id=self.id_factory(),
                    request_id=request.request_id,
                    draws=tuple(draws),
                    allocated_at=now,
                )
                plan.records.append(record)
                logger.debug("Request %s drew %d unit(s) from %d inventory unit(s)",
                             request.request_id, record.total_units, len(draws))
            elif request.remaining == 0:
                # Already covered by earlier cycles; just settle the status
                request.transition(RequestStatus.FULFILLED)

            plan.outcomes.append(RequestOutcome(
                request_id=request.request_id,
                blood_type=request.blood_type,
                donation_type=request.donation_type,
                urgency=request.urgency,
                previous_status=previous,
                status=request.status,
                allocated_units=sum(d.units for d in draws),
                unmet_units=request.remaining,
            ))

        logger.info(
            "Allocation cycle at %s: %d request(s) considered, %d unit(s) allocated, %d request(s) short",
            now.isoformat(), len(plan.outcomes), plan.allocated_units, len(plan.unmet),
        )
        return plan

    # ═══════════════════════════════════════════════════════════════════════
    # PER-REQUEST ALLOCATION
    # ═══════════════════════════════════════════════════════════════════════

    def _allocate(self, request: Request, ledger: InventoryLedger, now: datetime,
                  scope: Optional[list[str]]) -> list[Draw]:
        """
        Reserve units for `request` and commit its new status.

        Either every reservation and the status change commit together,
        or every reservation made here is released and the error is
        raised.
        """
        needed = request.remaining
        draws: list[Draw] = []
        tried: set[str] = set()

        try:
            for _ in range(MAX_SELECTION_PASSES):
                if needed == 0:
                    break
                candidates = [c for c in self.candidates(request, ledger, now, scope)
                              if c.unit.unit_id not in tried]
                if not candidates:
                    break

                contended = False
                for stock in candidates:
                    if needed == 0:
                        break
                    unit = stock.unit
                    ensure_compatible(request.blood_type, unit.blood_type, request.donation_type)
                    tried.add(unit.unit_id)

                    taken = self._reserve(ledger, unit.unit_id, min(stock.remaining, needed), now)
                    if taken < min(stock.remaining, needed):
                        contended = True
                    if taken:
                        draws.append(Draw(
                            unit_id=unit.unit_id,
                            units=taken,
                            blood_type=unit.blood_type,
                            facility_id=unit.facility_id,
                            expires_at=unit.expires_at,
                        ))
                        needed -= taken

                if not contended:
                    break

            allocated = sum(d.units for d in draws)
            if allocated:
                request.transition(
                    RequestStatus.FULFILLED if allocated == request.remaining else RequestStatus.IN_PROGRESS
                )
                request.allocated_units += allocated
        except AllocationError:
            self._rollback(ledger, draws)
            raise

        return draws

    def candidates(self, request: Request, ledger: InventoryLedger, now: datetime,
                   scope: Optional[list[str]] = None) -> list[UnitStock]:
        """Every usable unit for `request`, ranked best first."""
        pool: list[UnitStock] = []
        for donor in compatible_donors(request.blood_type, request.donation_type):
            pool.extend(ledger.available_units(donor, request.donation_type, now, scope))

        def rank(stock: UnitStock):
            unit = stock.unit
            exact = unit.blood_type == request.blood_type
            return (
                0 if exact else 1,
                unit.expires_at,
                -stock.remaining,
                donor_preference(request.blood_type, unit.blood_type, request.donation_type),
                unit.unit_id,
            )

        pool.sort(key=rank)
        return pool

    def _reserve(self, ledger: InventoryLedger, unit_id: str, wanted: int, now: datetime) -> int:
        """
        Reserve up to `wanted` units, settling for what is left if another
        cycle got there first. Returns the number actually reserved.
        """
        while wanted > 0:
            try:
                ledger.reserve(unit_id, wanted, now)
                return wanted
            except InsufficientQuantity as exc:
                logger.debug("Unit %s: wanted %d, %d left; retrying", unit_id, wanted, exc.remaining)
                wanted = min(wanted, exc.remaining)
            except UnitExpired:
                logger.info("Unit %s expired before reservation; skipping", unit_id)
                return 0
            except UnitNotFound:
                logger.info("Unit %s withdrawn before reservation; skipping", unit_id)
                return 0
        return 0

    @staticmethod
    def _rollback(ledger: InventoryLedger, draws: list[Draw]) -> None:
        for draw in reversed(draws):
            ledger.release(draw.unit_id, draw.units)
        if draws:
            logger.warning("Rolled back %d reservation(s)", len(draws))
