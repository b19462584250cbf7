"""
Blood Allocation Engine - Cycle Orchestration
==============================================
The host application's entry point into the core. Holds the inventory
ledger and the book of open requests, runs allocation cycles and
handles withdrawals.

One cycle:
  1. take the ledger partition locks (bounded wait, LedgerBusy on timeout)
  2. expire time-boxed requests and purge expired units
  3. plan allocations
  4. summarize shortages, escalating Critical ones; a facility-scoped
     cycle leaves out demand that stock outside its scope can cover
  5. append to the audit history and emit the cycle report

Nothing in a cycle waits on notification delivery; emission is queued.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

from bloodalloc.config import LEDGER_LOCK_TIMEOUT, REQUEST_TTL_HOURS
from bloodalloc.errors import (
    InvalidTransition,
    LedgerBusy,
    RequestNotFound,
    UnitNotFound,
)
from bloodalloc.history import AuditHistory
from bloodalloc.ledger import InventoryLedger
from bloodalloc.models import (
    Draw,
    EscalationSignal,
    InventoryUnit,
    ReleaseRecord,
    Request,
    RequestStatus,
    ShortageEntry,
    StatusChange,
    STATUS_TRANSITIONS,
    UnitStock,
    utcnow,
)
from bloodalloc.notifications import Notification, QueuedEmitter
from bloodalloc.planner import AllocationPlan, AllocationPlanner
from bloodalloc.shortage import ShortageTracker

logger = logging.getLogger(__name__)


@dataclass
class CycleReport:
    """Everything one allocation cycle produced, in emission order."""
    cycle_id: str
    started_at: datetime
    plan: AllocationPlan
    shortages: list[ShortageEntry] = field(default_factory=list)
    escalations: list[EscalationSignal] = field(default_factory=list)
    expired: list[StatusChange] = field(default_factory=list)
    # Withdrawals and declines recorded since the previous cycle
    releases: list[ReleaseRecord] = field(default_factory=list)
    purged_units: list[UnitStock] = field(default_factory=list)

    @property
    def records(self):
        return self.plan.records

    @property
    def status_changes(self) -> list[StatusChange]:
        return self.expired + self.plan.status_changes

    def to_dict(self) -> dict:
        return {
            "cycle_id": self.cycle_id,
            "started_at": self.started_at.isoformat(),
            "allocated_units": self.plan.allocated_units,
            "records": [r.to_dict() for r in self.plan.records],
            "releases": [r.to_dict() for r in self.releases],
            "outcomes": [o.to_dict() for o in self.plan.outcomes],
            "shortages": [s.to_dict() for s in self.shortages],
            "escalations": [e.to_dict() for e in self.escalations],
            "status_changes": [c.to_dict() for c in self.status_changes],
            "purged_units": [
                {"unit_id": p.unit.unit_id, "remaining": p.remaining} for p in self.purged_units
            ],
        }


class AllocationEngine:
    """
    Stateful wrapper around the planner for a host application.

    Args:
        ledger: inventory to allocate from (a new empty one by default)
        emitter: queued emitter for audit/notification events; None disables emission
        planner: allocation planner
        tracker: shortage tracker; by default it broadcasts through `emitter`
        clock: source of "now" when a cycle is run without an explicit time
        lock_timeout: bounded wait for partition locks
    """

    def __init__(self,
                 ledger: Optional[InventoryLedger] = None,
                 emitter: Optional[QueuedEmitter] = None,
                 planner: Optional[AllocationPlanner] = None,
                 tracker: Optional[ShortageTracker] = None,
                 clock: Callable[[], datetime] = utcnow,
                 lock_timeout: float = LEDGER_LOCK_TIMEOUT):
        self.ledger = ledger if ledger is not None else InventoryLedger(lock_timeout=lock_timeout)
        self.emitter = emitter
        self.planner = planner or AllocationPlanner()
        self.tracker = tracker or ShortageTracker(broadcaster=emitter)
        self.clock = clock
        self.lock_timeout = lock_timeout
        self.history = AuditHistory()

        self._requests: dict[str, Request] = {}
        self._book_lock = threading.RLock()
        # Draws currently held by each request, for release on withdrawal
        self._held: dict[str, list[Draw]] = {}
        self._releases: list[ReleaseRecord] = []

    # ═══════════════════════════════════════════════════════════════════════
    # INPUT
    # ═══════════════════════════════════════════════════════════════════════

    def submit(self, request: Request) -> Request:
        """Book a request. Requests without a deadline get the urgency's default time-box."""
        if request.expires_at is None and request.is_open:
            request.expires_at = request.created_at + timedelta(hours=REQUEST_TTL_HOURS[request.urgency.value])
        with self._book():
            if request.request_id in self._requests:
                raise ValueError(f"Duplicate request: {request.request_id}")
            self._requests[request.request_id] = request
        logger.debug("Booked request %s (%s %s x%d, %s)", request.request_id, request.blood_type,
                     request.donation_type, request.units, request.urgency)
        return request

    def add_unit(self, unit: InventoryUnit) -> None:
        self.ledger.add_unit(unit)

    def load(self, requests: Iterable[Request] = (), units: Iterable[InventoryUnit] = ()) -> None:
        """
        Load a persistence-layer snapshot.

        Duplicate ids (within the snapshot or against what is already
        booked) reject the whole snapshot before anything is added.
        """
        requests, units = list(requests), list(units)
        with self._book():
            _check_unique("inventory unit", [u.unit_id for u in units], self.ledger.__contains__)
            _check_unique("request", [r.request_id for r in requests], self._requests.__contains__)
            for unit in units:
                self.add_unit(unit)
            for request in requests:
                self.submit(request)

    def get(self, request_id: str) -> Request:
        with self._book():
            request = self._requests.get(request_id)
        if request is None:
            raise RequestNotFound(request_id)
        return request

    def requests(self, status: Optional[RequestStatus] = None) -> list[Request]:
        with self._book():
            found = list(self._requests.values())
        if status is not None:
            found = [r for r in found if r.status == status]
        return found

    # ═══════════════════════════════════════════════════════════════════════
    # ALLOCATION CYCLE
    # ═══════════════════════════════════════════════════════════════════════

    def run_cycle(self, now: Optional[datetime] = None,
                  facilities: Optional[Iterable[str]] = None) -> CycleReport:
        """
        Run one allocation cycle.

        Raises LedgerBusy (retryable) if the request book or a facility
        partition stays locked past the bounded wait; in that case nothing
        has changed and the cycle can simply be re-run.
        """
        now = now or self.clock()
        scope = None if facilities is None else sorted(set(facilities))

        with self._book():
            with self.ledger.exclusive(scope, timeout=self.lock_timeout):
                expired = self._expire_requests(now)
                purged = self.ledger.purge_expired(now, scope)
                plan = self.planner.plan(self._requests.values(), self.ledger, now, scope)
                for record in plan.records:
                    self._held.setdefault(record.request_id, []).extend(record.draws)
                    self.history.append(record)
                for outcome in plan.outcomes:
                    if outcome.status == RequestStatus.FULFILLED:
                        self._held.pop(outcome.request_id, None)
                releases, self._releases = self._releases, []

        coverable: dict[str, int] = {}
        if scope is not None and plan.unmet:
            try:
                coverable = self._coverable_elsewhere(plan, now, scope)
            except LedgerBusy as exc:
                logger.warning("Could not check stock outside %s (%s); reporting every shortage", scope, exc)

        assessment = self.tracker.assess(plan, coverable)
        self.history.extend_shortages(assessment.entries)

        report = CycleReport(
            cycle_id=uuid.uuid4().hex,
            started_at=now,
            plan=plan,
            shortages=assessment.entries,
            escalations=assessment.escalations,
            expired=expired,
            releases=releases,
            purged_units=purged,
        )
        self._emit_report(report)
        return report

    def _expire_requests(self, now: datetime) -> list[StatusChange]:
        changes = []
        for request in self._requests.values():
            if request.is_open and request.expires_at is not None and request.expires_at <= now:
                previous = request.status
                request.transition(RequestStatus.EXPIRED)
                # Units already drawn stay issued; only the hold bookkeeping is dropped
                self._held.pop(request.request_id, None)
                changes.append(StatusChange(request.request_id, previous, request.status))
        if changes:
            logger.info("Expired %d request(s)", len(changes))
        return changes

    def _coverable_elsewhere(self, plan: AllocationPlan, now: datetime, scope: list[str]) -> dict[str, int]:
        """
        Unmet units of a facility-scoped cycle that stock outside the
        scope could still cover, per request id. Stock is shared out in
        service order so two requests never count the same units.
        """
        outside = [f for f in self.ledger.facilities if f not in scope]
        coverable: dict[str, int] = {}
        if not outside:
            return coverable

        left: dict[str, int] = {}
        with self._book():
            for outcome in plan.unmet:
                request = self._requests[outcome.request_id]
                needed = outcome.unmet_units
                for stock in self.planner.candidates(request, self.ledger, now, outside):
                    if needed == 0:
                        break
                    unit_id = stock.unit.unit_id
                    take = min(left.setdefault(unit_id, stock.remaining), needed)
                    left[unit_id] -= take
                    needed -= take
                if needed < outcome.unmet_units:
                    coverable[outcome.request_id] = outcome.unmet_units - needed
        if coverable:
            logger.info("%d unit(s) of unmet demand are stocked outside %s",
                        sum(coverable.values()), ", ".join(scope))
        return coverable

    # ═══════════════════════════════════════════════════════════════════════
    # WITHDRAWAL / DECLINE
    # ═══════════════════════════════════════════════════════════════════════

    def withdraw(self, request_id: str, reason: str = "withdrawn by requester",
                 now: Optional[datetime] = None) -> Optional[ReleaseRecord]:
        """
        Cancel a request between cycles.

        Every unit reserved for it goes back to the ledger before the
        request moves to Declined. Returns the ReleaseRecord, or None if
        nothing was held.
        """
        now = now or self.clock()
        with self._book():
            request = self.get(request_id)
            if RequestStatus.DECLINED not in STATUS_TRANSITIONS[request.status]:
                raise InvalidTransition(request_id, request.status, RequestStatus.DECLINED)

            held = self._held.pop(request_id, [])
            facilities = {d.facility_id for d in held}
            returned: list[Draw] = []
            with self.ledger.exclusive(facilities, timeout=self.lock_timeout):
                for draw in held:
                    try:
                        self.ledger.release(draw.unit_id, draw.units)
                    except UnitNotFound:
                        logger.warning("Unit %s left the ledger; %d unit(s) of request %s not returned",
                                       draw.unit_id, draw.units, request_id)
                        continue
                    returned.append(draw)

            # Units that left the ledger stay counted as issued to the request
            request.allocated_units -= sum(d.units for d in returned)
            request.transition(RequestStatus.DECLINED)

            record = None
            if returned:
                record = ReleaseRecord(
                    record_id=uuid.uuid4().hex,
                    request_id=request_id,
                    draws=tuple(returned),
                    reason=reason,
                    released_at=now,
                )
                self.history.append(record)
                self._releases.append(record)

        logger.info("Request %s declined (%s); %d unit(s) returned", request_id, reason,
                    record.total_units if record else 0)
        self._emit(Notification("decline", {
            "request_id": request_id,
            "requester": request.requester,
            "reason": reason,
            "units_returned": record.total_units if record else 0,
            "release": record.to_dict() if record else None,
            "message": f"Request {request_id} for {request.units} unit(s) of {request.blood_type} "
                       f"{request.donation_type.label} was declined: {reason}.",
        }, created_at=now))
        return record

    def decline(self, request_id: str, facility_id: str, reason: str = "",
                now: Optional[datetime] = None) -> Optional[ReleaseRecord]:
        """Explicit rejection of a request by a facility."""
        text = f"declined by {facility_id}" + (f": {reason}" if reason else "")
        return self.withdraw(request_id, reason=text, now=now)

    # ═══════════════════════════════════════════════════════════════════════
    # EMISSION
    # ═══════════════════════════════════════════════════════════════════════

    def _book(self):
        """Request-book lock with the same bounded wait as the ledger."""
        return _BoundedLock(self._book_lock, self.lock_timeout, "request book")

    def _emit(self, notification: Notification) -> None:
        if self.emitter is not None:
            self.emitter.emit(notification)

    def _emit_report(self, report: CycleReport) -> None:
        if self.emitter is None:
            return
        for record in report.records:
            request = self._requests.get(record.request_id)
            self._emit(Notification("response", {
                "request_id": record.request_id,
                "requester": request.requester if request else "",
                "status": request.status.value if request else None,
                "record": record.to_dict(),
                "message": f"{record.total_units} unit(s) allocated to request {record.request_id} "
                           f"from {len({d.facility_id for d in record.draws})} facility(ies).",
            }, created_at=report.started_at))
        for entry in report.shortages:
            # Escalation tiers already went out as emergency broadcasts
            if entry.urgency in self.tracker.escalation_tiers:
                continue
            self._emit(Notification("info", entry.to_dict(), created_at=report.started_at))
        self._emit(Notification("cycle", report.to_dict(), created_at=report.started_at))


def _check_unique(kind: str, ids: list[str], known: Callable[[str], bool]) -> None:
    seen = set()
    for item_id in ids:
        if item_id in seen or known(item_id):
            raise ValueError(f"Duplicate {kind}: {item_id}")
        seen.add(item_id)


class _BoundedLock:
    """Context manager: acquire `lock` within `timeout` or raise LedgerBusy."""

    def __init__(self, lock, timeout: float, name: str):
        self.lock = lock
        self.timeout = timeout
        self.name = name

    def __enter__(self):
        if not self.lock.acquire(timeout=self.timeout):
            raise LedgerBusy(self.name, self.timeout)
        return self

    def __exit__(self, *exc):
        self.lock.release()
        return False
