"""
Blood Allocation Engine - Inventory Ledger
===========================================
In-memory view of the units each facility holds and how much of each
remains after reservations.

The ledger is partitioned by facility. Every partition carries its own
re-entrant lock: `reserve` and `release` perform their check-then-act
under it, and an allocation cycle holds the locks of the partitions it
plans over (see `exclusive`). Passes over disjoint facility sets never
contend here; the engine still runs its cycles one at a time.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Iterable, Iterator, Optional

from bloodalloc.config import LEDGER_LOCK_TIMEOUT
from bloodalloc.errors import (
    InsufficientQuantity,
    InvalidQuantity,
    LedgerBusy,
    UnitExpired,
    UnitNotFound,
)
from bloodalloc.models import BloodType, DonationType, InventoryUnit, UnitStock

logger = logging.getLogger(__name__)


class _Partition:
    """One facility's units and their remaining counts."""

    def __init__(self, facility_id: str):
        self.facility_id = facility_id
        self.lock = threading.RLock()
        self.units: dict[str, InventoryUnit] = {}
        self.remaining: dict[str, int] = {}


class InventoryLedger:
    """
    Units per facility, queried by blood type and donation type in
    first-expire-first-out order.
    """

    def __init__(self, units: Iterable[InventoryUnit] = (), lock_timeout: float = LEDGER_LOCK_TIMEOUT):
        self.lock_timeout = lock_timeout
        self._partitions: dict[str, _Partition] = {}
        self._index: dict[str, str] = {}          # unit_id -> facility_id
        self._registry_lock = threading.Lock()

        for unit in units:
            self.add_unit(unit)

    # ═══════════════════════════════════════════════════════════════════════
    # LOCKING
    # ═══════════════════════════════════════════════════════════════════════

    def _acquire(self, partition: _Partition, timeout: Optional[float] = None) -> None:
        wait = self.lock_timeout if timeout is None else timeout
        if not partition.lock.acquire(timeout=wait):
            raise LedgerBusy(partition.facility_id, wait)

    @contextmanager
    def _locked(self, partition: _Partition) -> Iterator[_Partition]:
        self._acquire(partition)
        try:
            yield partition
        finally:
            partition.lock.release()

    @contextmanager
    def exclusive(self, facilities: Optional[Iterable[str]] = None,
                  timeout: Optional[float] = None) -> Iterator[list[str]]:
        """
        Hold the locks of `facilities` (default: all) for the duration of
        the block. Locks are taken in sorted order so two cycles can never
        deadlock; if any lock is not obtained within `timeout` every lock
        already taken is released and LedgerBusy is raised.
        """
        with self._registry_lock:
            if facilities is None:
                names = sorted(self._partitions)
            else:
                names = sorted(set(facilities))
            partitions = [self._partition(name) for name in names]

        held: list[_Partition] = []
        try:
            for partition in partitions:
                self._acquire(partition, timeout)
                held.append(partition)
            yield names
        finally:
            for partition in reversed(held):
                partition.lock.release()

    def _partition(self, facility_id: str) -> _Partition:
        # Caller holds _registry_lock
        partition = self._partitions.get(facility_id)
        if partition is None:
            partition = _Partition(facility_id)
            self._partitions[facility_id] = partition
        return partition

    def _partition_of(self, unit_id: str) -> _Partition:
        with self._registry_lock:
            facility_id = self._index.get(unit_id)
            if facility_id is None:
                raise UnitNotFound(unit_id)
            return self._partitions[facility_id]

    # ═══════════════════════════════════════════════════════════════════════
    # STOCK MANAGEMENT
    # ═══════════════════════════════════════════════════════════════════════

    @property
    def facilities(self) -> list[str]:
        with self._registry_lock:
            return sorted(self._partitions)

    def __contains__(self, unit_id: str) -> bool:
        with self._registry_lock:
            return unit_id in self._index

    def add_unit(self, unit: InventoryUnit) -> None:
        """Receive a unit into its facility's partition."""
        with self._registry_lock:
            if unit.unit_id in self._index:
                raise ValueError(f"Duplicate inventory unit: {unit.unit_id}")
            partition = self._partition(unit.facility_id)
            self._index[unit.unit_id] = unit.facility_id

        with self._locked(partition):
            partition.units[unit.unit_id] = unit
            partition.remaining[unit.unit_id] = unit.units

        logger.debug("Added unit %s (%s %s x%d) at %s", unit.unit_id,
                     unit.blood_type, unit.donation_type, unit.units, unit.facility_id)

    def withdraw_unit(self, unit_id: str) -> UnitStock:
        """Remove a unit entirely (discarded, transferred out). Returns what was left."""
        partition = self._partition_of(unit_id)
        with self._locked(partition):
            unit = partition.units.pop(unit_id, None)
            if unit is None:
                raise UnitNotFound(unit_id)
            remaining = partition.remaining.pop(unit_id)
        with self._registry_lock:
            self._index.pop(unit_id, None)
        return UnitStock(unit=unit, remaining=remaining)

    def purge_expired(self, now: datetime, facilities: Optional[Iterable[str]] = None) -> list[UnitStock]:
        """Drop every unit whose expiration is at or before `now`."""
        names = self.facilities if facilities is None else sorted(set(facilities))
        purged = []
        for facility_id in names:
            with self._registry_lock:
                partition = self._partitions.get(facility_id)
            if partition is None:
                continue
            with self._locked(partition):
                expired = [u for u in partition.units.values() if u.is_expired(now)]
                for unit in expired:
                    del partition.units[unit.unit_id]
                    purged.append(UnitStock(unit=unit, remaining=partition.remaining.pop(unit.unit_id)))
        with self._registry_lock:
            for stock in purged:
                self._index.pop(stock.unit.unit_id, None)

        if purged:
            logger.info("Purged %d expired unit(s)", len(purged))
        return purged

    def get(self, unit_id: str) -> InventoryUnit:
        partition = self._partition_of(unit_id)
        with self._locked(partition):
            if unit_id not in partition.units:
                raise UnitNotFound(unit_id)
            return partition.units[unit_id]

    def remaining(self, unit_id: str) -> int:
        partition = self._partition_of(unit_id)
        with self._locked(partition):
            if unit_id not in partition.remaining:
                raise UnitNotFound(unit_id)
            return partition.remaining[unit_id]

    def units(self) -> list[UnitStock]:
        """Every unit held, with its remaining count."""
        stocks = []
        for facility_id in self.facilities:
            with self._registry_lock:
                partition = self._partitions[facility_id]
            with self._locked(partition):
                stocks.extend(
                    UnitStock(unit=u, remaining=partition.remaining[u.unit_id])
                    for u in partition.units.values()
                )
        return stocks

    # ═══════════════════════════════════════════════════════════════════════
    # QUERIES
    # ═══════════════════════════════════════════════════════════════════════

    def available_units(self, blood_type: BloodType, donation_type: DonationType,
                        now: datetime, facilities: Optional[Iterable[str]] = None) -> list[UnitStock]:
        """
        Units of exactly `blood_type` / `donation_type` with stock left,
        soonest expiration first. Units expiring at or before `now` are
        excluded.
        """
        names = self.facilities if facilities is None else sorted(set(facilities))
        stocks = []
        for facility_id in names:
            with self._registry_lock:
                partition = self._partitions.get(facility_id)
            if partition is None:
                continue
            with self._locked(partition):
                for unit in partition.units.values():
                    left = partition.remaining[unit.unit_id]
                    if (left > 0
                            and unit.blood_type == blood_type
                            and unit.donation_type == donation_type
                            and not unit.is_expired(now)):
                        stocks.append(UnitStock(unit=unit, remaining=left))

        stocks.sort(key=lambda s: (s.unit.expires_at, s.unit.unit_id))
        return stocks

    def summary(self, facility_id: Optional[str] = None, now: Optional[datetime] = None) -> dict:
        """
        Units on hand per donation type plus the blood types available,
        for one facility or (default) every facility.
        """
        totals = {dt.value: 0 for dt in DonationType}
        by_blood_type: dict[str, int] = {}
        for stock in self.units():
            unit = stock.unit
            if facility_id is not None and unit.facility_id != facility_id:
                continue
            if now is not None and unit.is_expired(now):
                continue
            if stock.remaining <= 0:
                continue
            totals[unit.donation_type.value] += stock.remaining
            by_blood_type[unit.blood_type.value] = by_blood_type.get(unit.blood_type.value, 0) + stock.remaining

        return {
            "facility_id": facility_id,
            "inventory_summary": totals,
            "units_by_blood_type": by_blood_type,
            "available_blood_types": sorted(by_blood_type),
        }

    # ═══════════════════════════════════════════════════════════════════════
    # RESERVATIONS
    # ═══════════════════════════════════════════════════════════════════════

    def reserve(self, unit_id: str, quantity: int, now: datetime) -> int:
        """
        Atomically take `quantity` units from `unit_id`.

        Returns the count left on the unit. Raises InsufficientQuantity if
        fewer than `quantity` remain and UnitExpired if the unit has
        expired at `now`; in both cases nothing changes.
        """
        if not isinstance(quantity, int) or quantity <= 0:
            raise InvalidQuantity(f"Reservation quantity must be positive, got {quantity!r}")

        partition = self._partition_of(unit_id)
        with self._locked(partition):
            unit = partition.units.get(unit_id)
            if unit is None:
                raise UnitNotFound(unit_id)
            if unit.is_expired(now):
                raise UnitExpired(unit_id, unit.expires_at)
            left = partition.remaining[unit_id]
            if quantity > left:
                raise InsufficientQuantity(unit_id, quantity, left)
            partition.remaining[unit_id] = left - quantity
            return left - quantity

    def release(self, unit_id: str, quantity: int) -> int:
        """Return `quantity` reserved units to `unit_id`. Returns the new remaining count."""
        if not isinstance(quantity, int) or quantity <= 0:
            raise InvalidQuantity(f"Release quantity must be positive, got {quantity!r}")

        partition = self._partition_of(unit_id)
        with self._locked(partition):
            unit = partition.units.get(unit_id)
            if unit is None:
                raise UnitNotFound(unit_id)
            restored = partition.remaining[unit_id] + quantity
            if restored > unit.units:
                raise InvalidQuantity(
                    f"Unit {unit_id}: releasing {quantity} would exceed its original {unit.units}"
                )
            partition.remaining[unit_id] = restored
            return restored
