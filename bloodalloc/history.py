"""
Blood Allocation Engine - Audit History
========================================
Append-only store of every AllocationRecord, ReleaseRecord and
ShortageEntry the engine has produced, indexed by request and by unit.

This is the corpus handed to the downstream forecasting collaborator;
`frames()` exports it as pandas DataFrames.
"""

from __future__ import annotations

import threading
from typing import Union

import pandas as pd

from bloodalloc.models import AllocationRecord, ReleaseRecord, ShortageEntry

AuditRecord = Union[AllocationRecord, ReleaseRecord]

DRAW_COLUMNS = [
    "record_id", "kind", "request_id", "unit_id", "blood_type",
    "facility_id", "units", "timestamp",
]
SHORTAGE_COLUMNS = [
    "blood_type", "donation_type", "urgency", "unmet_units", "generated_at",
]


class AuditHistory:

    def __init__(self):
        self._lock = threading.Lock()
        self._records: list[AuditRecord] = []
        self._shortages: list[ShortageEntry] = []
        self._by_request: dict[str, list[int]] = {}
        self._by_unit: dict[str, list[int]] = {}

    def __len__(self):
        with self._lock:
            return len(self._records)

    def append(self, record: AuditRecord) -> None:
        with self._lock:
            position = len(self._records)
            self._records.append(record)
            self._by_request.setdefault(record.request_id, []).append(position)
            for draw in record.draws:
                positions = self._by_unit.setdefault(draw.unit_id, [])
                if not positions or positions[-1] != position:
                    positions.append(position)

    def extend_shortages(self, entries: list[ShortageEntry]) -> None:
        with self._lock:
            self._shortages.extend(entries)

    @property
    def records(self) -> list[AuditRecord]:
        with self._lock:
            return list(self._records)

    @property
    def shortages(self) -> list[ShortageEntry]:
        with self._lock:
            return list(self._shortages)

    def for_request(self, request_id: str) -> list[AuditRecord]:
        with self._lock:
            return [self._records[i] for i in self._by_request.get(request_id, [])]

    def for_unit(self, unit_id: str) -> list[AuditRecord]:
        with self._lock:
            return [self._records[i] for i in self._by_unit.get(unit_id, [])]

    def net_drawn(self, unit_id: str) -> int:
        """Units drawn from `unit_id` minus units released back to it."""
        total = 0
        for record in self.for_unit(unit_id):
            sign = 1 if isinstance(record, AllocationRecord) else -1
            total += sign * sum(d.units for d in record.draws if d.unit_id == unit_id)
        return total

    def frames(self) -> dict[str, pd.DataFrame]:
        """
        Draw-level and shortage-level DataFrames.

        Released units appear as rows with negative `units`, so summing
        `units` per unit_id gives the net consumption.
        """
        rows = []
        for record in self.records:
            if isinstance(record, AllocationRecord):
                kind, sign, ts = "allocation", 1, record.allocated_at
            else:
                kind, sign, ts = "release", -1, record.released_at
            for draw in record.draws:
                rows.append({
                    "record_id": record.record_id,
                    "kind": kind,
                    "request_id": record.request_id,
                    "unit_id": draw.unit_id,
                    "blood_type": draw.blood_type.value,
                    "facility_id": draw.facility_id,
                    "units": sign * draw.units,
                    "timestamp": ts,
                })

        draws = pd.DataFrame(rows, columns=DRAW_COLUMNS)
        shortages = pd.DataFrame(
            [s.to_dict() for s in self.shortages], columns=SHORTAGE_COLUMNS,
        )
        if not shortages.empty:
            shortages["generated_at"] = pd.to_datetime(shortages["generated_at"], utc=True)
        return {"allocations": draws, "shortages": shortages}
