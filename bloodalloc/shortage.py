"""
Blood Allocation Engine - Shortage & Escalation Tracker
========================================================
Turns the unmet remainder of an allocation cycle into shortage entries
and, for Critical demand, emergency broadcast signals.

Escalation is the tracker's only side effect: it hands each signal to
the broadcaster it was built with and performs no delivery itself.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Mapping, Optional, Protocol

from bloodalloc.compatibility import compatible_donors
from bloodalloc.config import ESCALATION_TIERS
from bloodalloc.models import (
    BloodType,
    DonationType,
    EscalationSignal,
    ShortageEntry,
    Urgency,
)
from bloodalloc.planner import AllocationPlan

logger = logging.getLogger(__name__)


class Broadcaster(Protocol):
    """External collaborator that sends emergency broadcasts."""

    def broadcast(self, signal: EscalationSignal) -> None:
        ...


@dataclass
class ShortageAssessment:
    entries: list[ShortageEntry] = field(default_factory=list)
    escalations: list[EscalationSignal] = field(default_factory=list)


class ShortageTracker:
    """
    Aggregates unmet demand per (blood type, donation type, urgency).
    """

    def __init__(self, broadcaster: Optional[Broadcaster] = None,
                 escalation_tiers: tuple[str, ...] = ESCALATION_TIERS):
        self.broadcaster = broadcaster
        self.escalation_tiers = {Urgency.parse(t) for t in escalation_tiers}

    def summarize(self, plan: AllocationPlan) -> list[ShortageEntry]:
        """Shortage entries for `plan`, most urgent and largest first."""
        return self.assess(plan).entries

    def assess(self, plan: AllocationPlan,
               coverable: Optional[Mapping[str, int]] = None) -> ShortageAssessment:
        """
        Compute shortage entries and raise an escalation for every
        shortage in an escalation tier.

        `coverable` maps request ids to unmet units that stock the plan
        did not look at can still cover; those units are not a shortage.
        """
        coverable = coverable or {}
        totals: dict[tuple[BloodType, DonationType, Urgency], int] = {}
        request_ids: dict[tuple[BloodType, DonationType, Urgency], list[str]] = {}

        for outcome in plan.unmet:
            unmet = outcome.unmet_units - coverable.get(outcome.request_id, 0)
            if unmet <= 0:
                continue
            key = (outcome.blood_type, outcome.donation_type, outcome.urgency)
            totals[key] = totals.get(key, 0) + unmet
            request_ids.setdefault(key, []).append(outcome.request_id)

        entries = [
            ShortageEntry(
                blood_type=bt,
                donation_type=dt,
                urgency=urg,
                unmet_units=units,
                generated_at=plan.generated_at,
            )
            for (bt, dt, urg), units in totals.items()
        ]
        entries.sort(key=lambda e: (
            -e.urgency.rank,
            -e.unmet_units,
            e.blood_type.value,
            e.donation_type.value,
        ))

        escalations = []
        for entry in entries:
            if entry.urgency not in self.escalation_tiers:
                continue
            key = (entry.blood_type, entry.donation_type, entry.urgency)
            signal = EscalationSignal(
                blood_type=entry.blood_type,
                donation_type=entry.donation_type,
                unmet_units=entry.unmet_units,
                request_ids=tuple(request_ids[key]),
                message=appeal_message(entry),
                raised_at=plan.generated_at,
            )
            escalations.append(signal)
            logger.warning("Escalating %s shortage: %d unit(s) of %s %s unmet",
                           entry.urgency, entry.unmet_units, entry.blood_type, entry.donation_type.label)
            if self.broadcaster is not None:
                self.broadcaster.broadcast(signal)

        return ShortageAssessment(entries=entries, escalations=escalations)


def appeal_message(entry: ShortageEntry) -> str:
    """Public broadcast text for a shortage."""
    if entry.urgency == Urgency.CRITICAL:
        prefix, timeframe = "URGENT", "immediately"
    elif entry.urgency == Urgency.HIGH:
        prefix, timeframe = "Critical", "today"
    else:
        prefix, timeframe = "Needed", "soon"

    compatible = ", ".join(_donor_types(entry))
    return (
        f"{prefix}: {entry.unmet_units} unit(s) of {entry.blood_type} "
        f"{entry.donation_type.label} are needed and cannot be covered from current stock. "
        f"Donors with {compatible} blood, please donate {timeframe}."
    )


def _donor_types(entry: ShortageEntry) -> list[str]:
    return [bt.value for bt in compatible_donors(entry.blood_type, entry.donation_type)]
