"""Tests for the allocation planner: ordering, FEFO, atomicity and idempotence."""

from __future__ import annotations

from collections import defaultdict

import pytest

from bloodalloc import compatibility
from bloodalloc.errors import IncompatibleTypes, UnitExpired
from bloodalloc.models import BloodType, RequestStatus
from bloodalloc.planner import service_order
from bloodalloc.shortage import ShortageTracker


class TestScenarios:

    def test_exact_match_and_unmet_remainder(self, ledger, planner, make_unit, make_request, now):
        ledger.add_unit(make_unit("O-", units=1, expires_in_days=5, unit_id="o-neg"))
        ledger.add_unit(make_unit("O+", units=3, expires_in_days=2, unit_id="o-pos"))
        request = make_request("O-", units=2, urgency="Critical")

        plan = planner.plan([request], ledger, now)

        assert len(plan.records) == 1
        draws = plan.records[0].draws
        assert [(d.unit_id, d.units) for d in draws] == [("o-neg", 1)]
        assert request.status == RequestStatus.IN_PROGRESS
        assert request.allocated_units == 1
        assert ledger.remaining("o-pos") == 3

        entries = ShortageTracker().summarize(plan)
        assert len(entries) == 1
        entry = entries[0]
        assert (entry.blood_type.value, entry.donation_type.value, entry.urgency.value, entry.unmet_units) == \
            ("O-", "whole_blood", "Critical", 1)

    def test_earlier_request_wins_scarce_unit(self, ledger, planner, make_unit, make_request, now):
        ledger.add_unit(make_unit("A+", units=1, unit_id="only"))
        first = make_request("A+", urgency="High", minutes_ago=30)
        second = make_request("A+", urgency="High", minutes_ago=20)

        plan = planner.plan([second, first], ledger, now)

        assert first.status == RequestStatus.FULFILLED
        assert second.status == RequestStatus.PENDING
        assert [o.request_id for o in plan.unmet] == [second.request_id]
        assert plan.unmet[0].unmet_units == 1


class TestSelection:

    def test_fefo_within_exact_matches(self, ledger, planner, make_unit, make_request, now):
        ledger.add_unit(make_unit("B+", units=2, expires_in_days=20, unit_id="late"))
        ledger.add_unit(make_unit("B+", units=2, expires_in_days=3, unit_id="soon"))
        request = make_request("B+", units=2)

        plan = planner.plan([request], ledger, now)

        assert [d.unit_id for d in plan.records[0].draws] == ["soon"]
        assert ledger.remaining("late") == 2

    def test_spills_over_to_next_unit(self, ledger, planner, make_unit, make_request, now):
        ledger.add_unit(make_unit("A-", units=1, expires_in_days=2, unit_id="first"))
        ledger.add_unit(make_unit("A-", units=5, expires_in_days=4, unit_id="second"))
        request = make_request("A-", units=3)

        plan = planner.plan([request], ledger, now)

        assert [(d.unit_id, d.units) for d in plan.records[0].draws] == [("first", 1), ("second", 2)]
        assert request.status == RequestStatus.FULFILLED

    def test_substitute_used_when_exact_runs_out(self, ledger, planner, make_unit, make_request, now):
        ledger.add_unit(make_unit("A+", units=1, unit_id="exact"))
        ledger.add_unit(make_unit("O-", units=4, expires_in_days=1, unit_id="universal"))
        request = make_request("A+", units=2)

        plan = planner.plan([request], ledger, now)

        draws = plan.records[0].draws
        assert [d.unit_id for d in draws] == ["exact", "universal"]
        assert draws[1].blood_type == BloodType.O_NEG

    def test_larger_stock_breaks_expiry_tie(self, ledger, planner, make_unit, make_request, now):
        ledger.add_unit(make_unit("AB+", units=1, expires_in_days=5, unit_id="a-small"))
        ledger.add_unit(make_unit("AB+", units=4, expires_in_days=5, unit_id="b-large"))
        request = make_request("AB+", units=2)

        plan = planner.plan([request], ledger, now)

        assert [d.unit_id for d in plan.records[0].draws] == ["b-large"]

    def test_plasma_uses_inverted_table(self, ledger, planner, make_unit, make_request, now):
        ledger.add_unit(make_unit("O+", donation_type="plasma", unit_id="o-plasma"))
        ledger.add_unit(make_unit("AB-", donation_type="plasma", unit_id="ab-plasma"))
        request = make_request("A+", donation_type="plasma")

        plan = planner.plan([request], ledger, now)

        assert [d.unit_id for d in plan.records[0].draws] == ["ab-plasma"]

    def test_expired_units_never_drawn(self, ledger, planner, make_unit, make_request, now):
        ledger.add_unit(make_unit("O-", units=3, expires_in_days=0, unit_id="expired"))
        request = make_request("O-")

        plan = planner.plan([request], ledger, now)

        assert plan.records == []
        assert request.status == RequestStatus.PENDING


class TestOrdering:

    def test_critical_served_before_older_low(self, ledger, planner, make_unit, make_request, now):
        ledger.add_unit(make_unit("O+", units=1, unit_id="scarce"))
        low = make_request("O+", urgency="Low", minutes_ago=600)
        critical = make_request("O+", urgency="Critical", minutes_ago=5)

        planner.plan([low, critical], ledger, now)

        assert critical.status == RequestStatus.FULFILLED
        assert low.status == RequestStatus.PENDING

    def test_service_order_skips_terminal(self, make_request):
        done = make_request(urgency="Critical")
        done.status = RequestStatus.FULFILLED
        waiting = make_request(urgency="Low")
        assert service_order([done, waiting]) == [waiting]


class TestInvariants:

    def test_idempotent_rerun(self, ledger, planner, make_unit, make_request, now):
        ledger.add_unit(make_unit("O-", units=1, unit_id="u1"))
        requests = [make_request("O-", units=2, urgency="Critical"), make_request("A+", units=1)]

        first = planner.plan(requests, ledger, now)
        second = planner.plan(requests, ledger, now)

        assert first.allocated_units == 1
        assert second.records == []
        assert second.status_changes == []

    def test_no_over_allocation(self, ledger, planner, make_unit, make_request, now):
        for i, bt in enumerate(["O-", "O+", "A+", "A-", "B+", "AB+"]):
            ledger.add_unit(make_unit(bt, units=2, expires_in_days=3 + i, unit_id=f"u-{bt}"))
        requests = [
            make_request(bt, units=3, urgency=urg, minutes_ago=m)
            for bt, urg, m in [("AB+", "High", 10), ("A+", "Critical", 5), ("O+", "Low", 50),
                               ("B+", "Medium", 20), ("O-", "Critical", 1)]
        ]

        plan = planner.plan(requests, ledger, now)

        drawn = defaultdict(int)
        for record in plan.records:
            for draw in record.draws:
                drawn[draw.unit_id] += draw.units
                request = next(r for r in requests if r.request_id == record.request_id)
                assert compatibility.is_compatible(request.blood_type, draw.blood_type, request.donation_type)
        for unit_id, units in drawn.items():
            assert units <= 2
            assert ledger.remaining(unit_id) == 2 - units
        for request in requests:
            assert request.allocated_units <= request.units

    def test_rollback_on_incompatible_candidate(self, ledger, planner, make_unit, make_request, now,
                                                monkeypatch):
        ledger.add_unit(make_unit("O-", units=1, expires_in_days=1, unit_id="good"))
        ledger.add_unit(make_unit("A+", units=1, expires_in_days=2, unit_id="bad"))
        request = make_request("O-", units=2)

        real = planner.candidates

        def leaky(req, led, at, scope=None):
            pool = real(req, led, at, scope)
            pool.extend(led.available_units(BloodType.A_POS, req.donation_type, at, scope))
            return pool

        monkeypatch.setattr(planner, "candidates", leaky)

        with pytest.raises(IncompatibleTypes):
            planner.plan([request], ledger, now)

        assert ledger.remaining("good") == 1
        assert request.allocated_units == 0
        assert request.status == RequestStatus.PENDING


class TestContention:

    def test_retries_with_what_another_pass_left(self, ledger, planner, make_unit, make_request, now,
                                                  monkeypatch):
        ledger.add_unit(make_unit("A-", units=3, expires_in_days=2, unit_id="first"))
        ledger.add_unit(make_unit("A-", units=5, expires_in_days=4, unit_id="second"))
        request = make_request("A-", units=3)
        real = ledger.reserve
        stolen = []

        def contended(unit_id, quantity, at):
            if unit_id == "first" and not stolen:
                stolen.append(real("first", 2, at))
            return real(unit_id, quantity, at)

        monkeypatch.setattr(ledger, "reserve", contended)

        plan = planner.plan([request], ledger, now)

        assert [(d.unit_id, d.units) for d in plan.records[0].draws] == [("first", 1), ("second", 2)]
        assert request.status == RequestStatus.FULFILLED
        assert ledger.remaining("first") == 0
        assert ledger.remaining("second") == 3

    def test_unit_expiring_mid_pass_skipped(self, ledger, planner, make_unit, make_request, now,
                                            monkeypatch):
        ledger.add_unit(make_unit("B+", units=2, expires_in_days=1, unit_id="soon"))
        ledger.add_unit(make_unit("B+", units=2, expires_in_days=8, unit_id="later"))
        request = make_request("B+", units=2)
        real = ledger.reserve

        def expiring(unit_id, quantity, at):
            if unit_id == "soon":
                raise UnitExpired(unit_id, at)
            return real(unit_id, quantity, at)

        monkeypatch.setattr(ledger, "reserve", expiring)

        plan = planner.plan([request], ledger, now)

        assert [(d.unit_id, d.units) for d in plan.records[0].draws] == [("later", 2)]
        assert request.status == RequestStatus.FULFILLED
        assert ledger.remaining("soon") == 2

    def test_unit_withdrawn_mid_pass_skipped(self, ledger, planner, make_unit, make_request, now,
                                             monkeypatch):
        ledger.add_unit(make_unit("O+", units=1, expires_in_days=1, unit_id="gone"))
        ledger.add_unit(make_unit("O+", units=1, expires_in_days=5, unit_id="kept"))
        request = make_request("O+", units=1)
        real = ledger.reserve

        def withdrawing(unit_id, quantity, at):
            if unit_id == "gone" and "gone" in ledger:
                ledger.withdraw_unit("gone")
            return real(unit_id, quantity, at)

        monkeypatch.setattr(ledger, "reserve", withdrawing)

        plan = planner.plan([request], ledger, now)

        assert [d.unit_id for d in plan.records[0].draws] == ["kept"]
        assert "gone" not in ledger
