"""Tests for the allocation engine: cycles, expiry, withdrawal and emission."""

from __future__ import annotations

import threading
from datetime import timedelta

import pytest

from bloodalloc.engine import AllocationEngine
from bloodalloc.errors import InvalidTransition, LedgerBusy, RequestNotFound
from bloodalloc.models import AllocationRecord, ReleaseRecord, RequestStatus


class TestBooking:

    def test_submit_sets_default_deadline(self, engine, make_request):
        request = engine.submit(make_request(urgency="Critical"))
        assert request.expires_at == request.created_at + timedelta(hours=24)

    def test_submit_keeps_explicit_deadline(self, engine, make_request, now):
        request = make_request()
        request.expires_at = now + timedelta(hours=1)
        engine.submit(request)
        assert engine.get(request.request_id).expires_at == now + timedelta(hours=1)

    def test_duplicate_request_rejected(self, engine, make_request):
        engine.submit(make_request(request_id="r1"))
        with pytest.raises(ValueError):
            engine.submit(make_request(request_id="r1"))

    def test_unknown_request(self, engine):
        with pytest.raises(RequestNotFound):
            engine.get("missing")

    def test_load_rejects_duplicate_before_adding_anything(self, engine, make_unit, make_request):
        engine.submit(make_request(request_id="r1"))

        with pytest.raises(ValueError):
            engine.load([make_request(request_id="r2"), make_request(request_id="r1")],
                        [make_unit(unit_id="u1")])

        assert "u1" not in engine.ledger
        assert [r.request_id for r in engine.requests()] == ["r1"]

    def test_load_rejects_unit_repeated_in_snapshot(self, engine, make_unit, make_request):
        with pytest.raises(ValueError):
            engine.load([make_request(request_id="r1")], [make_unit(unit_id="u1"), make_unit(unit_id="u1")])

        assert engine.requests() == []
        assert "u1" not in engine.ledger

    def test_requests_filtered_by_status(self, engine, make_request, make_unit):
        engine.add_unit(make_unit("O-", units=1))
        engine.load([make_request("O-", request_id="served"), make_request("B+", request_id="waiting")])
        engine.run_cycle()
        assert [r.request_id for r in engine.requests(RequestStatus.FULFILLED)] == ["served"]
        assert [r.request_id for r in engine.requests(RequestStatus.PENDING)] == ["waiting"]


class TestCycle:

    def test_cycle_records_history(self, engine, make_unit, make_request):
        engine.load([make_request("A+", units=2)], [make_unit("A+", units=3, unit_id="u1")])

        report = engine.run_cycle()

        assert len(report.records) == 1
        assert engine.history.records == report.records
        assert engine.history.net_drawn("u1") == 2
        assert engine.ledger.remaining("u1") == 1

    def test_rerun_creates_nothing_new(self, engine, make_unit, make_request):
        engine.load([make_request("O-", units=3, urgency="Critical")], [make_unit("O-", units=1)])

        engine.run_cycle()
        again = engine.run_cycle()

        assert again.records == []
        assert again.status_changes == []
        assert len(engine.history) == 1

    def test_expired_units_purged(self, engine, make_unit, now):
        engine.add_unit(make_unit(expires_in_days=0, unit_id="stale"))
        report = engine.run_cycle()
        assert [p.unit.unit_id for p in report.purged_units] == ["stale"]

    def test_requests_expire_past_deadline(self, engine, make_unit, make_request, now):
        engine.load([make_request("AB-", urgency="Critical", request_id="late")],
                    [make_unit("AB-", units=1, expires_in_days=30, unit_id="u1")])

        report = engine.run_cycle(now=now + timedelta(days=2))

        assert engine.get("late").status == RequestStatus.EXPIRED
        assert [c.request_id for c in report.expired] == ["late"]
        assert report.records == []
        assert engine.ledger.remaining("u1") == 1

    def test_cycle_scoped_to_facilities(self, engine, make_unit, make_request):
        engine.load([make_request("O+", units=2)], [
            make_unit("O+", units=1, expires_in_days=1, facility_id="fac-a", unit_id="a"),
            make_unit("O+", units=1, expires_in_days=9, facility_id="fac-b", unit_id="b"),
        ])

        report = engine.run_cycle(facilities=["fac-b"])

        assert [d.unit_id for d in report.records[0].draws] == ["b"]
        assert engine.ledger.remaining("a") == 1

    def test_scoped_cycle_does_not_escalate_demand_stocked_elsewhere(self, engine, sink, emitter,
                                                                      make_unit, make_request):
        engine.load([make_request("O-", units=1, urgency="Critical")], [
            make_unit("A+", units=1, facility_id="fac-a", unit_id="a"),
            make_unit("O-", units=5, facility_id="fac-b", unit_id="b"),
        ])

        report = engine.run_cycle(facilities=["fac-a"])
        emitter.flush()

        assert report.records == []
        assert report.shortages == []
        assert report.escalations == []
        assert sink.of_kind("emergency") == []
        assert engine.ledger.remaining("b") == 5

    def test_scoped_cycle_reports_what_no_facility_can_cover(self, engine, make_unit, make_request):
        engine.load([make_request("B-", units=3, urgency="Critical")], [
            make_unit("B-", units=1, facility_id="fac-a", unit_id="a"),
            make_unit("O-", units=1, facility_id="fac-b", unit_id="b"),
        ])

        report = engine.run_cycle(facilities=["fac-a"])

        assert [(s.blood_type.value, s.unmet_units) for s in report.shortages] == [("B-", 1)]
        assert report.escalations[0].unmet_units == 1

    def test_fulfilled_request_drops_held_draws(self, engine, make_unit, make_request):
        engine.load([make_request("O+", units=2, request_id="r1")], [make_unit("O+", units=2)])

        engine.run_cycle()

        assert engine.get("r1").status == RequestStatus.FULFILLED
        assert "r1" not in engine._held

    def test_ledger_busy_leaves_state_unchanged(self, make_unit, make_request, now):
        engine = AllocationEngine(clock=lambda: now, lock_timeout=0.05)
        request = make_request("O-")
        engine.load([request], [make_unit("O-", facility_id="fac-a", unit_id="u1")])
        held = threading.Event()
        done = threading.Event()

        def hold():
            with engine.ledger.exclusive(["fac-a"], timeout=1):
                held.set()
                done.wait(2)

        worker = threading.Thread(target=hold)
        worker.start()
        held.wait(2)
        try:
            with pytest.raises(LedgerBusy):
                engine.run_cycle()
        finally:
            done.set()
            worker.join()

        assert request.status == RequestStatus.PENDING
        assert engine.ledger.remaining("u1") == 1
        assert engine.run_cycle().records

    def test_cycles_run_one_at_a_time_across_facilities(self, make_unit, now):
        engine = AllocationEngine(clock=lambda: now, lock_timeout=0.05)
        engine.load([], [make_unit("O-", facility_id="fac-a", unit_id="a"),
                         make_unit("O-", facility_id="fac-b", unit_id="b")])
        held = threading.Event()
        done = threading.Event()

        def cycle_in_progress():
            with engine._book(), engine.ledger.exclusive(["fac-a"], timeout=1):
                held.set()
                done.wait(2)

        worker = threading.Thread(target=cycle_in_progress)
        worker.start()
        held.wait(2)
        try:
            with pytest.raises(LedgerBusy):
                engine.run_cycle(facilities=["fac-b"])
            # Reservations on the other facility still go through
            assert engine.ledger.reserve("b", 1, now) == 0
        finally:
            done.set()
            worker.join()


class TestWithdrawal:

    def test_withdraw_releases_units(self, engine, make_unit, make_request):
        engine.load([make_request("B-", units=3, request_id="r1")],
                    [make_unit("B-", units=2, unit_id="u1")])
        engine.run_cycle()
        assert engine.get("r1").status == RequestStatus.IN_PROGRESS

        release = engine.withdraw("r1", reason="patient transferred")

        assert isinstance(release, ReleaseRecord)
        assert release.total_units == 2
        assert engine.ledger.remaining("u1") == 2
        assert engine.get("r1").status == RequestStatus.DECLINED
        assert engine.get("r1").allocated_units == 0
        assert engine.history.net_drawn("u1") == 0
        kinds = [type(r) for r in engine.history.for_request("r1")]
        assert kinds == [AllocationRecord, ReleaseRecord]

    def test_released_units_available_next_cycle(self, engine, make_unit, make_request):
        engine.load([make_request("A+", units=3, request_id="first", minutes_ago=60)],
                    [make_unit("A+", units=2, unit_id="u1")])
        engine.run_cycle()
        engine.withdraw("first")
        engine.submit(make_request("A+", units=2, request_id="second", minutes_ago=5))

        report = engine.run_cycle()

        assert [r.request_id for r in report.records] == ["second"]
        assert [r.request_id for r in report.releases] == ["first"]
        assert engine.run_cycle().releases == []
        assert engine.get("second").status == RequestStatus.FULFILLED

    def test_withdraw_after_unit_left_ledger(self, engine, make_unit, make_request):
        engine.load([make_request("B-", units=3, request_id="r1")],
                    [make_unit("B-", units=2, unit_id="u1")])
        engine.run_cycle()
        engine.ledger.withdraw_unit("u1")

        assert engine.withdraw("r1") is None

        request = engine.get("r1")
        assert request.status == RequestStatus.DECLINED
        assert request.allocated_units == 2
        assert engine.history.net_drawn("u1") == 2

    def test_withdraw_pending_request_without_units(self, engine, make_request):
        engine.submit(make_request(request_id="r1"))
        assert engine.withdraw("r1") is None
        assert engine.get("r1").status == RequestStatus.DECLINED

    def test_withdraw_fulfilled_request_rejected(self, engine, make_unit, make_request):
        engine.load([make_request("O-", request_id="r1")], [make_unit("O-")])
        engine.run_cycle()
        with pytest.raises(InvalidTransition):
            engine.withdraw("r1")

    def test_decline_by_facility(self, engine, sink, emitter, make_request):
        engine.submit(make_request(request_id="r1"))
        engine.decline("r1", "st-marys@hospital.org", reason="no courier")
        emitter.flush()

        declines = sink.of_kind("decline")
        assert len(declines) == 1
        assert declines[0].payload["reason"] == "declined by st-marys@hospital.org: no courier"


class TestEmission:

    def test_cycle_emits_response_emergency_and_report(self, engine, sink, emitter, make_unit, make_request):
        engine.load(
            [make_request("O-", units=3, urgency="Critical"), make_request("A+", units=1, urgency="Low")],
            [make_unit("O-", units=1), make_unit("A+", units=1)],
        )

        report = engine.run_cycle()
        assert emitter.flush()

        kinds = [e.kind for e in sink.events]
        assert kinds.count("response") == 2
        assert kinds.count("emergency") == 1
        assert kinds[-1] == "cycle"
        assert len(report.escalations) == 1
        assert sink.of_kind("emergency")[0].payload["unmet_units"] == 2

    def test_non_critical_shortage_sent_as_info(self, engine, sink, emitter, make_request):
        engine.submit(make_request("B+", units=2, urgency="High"))
        engine.run_cycle()
        emitter.flush()
        assert [e.payload["unmet_units"] for e in sink.of_kind("info")] == [2]
        assert sink.of_kind("emergency") == []

    def test_engine_without_emitter(self, make_unit, make_request, now):
        engine = AllocationEngine(clock=lambda: now)
        engine.load([make_request("O-")], [make_unit("O-")])
        assert engine.run_cycle().plan.allocated_units == 1


class TestHistoryFrames:

    def test_frames_export(self, engine, make_unit, make_request):
        engine.load([make_request("O+", units=3, request_id="r1"), make_request("AB-", units=1, urgency="High")],
                    [make_unit("O+", units=2, unit_id="u1")])
        engine.run_cycle()
        engine.withdraw("r1")

        frames = engine.history.frames()

        draws = frames["allocations"]
        assert list(draws["kind"]) == ["allocation", "release"]
        assert draws.groupby("unit_id")["units"].sum()["u1"] == 0
        shortages = frames["shortages"]
        assert list(shortages["blood_type"]) == ["AB-", "O+"]
