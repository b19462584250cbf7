#!/usr/bin/env python3
"""
Blood Allocation Engine - Main Entry Point

Usage:
    python main.py demo                 Run a demo cycle over a generated snapshot
    python main.py plan FILE            Run one cycle over a snapshot file, print the report as JSON
    python main.py sample [FILE]        Write a generated snapshot (default: data/sample_snapshot.json)
    python main.py dashboard            Launch the Streamlit dashboard
"""

import json
import logging
import sys

from bloodalloc.config import LOG_FORMAT, LOG_LEVEL, SAMPLE_SNAPSHOT

URGENCY_ICONS = {"Critical": "🔴", "High": "🟠", "Medium": "🟡", "Low": "🟢"}


def run_demo():
    """Run a quick demonstration"""
    print("\n" + "=" * 70)
    print("🩸 BLOOD ALLOCATION ENGINE - DEMO")
    print("=" * 70)

    from bloodalloc.engine import AllocationEngine
    from bloodalloc.models import utcnow
    from bloodalloc.notifications import MemorySink, QueuedEmitter
    from bloodalloc.sample import build_sample_snapshot

    now = utcnow()

    print("\n📦 Generating sample snapshot...")
    snapshot = build_sample_snapshot(now=now)
    sink = MemorySink()
    emitter = QueuedEmitter(sink)
    engine = AllocationEngine(emitter=emitter, clock=lambda: now)
    engine.load(snapshot.requests, snapshot.units)
    print(f"  ✓ {len(snapshot.units)} inventory units across {len(engine.ledger.facilities)} facilities")
    print(f"  ✓ {len(snapshot.requests)} open requests")

    print("\n⚙️  Running allocation cycle...")
    report = engine.run_cycle()
    emitter.flush()

    print("\n" + "=" * 70)
    print(f"📋 {len(report.records)} ALLOCATIONS ({report.plan.allocated_units} units)")
    print("=" * 70)
    for outcome in sorted(report.plan.outcomes, key=lambda o: -o.urgency.rank):
        icon = URGENCY_ICONS.get(outcome.urgency.value, "⚪")
        print(f"\n{icon} {outcome.request_id}: {outcome.blood_type} {outcome.donation_type.label} "
              f"[{outcome.urgency}] -> {outcome.status}")
        for record in report.plan.records_for(outcome.request_id):
            for draw in record.draws:
                print(f"   • {draw.units} x {draw.blood_type} from {draw.unit_id} @ {draw.facility_id}")
        if outcome.unmet_units:
            print(f"   ⚠ {outcome.unmet_units} unit(s) unmet")

    if report.shortages:
        print("\n" + "=" * 70)
        print("📉 SHORTAGES")
        print("=" * 70)
        for entry in report.shortages:
            icon = URGENCY_ICONS.get(entry.urgency.value, "⚪")
            print(f"  {icon} {entry.blood_type} {entry.donation_type.label} [{entry.urgency}]: "
                  f"{entry.unmet_units} unit(s)")

    for signal in report.escalations:
        print(f"\n🚨 EMERGENCY: {signal.message}")

    # A second cycle over the same state changes nothing
    again = engine.run_cycle()
    print(f"\n🔁 Re-run over the same state: {len(again.records)} new allocation(s)")

    emitter.close()
    print(f"\n📨 {len(sink.events)} notification event(s) emitted "
          f"({len(sink.of_kind('response'))} response, {len(sink.of_kind('emergency'))} emergency)")

    print("\n" + "=" * 70)
    print("✅ Demo complete!")
    print("=" * 70)


def run_plan(path: str):
    """Run one cycle over a snapshot file"""
    from bloodalloc.data_sources import load_snapshot_file
    from bloodalloc.engine import AllocationEngine

    snapshot = load_snapshot_file(path)
    engine = AllocationEngine()
    engine.load(snapshot.requests, snapshot.units)
    report = engine.run_cycle()
    print(json.dumps(report.to_dict(), indent=2))


def write_sample(path: str):
    """Write a generated snapshot to disk"""
    from bloodalloc.data_sources import save_snapshot_file
    from bloodalloc.sample import build_sample_snapshot

    snapshot = build_sample_snapshot()
    save_snapshot_file(snapshot, path)
    print(f"✓ Wrote {len(snapshot.requests)} requests and {len(snapshot.units)} units to {path}")


def run_dashboard():
    """Launch the Streamlit dashboard"""
    import subprocess
    print("\n🚀 Launching Blood Allocation Dashboard...")
    print("   Open http://localhost:8501 in your browser")
    print("   Press Ctrl+C to stop\n")
    subprocess.run(["streamlit", "run", "dashboard.py"])


def print_usage():
    """Print usage information"""
    print(__doc__)


def main():
    logging.basicConfig(level=LOG_LEVEL.upper(), format=LOG_FORMAT)

    if len(sys.argv) < 2:
        print_usage()
        return

    command = sys.argv[1].lower()

    if command == "demo":
        run_demo()
    elif command == "plan":
        if len(sys.argv) < 3:
            print("plan requires a snapshot file")
            print_usage()
            sys.exit(2)
        run_plan(sys.argv[2])
    elif command == "sample":
        write_sample(sys.argv[2] if len(sys.argv) > 2 else SAMPLE_SNAPSHOT)
    elif command == "dashboard":
        run_dashboard()
    else:
        print(f"Unknown command: {command}")
        print_usage()


if __name__ == "__main__":
    main()
