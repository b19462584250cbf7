"""
Blood Allocation Engine - REST API
===================================
FastAPI server wrapping an AllocationEngine for the host application.

Endpoints:
    GET  /api/health                          Health check
    GET  /api/compatibility?donation_type=    Compatibility matrix (or one recipient's donors)
    POST /api/snapshot                        Load a persistence-layer snapshot
    POST /api/cycle                           Run one allocation cycle
    GET  /api/requests                        List booked requests
    POST /api/requests                        Book a request
    GET  /api/requests/{request_id}           Get one request
    POST /api/requests/{request_id}/withdraw  Withdraw a request, releasing its units
    POST /api/requests/{request_id}/decline   A facility declines a request
    GET  /api/inventory/summary               Units on hand per donation / blood type
    GET  /api/history                         Audit history (allocations, releases, shortages)

Run:
    uvicorn bloodalloc.api:app --reload
"""

from __future__ import annotations

import logging
import os
from typing import Optional

from fastapi import Body, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware

from bloodalloc import __version__
from bloodalloc.compatibility import compatible_donors, matrix
from bloodalloc.config import API_CORS_ORIGINS, SAMPLE_SNAPSHOT
from bloodalloc.data_sources import load_snapshot, load_snapshot_file, parse_request
from bloodalloc.engine import AllocationEngine
from bloodalloc.errors import (
    AllocationError,
    InvalidTransition,
    LedgerBusy,
    RequestNotFound,
    UnitNotFound,
)
from bloodalloc.models import (
    AllocationRecord,
    BloodType,
    DonationType,
    RequestStatus,
    parse_timestamp,
)
from bloodalloc.notifications import default_emitter

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# ERROR MAPPING
# ═══════════════════════════════════════════════════════════════════════════

def _http_error(exc: Exception) -> HTTPException:
    """Map a core exception onto an HTTP status."""
    if isinstance(exc, LedgerBusy):
        return HTTPException(status_code=503, detail=str(exc), headers={"Retry-After": "1"})
    if isinstance(exc, (RequestNotFound, UnitNotFound)):
        return HTTPException(status_code=404, detail=f"Not found: {exc}")
    if isinstance(exc, InvalidTransition):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def _parse_enum(parser, value: str, name: str):
    try:
        return parser(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown {name}: {value!r}")


# ═══════════════════════════════════════════════════════════════════════════
# APP FACTORY
# ═══════════════════════════════════════════════════════════════════════════

def create_app(engine: Optional[AllocationEngine] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Without an explicit engine, one is built with the default emitter and
    the sample snapshot (if present on disk) is loaded at startup.
    """
    app = FastAPI(
        title="Blood Allocation Engine API",
        description="Match blood requests to compatible inventory and report shortages",
        version=__version__,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=API_CORS_ORIGINS,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    preload = engine is None
    app.state.engine = engine or AllocationEngine(emitter=default_emitter())

    @app.on_event("startup")
    async def startup():
        if preload and os.path.exists(SAMPLE_SNAPSHOT):
            snapshot = load_snapshot_file(SAMPLE_SNAPSHOT)
            app.state.engine.load(snapshot.requests, snapshot.units)
            logger.info("Loaded %d request(s) and %d unit(s) from %s",
                        len(snapshot.requests), len(snapshot.units), SAMPLE_SNAPSHOT)

    @app.on_event("shutdown")
    async def shutdown():
        if app.state.engine.emitter is not None:
            app.state.engine.emitter.close()

    # ── Health / reference data ──

    @app.get("/api/health")
    def health():
        eng: AllocationEngine = app.state.engine
        try:
            booked = len(eng.requests())
        except AllocationError as e:
            raise _http_error(e)
        return {
            "status": "ok",
            "version": __version__,
            "requests_booked": booked,
            "facilities": eng.ledger.facilities,
        }

    @app.get("/api/compatibility")
    async def compatibility(
        donation_type: str = Query("whole_blood", description="whole_blood, red_blood_cells or plasma"),
        recipient: Optional[str] = Query(None, description="Recipient blood type, e.g. O-"),
    ):
        """Recipient × donor grid, or one recipient's donors in preference order."""
        dt = _parse_enum(DonationType.parse, donation_type, "donation type")
        if recipient:
            bt = _parse_enum(BloodType.parse, recipient, "blood type")
            return {
                "donation_type": dt.value,
                "recipient": bt.value,
                "donors": [d.value for d in compatible_donors(bt, dt)],
            }
        return {"donation_type": dt.value, "matrix": matrix(dt)}

    # ── Snapshot / cycle ──

    @app.post("/api/snapshot")
    def snapshot(payload: dict = Body(...)):
        """Load `requests` and `inventory` arrays into the engine."""
        eng: AllocationEngine = app.state.engine
        try:
            snap = load_snapshot(payload)
            eng.load(snap.requests, snap.units)
        except AllocationError as e:
            raise _http_error(e)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"requests_loaded": len(snap.requests), "units_loaded": len(snap.units)}

    @app.post("/api/cycle")
    def cycle(
        facility: Optional[list[str]] = Query(None, description="Limit the cycle to these facilities"),
        now: Optional[str] = Query(None, description="ISO-8601 reference time"),
    ):
        """Run one allocation cycle and return its report."""
        eng: AllocationEngine = app.state.engine
        try:
            at = parse_timestamp(now) if now else None
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid timestamp: {now!r}")
        try:
            report = eng.run_cycle(now=at, facilities=facility)
        except AllocationError as e:
            raise _http_error(e)
        return report.to_dict()

    # ── Requests ──

    @app.get("/api/requests")
    def list_requests(status: Optional[str] = Query(None, description="Filter by status")):
        eng: AllocationEngine = app.state.engine
        wanted = _parse_enum(RequestStatus.parse, status, "status") if status else None
        try:
            booked = eng.requests(wanted)
        except AllocationError as e:
            raise _http_error(e)
        found = sorted(booked, key=lambda r: (r.created_at, r.request_id))
        return {"total": len(found), "requests": [r.to_dict() for r in found]}

    @app.post("/api/requests", status_code=201)
    def submit_request(payload: dict = Body(...)):
        """Book a request (host application document format)."""
        eng: AllocationEngine = app.state.engine
        try:
            request = eng.submit(parse_request(payload))
        except AllocationError as e:
            raise _http_error(e)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return request.to_dict()

    @app.get("/api/requests/{request_id}")
    def get_request(request_id: str):
        eng: AllocationEngine = app.state.engine
        try:
            request = eng.get(request_id)
        except AllocationError as e:
            raise _http_error(e)
        return {**request.to_dict(), "history": [r.to_dict() for r in eng.history.for_request(request_id)]}

    @app.post("/api/requests/{request_id}/withdraw")
    def withdraw(request_id: str, payload: Optional[dict] = Body(None)):
        eng: AllocationEngine = app.state.engine
        reason = (payload or {}).get("reason") or "withdrawn by requester"
        try:
            record = eng.withdraw(request_id, reason=reason)
            request = eng.get(request_id)
        except AllocationError as e:
            raise _http_error(e)
        return {
            "request": request.to_dict(),
            "release": record.to_dict() if record else None,
        }

    @app.post("/api/requests/{request_id}/decline")
    def decline(request_id: str, payload: dict = Body(...)):
        eng: AllocationEngine = app.state.engine
        facility_id = payload.get("facility_id") or payload.get("facility")
        if not facility_id:
            raise HTTPException(status_code=400, detail="facility_id is required")
        try:
            record = eng.decline(request_id, facility_id, reason=payload.get("reason", ""))
            request = eng.get(request_id)
        except AllocationError as e:
            raise _http_error(e)
        return {
            "request": request.to_dict(),
            "release": record.to_dict() if record else None,
        }

    # ── Inventory / history ──

    @app.get("/api/inventory/summary")
    def inventory_summary(facility: Optional[str] = Query(None, description="Facility id")):
        eng: AllocationEngine = app.state.engine
        if facility is not None and facility not in eng.ledger.facilities:
            raise HTTPException(status_code=404, detail="Facility not found")
        try:
            return eng.ledger.summary(facility_id=facility, now=eng.clock())
        except AllocationError as e:
            raise _http_error(e)

    @app.get("/api/history")
    async def history(
        request_id: Optional[str] = Query(None),
        unit_id: Optional[str] = Query(None),
        limit: int = Query(100, ge=1, le=1000),
    ):
        """Most recent audit records, newest last."""
        eng: AllocationEngine = app.state.engine
        if request_id:
            records = eng.history.for_request(request_id)
        elif unit_id:
            records = eng.history.for_unit(unit_id)
        else:
            records = eng.history.records
        records = records[-limit:]
        return {
            "total": len(records),
            "records": [
                {"kind": "allocation" if isinstance(r, AllocationRecord) else "release", **r.to_dict()}
                for r in records
            ],
            "shortages": [s.to_dict() for s in eng.history.shortages[-limit:]],
        }

    return app


# Module-level app for `uvicorn bloodalloc.api:app`
app = create_app()
