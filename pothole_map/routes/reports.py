"""
reports.py — Pothole report routes.

Routes:
  POST  /api/v1/reports                — submit a report (duplicate-guarded, rate limited)
  GET   /api/v1/reports                — list reports, newest first, optional status filter
  GET   /api/v1/reports/stats          — counts per status
  GET   /api/v1/reports/nearby         — reports within a radius of a point
  GET   /api/v1/reports/duplicates     — stored pairs closer than the duplicate radius
  GET   /api/v1/reports/{id}           — one report
  POST  /api/v1/reports/{id}/confirm   — "I saw it too" (+1 confirmation)
  PATCH /api/v1/reports/{id}/status    — move a report through reported → in_progress → fixed

HOW SUBMISSION WORKS
────────────────────
1. Pydantic rejects out-of-range coordinates with a 422 before anything else runs.
2. submit_report() asks the store to insert only if nothing lies within
   DUPLICATE_RADIUS_METERS (20 m by default). Check and insert are one step.
3. A conflict comes back as 409 with every nearby report, nearest first:
     {"detail": "1 existing report(s) within 20 m of this location",
      "radius_meters": 20.0,
      "nearby": [{"id": "...", "distance_meters": 8.3, "created_at": "..."}]}
4. If the store cannot be reached the answer is 503 — never a silent 201.

Error → status mapping lives in main.py (exception handlers).

TESTING
───────
  pytest tests/test_reports_api.py -v

  curl -X POST http://localhost:8000/api/v1/reports \\
    -H 'Content-Type: application/json' \\
    -d '{"latitude": 41.8781, "longitude": -87.6298, "notes": "Deep one by the curb"}'
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from pothole_map.core.config import settings
from pothole_map.core.rate_limit import limiter
from pothole_map.models.report import (
    DuplicateAuditResponse,
    DuplicateConflict,
    NearbySearchResponse,
    Report,
    ReportCreate,
    ReportListResponse,
    ReportStats,
    ReportStatus,
    StatusUpdate,
    check_coordinate,
)
from pothole_map.services.duplicate_guard import find_duplicate_pairs, submit_report
from pothole_map.services.report_store import ReportStore, get_report_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/reports", tags=["reports"])


@router.post(
    "",
    response_model=Report,
    status_code=201,
    responses={409: {"model": DuplicateConflict, "description": "Already reported nearby"}},
)
@limiter.limit(settings.submit_rate_limit)
async def create_report(
    request: Request,
    payload: ReportCreate,
    store: ReportStore = Depends(get_report_store),
):
    """Submit a new pothole unless one was already reported within the duplicate radius."""
    return await submit_report(payload, store, settings.duplicate_radius_meters)


@router.get("", response_model=ReportListResponse)
async def list_reports(
    status: Optional[ReportStatus] = Query(default=None),
    store: ReportStore = Depends(get_report_store),
):
    """Every report, newest first, optionally only one status."""
    reports = await store.snapshot()
    if status is not None:
        reports = [r for r in reports if r.status == status]
    reports.sort(key=lambda r: (r.created_at, r.id), reverse=True)
    return ReportListResponse(items=reports, total=len(reports))


@router.get("/stats", response_model=ReportStats)
async def report_stats(store: ReportStore = Depends(get_report_store)):
    return await store.stats()


@router.get("/nearby", response_model=NearbySearchResponse)
async def nearby_reports(
    lat: float = Query(ge=-90, le=90),
    lng: float = Query(ge=-180, le=180),
    radius: Optional[float] = Query(default=None, gt=0, le=50_000, description="Meters"),
    store: ReportStore = Depends(get_report_store),
):
    """Reports within `radius` meters of (lat, lng), nearest first."""
    radius = radius or settings.duplicate_radius_meters
    check_coordinate(lat, lng)
    items = await store.find_within_radius(lat, lng, radius)
    return NearbySearchResponse(radius_meters=radius, items=items, count=len(items))


@router.get("/duplicates", response_model=DuplicateAuditResponse)
async def duplicate_audit(
    radius: Optional[float] = Query(default=None, gt=0, le=1_000, description="Meters"),
    store: ReportStore = Depends(get_report_store),
):
    """
    Pairs of stored reports closer than the duplicate radius.

    Should be empty. Anything here got past the guard (e.g. rows imported
    in bulk) and needs a manual merge.
    """
    radius = radius or settings.duplicate_radius_meters
    pairs = find_duplicate_pairs(await store.snapshot(), radius)
    return DuplicateAuditResponse(radius_meters=radius, pairs=pairs)


@router.get("/{report_id}", response_model=Report)
async def get_report(report_id: str, store: ReportStore = Depends(get_report_store)):
    return await store.get(report_id)


@router.post("/{report_id}/confirm", response_model=Report)
async def confirm_report(report_id: str, store: ReportStore = Depends(get_report_store)):
    """Add one confirmation. Confirmations raise the report's heatmap weight."""
    report = await store.confirm(report_id)
    logger.info("Report %s confirmed (%d total)", report_id, report.confirmations)
    return report


@router.patch("/{report_id}/status", response_model=Report)
async def update_report_status(
    report_id: str,
    payload: StatusUpdate,
    store: ReportStore = Depends(get_report_store),
):
    report = await store.update_status(report_id, payload.status)
    logger.info("Report %s status → %s", report_id, report.status.value)
    return report
