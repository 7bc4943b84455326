"""
map.py — Map aggregation routes.

Routes:
  GET /api/v1/map/aggregate  — one AggregationResult for a zoom (+ optional bounds)
  WS  /api/v1/map/stream     — send viewports, get results; stale ones are dropped

HOW THE DATA FLOWS
──────────────────
1. The map page calls GET /api/v1/map/aggregate on load with its zoom and
   visible bounds.
2. While the user pans/zooms it sends each new viewport over the WebSocket:
     {"seq": 7, "viewport": {"zoom": 12.4, "bounds": {"south": 41.8, "west": -87.7,
                                                    "north": 41.95, "east": -87.55}}}
3. The server answers with the matching result, echoing seq:
     {"type": "aggregation", "seq": 7, "result": {"kind": "clusters", "nodes": [...]}}
4. If viewport 8 arrives before 7 has been answered, 7 is never sent. The
   client should still ignore any reply whose seq is older than the last one
   it drew.

The result is one of (see models/aggregation.py):
  {"kind": "heatmap",  "samples": [...], "layer": {radius, blur, gradient, ...}}
  {"kind": "clusters", "nodes": [...]}
  {"kind": "markers",  "reports": [...], "degraded": false}

TESTING
───────
  pytest tests/test_map_api.py -v

  curl "http://localhost:8000/api/v1/map/aggregate?zoom=9"
  curl "http://localhost:8000/api/v1/map/aggregate?zoom=13&south=41.8&west=-87.7&north=41.95&east=-87.55"
"""

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from pothole_map.core.errors import StoreUnavailableError
from pothole_map.models.aggregation import (
    AggregationResult,
    Bounds,
    MapStreamError,
    MapStreamReply,
    MapStreamRequest,
    ViewportState,
)
from pothole_map.services.dispatcher import aggregate
from pothole_map.services.latest_viewport import LatestViewport
from pothole_map.services.report_store import ReportStore, get_report_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/map", tags=["map"])


def _viewport(
    zoom: float,
    south: Optional[float],
    west: Optional[float],
    north: Optional[float],
    east: Optional[float],
) -> ViewportState:
    edges = (south, west, north, east)
    if all(e is None for e in edges):
        return ViewportState(zoom=zoom)
    if any(e is None for e in edges):
        raise HTTPException(status_code=422, detail="Give all of south, west, north, east or none")
    try:
        bounds = Bounds(south=south, west=west, north=north, east=east)
    except ValidationError as exc:
        errors = exc.errors(include_url=False, include_context=False)
        raise HTTPException(status_code=422, detail=errors) from exc
    return ViewportState(zoom=zoom, bounds=bounds)


async def _aggregate_for(store: ReportStore, viewport: ViewportState) -> AggregationResult:
    reports = await store.snapshot(viewport.bounds)
    # Stable input order → stable output, whatever order the store returned.
    reports.sort(key=lambda r: r.id)
    return aggregate(reports, viewport)


@router.get("/aggregate", response_model=AggregationResult)
async def get_aggregate(
    zoom: float = Query(ge=0, le=30),
    south: Optional[float] = Query(default=None, ge=-90, le=90),
    west: Optional[float] = Query(default=None, ge=-180, le=180),
    north: Optional[float] = Query(default=None, ge=-90, le=90),
    east: Optional[float] = Query(default=None, ge=-180, le=180),
    store: ReportStore = Depends(get_report_store),
):
    """Heatmap samples, clusters or markers for the given viewport."""
    return await _aggregate_for(store, _viewport(zoom, south, west, north, east))


def _stream_store(websocket: WebSocket) -> ReportStore:
    # Resolved after accept() so a missing database still gets an error frame.
    # Goes through dependency_overrides like Depends() would.
    factory = websocket.app.dependency_overrides.get(get_report_store, get_report_store)
    return factory()


async def _close_unavailable(websocket: WebSocket, exc: StoreUnavailableError) -> None:
    logger.warning("Map stream closing, store unavailable: %s", exc)
    await websocket.send_text(MapStreamError(detail="Report store unavailable").model_dump_json())
    await websocket.close(code=1011)


@router.websocket("/stream")
async def map_stream(websocket: WebSocket):
    """
    Latest-viewport-wins aggregation feed.

    A reader task drops incoming viewports into a single-slot mailbox; the
    main loop aggregates whatever is newest. A result whose viewport was
    replaced while the snapshot was loading is discarded, not sent.
    """
    await websocket.accept()
    try:
        store = _stream_store(websocket)
    except StoreUnavailableError as exc:
        await _close_unavailable(websocket, exc)
        return
    mailbox: LatestViewport[MapStreamRequest] = LatestViewport()

    async def read_viewports():
        while True:
            raw = await websocket.receive_text()
            try:
                mailbox.put(MapStreamRequest.model_validate_json(raw))
            except ValidationError as exc:
                await websocket.send_text(
                    MapStreamError(detail=f"Invalid viewport: {exc.error_count()} error(s)").model_dump_json()
                )

    reader = asyncio.create_task(read_viewports())
    try:
        while True:
            next_request = asyncio.create_task(mailbox.get())
            done, _ = await asyncio.wait({reader, next_request}, return_when=asyncio.FIRST_COMPLETED)
            if reader in done:
                next_request.cancel()
                reader.result()  # re-raises WebSocketDisconnect
                break
            request = next_request.result()
            result = await _aggregate_for(store, request.viewport)
            if mailbox.has_pending():
                logger.debug("Dropping superseded map result seq=%d", request.seq)
                continue
            await websocket.send_text(MapStreamReply(seq=request.seq, result=result).model_dump_json())
    except WebSocketDisconnect:
        logger.info("Map stream client disconnected (%d stale viewports dropped)", mailbox.dropped)
    except StoreUnavailableError as exc:
        await _close_unavailable(websocket, exc)
    finally:
        reader.cancel()
