"""
dispatcher.py — One entry point from (reports, viewport) to what the map draws.

    result = aggregate(reports, ViewportState(zoom=9))
    result.kind  → "heatmap" | "clusters" | "markers"

Steps on every call:
  1. drop reports whose coordinates are invalid (logged, never drawn)
  2. keep only reports inside viewport.bounds, when bounds are given
  3. pick the mode from the zoom (viewport.select_mode)
  4. heatmap → build_samples, cluster → cluster_reports, markers → as-is
  5. if step 4 blows up, fall back to plain markers for the valid reports

aggregate() holds no state: the same (reports, viewport, options) always gives
the same result, down to the serialized bytes. If newer input arrives while an
older result is still being drawn, the caller throws the older one away —
see routes/map.py for how the WebSocket stream does it.
"""

from __future__ import annotations

import logging
import math
from typing import Iterable, Optional

from pothole_map.core.config import settings
from pothole_map.models.aggregation import (
    AggregationOptions,
    AggregationResult,
    ClusterResult,
    HeatmapLayerConfig,
    HeatmapResult,
    MarkerResult,
    RenderMode,
    ViewportState,
)
from pothole_map.models.report import Report, is_valid_coordinate
from pothole_map.services.clusterer import cluster_reports
from pothole_map.services.heatmap_weights import build_samples
from pothole_map.services.viewport import select_mode

logger = logging.getLogger(__name__)


def options_from_settings() -> AggregationOptions:
    return AggregationOptions(
        heatmap_max_zoom=settings.heatmap_max_zoom,
        cluster_max_zoom=settings.cluster_max_zoom,
        max_cluster_radius_px=settings.max_cluster_radius_px,
        disable_clustering_at_zoom=settings.disable_clustering_at_zoom,
        heatmap_layer=HeatmapLayerConfig(
            radius=settings.heatmap_radius,
            blur=settings.heatmap_blur,
            max_zoom=settings.heatmap_max_zoom_layer,
        ),
    )


def split_valid(reports: Iterable[Report]) -> tuple[list[Report], list[Report]]:
    """(valid, rejected), each in input order."""
    valid, rejected = [], []
    for report in reports:
        lat = getattr(report, "latitude", None)
        lng = getattr(report, "longitude", None)
        (valid if is_valid_coordinate(lat, lng) else rejected).append(report)
    return valid, rejected


def resolve_mode(viewport: ViewportState, options: AggregationOptions) -> RenderMode:
    mode = select_mode(viewport.zoom, options.heatmap_max_zoom, options.cluster_max_zoom)
    # Clusters hand over to markers early when the map asks for it.
    if (
        mode is RenderMode.CLUSTER
        and options.disable_clustering_at_zoom is not None
        and math.floor(viewport.zoom) >= options.disable_clustering_at_zoom
    ):
        return RenderMode.MARKERS
    return mode


def aggregate(
    reports: Iterable[Report],
    viewport: ViewportState,
    options: Optional[AggregationOptions] = None,
) -> AggregationResult:
    options = options or options_from_settings()

    valid, rejected = split_valid(reports)
    if rejected:
        logger.warning(
            "Dropped %d report(s) with invalid coordinates: %s",
            len(rejected),
            ", ".join(str(getattr(r, "id", "?")) for r in rejected),
        )

    if viewport.bounds is not None:
        valid = [r for r in valid if viewport.bounds.contains(r.latitude, r.longitude)]

    mode = resolve_mode(viewport, options)
    try:
        if mode is RenderMode.HEATMAP:
            return HeatmapResult(samples=build_samples(valid), layer=options.heatmap_layer)
        if mode is RenderMode.CLUSTER:
            return ClusterResult(
                nodes=cluster_reports(valid, viewport.zoom, options.max_cluster_radius_px)
            )
    except (ValueError, TypeError, ArithmeticError) as exc:
        logger.error(
            "%s aggregation failed at zoom %s (%d reports), falling back to markers: %s",
            mode.value,
            viewport.zoom,
            len(valid),
            exc,
        )
        return MarkerResult(reports=valid, degraded=True)

    return MarkerResult(reports=valid)
