"""
heatmap_weights.py — Turn reports into weighted heat samples for the
low-zoom map.

Each confirmation adds 0.3 to a report's weight, capped at 1.0. Nothing is
ever weighted below 0.5, so a report filed a minute ago with no confirmations
still shows up as a warm spot instead of vanishing.

    confirmations  0 → 0.5
    confirmations  2 → 0.6
    confirmations 10 → 1.0

One sample per report, no merging — the heat layer's own radius/blur does the
visual blending on the client.
"""

from __future__ import annotations

from typing import Iterable

from pothole_map.models.aggregation import HeatmapSample
from pothole_map.models.report import Report

_PER_CONFIRMATION = 0.3
_MIN_WEIGHT = 0.5
_MAX_WEIGHT = 1.0


def heatmap_weight(report: Report) -> float:
    raw = report.confirmations * _PER_CONFIRMATION
    return max(_MIN_WEIGHT, min(_MAX_WEIGHT, raw))


def build_samples(reports: Iterable[Report]) -> list[HeatmapSample]:
    """One HeatmapSample per report, in input order."""
    return [
        HeatmapSample(latitude=r.latitude, longitude=r.longitude, weight=heatmap_weight(r))
        for r in reports
    ]
