"""
clusterer.py — Greedy screen-space clustering for the mid-zoom map.

HOW IT WORKS
────────────
1. Project every report to Web-Mercator pixels at the integer zoom the map
   is drawing (256 px tiles, zoom rounded down).
2. Walk the reports in ascending id order.
3. An unclustered report seeds a new cluster. Every later unclustered report
   within max_cluster_radius_px of the cluster's running pixel centroid is
   absorbed, and the centroid is recomputed after each absorption.
4. Each cluster reports the mean lat/lng of its members, its member ids,
   the dominant status and a size tier for the icon.

One pass, no k-means refinement: the same input always gives the same
clusters, whatever order the reports arrived in. Worst case is O(n²), fine for
the few hundred reports a viewport holds.

Example
───────
    nodes = cluster_reports(reports, zoom=13)
    nodes[0].count            → 12
    nodes[0].dominant_status  → ReportStatus.REPORTED
    nodes[0].size             → ClusterSize.MEDIUM
"""

from __future__ import annotations

import math
from collections import Counter
from typing import Iterable

from pothole_map.models.aggregation import ClusterNode, ClusterSize
from pothole_map.models.report import STATUS_PRECEDENCE, Report, ReportStatus

TILE_SIZE = 256
# Web Mercator is undefined at the poles; project anything beyond this on the edge.
MAX_MERCATOR_LATITUDE = 85.05112878

DEFAULT_MAX_CLUSTER_RADIUS_PX = 50

_SMALL_MAX = 8
_MEDIUM_MAX = 15


def project_to_pixels(latitude: float, longitude: float, zoom: int) -> tuple[float, float]:
    """World pixel coordinates of a lat/lng at an integer zoom level."""
    world = TILE_SIZE * (1 << zoom)
    lat = max(-MAX_MERCATOR_LATITUDE, min(MAX_MERCATOR_LATITUDE, latitude))
    x = (longitude + 180.0) / 360.0 * world
    sin_lat = math.sin(math.radians(lat))
    y = (0.5 - math.log((1 + sin_lat) / (1 - sin_lat)) / (4 * math.pi)) * world
    return x, y


def size_tier(count: int) -> ClusterSize:
    if count <= _SMALL_MAX:
        return ClusterSize.SMALL
    if count <= _MEDIUM_MAX:
        return ClusterSize.MEDIUM
    return ClusterSize.LARGE


def dominant_status(statuses: Iterable[ReportStatus]) -> ReportStatus:
    """Most common status; ties go to the more urgent one (reported first)."""
    counts = Counter(statuses)
    if not counts:
        raise ValueError("dominant_status() needs at least one status")
    return min(counts, key=lambda s: (-counts[s], STATUS_PRECEDENCE[s]))


class _Cluster:
    __slots__ = ("members", "sum_x", "sum_y")

    def __init__(self, report: Report, x: float, y: float):
        self.members = [report]
        self.sum_x = x
        self.sum_y = y

    @property
    def centroid(self) -> tuple[float, float]:
        n = len(self.members)
        return self.sum_x / n, self.sum_y / n

    def absorb(self, report: Report, x: float, y: float) -> None:
        self.members.append(report)
        self.sum_x += x
        self.sum_y += y

    def to_node(self) -> ClusterNode:
        n = len(self.members)
        return ClusterNode(
            latitude=sum(r.latitude for r in self.members) / n,
            longitude=sum(r.longitude for r in self.members) / n,
            member_ids=sorted({r.id for r in self.members}),
            count=n,
            dominant_status=dominant_status(r.status for r in self.members),
            size=size_tier(n),
        )


def cluster_reports(
    reports: Iterable[Report],
    zoom: float,
    max_cluster_radius_px: float = DEFAULT_MAX_CLUSTER_RADIUS_PX,
) -> list[ClusterNode]:
    """
    Group reports into ClusterNodes, in the order their seeds were visited.

    A report far from everything comes back as a cluster of one.
    """
    pixel_zoom = int(math.floor(zoom))
    ordered = sorted(reports, key=lambda r: r.id)
    points = [project_to_pixels(r.latitude, r.longitude, pixel_zoom) for r in ordered]
    radius_sq = max_cluster_radius_px * max_cluster_radius_px

    taken = [False] * len(ordered)
    clusters: list[_Cluster] = []
    for i, seed in enumerate(ordered):
        if taken[i]:
            continue
        taken[i] = True
        cluster = _Cluster(seed, *points[i])
        for j in range(i + 1, len(ordered)):
            if taken[j]:
                continue
            cx, cy = cluster.centroid
            px, py = points[j]
            if (px - cx) ** 2 + (py - cy) ** 2 <= radius_sq:
                taken[j] = True
                cluster.absorb(ordered[j], px, py)
        clusters.append(cluster)

    return [c.to_node() for c in clusters]
