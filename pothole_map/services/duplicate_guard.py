"""
duplicate_guard.py — Reject a new report when one already exists nearby.

Two entry points
────────────────
  admit(candidate, radius, store)
      Check only. Safe for a single writer, or for callers that already
      serialise submissions themselves. Between admit() and the insert another
      request can slip in at the same spot.

  submit_report(candidate, store, radius)
      Check and insert as one operation by delegating to the store's
      insert_if_none_within(). This is what the HTTP handler uses.

Both use the same two-phase search: a latitude/longitude bounding box sized
to the radius (cheap, index-friendly) followed by an exact great-circle
filter. Results are sorted nearest first so the caller can say
"3 existing reports within 20 m" and list them.

find_duplicate_pairs() audits a snapshot after the fact. If a store without
atomic inserts ever lets two reports through at the same spot, this is how
they get found and merged by hand.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterable, Union

from pothole_map.core.errors import DuplicateReportError
from pothole_map.models.report import (
    Coordinate,
    DuplicatePair,
    NearbyReport,
    Report,
    ReportCreate,
    check_coordinate,
)
from pothole_map.services.distance import EARTH_RADIUS_METERS, haversine_meters

if TYPE_CHECKING:
    from pothole_map.services.report_store import ReportStore

logger = logging.getLogger(__name__)

DEFAULT_RADIUS_METERS = 20.0


# ── Bounding-box pre-filter ───────────────────────────────────────────────────

@dataclass(frozen=True)
class BoundingBox:
    """Lat/lng rectangle that fully contains a circle of the given radius."""

    min_lat: float
    max_lat: float
    min_lng: float
    max_lng: float

    @property
    def wraps(self) -> bool:
        """True when the box crosses the antimeridian."""
        return self.min_lng > self.max_lng

    def longitude_ranges(self) -> list[tuple[float, float]]:
        if self.wraps:
            return [(self.min_lng, 180.0), (-180.0, self.max_lng)]
        return [(self.min_lng, self.max_lng)]

    def contains(self, latitude: float, longitude: float) -> bool:
        if not self.min_lat <= latitude <= self.max_lat:
            return False
        return any(lo <= longitude <= hi for lo, hi in self.longitude_ranges())


def bounding_box(latitude: float, longitude: float, radius_meters: float) -> BoundingBox:
    """
    Smallest lat/lng box containing every point within radius_meters.

    The longitude half-width uses asin(sin(d) / cos(lat)) rather than
    d / cos(lat), which under-covers on a sphere. Near the poles the circle
    swallows every meridian and the box spans all longitudes.
    """
    angular = radius_meters / EARTH_RADIUS_METERS
    dlat = math.degrees(angular)
    min_lat = latitude - dlat
    max_lat = latitude + dlat

    if min_lat <= -90.0 or max_lat >= 90.0:
        return BoundingBox(max(min_lat, -90.0), min(max_lat, 90.0), -180.0, 180.0)

    ratio = math.sin(angular) / math.cos(math.radians(latitude))
    if ratio >= 1.0:
        return BoundingBox(min_lat, max_lat, -180.0, 180.0)

    dlng = math.degrees(math.asin(ratio))
    if dlng >= 180.0:
        return BoundingBox(min_lat, max_lat, -180.0, 180.0)

    min_lng = longitude - dlng
    max_lng = longitude + dlng
    if min_lng < -180.0:
        min_lng += 360.0
    if max_lng > 180.0:
        max_lng -= 360.0
    return BoundingBox(min_lat, max_lat, min_lng, max_lng)


# ── Exact filter ──────────────────────────────────────────────────────────────

def nearby_within(
    latitude: float,
    longitude: float,
    radius_meters: float,
    reports: Iterable[Report],
) -> list[NearbyReport]:
    """
    Every report within radius_meters of (latitude, longitude), nearest first.

    Ties on distance are ordered by id so the result is stable.
    """
    box = bounding_box(latitude, longitude, radius_meters)
    hits: list[NearbyReport] = []
    for report in reports:
        if not box.contains(report.latitude, report.longitude):
            continue
        d = haversine_meters(latitude, longitude, report.latitude, report.longitude)
        if d <= radius_meters:
            hits.append(
                NearbyReport(id=report.id, distance_meters=d, created_at=report.created_at)
            )
    hits.sort(key=lambda n: (n.distance_meters, n.id))
    return hits


# ── Guard ─────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Admitted:
    candidate: Coordinate


@dataclass(frozen=True)
class Rejected:
    candidate: Coordinate
    radius_meters: float
    nearby: list[NearbyReport] = field(default_factory=list)


AdmitResult = Union[Admitted, Rejected]


async def admit(
    candidate: Coordinate,
    store: ReportStore,
    radius_meters: float = DEFAULT_RADIUS_METERS,
) -> AdmitResult:
    """
    Check whether candidate may be inserted. Does not insert.

    StoreUnavailableError from the store propagates unchanged: "could not
    check" must never read as "nothing nearby".
    """
    check_coordinate(candidate.latitude, candidate.longitude)
    nearby = await store.find_within_radius(
        candidate.latitude, candidate.longitude, radius_meters
    )
    if nearby:
        return Rejected(candidate=candidate, radius_meters=radius_meters, nearby=nearby)
    return Admitted(candidate=candidate)


async def submit_report(
    candidate: ReportCreate,
    store: ReportStore,
    radius_meters: float = DEFAULT_RADIUS_METERS,
) -> Report:
    """
    Insert candidate unless another report lies within radius_meters.

    Raises DuplicateReportError with the nearby list on conflict.
    """
    check_coordinate(candidate.latitude, candidate.longitude)
    try:
        report = await store.insert_if_none_within(candidate, radius_meters)
    except DuplicateReportError as exc:
        logger.info(
            "Duplicate rejected at (%.6f, %.6f): %d nearby, closest %s at %.1f m",
            candidate.latitude,
            candidate.longitude,
            len(exc.nearby),
            exc.nearby[0].id if exc.nearby else "?",
            exc.nearby[0].distance_meters if exc.nearby else float("nan"),
        )
        raise
    logger.info("Report %s created at (%.6f, %.6f)", report.id, report.latitude, report.longitude)
    return report


# ── Post-hoc audit ────────────────────────────────────────────────────────────

def find_duplicate_pairs(
    reports: Iterable[Report],
    radius_meters: float = DEFAULT_RADIUS_METERS,
) -> list[DuplicatePair]:
    """
    All pairs of reports closer than radius_meters, nearest first.

    Sweeps over reports sorted by latitude, so only pairs inside the latitude
    band of the radius get an exact distance check.
    """
    ordered = sorted(reports, key=lambda r: (r.latitude, r.id))
    band = math.degrees(radius_meters / EARTH_RADIUS_METERS)
    pairs: list[DuplicatePair] = []
    for i, a in enumerate(ordered):
        for b in ordered[i + 1:]:
            if b.latitude - a.latitude > band:
                break
            d = haversine_meters(a.latitude, a.longitude, b.latitude, b.longitude)
            if d <= radius_meters:
                first, second = sorted((a.id, b.id))
                pairs.append(DuplicatePair(first_id=first, second_id=second, distance_meters=d))
    pairs.sort(key=lambda p: (p.distance_meters, p.first_id, p.second_id))
    if pairs:
        logger.warning("Found %d duplicate report pair(s) within %g m", len(pairs), radius_meters)
    return pairs
