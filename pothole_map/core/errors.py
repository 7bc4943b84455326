"""
errors.py — Domain exceptions shared by the store, the duplicate guard and
the routes.

The HTTP mapping lives in main.py (exception handlers), so services never
import FastAPI:

  DuplicateReportError   → 409  (expected outcome, carries the nearby list)
  ReportNotFoundError    → 404
  StoreUnavailableError  → 503  (transient — retry later)
  InvalidCoordinateError → 422
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pothole_map.models.report import NearbyReport


class ReportStoreError(Exception):
    """Base class for everything the report store can raise."""


class StoreUnavailableError(ReportStoreError):
    """
    The store could not be reached or did not answer in time.

    Distinct from "no duplicates found": a caller that sees this must not
    assume the location is free.
    """

    retry_after_seconds = 5


class ReportNotFoundError(ReportStoreError):
    def __init__(self, report_id: str):
        super().__init__(f"Report {report_id} not found")
        self.report_id = report_id


class DuplicateReportError(ReportStoreError):
    """A report already exists within the duplicate radius of the candidate."""

    def __init__(self, nearby: list[NearbyReport], radius_meters: float):
        super().__init__(
            f"{len(nearby)} existing report(s) within {radius_meters:g} m of this location"
        )
        self.nearby = nearby
        self.radius_meters = radius_meters


class InvalidCoordinateError(ValueError):
    def __init__(self, latitude: float, longitude: float):
        super().__init__(f"Invalid coordinate ({latitude}, {longitude})")
        self.latitude = latitude
        self.longitude = longitude
