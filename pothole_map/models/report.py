"""
report.py — Pydantic schemas for pothole reports.

Coordinate        — a validated (latitude, longitude) pair
Report            — a stored, geo-tagged report
ReportCreate      — what the submission form sends
NearbyReport      — one entry of a duplicate-conflict / nearby search
DuplicateConflict — 409 body for POST /api/v1/reports

Status normalization
────────────────────
Older rows use the legacy vocabulary new / confirmed / fixed. normalize_status()
is the single place that maps it onto ReportStatus. It runs at two edges:
where documents are read from the store (report_store.doc_to_report) and
where a client sends a status (StatusUpdate). Report itself only accepts
the canonical values.
"""

import math
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from pothole_map.core.errors import InvalidCoordinateError


# ── Status ────────────────────────────────────────────────────────────────────

class ReportStatus(str, Enum):
    REPORTED = "reported"
    IN_PROGRESS = "in_progress"
    FIXED = "fixed"


# Lower rank wins a tie when picking a cluster's dominant status.
STATUS_PRECEDENCE = {
    ReportStatus.REPORTED: 0,
    ReportStatus.IN_PROGRESS: 1,
    ReportStatus.FIXED: 2,
}

_LEGACY_STATUS = {
    "new": ReportStatus.REPORTED,
    "confirmed": ReportStatus.IN_PROGRESS,
    "in progress": ReportStatus.IN_PROGRESS,
    "in-progress": ReportStatus.IN_PROGRESS,
}


def normalize_status(raw) -> ReportStatus:
    """Map a stored status value (current or legacy) onto ReportStatus."""
    if isinstance(raw, ReportStatus):
        return raw
    if raw is None:
        return ReportStatus.REPORTED
    value = str(raw).strip().lower()
    if value in _LEGACY_STATUS:
        return _LEGACY_STATUS[value]
    return ReportStatus(value)


# ── Coordinates ───────────────────────────────────────────────────────────────

def is_valid_coordinate(latitude, longitude) -> bool:
    """True when both values are finite numbers inside the WGS84 ranges."""
    try:
        lat = float(latitude)
        lng = float(longitude)
    except (TypeError, ValueError):
        return False
    if not (math.isfinite(lat) and math.isfinite(lng)):
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0


def check_coordinate(latitude: float, longitude: float) -> None:
    """Raise InvalidCoordinateError instead of ever clamping bad input."""
    if not is_valid_coordinate(latitude, longitude):
        raise InvalidCoordinateError(latitude, longitude)


class Coordinate(BaseModel):
    """A point on the WGS84 ellipsoid. Out-of-range values are rejected, never clamped."""

    model_config = {"frozen": True}

    latitude: float = Field(ge=-90, le=90, allow_inf_nan=False)
    longitude: float = Field(ge=-180, le=180, allow_inf_nan=False)


# ── Report ────────────────────────────────────────────────────────────────────

def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class Report(Coordinate):
    """A geo-tagged pothole report as returned by the store."""

    id: str
    status: ReportStatus = ReportStatus.REPORTED
    confirmations: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: Optional[datetime] = None
    notes: Optional[str] = None
    photo_url: Optional[str] = None


class ReportCreate(Coordinate):
    """Payload for POST /api/v1/reports."""

    notes: Optional[str] = Field(default=None, max_length=500)
    photo_url: Optional[str] = Field(default=None, max_length=2048)


class StatusUpdate(BaseModel):
    """Payload for PATCH /api/v1/reports/{id}/status."""

    status: ReportStatus

    @field_validator("status", mode="before")
    @classmethod
    def _normalize(cls, value):
        return normalize_status(value)


# ── Nearby / duplicates ───────────────────────────────────────────────────────

class NearbyReport(BaseModel):
    """An existing report close to a candidate location."""

    id: str
    distance_meters: float
    created_at: Optional[datetime] = None


class DuplicateConflict(BaseModel):
    """409 response body — enough to render "N existing reports within 20 m"."""

    detail: str
    radius_meters: float
    nearby: list[NearbyReport]


class NearbySearchResponse(BaseModel):
    radius_meters: float
    items: list[NearbyReport]
    count: int


class DuplicatePair(BaseModel):
    """Two stored reports closer than the duplicate radius — needs a manual merge."""

    first_id: str
    second_id: str
    distance_meters: float


class DuplicateAuditResponse(BaseModel):
    radius_meters: float
    pairs: list[DuplicatePair]


# ── List / stats ──────────────────────────────────────────────────────────────

class ReportListResponse(BaseModel):
    items: list[Report]
    total: int


class ReportStats(BaseModel):
    total_reports: int = 0
    reported: int = 0
    in_progress: int = 0
    fixed: int = 0
    total_confirmations: int = 0
    active_days: int = 0
