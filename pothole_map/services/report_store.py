"""
report_store.py — Read/write access to pothole reports.

The aggregation engine only needs three things from storage:

  find_within_radius(lat, lng, radius_m)    → nearest-first NearbyReport list
  insert_if_none_within(candidate, radius_m) → Report, or DuplicateReportError
  snapshot(bounds=None)                      → every report (inside bounds)

insert_if_none_within() is the one place where a check and a write must happen
as a unit. Two submissions at the same pothole a few milliseconds apart must
not both get in.

Implementations
───────────────
  MongoReportStore    — Motor. Serialises nearby writers with geocell locks:
                        every cell of a fixed 0.001° grid touched by the
                        candidate's bounding box is claimed by inserting a
                        lock document with a unique _id. For two candidates
                        within the larger of their radii, the larger box
                        contains the other point, so both lock that point's
                        cell and the second insert_many fails with a
                        duplicate key. A box touching more than 64 cells
                        (near the poles, or a big radius) takes the single
                        "coarse" lock instead; coarse and fine writers check
                        for each other after locking and the later one backs
                        off.
  InMemoryReportStore — dict + asyncio.Lock. Development, demos and tests.

Status values from the database are normalised here, on read (doc_to_report).
"""

from __future__ import annotations

import asyncio
import logging
import math
import random
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import ValidationError
from pymongo import ReturnDocument
from pymongo.errors import BulkWriteError, DuplicateKeyError, PyMongoError

from pothole_map.core.config import settings
from pothole_map.core.database import get_db
from pothole_map.core.errors import (
    DuplicateReportError,
    ReportNotFoundError,
    StoreUnavailableError,
)
from pothole_map.models.aggregation import Bounds
from pothole_map.models.report import (
    NearbyReport,
    Report,
    ReportCreate,
    ReportStats,
    ReportStatus,
    normalize_status,
)
from pothole_map.services.duplicate_guard import BoundingBox, bounding_box, nearby_within

logger = logging.getLogger(__name__)

REPORTS = "reports"
GEOCELL_LOCKS = "geocell_locks"

# Lock grid edge in degrees (~111 m of latitude). Must be the same for every
# writer, so it is a constant rather than derived from the request radius.
GEOCELL_DEGREES = 0.001
# A bounding box touching more cells than this takes one coarse lock instead.
_MAX_LOCK_CELLS = 64
_COARSE_LOCK_KEY = "coarse"


class ReportStore(Protocol):
    async def find_within_radius(
        self, latitude: float, longitude: float, radius_meters: float
    ) -> list[NearbyReport]: ...

    async def insert_if_none_within(
        self, candidate: ReportCreate, radius_meters: float
    ) -> Report: ...

    async def insert(self, candidate: ReportCreate) -> Report: ...

    async def snapshot(self, bounds: Optional[Bounds] = None) -> list[Report]: ...

    async def get(self, report_id: str) -> Report: ...

    async def confirm(self, report_id: str) -> Report: ...

    async def update_status(self, report_id: str, status: ReportStatus) -> Report: ...

    async def stats(self) -> ReportStats: ...


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def compute_stats(reports: list[Report]) -> ReportStats:
    """Per-status counts over already-normalised reports."""
    counts = {status: 0 for status in ReportStatus}
    days = set()
    confirmations = 0
    for report in reports:
        counts[report.status] += 1
        confirmations += report.confirmations
        days.add(report.created_at.date())
    return ReportStats(
        total_reports=len(reports),
        reported=counts[ReportStatus.REPORTED],
        in_progress=counts[ReportStatus.IN_PROGRESS],
        fixed=counts[ReportStatus.FIXED],
        total_confirmations=confirmations,
        active_days=len(days),
    )


def _in_bounds(report: Report, bounds: Optional[Bounds]) -> bool:
    return bounds is None or bounds.contains(report.latitude, report.longitude)


# ── In-memory store ───────────────────────────────────────────────────────────

class InMemoryReportStore:
    """
    Process-local store. The asyncio.Lock makes check-and-insert atomic for
    every coroutine on this event loop, which is all a single worker has.
    """

    def __init__(self, reports: Optional[list[Report]] = None):
        self._reports: dict[str, Report] = {r.id: r for r in reports or []}
        self._lock = asyncio.Lock()

    def _new_report(self, candidate: ReportCreate) -> Report:
        now = _now()
        return Report(
            id=uuid.uuid4().hex,
            latitude=candidate.latitude,
            longitude=candidate.longitude,
            notes=candidate.notes,
            photo_url=candidate.photo_url,
            status=ReportStatus.REPORTED,
            confirmations=0,
            created_at=now,
            updated_at=now,
        )

    async def find_within_radius(self, latitude, longitude, radius_meters):
        return nearby_within(latitude, longitude, radius_meters, self._reports.values())

    async def insert_if_none_within(self, candidate, radius_meters):
        async with self._lock:
            nearby = nearby_within(
                candidate.latitude, candidate.longitude, radius_meters, self._reports.values()
            )
            if nearby:
                raise DuplicateReportError(nearby, radius_meters)
            # Yield inside the critical section so concurrent callers really queue.
            await asyncio.sleep(0)
            report = self._new_report(candidate)
            self._reports[report.id] = report
            return report

    async def insert(self, candidate):
        """Unguarded insert — imports and seeding only."""
        report = self._new_report(candidate)
        self._reports[report.id] = report
        return report

    async def snapshot(self, bounds=None):
        return [r for r in self._reports.values() if _in_bounds(r, bounds)]

    async def get(self, report_id):
        try:
            return self._reports[report_id]
        except KeyError:
            raise ReportNotFoundError(report_id) from None

    async def confirm(self, report_id):
        report = await self.get(report_id)
        updated = report.model_copy(
            update={"confirmations": report.confirmations + 1, "updated_at": _now()}
        )
        self._reports[report_id] = updated
        return updated

    async def update_status(self, report_id, status):
        report = await self.get(report_id)
        updated = report.model_copy(
            update={"status": ReportStatus(status), "updated_at": _now()}
        )
        self._reports[report_id] = updated
        return updated

    async def stats(self):
        return compute_stats(list(self._reports.values()))


# ── MongoDB store ─────────────────────────────────────────────────────────────

def doc_to_report(doc: dict) -> Report:
    """Build a Report from a Mongo document. Raises ValidationError on bad data."""
    return Report(
        id=str(doc["_id"]),
        latitude=doc.get("latitude"),
        longitude=doc.get("longitude"),
        status=normalize_status(doc.get("status")),
        confirmations=doc.get("confirmations", 0) or 0,
        created_at=doc.get("created_at") or _now(),
        updated_at=doc.get("updated_at"),
        notes=doc.get("notes"),
        photo_url=doc.get("photo_url"),
    )


def bbox_query(box: BoundingBox) -> dict:
    """Mongo filter selecting documents inside a lat/lng bounding box."""
    query: dict = {"latitude": {"$gte": box.min_lat, "$lte": box.max_lat}}
    ranges = box.longitude_ranges()
    if len(ranges) == 1:
        lo, hi = ranges[0]
        query["longitude"] = {"$gte": lo, "$lte": hi}
    else:
        query["$or"] = [{"longitude": {"$gte": lo, "$lte": hi}} for lo, hi in ranges]
    return query


def bounds_query(bounds: Bounds) -> dict:
    return bbox_query(BoundingBox(bounds.south, bounds.north, bounds.west, bounds.east))


def geocell_keys(box: BoundingBox, cell_degrees: float = GEOCELL_DEGREES) -> list[str]:
    """
    Sorted lock keys for every grid cell the box touches, or ["coarse"]
    when there are more than _MAX_LOCK_CELLS of them.

    Sorting gives every writer the same acquisition order.
    """
    lat_lo = math.floor(box.min_lat / cell_degrees)
    lat_hi = math.floor(box.max_lat / cell_degrees)
    lng_spans = [
        (math.floor(lo / cell_degrees), math.floor(hi / cell_degrees))
        for lo, hi in box.longitude_ranges()
    ]
    n_cells = (lat_hi - lat_lo + 1) * sum(hi - lo + 1 for lo, hi in lng_spans)
    if n_cells > _MAX_LOCK_CELLS:
        return [_COARSE_LOCK_KEY]
    keys = {
        f"{i}:{j}"
        for i in range(lat_lo, lat_hi + 1)
        for lo, hi in lng_spans
        for j in range(lo, hi + 1)
    }
    return sorted(keys)


class MongoReportStore:
    """Reports in the `reports` collection, lock documents in `geocell_locks`."""

    def __init__(
        self,
        db,
        lock_ttl_seconds: Optional[int] = None,
        lock_retries: Optional[int] = None,
        lock_backoff_seconds: Optional[float] = None,
    ):
        if lock_ttl_seconds is None:
            lock_ttl_seconds = settings.geocell_lock_ttl_seconds
        if lock_retries is None:
            lock_retries = settings.geocell_lock_retries
        if lock_backoff_seconds is None:
            lock_backoff_seconds = settings.geocell_lock_backoff_seconds
        self._db = db
        self._lock_ttl = timedelta(seconds=lock_ttl_seconds)
        self._lock_retries = lock_retries
        self._lock_backoff = lock_backoff_seconds

    @property
    def _reports(self):
        return self._db[REPORTS]

    @property
    def _locks(self):
        return self._db[GEOCELL_LOCKS]

    async def _load(self, query: dict) -> list[Report]:
        reports = []
        async for doc in self._reports.find(query):
            try:
                reports.append(doc_to_report(doc))
            except (ValidationError, ValueError) as exc:
                logger.warning("Skipping malformed report doc %s: %s", doc.get("_id"), exc)
        return reports

    async def find_within_radius(self, latitude, longitude, radius_meters):
        box = bounding_box(latitude, longitude, radius_meters)
        try:
            candidates = await self._load(bbox_query(box))
        except PyMongoError as exc:
            logger.error("Nearby query failed: %s", exc)
            raise StoreUnavailableError(str(exc)) from exc
        return nearby_within(latitude, longitude, radius_meters, candidates)

    # ── Geocell locking ──────────────────────────────────────────────────────

    async def _acquire(self, keys: list[str], owner: str) -> bool:
        now = _now()
        coarse = keys == [_COARSE_LOCK_KEY]
        kind = "coarse" if coarse else "fine"
        docs = [
            {"_id": k, "owner": owner, "kind": kind, "expires_at": now + self._lock_ttl}
            for k in keys
        ]
        try:
            await self._locks.insert_many(docs, ordered=True)
        except (BulkWriteError, DuplicateKeyError):
            # Release whatever part of the set we did get, and clear locks
            # whose holder died without cleaning up.
            await self._locks.delete_many({"_id": {"$in": keys}, "owner": owner})
            await self._locks.delete_many({"_id": {"$in": keys}, "expires_at": {"$lt": now}})
            return False

        # Coarse and fine locks never share a key, so each side looks for a
        # live lock of the other kind after writing its own. Whichever wrote
        # second sees the first and backs off.
        if coarse:
            conflict = {"kind": "fine", "expires_at": {"$gt": now}}
        else:
            conflict = {"_id": _COARSE_LOCK_KEY, "expires_at": {"$gt": now}}
        if await self._locks.find_one(conflict) is not None:
            await self._release(keys, owner)
            return False
        return True

    async def _release(self, keys: list[str], owner: str) -> None:
        await self._locks.delete_many({"_id": {"$in": keys}, "owner": owner})

    async def insert_if_none_within(self, candidate, radius_meters):
        box = bounding_box(candidate.latitude, candidate.longitude, radius_meters)
        keys = geocell_keys(box)
        owner = uuid.uuid4().hex
        try:
            for attempt in range(self._lock_retries + 1):
                if await self._acquire(keys, owner):
                    break
                logger.debug("Geocell lock busy (attempt %d) for %s", attempt + 1, keys)
                await asyncio.sleep(self._lock_backoff * (2 ** attempt) * random.uniform(0.5, 1.5))
            else:
                raise StoreUnavailableError("Could not lock location for duplicate check")

            try:
                nearby = nearby_within(
                    candidate.latitude,
                    candidate.longitude,
                    radius_meters,
                    await self._load(bbox_query(box)),
                )
                if nearby:
                    raise DuplicateReportError(nearby, radius_meters)
                return await self.insert(candidate)
            finally:
                await self._release(keys, owner)
        except PyMongoError as exc:
            logger.error("Guarded insert failed: %s", exc)
            raise StoreUnavailableError(str(exc)) from exc

    async def insert(self, candidate):
        now = _now()
        doc = {
            "latitude": candidate.latitude,
            "longitude": candidate.longitude,
            # GeoJSON copy for 2dsphere queries from other tools.
            "location": {"type": "Point", "coordinates": [candidate.longitude, candidate.latitude]},
            "notes": candidate.notes,
            "photo_url": candidate.photo_url,
            "status": ReportStatus.REPORTED.value,
            "confirmations": 0,
            "created_at": now,
            "updated_at": now,
        }
        try:
            result = await self._reports.insert_one(doc)
        except PyMongoError as exc:
            raise StoreUnavailableError(str(exc)) from exc
        doc["_id"] = result.inserted_id
        return doc_to_report(doc)

    async def snapshot(self, bounds=None):
        query = bounds_query(bounds) if bounds is not None else {}
        try:
            return await self._load(query)
        except PyMongoError as exc:
            logger.error("Snapshot query failed: %s", exc)
            raise StoreUnavailableError(str(exc)) from exc

    @staticmethod
    def _oid(report_id: str) -> ObjectId:
        try:
            return ObjectId(report_id)
        except (InvalidId, TypeError):
            raise ReportNotFoundError(report_id) from None

    async def get(self, report_id):
        oid = self._oid(report_id)
        try:
            doc = await self._reports.find_one({"_id": oid})
        except PyMongoError as exc:
            raise StoreUnavailableError(str(exc)) from exc
        if not doc:
            raise ReportNotFoundError(report_id)
        return doc_to_report(doc)

    async def _update(self, report_id: str, update: dict) -> Report:
        oid = self._oid(report_id)
        try:
            doc = await self._reports.find_one_and_update(
                {"_id": oid}, update, return_document=ReturnDocument.AFTER
            )
        except PyMongoError as exc:
            raise StoreUnavailableError(str(exc)) from exc
        if not doc:
            raise ReportNotFoundError(report_id)
        return doc_to_report(doc)

    async def confirm(self, report_id):
        return await self._update(
            report_id, {"$inc": {"confirmations": 1}, "$set": {"updated_at": _now()}}
        )

    async def update_status(self, report_id, status):
        return await self._update(
            report_id,
            {"$set": {"status": ReportStatus(status).value, "updated_at": _now()}},
        )

    async def stats(self):
        # Counted in Python so legacy status strings go through normalize_status.
        return compute_stats(await self.snapshot())


# ── FastAPI dependency ────────────────────────────────────────────────────────

_memory_store = InMemoryReportStore()


def get_report_store() -> ReportStore:
    """
    FastAPI dependency — the configured report store.

    Raises StoreUnavailableError (→ 503) when Mongo is configured but down,
    so a missing database never looks like an empty one.
    """
    if settings.report_store == "memory":
        return _memory_store

    db = get_db()
    if db is None:
        raise StoreUnavailableError("Database unavailable")
    return MongoReportStore(db)
