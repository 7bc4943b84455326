"""
pytest configuration and shared fixtures for the Pothole Map API tests.

Key concern: tests must not require a live MongoDB. We achieve this by:
  1. Patching connect_to_mongo / close_mongo_connection to no-ops.
  2. Setting db_client.client / db_client.db = None (disconnected), so any
     route that reaches the real get_report_store answers 503.
  3. Overriding get_report_store with an InMemoryReportStore in the
     api_client fixture.

Reports used across test files are built with make_report().
"""

import os
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest
from httpx import ASGITransport, AsyncClient

# Set env vars BEFORE importing the app so Settings picks them up correctly
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("REPORT_STORE", "mongo")

CHICAGO = (41.8781, -87.6298)


def make_report(report_id, latitude=CHICAGO[0], longitude=CHICAGO[1], **fields):
    from pothole_map.models.report import Report

    fields.setdefault("created_at", datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc))
    return Report(id=report_id, latitude=latitude, longitude=longitude, **fields)


@pytest.fixture(autouse=True)
def mock_db():
    """
    Patch the MongoDB lifecycle for every test and mark the DB as disconnected.

    Tests that need a database build a MongoReportStore over a FakeDB instead.
    """
    with (
        patch("pothole_map.core.database.connect_to_mongo", new_callable=AsyncMock),
        patch("pothole_map.core.database.close_mongo_connection", new_callable=AsyncMock),
        patch("pothole_map.main.connect_to_mongo", new_callable=AsyncMock),
        patch("pothole_map.main.close_mongo_connection", new_callable=AsyncMock),
    ):
        import pothole_map.core.database as db_module

        original_client = db_module.db_client.client
        original_db = db_module.db_client.db

        db_module.db_client.client = None
        db_module.db_client.db = None

        yield

        db_module.db_client.client = original_client
        db_module.db_client.db = original_db


@pytest.fixture()
def store():
    from pothole_map.services.report_store import InMemoryReportStore

    return InMemoryReportStore()


@pytest.fixture()
def app_with_store(store):
    """The FastAPI app with get_report_store pointing at the in-memory store."""
    from pothole_map.core.rate_limit import limiter
    from pothole_map.main import app
    from pothole_map.services.report_store import get_report_store

    # Fresh rate-limit counters so earlier tests don't bleed into this one.
    try:
        limiter._limiter.storage.reset()
    except Exception:
        pass  # Some storage backends don't support reset — safe to ignore.

    app.dependency_overrides[get_report_store] = lambda: store
    yield app
    app.dependency_overrides.clear()


@pytest.fixture()
async def api_client(app_with_store):
    async with AsyncClient(transport=ASGITransport(app=app_with_store), base_url="http://test") as ac:
        yield ac


@pytest.fixture()
async def client():
    """Client against the app with no store override (DB disconnected)."""
    from pothole_map.main import app

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
