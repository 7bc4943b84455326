"""
test_map_api.py — GET /api/v1/map/aggregate and the WS /api/v1/map/stream feed.
"""

import asyncio
import threading

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from conftest import make_report
from pothole_map.core.errors import StoreUnavailableError
from pothole_map.services.report_store import InMemoryReportStore, get_report_store

LOOP = make_report("a-loop", 41.8781, -87.6298, confirmations=1)
WEST_LOOP = make_report("b-west-loop", 41.8790, -87.6310, confirmations=5)
SOUTH_LOOP = make_report("c-south-loop", 41.8775, -87.6285, confirmations=0)
EVANSTON = make_report("d-evanston", 42.0451, -87.6877)

CHICAGO_BOUNDS = {"south": 41.6, "west": -88.0, "north": 41.95, "east": -87.5}


class GatedStore(InMemoryReportStore):
    """The first snapshot blocks until release is set (from the test thread)."""

    def __init__(self, reports):
        super().__init__(reports)
        self.release = threading.Event()
        self.calls = 0

    async def snapshot(self, bounds=None):
        self.calls += 1
        if self.calls == 1:
            for _ in range(500):
                if self.release.is_set():
                    break
                await asyncio.sleep(0.01)
        return await super().snapshot(bounds)


@pytest.fixture()
def seeded_store():
    return InMemoryReportStore([LOOP, WEST_LOOP, SOUTH_LOOP, EVANSTON])


@pytest.fixture()
def map_app(app_with_store, seeded_store):
    app_with_store.dependency_overrides[get_report_store] = lambda: seeded_store
    return app_with_store


@pytest.fixture()
async def map_client(map_app):
    from httpx import ASGITransport, AsyncClient

    async with AsyncClient(transport=ASGITransport(app=map_app), base_url="http://test") as ac:
        yield ac


class TestAggregate:
    async def test_low_zoom_is_heatmap(self, map_client):
        response = await map_client.get("/api/v1/map/aggregate", params={"zoom": 9, **CHICAGO_BOUNDS})

        assert response.status_code == 200
        data = response.json()
        assert data["kind"] == "heatmap"
        assert [s["weight"] for s in data["samples"]] == pytest.approx([0.5, 1.0, 0.5])
        assert data["layer"]["radius"] == 25
        assert data["layer"]["gradient"]["1.0"] == "#ef4444"

    async def test_mid_zoom_is_clusters(self, map_client):
        response = await map_client.get("/api/v1/map/aggregate", params={"zoom": 12})

        data = response.json()
        assert data["kind"] == "clusters"
        assert sum(n["count"] for n in data["nodes"]) == 4
        loop_cluster = next(n for n in data["nodes"] if "a-loop" in n["member_ids"])
        assert loop_cluster["member_ids"] == ["a-loop", "b-west-loop", "c-south-loop"]
        assert loop_cluster["size"] == "small"

    async def test_high_zoom_is_markers(self, map_client):
        response = await map_client.get("/api/v1/map/aggregate", params={"zoom": 16, **CHICAGO_BOUNDS})

        data = response.json()
        assert data["kind"] == "markers"
        assert data["degraded"] is False
        assert [r["id"] for r in data["reports"]] == ["a-loop", "b-west-loop", "c-south-loop"]

    async def test_repeat_calls_identical(self, map_client):
        params = {"zoom": 12.7, **CHICAGO_BOUNDS}
        first = await map_client.get("/api/v1/map/aggregate", params=params)
        second = await map_client.get("/api/v1/map/aggregate", params=params)
        assert first.content == second.content

    async def test_partial_bounds_is_422(self, map_client):
        response = await map_client.get(
            "/api/v1/map/aggregate", params={"zoom": 9, "south": 41.6, "north": 41.95}
        )
        assert response.status_code == 422

    async def test_south_above_north_is_422(self, map_client):
        params = {"zoom": 9, **CHICAGO_BOUNDS, "south": 42.5}
        response = await map_client.get("/api/v1/map/aggregate", params=params)
        assert response.status_code == 422

    @pytest.mark.parametrize("zoom", [-1, 31, "close"])
    async def test_bad_zoom_is_422(self, map_client, zoom):
        response = await map_client.get("/api/v1/map/aggregate", params={"zoom": zoom})
        assert response.status_code == 422

    async def test_no_database_is_503(self, client):
        response = await client.get("/api/v1/map/aggregate", params={"zoom": 9})
        assert response.status_code == 503


class TestStream:
    def test_reply_echoes_seq(self, map_app):
        test_client = TestClient(map_app)
        with test_client.websocket_connect("/api/v1/map/stream") as ws:
            ws.send_json({"seq": 1, "viewport": {"zoom": 9}})
            first = ws.receive_json()
            ws.send_json({"seq": 2, "viewport": {"zoom": 16, "bounds": CHICAGO_BOUNDS}})
            second = ws.receive_json()

        assert first["type"] == "aggregation"
        assert first["seq"] == 1
        assert first["result"]["kind"] == "heatmap"
        assert second["seq"] == 2
        assert second["result"]["kind"] == "markers"
        assert len(second["result"]["reports"]) == 3

    def test_invalid_viewport_gets_error_and_stream_survives(self, map_app):
        test_client = TestClient(map_app)
        with test_client.websocket_connect("/api/v1/map/stream") as ws:
            ws.send_json({"seq": 1, "viewport": {"zoom": 99}})
            error = ws.receive_json()
            ws.send_json({"seq": 2, "viewport": {"zoom": 13}})
            reply = ws.receive_json()

        assert error["type"] == "error"
        assert "Invalid viewport" in error["detail"]
        assert reply["seq"] == 2
        assert reply["result"]["kind"] == "clusters"

    def test_superseded_viewport_is_never_answered(self, app_with_store):
        store = GatedStore([LOOP, WEST_LOOP, SOUTH_LOOP, EVANSTON])
        app_with_store.dependency_overrides[get_report_store] = lambda: store
        test_client = TestClient(app_with_store)
        try:
            with test_client.websocket_connect("/api/v1/map/stream") as ws:
                ws.send_json({"seq": 1, "viewport": {"zoom": 9}})
                ws.send_json({"seq": 2, "viewport": {"zoom": 16, "bounds": CHICAGO_BOUNDS}})
                # Messages are read in order: once this error is back, seq 2
                # is already waiting in the mailbox.
                ws.send_json({"seq": -1})
                assert ws.receive_json()["type"] == "error"

                store.release.set()
                reply = ws.receive_json()
                ws.send_json({"seq": -1})
                after = ws.receive_json()
        finally:
            store.release.set()

        assert reply["seq"] == 2
        assert reply["result"]["kind"] == "markers"
        assert after["type"] == "error"

    def test_store_unavailable_sends_error_frame_then_closes(self, app_with_store):
        def no_store():
            raise StoreUnavailableError("Database unavailable")

        app_with_store.dependency_overrides[get_report_store] = no_store
        test_client = TestClient(app_with_store)
        with test_client.websocket_connect("/api/v1/map/stream") as ws:
            error = ws.receive_json()
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_json()

        assert error == {"type": "error", "detail": "Report store unavailable"}
        assert exc_info.value.code == 1011
