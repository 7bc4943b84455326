"""
test_dispatcher.py — aggregate(): validation, bounds, mode dispatch and the
markers fallback.
"""

import logging

import pytest

from conftest import CHICAGO, make_report
from pothole_map.models.aggregation import (
    AggregationOptions,
    Bounds,
    ClusterResult,
    HeatmapResult,
    MarkerResult,
    ViewportState,
)
from pothole_map.models.report import Report
from pothole_map.services.dispatcher import aggregate, split_valid


@pytest.fixture()
def chicago_reports():
    return [
        make_report("r1", 41.8781, -87.6298, confirmations=1),
        make_report("r2", 41.8790, -87.6310, confirmations=5),
        make_report("r3", 41.8775, -87.6285, confirmations=0),
    ]


class TestModes:
    def test_zoom_9_gives_heatmap_with_weights(self, chicago_reports):
        result = aggregate(chicago_reports, ViewportState(zoom=9))

        assert isinstance(result, HeatmapResult)
        assert result.kind == "heatmap"
        assert [s.weight for s in result.samples] == pytest.approx([0.5, 1.0, 0.5])
        assert result.layer.radius == 25
        assert result.layer.blur == 15

    def test_zoom_13_gives_clusters(self, chicago_reports):
        result = aggregate(chicago_reports, ViewportState(zoom=13))

        assert isinstance(result, ClusterResult)
        assert sum(n.count for n in result.nodes) == 3

    def test_zoom_16_gives_markers(self, chicago_reports):
        result = aggregate(chicago_reports, ViewportState(zoom=16))

        assert isinstance(result, MarkerResult)
        assert [r.id for r in result.reports] == ["r1", "r2", "r3"]
        assert result.degraded is False

    def test_clustering_disabled_at_zoom(self, chicago_reports):
        options = AggregationOptions(cluster_max_zoom=16, disable_clustering_at_zoom=15)
        assert isinstance(aggregate(chicago_reports, ViewportState(zoom=14.5), options), ClusterResult)
        assert isinstance(aggregate(chicago_reports, ViewportState(zoom=15.5), options), MarkerResult)

    def test_empty_input_is_valid_everywhere(self):
        assert aggregate([], ViewportState(zoom=5)).samples == []
        assert aggregate([], ViewportState(zoom=12)).nodes == []
        assert aggregate([], ViewportState(zoom=18)).reports == []


class TestDeterminism:
    @pytest.mark.parametrize("zoom", [9, 12.5, 16])
    def test_same_input_same_bytes(self, chicago_reports, zoom):
        viewport = ViewportState(zoom=zoom)
        first = aggregate(chicago_reports, viewport).model_dump_json()
        second = aggregate(list(chicago_reports), viewport).model_dump_json()
        assert first == second


class TestValidation:
    def test_invalid_reports_dropped_and_logged(self, chicago_reports, caplog):
        bad = [
            Report.model_construct(id="north-of-pole", latitude=95.0, longitude=0.0),
            Report.model_construct(id="nan", latitude=float("nan"), longitude=0.0),
            Report.model_construct(id="missing", latitude=None, longitude=None),
        ]
        with caplog.at_level(logging.WARNING, logger="pothole_map.services.dispatcher"):
            result = aggregate(chicago_reports + bad, ViewportState(zoom=16))

        assert [r.id for r in result.reports] == ["r1", "r2", "r3"]
        assert "north-of-pole" in caplog.text
        assert "missing" in caplog.text

    def test_split_valid_keeps_order(self, chicago_reports):
        bad = Report.model_construct(id="bad", latitude=0.0, longitude=181.0)
        valid, rejected = split_valid([chicago_reports[0], bad, chicago_reports[1]])
        assert [r.id for r in valid] == ["r1", "r2"]
        assert [r.id for r in rejected] == ["bad"]


class TestBounds:
    def test_reports_outside_bounds_excluded(self):
        reports = [
            make_report("loop", *CHICAGO),
            make_report("london", 51.5074, -0.1278),
        ]
        bounds = Bounds(south=41.6, west=-88.0, north=42.1, east=-87.5)
        result = aggregate(reports, ViewportState(zoom=16, bounds=bounds))
        assert [r.id for r in result.reports] == ["loop"]

    def test_bounds_across_antimeridian(self):
        reports = [
            make_report("fiji", -17.7, 178.0),
            make_report("samoa", -13.8, -172.0),
            make_report("chicago", *CHICAGO),
        ]
        bounds = Bounds(south=-20.0, west=170.0, north=-10.0, east=-170.0)
        result = aggregate(reports, ViewportState(zoom=16, bounds=bounds))
        assert [r.id for r in result.reports] == ["fiji", "samoa"]


class TestFallback:
    def test_cluster_failure_falls_back_to_markers(self, chicago_reports, monkeypatch, caplog):
        def broken(*_args, **_kwargs):
            raise ArithmeticError("projection overflow")

        monkeypatch.setattr("pothole_map.services.dispatcher.cluster_reports", broken)

        with caplog.at_level(logging.ERROR, logger="pothole_map.services.dispatcher"):
            result = aggregate(chicago_reports, ViewportState(zoom=13))

        assert isinstance(result, MarkerResult)
        assert result.degraded is True
        assert [r.id for r in result.reports] == ["r1", "r2", "r3"]
        assert "falling back to markers" in caplog.text

    def test_heatmap_failure_falls_back_to_markers(self, chicago_reports, monkeypatch):
        def broken(_reports):
            raise ValueError("bad weight")

        monkeypatch.setattr("pothole_map.services.dispatcher.build_samples", broken)

        result = aggregate(chicago_reports, ViewportState(zoom=5))

        assert isinstance(result, MarkerResult)
        assert result.degraded is True
