"""
test_heatmap_weights.py — Confirmation count → heat weight.
"""

import pytest

from conftest import make_report
from pothole_map.services.heatmap_weights import build_samples, heatmap_weight


@pytest.mark.parametrize(
    "confirmations, weight",
    [(0, 0.5), (1, 0.5), (2, 0.6), (3, 0.9), (4, 1.0), (10, 1.0), (500, 1.0)],
)
def test_weight_curve(confirmations, weight):
    report = make_report("r", confirmations=confirmations)
    assert heatmap_weight(report) == pytest.approx(weight)


def test_weight_never_leaves_range():
    for n in range(0, 50):
        w = heatmap_weight(make_report("r", confirmations=n))
        assert 0.5 <= w <= 1.0


def test_one_sample_per_report_in_order():
    reports = [
        make_report("a", 41.0, -87.0, confirmations=0),
        make_report("b", 41.0, -87.0, confirmations=10),   # same spot, not merged
        make_report("c", 42.0, -88.0, confirmations=2),
    ]
    samples = build_samples(reports)
    assert [(s.latitude, s.longitude) for s in samples] == [(41.0, -87.0), (41.0, -87.0), (42.0, -88.0)]
    assert [s.weight for s in samples] == pytest.approx([0.5, 1.0, 0.6])


def test_no_reports_no_samples():
    assert build_samples([]) == []
