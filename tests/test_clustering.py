"""
test_clustering.py — Spatial clustering of active signals.

Run with:
    pytest tests/test_clustering.py -v
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from backend.app.core.errors import ValidationError
from backend.app.sos.clustering import cluster, summarize
from backend.app.sos.models import Priority, SignalStatus

from conftest import KANDY_LAT, KANDY_LNG, T0, _make_signal


def _resolved(**kwargs):
    return _make_signal(
        status=SignalStatus.RESOLVED,
        response_time=T0,
        resolution_time=T0 + timedelta(minutes=30),
        **kwargs,
    )


class TestClusterScenario:
    """Three signals in Colombo Fort + one in Kandy, radius 2 km."""

    @pytest.fixture
    def signals(self):
        return [
            _make_signal(lat=6.927, lng=79.861, priority=Priority.MEDIUM),
            _make_signal(lat=6.930, lng=79.865, priority=Priority.CRITICAL),
            _make_signal(lat=6.925, lng=79.858, priority=Priority.LOW),
            _make_signal(lat=KANDY_LAT, lng=KANDY_LNG, priority=Priority.HIGH),
        ]

    def test_two_clusters(self, signals):
        clusters = cluster(signals, 2.0)
        assert len(clusters) == 2

    def test_colombo_group_first(self, signals):
        big, single = cluster(signals, 2.0)
        assert set(big.member_ids) == {s.id for s in signals[:3]}
        assert big.dominant_priority == Priority.CRITICAL
        assert single.member_ids == [signals[3].id]
        assert single.dominant_priority == Priority.HIGH

    def test_centroid_is_mean(self, signals):
        big = cluster(signals, 2.0)[0]
        assert big.centroid_lat == pytest.approx((6.927 + 6.930 + 6.925) / 3)
        assert big.centroid_lng == pytest.approx((79.861 + 79.865 + 79.858) / 3)

    def test_status_counts(self, signals):
        big = cluster(signals, 2.0)[0]
        assert big.status_counts == {"pending": 3}

    def test_cluster_id_is_stable(self, signals):
        first = cluster(signals, 2.0)
        again = cluster(list(reversed(signals)), 2.0)
        assert {c.cluster_id for c in first} == {c.cluster_id for c in again}
        assert all(c.cluster_id.startswith("CLU-") for c in first)

    def test_summary(self, signals):
        clusters = cluster(signals, 2.0)
        summary = summarize(clusters, len(signals))
        assert summary["total_clusters"] == 2
        assert summary["clustered_signals"] == 4
        assert summary["multi_signal_clusters"] == 1
        assert summary["critical_clusters"] == 1
        assert summary["high_priority_clusters"] == 1
        assert summary["average_cluster_size"] == 2.0


class TestClusterRules:

    def test_transitive_chain(self):
        # ~1.67 km apart in a line; ends are ~3.3 km apart
        a = _make_signal(lat=0.0, lng=0.0)
        b = _make_signal(lat=0.015, lng=0.0)
        c = _make_signal(lat=0.030, lng=0.0)
        clusters = cluster([a, c, b], 2.0)
        assert len(clusters) == 1
        assert clusters[0].member_count == 3

    def test_symmetric(self):
        a = _make_signal(lat=0.0, lng=0.0)
        b = _make_signal(lat=0.015, lng=0.0)
        assert len(cluster([a, b], 2.0)) == 1
        assert len(cluster([b, a], 2.0)) == 1

    def test_terminal_signals_ignored(self):
        active = _make_signal()
        done = _resolved()
        clusters = cluster([active, done], 2.0)
        assert len(clusters) == 1
        assert clusters[0].member_ids == [active.id]

    def test_same_priority_sorted_by_size(self):
        pair = [_make_signal(lat=0.0, lng=0.0), _make_signal(lat=0.001, lng=0.0)]
        lone = _make_signal(lat=10.0, lng=10.0)
        clusters = cluster([lone] + pair, 2.0)
        assert [c.member_count for c in clusters] == [2, 1]

    def test_empty_input(self):
        assert cluster([], 2.0) == []
        assert summarize([], 0)["average_cluster_size"] == 0.0

    @pytest.mark.parametrize("radius", [0, -1.0])
    def test_non_positive_radius_rejected(self, radius):
        with pytest.raises(ValidationError) as exc:
            cluster([_make_signal()], radius)
        assert exc.value.details["field"] == "radius"

    def test_to_dict(self):
        d = cluster([_make_signal(priority=Priority.HIGH)], 1.0)[0].to_dict()
        assert d["dominant_priority"] == "high"
        assert d["member_count"] == 1
        assert set(d["centroid"]) == {"lat", "lng"}
