"""Tests for the metrics aggregator."""

import threading

import pytest

from abengine.metrics import MetricsAggregator
from abengine.types import EventKind


@pytest.fixture
def aggregator(make_experiment):
    agg = MetricsAggregator()
    exp = make_experiment({"control": (0, 0), "treatment": (0, 0)})
    agg.register(exp)
    return agg, exp


class TestRecord:
    def test_exposure_and_conversion(self, aggregator):
        agg, exp = aggregator
        for _ in range(4):
            assert agg.record(exp.id, "treatment", "exposure")
        assert agg.record(exp.id, "treatment", EventKind.CONVERSION, {"revenue": 12.5})

        result = exp.results["treatment"]
        assert result.sessions == 4
        assert result.conversions == 1
        assert result.revenue == 12.5
        assert result.conversion_rate == 0.25
        assert result.last_event_at is not None

    def test_results_are_shared_with_experiment(self, aggregator):
        agg, exp = aggregator
        assert agg.get(exp.id) is exp.results

    def test_conversion_without_revenue(self, aggregator):
        agg, exp = aggregator
        agg.record(exp.id, "control", "conversion", {"revenue": "lots"})
        assert exp.results["control"].conversions == 1
        assert exp.results["control"].revenue == 0.0

    def test_engagement_running_mean(self, aggregator):
        agg, exp = aggregator
        agg.record(exp.id, "control", "exposure")
        agg.record(exp.id, "control", "engagement", {"duration": 10})
        agg.record(exp.id, "control", "exposure")
        agg.record(exp.id, "control", "engagement", {"duration": 20})
        assert exp.results["control"].engagement_time == pytest.approx(15.0)

    def test_engagement_without_duration_is_ignored(self, aggregator):
        agg, exp = aggregator
        agg.record(exp.id, "control", "exposure")
        agg.record(exp.id, "control", "engagement", {})
        assert exp.results["control"].engagement_time == 0.0

    def test_bounce_rate(self, aggregator):
        agg, exp = aggregator
        agg.record(exp.id, "control", "exposure")
        agg.record(exp.id, "control", "bounce")
        agg.record(exp.id, "control", "exposure")
        agg.record(exp.id, "control", "bounce", {"bounced": False})
        assert exp.results["control"].bounce_rate == pytest.approx(0.5)

    def test_unknown_ids_are_dropped(self, aggregator):
        agg, exp = aggregator
        assert agg.record("missing", "control", "exposure") is False
        assert agg.record(exp.id, "missing", "exposure") is False
        assert agg.record(exp.id, "control", "teleport") is False
        assert exp.results["control"].sessions == 0

    def test_concurrent_updates_are_not_lost(self, aggregator):
        agg, exp = aggregator

        def worker():
            for _ in range(1000):
                agg.record(exp.id, "control", "exposure")
                agg.record(exp.id, "control", "conversion")

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert exp.results["control"].sessions == 8000
        assert exp.results["control"].conversions == 8000


class TestSnapshot:
    def test_snapshot_shape(self, aggregator):
        agg, exp = aggregator
        agg.record(exp.id, "control", "exposure")
        snap = agg.snapshot()
        assert snap[exp.id]["control"]["sessions"] == 1
        assert snap[exp.id]["treatment"]["sessions"] == 0
        assert "conversion_rate" in snap[exp.id]["control"]
