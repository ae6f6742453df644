import pytest

from ratelimiter.core.metrics import MetricsCollector, metrics_collector, record_metric


class TestMetricsCollector:
    """Test the in-process metrics collector."""

    def test_record_store_metric(self):
        collector = MetricsCollector()

        collector.record_store_metric("eval_script", 0.5, True)
        collector.record_store_metric("eval_script", 0.25, False)

        metrics = collector.get_metrics()["store"]["eval_script"]
        assert metrics["count"] == 2
        assert metrics["total_duration"] == pytest.approx(0.75)
        assert metrics["success_count"] == 1
        assert metrics["error_count"] == 1

    def test_record_decision_metric(self):
        collector = MetricsCollector()

        collector.record_decision_metric("hotspot", allowed=True, hotspot=True)
        collector.record_decision_metric("hotspot", allowed=False, hotspot=True)
        collector.record_decision_metric("hotspot", allowed=True, degraded=True)

        decisions = collector.get_metrics()["decisions"]["hotspot"]
        assert decisions == {"allowed": 2, "blocked": 1, "hotspot": 2, "degraded": 1}

    def test_get_metrics_returns_snapshot(self):
        collector = MetricsCollector()
        collector.record_store_metric("ping", 0.1, True)

        snapshot = collector.get_metrics()
        snapshot["store"]["ping"]["count"] = 99

        assert collector.get_metrics()["store"]["ping"]["count"] == 1
        assert snapshot["uptime"] >= 0

    def test_reset_metrics(self):
        collector = MetricsCollector()
        collector.record_store_metric("ping", 0.1, True)
        collector.record_decision_metric("counter", allowed=True)

        collector.reset_metrics()

        metrics = collector.get_metrics()
        assert metrics["store"] == {}
        assert metrics["decisions"] == {}


def test_record_metric_decorator_sync():
    """Sync functions are timed and counted under their own name."""

    @record_metric("store")
    def read_value():
        return 42

    assert read_value() == 42
    assert metrics_collector.get_metrics()["store"]["read_value"]["success_count"] == 1


def test_record_metric_decorator_sync_failure():
    @record_metric("store")
    def broken():
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        broken()
    assert metrics_collector.get_metrics()["store"]["broken"]["error_count"] == 1


@pytest.mark.asyncio
async def test_record_metric_decorator_async():
    """Coroutine functions keep being awaitable after decoration."""

    @record_metric("store")
    async def fetch():
        return "ok"

    assert await fetch() == "ok"
    assert metrics_collector.get_metrics()["store"]["fetch"]["count"] == 1


def test_record_metric_ignores_other_families():
    @record_metric("timing")
    def noop():
        return None

    noop()
    assert "noop" not in metrics_collector.get_metrics()["store"]
