"""Tests for PerformanceMonitor: tracking, stats, persistence and health."""

import logging

import pytest
from prometheus_client import CollectorRegistry

from context_rag.monitoring import (
    OperationMetric,
    PerformanceMonitor,
    PrometheusOperationMetrics,
    compute_stats,
    percentile,
)

from tests.conftest import FakeClock


async def _ok():
    return "result"


async def _boom():
    raise ValueError("boom")


# =============================================================================
# Tracking
# =============================================================================

class TestTrack:
    """Tests for PerformanceMonitor.track."""

    @pytest.mark.asyncio
    async def test_returns_result_and_records_success(self, monitor):
        result = await monitor.track("hybrid_search", _ok, metadata={"user_id": "user-a"})

        assert result == "result"
        metric = monitor.get_metrics("hybrid_search")[0]
        assert metric.success is True
        assert metric.metadata["user_id"] == "user-a"
        assert metric.duration_ms >= 0

    @pytest.mark.asyncio
    async def test_reraises_and_records_failure(self, monitor):
        with pytest.raises(ValueError, match="boom"):
            await monitor.track("rerank", _boom)

        metric = monitor.get_metrics("rerank")[0]
        assert metric.success is False
        assert metric.metadata["error"] == "boom"
        assert metric.metadata["error_type"] == "ValueError"

    @pytest.mark.asyncio
    async def test_persistence_runs_in_background(self, monitor, metric_repo, tasks):
        await monitor.track("rag_pipeline", _ok)
        await tasks.drain(1.0)

        assert [r[0] for r in metric_repo.records] == ["rag_pipeline"]

    @pytest.mark.asyncio
    async def test_persistence_failure_is_swallowed(self, monitor, metric_repo, tasks):
        metric_repo.fail = True

        assert await monitor.track("rag_pipeline", _ok) == "result"
        await tasks.drain(1.0)

        assert tasks.failed == 0
        assert len(monitor.get_metrics()) == 1

    @pytest.mark.asyncio
    async def test_persistence_disabled(self, metric_repo, tasks):
        monitor = PerformanceMonitor(repository=metric_repo, tasks=tasks, persist=False)

        await monitor.track("rag_pipeline", _ok)
        await tasks.drain(1.0)

        assert metric_repo.records == []

    def test_slow_operation_warning(self, caplog):
        monitor = PerformanceMonitor(persist=False)
        with caplog.at_level(logging.WARNING, logger="context_rag.monitoring"):
            monitor.record("rerank", 1500.0, True)

        assert "Slow operation: rerank took 1500ms" in caplog.text

    def test_metric_written_to_json_side_channel(self, caplog):
        monitor = PerformanceMonitor(persist=False)
        with caplog.at_level(logging.INFO, logger="context_rag.metrics"):
            monitor.record("semantic_cache_get", 3.0, True, {"user_id": "user-a"})

        assert '"operation": "semantic_cache_get"' in caplog.text

    def test_prometheus_observation(self):
        registry = CollectorRegistry()
        monitor = PerformanceMonitor(persist=False, prometheus=PrometheusOperationMetrics(registry))

        monitor.record("rerank", 12.0, True)

        value = registry.get_sample_value(
            "rag_operations_total", {"operation": "rerank", "success": "true"}
        )
        assert value == 1.0


# =============================================================================
# Statistics
# =============================================================================

class TestStats:
    """Tests for percentile and aggregate computation."""

    def test_percentile_nearest_rank(self):
        values = [float(v) for v in range(1, 101)]
        assert percentile(values, 50) == 50.0
        assert percentile(values, 95) == 95.0
        assert percentile(values, 99) == 99.0

    def test_percentile_empty(self):
        assert percentile([], 95) == 0.0

    def test_compute_stats(self):
        metrics = [
            OperationMetric("rerank", float(d), d != 40, 0.0)
            for d in (10, 20, 30, 40)
        ]

        stats = compute_stats(metrics)

        assert stats.count == 4
        assert stats.success_rate == 75.0
        assert stats.avg_ms == 25.0
        assert stats.min_ms == 10.0
        assert stats.max_ms == 40.0
        assert stats.p50_ms == 20.0
        assert stats.p95_ms == 40.0

    def test_stats_filtered_by_operation(self):
        monitor = PerformanceMonitor(persist=False)
        monitor.record("rerank", 10.0, True)
        monitor.record("hybrid_search", 30.0, True)

        assert monitor.get_stats("rerank").count == 1
        assert monitor.get_stats().count == 2
        assert set(monitor.get_operation_breakdown()) == {"rerank", "hybrid_search"}

    def test_cleanup_drops_old_metrics(self):
        clock = FakeClock()
        monitor = PerformanceMonitor(persist=False, clock=clock)
        monitor.record("rerank", 10.0, True)
        clock.advance(7200)
        monitor.record("rerank", 10.0, True)

        assert monitor.cleanup(max_age_seconds=3600) == 1
        assert len(monitor.get_metrics()) == 1

    def test_export_and_reset(self):
        monitor = PerformanceMonitor(persist=False)
        monitor.record("rerank", 10.0, True)

        exported = monitor.export_metrics()
        assert exported["summary"]["count"] == 1
        assert "rerank" in exported["operations"]

        monitor.reset()
        assert monitor.get_metrics() == []

    @pytest.mark.asyncio
    async def test_database_stats(self, monitor, tasks):
        await monitor.track("rag_pipeline", _ok)
        await tasks.drain(1.0)

        stats = await monitor.get_database_stats()

        assert stats["available"] is True
        assert stats["total_metrics"] == 1

    @pytest.mark.asyncio
    async def test_database_stats_without_repository(self):
        stats = await PerformanceMonitor(persist=False).get_database_stats()
        assert stats == {"available": False}


# =============================================================================
# Health
# =============================================================================

async def _up():
    return True


async def _down():
    return False


async def _raises():
    raise ConnectionError("refused")


class TestHealthCheck:
    """Tests for issue counting and status classification."""

    @pytest.mark.asyncio
    async def test_healthy_without_issues(self, monitor):
        monitor.record("rag_pipeline", 100.0, True)

        report = await monitor.health_check({"database": _up})

        assert report.status == "healthy"
        assert report.issues == []
        assert report.checks == {"database": True}

    @pytest.mark.asyncio
    async def test_degraded_with_one_issue(self, monitor):
        report = await monitor.health_check({"database": _up, "rerank_api": _down})

        assert report.status == "degraded"
        assert report.issues == ["rerank_api connectivity issue"]

    @pytest.mark.asyncio
    async def test_degraded_with_two_issues(self, monitor):
        report = await monitor.health_check({"embedding_api": _down, "rerank_api": _raises})

        assert report.status == "degraded"
        assert len(report.issues) == 2

    @pytest.mark.asyncio
    async def test_unhealthy_with_three_issues(self, monitor):
        report = await monitor.health_check({"database": _down, "embedding_api": _down, "rerank_api": _down})

        assert report.status == "unhealthy"

    @pytest.mark.asyncio
    async def test_latency_and_success_thresholds(self, monitor):
        for _ in range(10):
            monitor.record("rag_pipeline", 6000.0, False)

        report = await monitor.health_check()

        assert report.status == "unhealthy"
        assert any("average latency" in issue for issue in report.issues)
        assert any("success rate" in issue for issue in report.issues)
        assert any("P95" in issue for issue in report.issues)
