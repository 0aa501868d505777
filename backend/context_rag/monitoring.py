"""Performance monitoring for the retrieval pipeline.

``PerformanceMonitor.track`` times an async operation, records the outcome and
returns (or re-raises) exactly what the operation produced. Recording fans
out to:
- an in-memory ring buffer used for stats and health checks
- a JSON-lines side channel (``context_rag.metrics`` logger)
- Prometheus histogram/counter (when enabled)
- an OpenTelemetry span per operation
- the ``performance_metrics`` table, written in the background

No recording failure is ever allowed to change the outcome of the
operation being measured.
"""

import json
import logging
import math
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, List, Mapping, Optional, TypeVar

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Histogram

from context_rag.async_utils import BackgroundTaskRunner
from context_rag.config import settings
from context_rag.models import HealthReport
from context_rag.tracing import SpanAttributes, create_span

logger = logging.getLogger(__name__)

# Side channel for per-operation JSON records
metrics_logger = logging.getLogger("context_rag.metrics")

T = TypeVar("T")

Probe = Callable[[], Awaitable[bool]]


@dataclass
class OperationMetric:
    """One timed operation."""
    operation: str
    duration_ms: float
    success: bool
    timestamp: float
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


@dataclass
class OperationStats:
    """Aggregate figures over a set of metrics. success_rate is a percentage."""
    count: int = 0
    success_rate: float = 100.0
    avg_ms: float = 0.0
    min_ms: float = 0.0
    max_ms: float = 0.0
    p50_ms: float = 0.0
    p95_ms: float = 0.0
    p99_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def percentile(sorted_values: List[float], pct: float) -> float:
    """Nearest-rank percentile of an ascending list; 0.0 when empty."""
    if not sorted_values:
        return 0.0
    index = math.ceil(len(sorted_values) * pct / 100.0) - 1
    return sorted_values[max(0, min(index, len(sorted_values) - 1))]


def compute_stats(metrics: List[OperationMetric]) -> OperationStats:
    if not metrics:
        return OperationStats()

    durations = sorted(m.duration_ms for m in metrics)
    successes = sum(1 for m in metrics if m.success)

    return OperationStats(
        count=len(metrics),
        success_rate=round(successes / len(metrics) * 100.0, 2),
        avg_ms=round(sum(durations) / len(durations), 2),
        min_ms=round(durations[0], 2),
        max_ms=round(durations[-1], 2),
        p50_ms=round(percentile(durations, 50), 2),
        p95_ms=round(percentile(durations, 95), 2),
        p99_ms=round(percentile(durations, 99), 2),
    )


class RetrievalTimer:
    """Context manager for timing pipeline stages."""

    def __init__(self):
        self.start_time: Optional[float] = None
        self.end_time: Optional[float] = None

    def __enter__(self) -> "RetrievalTimer":
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, *args):
        self.end_time = time.perf_counter()

    @property
    def elapsed_ms(self) -> float:
        """Return elapsed time in milliseconds."""
        if self.start_time is None:
            return 0.0
        end = self.end_time or time.perf_counter()
        return (end - self.start_time) * 1000


class PrometheusOperationMetrics:
    """Latency histogram and outcome counter labelled by operation."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        registry = registry or REGISTRY
        try:
            self.duration_histogram = Histogram(
                "rag_operation_duration_ms",
                "Pipeline operation latency in milliseconds",
                ["operation"],
                buckets=[5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000],
                registry=registry,
            )
            self.operation_counter = Counter(
                "rag_operations_total",
                "Pipeline operations by outcome",
                ["operation", "success"],
                registry=registry,
            )
        except ValueError:
            # Metrics already registered, get existing ones
            self.duration_histogram = registry._names_to_collectors.get("rag_operation_duration_ms")
            self.operation_counter = registry._names_to_collectors.get("rag_operations_total")

    def observe(self, metric: OperationMetric) -> None:
        if self.duration_histogram is not None:
            self.duration_histogram.labels(operation=metric.operation).observe(metric.duration_ms)
        if self.operation_counter is not None:
            self.operation_counter.labels(
                operation=metric.operation,
                success=str(metric.success).lower(),
            ).inc()


class PerformanceMonitor:
    """Records pipeline operation timings and derives health.

    Construct one per process and inject it; components never reach for a
    global monitor.
    """

    def __init__(
        self,
        repository=None,
        tasks: Optional[BackgroundTaskRunner] = None,
        slow_operation_ms: Optional[float] = None,
        buffer_size: Optional[int] = None,
        retention_seconds: Optional[int] = None,
        persist: Optional[bool] = None,
        prometheus: Optional[PrometheusOperationMetrics] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.repository = repository
        self.tasks = tasks or BackgroundTaskRunner("monitoring")
        self.slow_operation_ms = slow_operation_ms if slow_operation_ms is not None else settings.slow_operation_ms
        self.retention_seconds = retention_seconds if retention_seconds is not None else settings.metrics_retention_seconds
        self.persist = settings.metrics_persist_enabled if persist is None else persist
        self.prometheus = prometheus
        self._clock = clock
        self._metrics: Deque[OperationMetric] = deque(
            maxlen=buffer_size if buffer_size is not None else settings.metrics_buffer_size
        )

        # Health thresholds
        self.max_avg_latency_ms = settings.health_max_avg_latency_ms
        self.min_success_rate = settings.health_min_success_rate
        self.max_p95_latency_ms = settings.health_max_p95_latency_ms

    async def track(
        self,
        operation: str,
        func: Callable[[], Awaitable[T]],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> T:
        """Run ``func`` and record its duration and outcome.

        Args:
            operation: Operation name, e.g. "hybrid_search"
            func: Zero-argument callable returning an awaitable
            metadata: JSON-compatible context stored with the metric

        Returns:
            Whatever ``func`` returned

        Raises:
            Whatever ``func`` raised, unchanged
        """
        metadata = dict(metadata or {})
        span_attributes = {f"rag.{k}": v for k, v in metadata.items()}
        span_attributes[SpanAttributes.OPERATION] = operation

        with create_span(f"rag.{operation}", span_attributes) as span:
            timer = RetrievalTimer()
            try:
                with timer:
                    result = await func()
            except Exception as e:
                metadata["error"] = str(e) or type(e).__name__
                metadata["error_type"] = type(e).__name__
                span.set_attribute(SpanAttributes.SUCCESS, False)
                self._safe_record(operation, timer.elapsed_ms, False, metadata)
                raise

            span.set_attribute(SpanAttributes.DURATION_MS, timer.elapsed_ms)
            span.set_attribute(SpanAttributes.SUCCESS, True)
            self._safe_record(operation, timer.elapsed_ms, True, metadata)
            return result

    def _safe_record(self, operation: str, duration_ms: float, success: bool, metadata: Dict[str, Any]) -> None:
        try:
            self.record(operation, duration_ms, success, metadata)
        except Exception as e:
            metrics_logger.warning(f"Failed to record metric for {operation}: {e}")

    def record(
        self,
        operation: str,
        duration_ms: float,
        success: bool,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> OperationMetric:
        """Record a metric directly (used for fallbacks and externally timed work)."""
        metric = OperationMetric(
            operation=operation,
            duration_ms=round(duration_ms, 3),
            success=success,
            timestamp=self._clock(),
            metadata=dict(metadata or {}),
        )
        self._metrics.append(metric)

        metrics_logger.info(metric.to_json())

        if duration_ms > self.slow_operation_ms:
            logger.warning(f"Slow operation: {operation} took {duration_ms:.0f}ms")

        if self.prometheus is not None:
            self.prometheus.observe(metric)

        if self.persist and self.repository is not None:
            self.tasks.spawn(self._persist(metric), name=f"persist_metric:{operation}")

        return metric

    async def _persist(self, metric: OperationMetric) -> None:
        try:
            await self.repository.record(
                metric.operation,
                metric.duration_ms,
                metric.success,
                metric.metadata,
            )
        except Exception as e:
            metrics_logger.warning(f"Failed to persist metric for {metric.operation}: {e}")

    def get_metrics(self, operation: Optional[str] = None) -> List[OperationMetric]:
        if operation is None:
            return list(self._metrics)
        return [m for m in self._metrics if m.operation == operation]

    def get_stats(self, operation: Optional[str] = None) -> OperationStats:
        """Count, success rate, avg/min/max and p50/p95/p99 for one or all operations."""
        return compute_stats(self.get_metrics(operation))

    def get_operation_breakdown(self) -> Dict[str, Dict[str, Any]]:
        operations = sorted({m.operation for m in self._metrics})
        return {op: self.get_stats(op).to_dict() for op in operations}

    async def get_database_stats(self) -> Dict[str, Any]:
        """Persisted totals, newest records and per-operation averages."""
        if self.repository is None:
            return {"available": False}
        try:
            stats = await self.repository.get_database_stats()
            stats["available"] = True
            return stats
        except Exception as e:
            logger.warning(f"Failed to read persisted metrics: {e}")
            return {"available": False, "error": str(e)}

    async def health_check(self, probes: Optional[Mapping[str, Probe]] = None) -> HealthReport:
        """Classify health from recent metrics plus connectivity probes.

        Each breached threshold and each failing probe is one issue:
        0 issues is healthy, 1-2 degraded, 3 or more unhealthy.
        """
        stats = self.get_stats()
        issues: List[str] = []

        if stats.count > 0:
            if stats.avg_ms > self.max_avg_latency_ms:
                issues.append(f"High average latency: {stats.avg_ms:.0f}ms")
            if stats.success_rate < self.min_success_rate:
                issues.append(f"Low success rate: {stats.success_rate:.1f}%")
            if stats.p95_ms > self.max_p95_latency_ms:
                issues.append(f"High P95 latency: {stats.p95_ms:.0f}ms")

        checks: Dict[str, bool] = {}
        for name, probe in (probes or {}).items():
            try:
                ok = bool(await probe())
            except Exception as e:
                logger.warning(f"Health probe {name} raised: {e}")
                ok = False
            checks[name] = ok
            if not ok:
                issues.append(f"{name} connectivity issue")

        if not issues:
            status = "healthy"
        elif len(issues) <= 2:
            status = "degraded"
        else:
            status = "unhealthy"

        return HealthReport(status=status, issues=issues, metrics=stats.to_dict(), checks=checks)

    def cleanup(self, max_age_seconds: Optional[int] = None) -> int:
        """Drop in-memory metrics older than the retention window. Returns count removed."""
        max_age = max_age_seconds if max_age_seconds is not None else self.retention_seconds
        cutoff = self._clock() - max_age
        kept = [m for m in self._metrics if m.timestamp >= cutoff]
        removed = len(self._metrics) - len(kept)
        self._metrics.clear()
        self._metrics.extend(kept)
        if removed:
            logger.debug(f"Removed {removed} metrics older than {max_age}s")
        return removed

    def export_metrics(self) -> Dict[str, Any]:
        return {
            "metrics": [m.to_dict() for m in self._metrics],
            "summary": self.get_stats().to_dict(),
            "operations": self.get_operation_breakdown(),
            "exported_at": self._clock(),
        }

    def reset(self) -> None:
        self._metrics.clear()
