"""OpenTelemetry tracing for the retrieval pipeline.

Every monitored operation runs inside a span named ``rag.<operation>``.
Until ``init_tracing()`` installs an SDK tracer provider, the API's default
provider hands out non-recording spans, so instrumentation costs next to
nothing when tracing is disabled.

Usage:
    from context_rag.tracing import init_tracing, create_span

    init_tracing()

    with create_span("rag.hybrid_search", {"rag.query.length": len(query)}) as span:
        results = await searcher.search(user_id, query)
        span.set_attribute(SpanAttributes.SUCCESS, True)

Environment Variables:
    TRACING_ENABLED: Enable/disable tracing (default: false)
    TRACING_EXPORTER: "otlp" or "console" (default: console)
    TRACING_OTLP_ENDPOINT: OTLP gRPC endpoint (default: http://localhost:4317)
    TRACING_SERVICE_NAME: Service name in traces (default: context-rag)
    TRACING_SAMPLE_RATE: Sampling ratio 0.0-1.0 (default: 1.0)
"""
import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource, SERVICE_NAME
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
)
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased
from opentelemetry.trace import Status, StatusCode

from context_rag.config import settings

logger = logging.getLogger(__name__)

TRACER_NAME = "context_rag"

_tracer_provider: Optional[TracerProvider] = None


def init_tracing() -> bool:
    """Install an SDK tracer provider when tracing is enabled.

    Returns:
        True if a provider was installed, False otherwise
    """
    global _tracer_provider

    if _tracer_provider is not None:
        logger.debug("Tracing already initialized")
        return True

    if not settings.tracing_enabled:
        logger.info("Tracing is disabled (TRACING_ENABLED=false)")
        return False

    try:
        resource = Resource.create({
            SERVICE_NAME: settings.tracing_service_name,
            "deployment.environment": "development" if settings.log_level == "debug" else "production",
        })
        provider = TracerProvider(
            resource=resource,
            sampler=TraceIdRatioBased(settings.tracing_sample_rate),
        )

        if settings.tracing_exporter == "otlp":
            _configure_otlp_exporter(provider)
        else:
            _configure_console_exporter(provider)

        trace.set_tracer_provider(provider)
        _tracer_provider = provider

        logger.info(
            f"OpenTelemetry tracing initialized: "
            f"exporter={settings.tracing_exporter}, "
            f"endpoint={settings.tracing_otlp_endpoint if settings.tracing_exporter == 'otlp' else 'stdout'}, "
            f"sample_rate={settings.tracing_sample_rate}"
        )
        return True

    except Exception as e:
        logger.error(f"Failed to initialize tracing: {e}")
        return False


def _configure_otlp_exporter(provider: TracerProvider) -> None:
    """Configure the OTLP gRPC exporter (installed with the ``otlp`` extra)."""
    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter

    exporter = OTLPSpanExporter(endpoint=settings.tracing_otlp_endpoint, insecure=True)
    provider.add_span_processor(BatchSpanProcessor(exporter))
    logger.debug(f"OTLP exporter configured: {settings.tracing_otlp_endpoint}")


def _configure_console_exporter(provider: TracerProvider) -> None:
    provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    logger.debug("Console exporter configured")


@contextmanager
def create_span(
    name: str,
    attributes: Optional[Dict[str, Any]] = None,
    record_exception: bool = True,
) -> Iterator[trace.Span]:
    """Create a span with scalar attributes and exception recording.

    Non-scalar attribute values are skipped since OpenTelemetry only accepts
    primitives and homogeneous sequences of them.
    """
    tracer = trace.get_tracer(TRACER_NAME)

    with tracer.start_as_current_span(name, record_exception=False, set_status_on_exception=False) as span:
        if attributes:
            for key, value in attributes.items():
                if isinstance(value, (str, bool, int, float)):
                    span.set_attribute(key, value)
        try:
            yield span
        except Exception as e:
            if record_exception:
                span.record_exception(e)
            span.set_status(Status(StatusCode.ERROR, str(e)))
            raise


def flush_tracing(timeout_millis: int = 5000) -> None:
    """Export buffered spans; a no-op when tracing was never initialized."""
    if _tracer_provider is None:
        return
    if not _tracer_provider.force_flush(timeout_millis):
        logger.warning(f"Span flush did not finish within {timeout_millis}ms")


class SpanAttributes:
    """Span attribute names used across the pipeline."""

    OPERATION = "rag.operation"
    DURATION_MS = "rag.duration_ms"
    SUCCESS = "rag.success"
