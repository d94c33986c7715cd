"""OpenTelemetry tracing and metrics setup for Kripa.

This module provides:
- Span creation for retrieval, quota and ledger operations
- Metrics collection exported through a Prometheus reader
- Optional console span export for debugging

Before ``setup_telemetry`` runs, the helpers fall back to the global
OpenTelemetry providers (no-op unless something else configured them), so
library code can be exercised without telemetry.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from contextlib import contextmanager
from typing import Any, Callable, Iterator

from opentelemetry import metrics, trace
from opentelemetry.exporter.prometheus import PrometheusMetricReader
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased

logger = logging.getLogger(__name__)

# Global tracer and meter
_tracer: trace.Tracer | None = None
_meter: metrics.Meter | None = None
_tracer_provider: TracerProvider | None = None
_meter_provider: MeterProvider | None = None

# Instruments are cached by name; creating one per call leaks registrations
_counters: dict[str, Any] = {}
_histograms: dict[str, Any] = {}


def setup_telemetry(
    service_name: str = "kripa",
    environment: str = "development",
    enable_console_export: bool = False,
    sample_rate: float = 1.0,
) -> tuple[trace.Tracer, metrics.Meter]:
    """Setup OpenTelemetry tracing and metrics.

    Args:
        service_name: Name of the service
        environment: Environment (development, production)
        enable_console_export: Export spans to console for debugging
        sample_rate: Sampling rate (0.0 to 1.0, 1.0 = all traces)

    Returns:
        Tuple of (tracer, meter)
    """
    global _tracer, _meter, _tracer_provider, _meter_provider

    if _tracer is not None and _meter is not None:
        return _tracer, _meter

    resource = Resource.create(
        {
            "service.name": service_name,
            "service.namespace": "kripa",
            "deployment.environment": environment,
        }
    )

    _tracer_provider = TracerProvider(resource=resource, sampler=TraceIdRatioBased(sample_rate))

    if enable_console_export:
        _tracer_provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
        logger.info("Console span export enabled")

    _tracer = _tracer_provider.get_tracer(__name__)

    metric_reader = PrometheusMetricReader()
    _meter_provider = MeterProvider(resource=resource, metric_readers=[metric_reader])
    _meter = _meter_provider.get_meter(__name__)

    _counters.clear()
    _histograms.clear()

    logger.info(f"✅ Telemetry initialized: {service_name} ({environment})")
    logger.info(f"   Sampling rate: {sample_rate:.0%}")

    return _tracer, _meter


def get_tracer() -> trace.Tracer:
    """Get tracer instance.

    Returns:
        Configured tracer, or the global (proxy) tracer before setup
    """
    if _tracer is None:
        return trace.get_tracer(__name__)
    return _tracer


def get_meter() -> metrics.Meter:
    """Get meter instance.

    Returns:
        Configured meter, or the global (proxy) meter before setup
    """
    if _meter is None:
        return metrics.get_meter(__name__)
    return _meter


@contextmanager
def trace_operation(
    operation_name: str,
    attributes: dict[str, str] | None = None,
) -> Iterator[Any]:
    """Context manager for tracing an operation.

    Args:
        operation_name: Name of the operation
        attributes: Additional span attributes

    Yields:
        Span object

    Example:
        with trace_operation("rank_stories", {"corpus.size": str(len(corpus))}):
            result = ranker.rank(embedding, corpus)
    """
    with get_tracer().start_as_current_span(
        operation_name,
        attributes=attributes or {},
    ) as span:
        try:
            yield span
            span.set_status(trace.StatusCode.OK)
        except Exception as e:
            span.record_exception(e)
            span.set_status(trace.StatusCode.ERROR, str(e))
            raise


def add_span_attributes(attributes: dict[str, str | int | float]) -> None:
    """Add attributes to the current span.

    Args:
        attributes: Dictionary of attributes to add
    """
    current_span = trace.get_current_span()
    if current_span and current_span.is_recording():
        current_span.set_attributes(attributes)


def record_counter(
    name: str,
    value: int = 1,
    attributes: dict[str, str] | None = None,
) -> None:
    """Record a counter metric.

    Args:
        name: Metric name
        value: Counter increment
        attributes: Metric attributes
    """
    counter = _counters.get(name)
    if counter is None:
        counter = get_meter().create_counter(name, description=f"Counter for {name}")
        if _meter is not None:
            _counters[name] = counter
    counter.add(value, attributes or {})


def record_histogram(
    name: str,
    value: float,
    attributes: dict[str, str] | None = None,
) -> None:
    """Record a histogram metric (distribution).

    Args:
        name: Metric name
        value: Histogram value
        attributes: Metric attributes
    """
    histogram = _histograms.get(name)
    if histogram is None:
        histogram = get_meter().create_histogram(name, description=f"Histogram for {name}")
        if _meter is not None:
            _histograms[name] = histogram
    histogram.record(value, attributes or {})


def traced(
    operation_name: str | None = None,
    attributes: dict[str, str] | None = None,
) -> Callable:
    """Decorator to automatically trace a function.

    Args:
        operation_name: Name of the operation (defaults to function name)
        attributes: Additional span attributes

    Returns:
        Decorated function

    Example:
        @traced("embed_question")
        async def embed(text: str) -> np.ndarray:
            ...
    """

    def decorator(func: Callable) -> Callable:
        span_name = operation_name or f"{func.__module__}.{func.__name__}"

        @functools.wraps(func)
        async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
            with get_tracer().start_as_current_span(
                span_name,
                attributes=attributes or {},
            ) as span:
                span.set_attribute("function.name", func.__name__)
                span.set_attribute("function.module", func.__module__)

                try:
                    result = await func(*args, **kwargs)
                    span.set_status(trace.StatusCode.OK)
                    return result
                except Exception as e:
                    span.record_exception(e)
                    span.set_status(trace.StatusCode.ERROR, str(e))
                    raise

        @functools.wraps(func)
        def sync_wrapper(*args: Any, **kwargs: Any) -> Any:
            with get_tracer().start_as_current_span(
                span_name,
                attributes=attributes or {},
            ) as span:
                span.set_attribute("function.name", func.__name__)
                span.set_attribute("function.module", func.__module__)

                try:
                    result = func(*args, **kwargs)
                    span.set_status(trace.StatusCode.OK)
                    return result
                except Exception as e:
                    span.record_exception(e)
                    span.set_status(trace.StatusCode.ERROR, str(e))
                    raise

        if asyncio.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator


def shutdown_telemetry() -> None:
    """Shutdown telemetry providers gracefully.

    This should be called when shutting down the application.
    """
    global _tracer, _meter, _tracer_provider, _meter_provider

    logger.info("Shutting down telemetry...")

    if _tracer_provider is not None:
        _tracer_provider.shutdown()
    if _meter_provider is not None:
        _meter_provider.shutdown()

    _tracer = None
    _meter = None
    _tracer_provider = None
    _meter_provider = None
    _counters.clear()
    _histograms.clear()

    logger.info("✅ Telemetry shutdown complete")
