"""OpenTelemetry tracing for Viewkeeper.

Spans are opened around per-record processing and rebuilds so a slow
partition or a long replay can be inspected in Jaeger, Zipkin or any
OTLP backend.

Usage:
    from viewkeeper.tracing import configure_tracing, trace_operation

    configure_tracing(service_name="order-view")

    with trace_operation("ingest.record", partition=0, offset=42) as span:
        outcome = worker.process_record(record)
        span.set_attribute("outcome", outcome.value)

Without configure_tracing() the OpenTelemetry API hands out non-recording
spans, so tracing costs next to nothing when no exporter is set up.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

_tracer: trace.Tracer | None = None


def configure_tracing(
    service_name: str = "viewkeeper",
    service_version: str | None = None,
    environment: str | None = None,
) -> None:
    """Configure OpenTelemetry tracing for Viewkeeper.

    Call this once at application startup. Exporters are attached to the
    returned provider separately (OTLP, Jaeger, console...).

    Args:
        service_name: Name of the service (appears in traces)
        service_version: Optional version string
        environment: Optional environment (dev, staging, production)
    """
    global _tracer

    from opentelemetry.sdk.resources import Resource
    from opentelemetry.sdk.trace import TracerProvider

    resource_attrs = {"service.name": service_name}
    if service_version:
        resource_attrs["service.version"] = service_version
    if environment:
        resource_attrs["deployment.environment"] = environment

    provider = TracerProvider(resource=Resource.create(resource_attrs))
    trace.set_tracer_provider(provider)

    _tracer = trace.get_tracer(
        instrumenting_module_name="viewkeeper",
        instrumenting_library_version=service_version,
    )


def get_tracer() -> trace.Tracer:
    """Get the tracer used by Viewkeeper."""
    global _tracer
    if _tracer is None:
        _tracer = trace.get_tracer("viewkeeper")
    return _tracer


@contextmanager
def trace_operation(name: str, **attributes: Any) -> Iterator[Any]:
    """Context manager for tracing an operation.

    Sets the given attributes, records a raised exception on the span and
    marks it as failed before re-raising.

    Args:
        name: Name of the operation (e.g., "ingest.record", "rebuild")
        **attributes: Attributes to set on the span (None values skipped)

    Yields:
        The active span
    """
    with get_tracer().start_as_current_span(name) as span:
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(key, value if isinstance(value, (int, float, bool)) else str(value))

        try:
            yield span
        except Exception as e:
            span.record_exception(e)
            span.set_status(Status(StatusCode.ERROR, str(e)))
            raise
