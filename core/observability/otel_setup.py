"""
Integration hub OpenTelemetry setup

Optional tracing:
- Spans per sync run and per connection health check
- Attributes carry provider key and connection/integration ids, never credentials
"""
from __future__ import annotations
from typing import Any, Optional
import os


def setup_otel(
    service_name: str = "integration-hub",
    endpoint: Optional[str] = None,
):
    """Initialize OpenTelemetry with an OTLP exporter. Returns a tracer or None."""
    try:
        from opentelemetry import trace
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
        from opentelemetry.sdk.resources import Resource

        resource = Resource.create({"service.name": service_name})
        provider = TracerProvider(resource=resource)

        otlp_endpoint = endpoint or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
        if otlp_endpoint:
            from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
            provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint)))

        trace.set_tracer_provider(provider)
        return trace.get_tracer(service_name)

    except ImportError:
        # Tracing stays off when the otel extra is not installed
        return None


def create_operation_span(tracer, operation: str, attributes: Optional[dict[str, Any]] = None):
    """Start a span for one hub operation (``sync.run``, ``health.test_connection``)."""
    if tracer is None:
        return None
    return tracer.start_span(
        f"integration.{operation}",
        attributes={k: v for k, v in (attributes or {}).items() if v is not None},
    )


def end_span(span, **attributes: Any) -> None:
    if span is None:
        return
    for key, value in attributes.items():
        if value is not None:
            span.set_attribute(key, value)
    span.end()
