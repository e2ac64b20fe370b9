"""
OpenTelemetry setup for the sync engine.

- One tracer per process
- One span per paginator step, tagged with service, instance type and
  integration id
"""
from __future__ import annotations
from contextlib import contextmanager
from typing import Iterator, Optional
import os

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor


def setup_otel(
    service_name: str = "timeline-sync",
    endpoint: Optional[str] = None,
) -> trace.Tracer:
    """Initialize OpenTelemetry, exporting over OTLP when an endpoint is set."""
    resource = Resource.create({"service.name": service_name})
    provider = TracerProvider(resource=resource)

    otlp_endpoint = endpoint or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    if otlp_endpoint:
        # Exporter ships in the optional "otlp" extra
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
        exporter = OTLPSpanExporter(endpoint=otlp_endpoint)
        provider.add_span_processor(BatchSpanProcessor(exporter))

    trace.set_tracer_provider(provider)
    return trace.get_tracer(service_name)


@contextmanager
def sync_step_span(
    tracer: Optional[trace.Tracer],
    service: str,
    instance_type: str,
    integration_id: str,
    page_index: int = 0,
) -> Iterator[Optional[trace.Span]]:
    """Span around one paginator step. A None tracer yields no span."""
    if tracer is None:
        yield None
        return
    with tracer.start_as_current_span(
        "sync.step",
        attributes={
            "sync.service": service,
            "sync.instance_type": instance_type,
            "sync.integration_id": integration_id,
            "sync.page_index": page_index,
        },
    ) as span:
        yield span
