"""OpenTelemetry tracer initialization for threadline processes."""

from __future__ import annotations

import logging
import os

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider

logger = logging.getLogger(__name__)

TRACER_NAME = "threadline"

# True once the global TracerProvider has been installed, so repeated init
# calls (API + scheduler in one process) do not try to override it.
_tracer_provider_installed: bool = False


def init_telemetry(service_name: str = "threadline") -> trace.Tracer:
    """Initialize OpenTelemetry tracing.

    When ``OTEL_EXPORTER_OTLP_ENDPOINT`` is set, installs a TracerProvider with
    an OTLP gRPC exporter on the first call. Without it the global no-op
    provider stays in place.

    Args:
        service_name: ``service.name`` resource attribute for exported spans.

    Returns:
        A Tracer instance (real or no-op depending on config)
    """
    global _tracer_provider_installed

    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op tracer")
        return trace.get_tracer(TRACER_NAME)

    if _tracer_provider_installed:
        logger.debug("TracerProvider already initialized; reusing it")
        return trace.get_tracer(TRACER_NAME)

    # Exporter is an optional extra; imported only when an endpoint is configured
    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))

    trace.set_tracer_provider(provider)
    _tracer_provider_installed = True
    logger.info("Telemetry initialized: endpoint=%s", endpoint)

    return trace.get_tracer(TRACER_NAME)


def get_tracer(name: str = TRACER_NAME) -> trace.Tracer:
    """Get a tracer from the current provider (useful for modules)."""
    return trace.get_tracer(name)


__all__ = ["TRACER_NAME", "get_tracer", "init_telemetry"]
