"""
OpenTelemetry tracing setup.

Tracing is opt-in: until ``setup_tracing`` runs, ``get_tracer`` hands out the
API's default tracer, whose spans are non-recording.
"""

import logging
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace import Tracer

from jobforge import __version__
from jobforge.config import get_settings

logger = logging.getLogger(__name__)

# Global tracer instance
_tracer: Tracer | None = None


def setup_tracing(enable_console_export: bool = False) -> Tracer:
    """
    Set up OpenTelemetry tracing.

    Args:
        enable_console_export: If True, also export spans to console.

    Returns:
        Tracer: The tracer instance.
    """
    global _tracer

    settings = get_settings()

    # Service identity attached to every span
    resource = Resource.create(
        {
            "service.name": settings.otel_service_name,
            "service.version": __version__,
        }
    )

    provider = TracerProvider(resource=resource)

    # Export to the OTLP collector
    try:
        otlp_exporter = OTLPSpanExporter(
            endpoint=settings.otel_exporter_otlp_endpoint,
            insecure=True,
        )
        provider.add_span_processor(BatchSpanProcessor(otlp_exporter))
    except Exception as e:
        logger.warning(
            "OTLP exporter unavailable, spans will not be exported",
            extra={"error": str(e)},
        )

    # Console exporter for debugging
    if enable_console_export:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    # Global provider, so spans from other libraries join the same traces
    trace.set_tracer_provider(provider)

    _tracer = trace.get_tracer(settings.otel_service_name)

    return _tracer


def get_tracer() -> Tracer:
    """
    Get the tracer instance.

    Returns:
        Tracer: The configured tracer, or a no-op tracer when tracing is off.
    """
    if _tracer is None:
        return trace.get_tracer("jobforge")
    return _tracer


def create_span(name: str, **attributes: Any) -> Any:
    """
    Create a new span with the given name and attributes.

    Args:
        name: Span name.
        **attributes: Span attributes; ``None`` values are skipped.

    Returns:
        A context manager for the span.
    """
    return get_tracer().start_as_current_span(
        name,
        attributes={k: str(v) for k, v in attributes.items() if v is not None},
    )
