"""OpenTelemetry distributed tracing integration.

Reconciliation runs and their passes are wrapped in spans so a slow or
failing run can be broken down pass by pass.

Key Features:
    - TracerProvider with service metadata (name, version, environment)
    - OTLPSpanExporter when tracing is enabled and an endpoint is configured
    - ConsoleSpanExporter for local development debugging
    - Logging context (run_id, link_id, course_id, operation) copied onto spans

Usage:
    ```python
    from metagroupsync.telemetry import create_span_context, get_tracer

    tracer = get_tracer(__name__)

    with create_span_context(tracer, "reconcile.pass_create", {"course_id": 20}):
        ...
    ```

Environment Variables:
    - OTEL_SERVICE_NAME: Service name for traces (default: "metagroupsync")
"""

from __future__ import annotations

import os
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace import Status, StatusCode, Tracer
from opentelemetry.trace.span import Span

from metagroupsync import __version__
from metagroupsync.config import settings
from metagroupsync.logging import logger

# Global tracer provider instance
_tracer_provider: TracerProvider | None = None
_initialized: bool = False


def initialize_telemetry() -> None:
    """Initialize the global OpenTelemetry tracer provider.

    Idempotent. Spans are only exported when ``settings.enable_tracing`` is
    set (OTLP) or when running in development (console); otherwise the
    provider records nothing to export.

    Raises:
        ValueError: If the OTLP endpoint is invalid
    """
    global _tracer_provider, _initialized

    if _initialized:
        return

    service_name = os.getenv("OTEL_SERVICE_NAME", "metagroupsync")
    resource = Resource.create(
        {
            "service.name": service_name,
            "service.version": __version__,
            "deployment.environment": settings.environment.value,
        }
    )
    _tracer_provider = TracerProvider(resource=resource)

    if settings.enable_tracing and settings.otlp_endpoint:
        try:
            _tracer_provider.add_span_processor(
                BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otlp_endpoint))
            )
            logger.info(f"✅ OTLP span exporter initialized ({settings.otlp_endpoint})")
        except Exception as e:
            logger.error(f"❌ Failed to initialize OTLP exporter: {e}")
            raise ValueError(f"Invalid OTLP endpoint: {settings.otlp_endpoint}") from e

    if settings.is_development and settings.enable_tracing:
        _tracer_provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
        logger.debug("Initialized console span exporter for development")

    trace.set_tracer_provider(_tracer_provider)
    _initialized = True
    logger.debug(
        f"Telemetry initialized (service={service_name}, "
        f"environment={settings.environment.value}, tracing={settings.enable_tracing})"
    )


def get_tracer(name: str) -> Tracer:
    """Get a tracer, initializing the provider on first use.

    Args:
        name: Tracer name, typically ``__name__`` of the calling module
    """
    if not _initialized:
        initialize_telemetry()
    return trace.get_tracer(name)


def add_span_attributes(span: Span, attributes: dict[str, Any]) -> None:
    """Add multiple attributes to a span.

    None values are dropped; lists and dicts are converted to strings.
    """
    for key, value in attributes.items():
        if value is None:
            continue
        if isinstance(value, (list, dict)):
            value = str(value)
        span.set_attribute(key, value)


def record_exception_in_span(
    span: Span,
    exception: Exception,
    set_status: bool = True,
) -> None:
    """Record an exception in a span and optionally set error status."""
    span.record_exception(exception)
    if set_status:
        span.set_status(Status(StatusCode.ERROR, str(exception)))


def shutdown_telemetry() -> None:
    """Shutdown the tracer provider and flush all pending spans."""
    global _tracer_provider, _initialized

    if _tracer_provider and _initialized:
        _tracer_provider.shutdown()
        _initialized = False
        logger.debug("Telemetry shut down")


@contextmanager
def create_span_context(
    tracer: Tracer,
    span_name: str,
    attributes: dict[str, Any] | None = None,
) -> Iterator[Span]:
    """Context manager creating a span with attributes and the logging context.

    Args:
        tracer: Tracer instance to use
        span_name: Name for the span
        attributes: Optional dictionary of attributes to add to the span

    Yields:
        The created span
    """
    with tracer.start_as_current_span(span_name) as span:
        if attributes:
            add_span_attributes(span, attributes)
        sync_logging_context_to_span(span)
        yield span


def sync_logging_context_to_span(span: Span) -> None:
    """Copy the sync logging context variables onto span attributes."""
    from metagroupsync.logging import get_sync_context

    add_span_attributes(span, get_sync_context())


__all__ = [
    "initialize_telemetry",
    "shutdown_telemetry",
    "get_tracer",
    "add_span_attributes",
    "record_exception_in_span",
    "create_span_context",
    "sync_logging_context_to_span",
]
