"""
Tracer initialization and configuration for OpenTelemetry.

Provides setup functions for distributed tracing with an OTLP exporter.
Until initialize_tracing() is called, spans go to whatever tracer
provider is globally installed (the no-op provider by default), so
library code can trace unconditionally.
"""

import logging
import os
import threading

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased

logger = logging.getLogger(__name__)

INSTRUMENTATION_NAME = "reconciler"

_tracer: trace.Tracer | None = None
_is_initialized = False
_init_lock = threading.Lock()


def initialize_tracing(
    service_name: str = "reconciler",
    otlp_endpoint: str | None = None,
    console_export: bool = False,
    sampling_rate: float = 1.0,
) -> trace.Tracer:
    """
    Initialize distributed tracing with OpenTelemetry.

    Args:
        service_name: Name of the service for identification
        otlp_endpoint: OTLP collector endpoint (e.g., "localhost:4317");
            falls back to OTLP_ENDPOINT, and no OTLP export when both are empty
        console_export: If True, also export traces to console (debug)
        sampling_rate: Sampling rate 0.0-1.0 (1.0 = trace everything)

    Returns:
        Configured tracer instance
    """
    global _tracer, _is_initialized

    with _init_lock:
        if _is_initialized:
            logger.warning("Tracing already initialized, returning existing tracer")
            return _tracer

        provider = TracerProvider(
            resource=Resource(attributes={SERVICE_NAME: service_name}),
            sampler=TraceIdRatioBased(sampling_rate),
        )

        exporters = []

        if otlp_endpoint is None:
            otlp_endpoint = os.getenv("OTLP_ENDPOINT", "")

        if otlp_endpoint:
            provider.add_span_processor(
                BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint, insecure=True))
            )
            exporters.append("OTLP")
            logger.info(f"OTLP exporter configured: {otlp_endpoint}")

        if console_export or os.getenv("TRACE_CONSOLE", "").lower() == "true":
            provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
            exporters.append("Console")

        if not exporters:
            logger.warning("No trace exporters configured, spans will be dropped")

        trace.set_tracer_provider(provider)

        _tracer = trace.get_tracer(INSTRUMENTATION_NAME)
        _is_initialized = True

        logger.info(
            f"Tracing initialized: {service_name} "
            f"(exporters: {', '.join(exporters) or 'none'}, sampling: {sampling_rate})"
        )

        return _tracer


def get_tracer() -> trace.Tracer:
    """
    Get the tracer used for reconciliation spans.

    Returns the configured tracer, or one bound to the global provider
    when tracing has not been initialized.
    """
    if _tracer is not None:
        return _tracer
    return trace.get_tracer(INSTRUMENTATION_NAME)


def shutdown_tracing() -> None:
    """
    Shutdown tracing and flush pending spans.

    Should be called before application exit.
    """
    global _tracer, _is_initialized

    with _init_lock:
        if not _is_initialized:
            return

        provider = trace.get_tracer_provider()
        if hasattr(provider, "shutdown"):
            provider.shutdown()
        _tracer = None
        _is_initialized = False
        logger.info("Tracing shutdown complete")
