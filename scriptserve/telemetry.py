"""Tracing for scriptserve.

Three spans cover a request's life: ``pipeline.dispatch`` around the
middleware loop, ``script.execute`` around a page script and
``websocket.session`` around a session's receive loop. The exporter is
picked by ``SCRIPTSERVE_OTEL_EXPORTER``:

  - **none** (default): no provider is installed; spans are no-ops.
  - **console**: spans print to stdout.
  - **otlp**: spans ship to ``OTEL_EXPORTER_OTLP_ENDPOINT``.
"""

from __future__ import annotations

import logging
import os

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import SpanProcessor, TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
)

from scriptserve import __version__
from scriptserve.constants import SERVER_NAME

logger = logging.getLogger(__name__)

_initialized = False


def _console_processor() -> SpanProcessor:
    return SimpleSpanProcessor(ConsoleSpanExporter())


def _span_processor(exporter: str) -> SpanProcessor:
    if exporter != "otlp":
        logger.info("[Telemetry] Console exporter active.")
        return _console_processor()
    try:
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    except ImportError:
        logger.warning("[Telemetry] OTLP exporter not installed, falling back to console.")
        return _console_processor()
    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT", "http://localhost:4317")
    logger.info("[Telemetry] OTLP exporter → %s", endpoint)
    return BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint))


def init_telemetry(exporter: str = "none") -> bool:
    """Install the global TracerProvider once. Returns True if one is active."""
    global _initialized
    if _initialized:
        return True

    exporter = exporter.lower()
    if exporter == "none":
        logger.debug("[Telemetry] Exporter disabled.")
        return False

    provider = TracerProvider(
        resource=Resource.create({"service.name": SERVER_NAME, "service.version": __version__})
    )
    provider.add_span_processor(_span_processor(exporter))
    trace.set_tracer_provider(provider)
    _initialized = True
    return True


def get_tracer() -> trace.Tracer:
    return trace.get_tracer(SERVER_NAME, __version__)


def current_trace_id() -> str:
    """Hex trace id of the active span, or ``""`` outside a recorded span."""
    ctx = trace.get_current_span().get_span_context()
    if ctx and ctx.trace_id:
        return format(ctx.trace_id, "032x")
    return ""
