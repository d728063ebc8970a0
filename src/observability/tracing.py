"""
Gemini Proxy - OpenTelemetry Tracing

Distributed tracing with OpenTelemetry.

Features:
- W3C trace context propagation (traceparent header)
- Server span per incoming request
- Client span per upstream Gemini call
- OTLP exporter support when the optional exporter is installed

Usage:
    from src.observability.tracing import setup_tracing, trace_upstream_call

    setup_tracing(otlp_endpoint="http://localhost:4317")

    with trace_upstream_call("gemini-pro", "generateContent") as span:
        response = await client.post(...)
        span.set_attribute("http.status_code", response.status_code)
"""

import os
from typing import Optional, Dict, Any
from contextlib import contextmanager
from dataclasses import dataclass

from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
)
from opentelemetry.sdk.resources import Resource, SERVICE_NAME, SERVICE_VERSION
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator
from opentelemetry.propagate import set_global_textmap, extract
from opentelemetry.trace import SpanKind, Status, StatusCode
from opentelemetry.context import Context

from ..core import config as proxy_config

# Optional OTLP exporter (requires opentelemetry-exporter-otlp)
try:
    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    OTLP_AVAILABLE = True
except ImportError:
    OTLP_AVAILABLE = False


@dataclass
class TraceContext:
    """Trace identifiers of the active span."""
    trace_id: str
    span_id: str
    trace_flags: int = 1

    @classmethod
    def from_span(cls, span: trace.Span) -> "TraceContext":
        ctx = span.get_span_context()
        return cls(
            trace_id=format(ctx.trace_id, "032x"),
            span_id=format(ctx.span_id, "016x"),
            trace_flags=ctx.trace_flags,
        )

    def to_traceparent(self) -> str:
        """Generate W3C traceparent header value."""
        return f"00-{self.trace_id}-{self.span_id}-{self.trace_flags:02x}"


class TracingManager:
    """
    Central tracing manager using OpenTelemetry.

    Singleton pattern for global access.
    """

    _instance: Optional["TracingManager"] = None

    def __init__(
        self,
        service_name: str = proxy_config.SERVICE_NAME,
        service_version: str = proxy_config.SERVICE_VERSION,
        otlp_endpoint: Optional[str] = None,
        console_export: bool = False,
    ):
        """
        Initialize tracing.

        Args:
            service_name: Name of the service
            service_version: Version of the service
            otlp_endpoint: OTLP collector endpoint (e.g., http://localhost:4317)
            console_export: Whether to export spans to console (for debugging)
        """
        self.service_name = service_name
        self.service_version = service_version

        resource = Resource.create({
            SERVICE_NAME: service_name,
            SERVICE_VERSION: service_version,
            "deployment.environment": os.getenv("MODE", "local"),
        })

        self.provider = TracerProvider(resource=resource)

        if otlp_endpoint and OTLP_AVAILABLE:
            otlp_exporter = OTLPSpanExporter(endpoint=otlp_endpoint)
            self.provider.add_span_processor(BatchSpanProcessor(otlp_exporter))

        if console_export:
            self.provider.add_span_processor(
                SimpleSpanProcessor(ConsoleSpanExporter())
            )

        trace.set_tracer_provider(self.provider)
        set_global_textmap(TraceContextTextMapPropagator())

        # Bind to our own provider; the global one can only be set once per process
        self.tracer = self.provider.get_tracer(service_name, service_version)

    @classmethod
    def get_instance(cls) -> "TracingManager":
        """Get singleton instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset_instance(cls):
        """Reset singleton (for testing)."""
        cls._instance = None

    def extract_context(self, headers: Dict[str, str]) -> Context:
        """Extract trace context from HTTP headers (case-insensitive keys)."""
        normalized = {k.lower(): v for k, v in headers.items()}
        return extract(normalized)

    def start_server_span(
        self,
        name: str,
        headers: Dict[str, str],
        attributes: Optional[Dict[str, Any]] = None,
    ):
        """
        Start a server span with context extraction from headers.

        Use this for incoming HTTP requests.
        """
        parent_context = self.extract_context(headers)
        return self.tracer.start_as_current_span(
            name,
            kind=SpanKind.SERVER,
            attributes=attributes,
            context=parent_context,
        )

    def start_client_span(
        self,
        name: str,
        attributes: Optional[Dict[str, Any]] = None,
    ):
        """Start a client span for outgoing requests."""
        return self.tracer.start_as_current_span(
            name,
            kind=SpanKind.CLIENT,
            attributes=attributes,
        )

    def get_current_trace_context(self) -> Optional[TraceContext]:
        span = trace.get_current_span()
        if span and span.get_span_context().is_valid:
            return TraceContext.from_span(span)
        return None

    def record_exception(self, exception: Exception):
        """Record an exception on the current span."""
        span = trace.get_current_span()
        if span:
            span.record_exception(exception)
            span.set_status(Status(StatusCode.ERROR, str(exception)))

    def shutdown(self):
        """Shutdown the tracer provider."""
        self.provider.shutdown()


_tracing_instance: Optional[TracingManager] = None


def setup_tracing(
    service_name: str = proxy_config.SERVICE_NAME,
    service_version: str = proxy_config.SERVICE_VERSION,
    otlp_endpoint: Optional[str] = None,
    console_export: bool = False,
) -> TracingManager:
    """
    Setup distributed tracing.

    Call once at application startup. Repeated calls return the
    existing manager.
    """
    global _tracing_instance

    if _tracing_instance is not None:
        return _tracing_instance

    if otlp_endpoint is None:
        otlp_endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")

    if os.getenv("OTEL_CONSOLE_EXPORT", "").lower() == "true":
        console_export = True

    _tracing_instance = TracingManager(
        service_name=service_name,
        service_version=service_version,
        otlp_endpoint=otlp_endpoint,
        console_export=console_export,
    )
    TracingManager._instance = _tracing_instance
    return _tracing_instance


def get_tracing_manager() -> TracingManager:
    """Get the tracing manager instance."""
    global _tracing_instance
    if _tracing_instance is None:
        _tracing_instance = TracingManager.get_instance()
    return _tracing_instance


@contextmanager
def trace_upstream_call(model: str, operation: str):
    """
    Context manager for tracing calls to the Gemini API.

    Usage:
        with trace_upstream_call("gemini-pro", "generateContent") as span:
            response = await client.post(...)
    """
    tracing = get_tracing_manager()

    with tracing.start_client_span(
        name=f"gemini.{operation}",
        attributes={
            "gemini.model": model,
            "gemini.operation": operation,
        },
    ) as span:
        yield span
