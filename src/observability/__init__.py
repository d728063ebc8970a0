"""
Gemini Proxy - Observability Module

Observability stack including:
- Prometheus metrics (Counter, Histogram, Gauge)
- OpenTelemetry tracing with W3C context propagation
- Structured JSON logging with context injection

Usage:
    from src.observability import setup_observability, get_metrics, get_logger

    # Initialize at startup
    setup_observability()

    logger = get_logger(__name__)
    metrics = get_metrics()
"""

from .metrics import (
    MetricsCollector,
    UsageOutcome,
    get_metrics,
    setup_metrics,
    metrics_endpoint,
)
from .tracing import (
    TracingManager,
    TraceContext,
    get_tracing_manager,
    setup_tracing,
    trace_upstream_call,
)
from .logging import (
    StructuredLogger,
    TimedOperation,
    get_logger,
    setup_logging,
    redact_url,
    LogContext,
)
from .middleware import (
    ObservabilityMiddleware,
    REQUEST_ID_HEADER,
    get_request_id,
    set_request_info,
    setup_observability,
)

__all__ = [
    # Metrics
    "MetricsCollector",
    "UsageOutcome",
    "get_metrics",
    "setup_metrics",
    "metrics_endpoint",
    # Tracing
    "TracingManager",
    "TraceContext",
    "get_tracing_manager",
    "setup_tracing",
    "trace_upstream_call",
    # Logging
    "StructuredLogger",
    "TimedOperation",
    "get_logger",
    "setup_logging",
    "redact_url",
    "LogContext",
    # Combined
    "ObservabilityMiddleware",
    "REQUEST_ID_HEADER",
    "get_request_id",
    "set_request_info",
    "setup_observability",
]
