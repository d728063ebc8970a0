"""
Gemini Proxy - Prometheus Metrics

Metrics collection with the Prometheus client library.

Metrics exposed:
- gemini_proxy_requests_total: Counter of requests by endpoint, model, status
- gemini_proxy_request_duration_seconds: Histogram of request latency
- gemini_proxy_tokens_total: Counter of recorded tokens (input/output)
- gemini_proxy_cost_usd_total: Counter of recorded cost in USD
- gemini_proxy_active_requests: Gauge of in-flight requests
- gemini_proxy_quota_rejections_total: Counter of quota rejections by dimension
- gemini_proxy_quota_fail_open_total: Counter of quota checks admitted on store error
- gemini_proxy_usage_records_total: Counter of usage writes by outcome
- gemini_proxy_usage_queue_depth: Gauge of pending usage writes
- gemini_proxy_upstream_errors_total: Counter of upstream failures by type

Usage:
    from src.observability.metrics import get_metrics, setup_metrics, metrics_endpoint

    # Setup at startup
    setup_metrics()

    # Record metrics
    metrics = get_metrics()
    metrics.record_request(endpoint="generateContent", model="gemini-pro", status_code=200, duration_seconds=1.5)
    metrics.record_tokens(model="gemini-pro", input_tokens=100, output_tokens=50)
"""

from typing import Optional

from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    Info,
    CollectorRegistry,
    generate_latest,
    CONTENT_TYPE_LATEST,
    REGISTRY,
)
from fastapi import Response

from ..core.config import SERVICE_NAME, SERVICE_VERSION


class UsageOutcome:
    """Label values for gemini_proxy_usage_records_total."""
    WRITTEN = "written"
    FAILED = "failed"
    DROPPED = "dropped"


class MetricsCollector:
    """
    Central metrics collector using Prometheus client.

    Singleton per registry; collectors are registered once.
    """

    _instance: Optional["MetricsCollector"] = None
    _initialized_registries: set = set()

    def __init__(self, registry: CollectorRegistry = REGISTRY):
        self.registry = registry

        registry_id = id(registry)
        if registry_id in MetricsCollector._initialized_registries:
            if MetricsCollector._instance is not None:
                self._copy_from(MetricsCollector._instance)
                return

        MetricsCollector._initialized_registries.add(registry_id)

        self.info = Info(
            "gemini_proxy",
            "Gemini Proxy service information",
            registry=registry,
        )
        self.info.info({
            "version": SERVICE_VERSION,
            "service": SERVICE_NAME,
        })

        self.requests_total = Counter(
            "gemini_proxy_requests_total",
            "Total number of requests",
            labelnames=["endpoint", "model", "status", "streaming"],
            registry=registry,
        )

        # Generation calls range from sub-second to the 120s stream timeout
        self.request_duration = Histogram(
            "gemini_proxy_request_duration_seconds",
            "Request duration in seconds",
            labelnames=["endpoint", "model", "streaming"],
            buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, float("inf")),
            registry=registry,
        )

        self.tokens_total = Counter(
            "gemini_proxy_tokens_total",
            "Total tokens recorded",
            labelnames=["model", "type"],  # type = input/output
            registry=registry,
        )

        self.cost_total = Counter(
            "gemini_proxy_cost_usd_total",
            "Total cost recorded in USD",
            labelnames=["model"],
            registry=registry,
        )

        self.active_requests = Gauge(
            "gemini_proxy_active_requests",
            "Number of currently active requests",
            labelnames=["endpoint"],
            registry=registry,
        )

        self.quota_rejections = Counter(
            "gemini_proxy_quota_rejections_total",
            "Requests rejected by the quota guard",
            labelnames=["dimension"],  # requests/tokens/cost
            registry=registry,
        )

        self.quota_fail_open = Counter(
            "gemini_proxy_quota_fail_open_total",
            "Quota checks admitted because the usage store failed",
            registry=registry,
        )

        self.usage_records = Counter(
            "gemini_proxy_usage_records_total",
            "Usage record writes by outcome",
            labelnames=["outcome"],
            registry=registry,
        )

        self.usage_queue_depth = Gauge(
            "gemini_proxy_usage_queue_depth",
            "Usage records waiting to be written",
            registry=registry,
        )

        self.upstream_errors = Counter(
            "gemini_proxy_upstream_errors_total",
            "Upstream failures by error type",
            labelnames=["model", "error_type"],
            registry=registry,
        )

    @classmethod
    def get_instance(cls) -> "MetricsCollector":
        """Get singleton instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset_instance(cls):
        """Reset singleton (for testing)."""
        cls._instance = None
        cls._initialized_registries.clear()

    def _copy_from(self, other: "MetricsCollector"):
        self.info = other.info
        self.requests_total = other.requests_total
        self.request_duration = other.request_duration
        self.tokens_total = other.tokens_total
        self.cost_total = other.cost_total
        self.active_requests = other.active_requests
        self.quota_rejections = other.quota_rejections
        self.quota_fail_open = other.quota_fail_open
        self.usage_records = other.usage_records
        self.usage_queue_depth = other.usage_queue_depth
        self.upstream_errors = other.upstream_errors

    def record_request(
        self,
        endpoint: str,
        model: str,
        status_code: int,
        duration_seconds: float,
        streaming: bool = False,
    ):
        """Record a completed request."""
        streaming_label = "true" if streaming else "false"

        self.requests_total.labels(
            endpoint=endpoint,
            model=model,
            status=str(status_code),
            streaming=streaming_label,
        ).inc()

        self.request_duration.labels(
            endpoint=endpoint,
            model=model,
            streaming=streaming_label,
        ).observe(duration_seconds)

    def record_tokens(self, model: str, input_tokens: int, output_tokens: int):
        """Record token usage."""
        self.tokens_total.labels(model=model, type="input").inc(max(0, input_tokens))
        self.tokens_total.labels(model=model, type="output").inc(max(0, output_tokens))

    def record_cost(self, model: str, cost_usd: float):
        self.cost_total.labels(model=model).inc(max(0.0, cost_usd))

    def track_active_request(self, endpoint: str) -> "ActiveRequestTracker":
        """Context manager to track active requests."""
        return ActiveRequestTracker(self, endpoint)

    def record_quota_rejection(self, dimension: str):
        self.quota_rejections.labels(dimension=dimension).inc()

    def record_quota_fail_open(self):
        self.quota_fail_open.inc()

    def record_usage_outcome(self, outcome: str):
        """Record the outcome of one usage write (written/failed/dropped)."""
        self.usage_records.labels(outcome=outcome).inc()

    def set_usage_queue_depth(self, depth: int):
        self.usage_queue_depth.set(depth)

    def record_upstream_error(self, model: str, error_type: str):
        self.upstream_errors.labels(model=model, error_type=error_type).inc()


class ActiveRequestTracker:
    """Context manager for tracking active requests."""

    def __init__(self, collector: MetricsCollector, endpoint: str):
        self.collector = collector
        self.endpoint = endpoint

    def __enter__(self):
        self.collector.active_requests.labels(endpoint=self.endpoint).inc()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.collector.active_requests.labels(endpoint=self.endpoint).dec()


_metrics_instance: Optional[MetricsCollector] = None


def setup_metrics(registry: CollectorRegistry = REGISTRY) -> MetricsCollector:
    """
    Setup metrics collection.

    Call once at application startup.
    Safe to call multiple times - returns existing instance.
    """
    global _metrics_instance

    if _metrics_instance is not None and _metrics_instance.registry is registry:
        return _metrics_instance

    _metrics_instance = MetricsCollector(registry)
    MetricsCollector._instance = _metrics_instance
    return _metrics_instance


def get_metrics() -> MetricsCollector:
    """Get the metrics collector instance, creating it on first use."""
    global _metrics_instance
    if _metrics_instance is None:
        _metrics_instance = MetricsCollector.get_instance()
    return _metrics_instance


def metrics_endpoint() -> Response:
    """
    Generate Prometheus metrics endpoint response.

    Usage:
        @app.get("/metrics")
        async def metrics():
            return metrics_endpoint()
    """
    content = generate_latest(get_metrics().registry)
    return Response(
        content=content,
        media_type=CONTENT_TYPE_LATEST,
    )
