"""
Gemini Proxy - Observability Tests

Tests for the observability stack:
- Prometheus metrics
- OpenTelemetry tracing
- Structured logging and redaction
- Middleware integration
"""

import json
import logging

import pytest
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient
from prometheus_client import CollectorRegistry

from src.observability.logging import (
    JSONFormatter,
    LogContext,
    TimedOperation,
    get_logger,
    redact_url,
)
from src.observability.metrics import MetricsCollector, UsageOutcome, get_metrics, setup_metrics
from src.observability.middleware import (
    ObservabilityMiddleware,
    REQUEST_ID_HEADER,
    set_request_info,
    setup_observability,
)
from src.observability.tracing import TraceContext, get_tracing_manager, setup_tracing


def _record(msg: str = "test", **fields) -> logging.LogRecord:
    record = logging.LogRecord("test", logging.INFO, __file__, 1, msg, None, None)
    for key, value in fields.items():
        setattr(record, key, value)
    return record


# ============================================================
# Logging
# ============================================================

class TestRedaction:
    def test_redact_url_masks_key_parameter(self):
        url = "https://generativelanguage.googleapis.com/v1beta/models/gemini-pro:generateContent?alt=sse&key=AIzaSecret"

        redacted = redact_url(url)

        assert "AIzaSecret" not in redacted
        assert "key=[REDACTED]" in redacted
        assert "alt=sse" in redacted

    def test_redact_url_leaves_other_urls_alone(self):
        assert redact_url("https://example.test/path?keys=1") == "https://example.test/path?keys=1"

    def test_formatter_redacts_credential_fields(self):
        formatter = JSONFormatter()

        output = json.loads(formatter.format(_record(
            api_key="AIzaSecret",
            authorization="Bearer abc",
            service_role="sr",
            total_tokens=42,
            tokens_today=100,
        )))

        assert output["api_key"] == "[REDACTED]"
        assert output["authorization"] == "[REDACTED]"
        assert output["service_role"] == "[REDACTED]"
        assert output["total_tokens"] == 42
        assert output["tokens_today"] == 100

    def test_formatter_redacts_url_field(self):
        formatter = JSONFormatter()

        output = json.loads(formatter.format(_record(url="https://gemini.test/v1beta/models?key=AIzaSecret")))

        assert "AIzaSecret" not in output["url"]

    def test_formatter_injects_log_context(self):
        formatter = JSONFormatter()
        LogContext.set_current(LogContext(request_id="req_abc", user_id="user-1", model="gemini-pro"))
        try:
            output = json.loads(formatter.format(_record()))
        finally:
            LogContext.clear()

        assert output["request_id"] == "req_abc"
        assert output["user_id"] == "user-1"
        assert output["model"] == "gemini-pro"


class TestLogContext:
    def test_update_and_clear(self):
        ctx = LogContext(request_id="req_1")
        LogContext.set_current(ctx)

        LogContext.get_current().update(model="gemini-pro", request_kind="generate")

        assert LogContext.get_current().to_dict()["model"] == "gemini-pro"
        LogContext.clear()
        assert LogContext.get_current() is None


class TestTimedOperation:
    def test_records_duration(self):
        with TimedOperation("unit", get_logger("test")) as timer:
            pass

        assert timer.duration_ms is not None
        assert timer.duration_ms >= 0

    @pytest.mark.asyncio
    async def test_async_usage_propagates_errors(self):
        timer = TimedOperation("unit", get_logger("test"))

        with pytest.raises(ValueError):
            async with timer:
                raise ValueError("boom")

        assert timer.duration_ms is not None


# ============================================================
# Metrics
# ============================================================

# Registries stay referenced so their ids are never reused by the collector cache
_registries = []


def _fresh_registry() -> CollectorRegistry:
    registry = CollectorRegistry()
    _registries.append(registry)
    return registry


class TestMetrics:
    def test_collector_on_fresh_registry(self):
        registry = _fresh_registry()
        collector = MetricsCollector(registry)

        collector.record_request("/api/gemini/{model}/generateContent", "gemini-pro", 200, 0.5)
        collector.record_tokens("gemini-pro", 10, 20)
        collector.record_cost("gemini-pro", 0.001)
        collector.record_quota_rejection("tokens")
        collector.record_usage_outcome(UsageOutcome.DROPPED)

        assert registry.get_sample_value(
            "gemini_proxy_requests_total",
            {"endpoint": "/api/gemini/{model}/generateContent", "model": "gemini-pro", "status": "200", "streaming": "false"},
        ) == 1
        assert registry.get_sample_value(
            "gemini_proxy_tokens_total", {"model": "gemini-pro", "type": "output"},
        ) == 20
        assert registry.get_sample_value(
            "gemini_proxy_quota_rejections_total", {"dimension": "tokens"},
        ) == 1
        assert registry.get_sample_value(
            "gemini_proxy_usage_records_total", {"outcome": "dropped"},
        ) == 1

    def test_active_request_tracking(self):
        registry = _fresh_registry()
        collector = MetricsCollector(registry)

        with collector.track_active_request("/api/gemini/v1beta"):
            assert registry.get_sample_value(
                "gemini_proxy_active_requests", {"endpoint": "/api/gemini/v1beta"},
            ) == 1

        assert registry.get_sample_value(
            "gemini_proxy_active_requests", {"endpoint": "/api/gemini/v1beta"},
        ) == 0

    def test_setup_metrics_is_idempotent(self):
        assert setup_metrics() is setup_metrics()
        assert get_metrics() is setup_metrics()


# ============================================================
# Tracing
# ============================================================

class TestTracing:
    def test_traceparent_format(self):
        ctx = TraceContext(trace_id="a" * 32, span_id="b" * 16, trace_flags=1)

        assert ctx.to_traceparent() == f"00-{'a' * 32}-{'b' * 16}-01"

    def test_setup_tracing_returns_same_manager(self):
        assert setup_tracing() is setup_tracing()

    def test_server_span_continues_incoming_trace(self):
        tracing = setup_tracing()
        parent = "00-0af7651916cd43dd8448eb211c80319c-b7ad6b7169203331-01"

        with tracing.start_server_span("GET /x", headers={"traceparent": parent}) as span:
            ctx = TraceContext.from_span(span)
            current = get_tracing_manager().get_current_trace_context()

        assert ctx.trace_id == "0af7651916cd43dd8448eb211c80319c"
        assert current is not None
        assert current.span_id == ctx.span_id


# ============================================================
# Middleware
# ============================================================

def _app_with_middleware() -> FastAPI:
    setup_observability()
    app = FastAPI()
    app.add_middleware(ObservabilityMiddleware)

    @app.get("/api/gemini/{model}/generateContent")
    async def handler(model: str, request: Request):
        set_request_info(request, model=model)
        return {
            "request_id": request.state.request_id,
            "model": LogContext.get_current().model,
        }

    @app.get("/health")
    async def health():
        return {"status": "healthy"}

    return app


class TestObservabilityMiddleware:
    def test_request_id_generated_and_echoed(self):
        client = TestClient(_app_with_middleware())

        response = client.get("/api/gemini/gemini-pro/generateContent")

        request_id = response.headers[REQUEST_ID_HEADER]
        assert request_id.startswith("req_")
        assert response.json()["request_id"] == request_id
        assert len(response.headers["X-Trace-Id"]) == 32

    def test_client_request_id_kept(self):
        client = TestClient(_app_with_middleware())

        response = client.get(
            "/api/gemini/gemini-pro/generateContent",
            headers={"X-Request-ID": "req_client"},
        )

        assert response.headers[REQUEST_ID_HEADER] == "req_client"

    def test_set_request_info_updates_context(self):
        client = TestClient(_app_with_middleware())

        response = client.get("/api/gemini/gemini-pro/generateContent")

        assert response.json()["model"] == "gemini-pro"

    def test_excluded_paths_still_get_request_id(self):
        client = TestClient(_app_with_middleware())

        response = client.get("/health")

        assert response.headers[REQUEST_ID_HEADER].startswith("req_")
        assert "X-Trace-Id" not in response.headers

    @pytest.mark.parametrize("path,group", [
        ("/api/gemini/gemini-pro/generateContent", "/api/gemini/{model}/generateContent"),
        ("/api/gemini/gemini-1.5-flash/streamGenerateContent", "/api/gemini/{model}/streamGenerateContent"),
        ("/api/gemini/v1beta/models/gemini-pro:generateContent", "/api/gemini/v1beta"),
        ("/api/gemini/v1/models/text-embedding-004:embedText", "/api/gemini/v1"),
        ("/api/gemini/usage", "/api/gemini/usage"),
        ("/other", "/other"),
    ])
    def test_endpoint_grouping(self, path, group):
        middleware = ObservabilityMiddleware(FastAPI())

        assert middleware._get_endpoint_group(path) == group
