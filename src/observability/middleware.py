"""
Gemini Proxy - Observability Middleware

Unified middleware that combines metrics, tracing, and logging.

Features:
- Request/response metrics collection
- Distributed tracing with W3C context propagation
- Structured logging with correlation IDs
- Request ID assignment (X-Request-ID)

Usage:
    from src.observability import setup_observability, ObservabilityMiddleware

    setup_observability()
    app.add_middleware(ObservabilityMiddleware)
"""

import os
import time
import uuid
from typing import Optional, Dict, Any

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.types import ASGIApp

from ..core import config as proxy_config
from .metrics import get_metrics, setup_metrics
from .tracing import get_tracing_manager, TraceContext, setup_tracing
from .logging import get_logger, LogContext, setup_logging

from opentelemetry.trace import Status, StatusCode

REQUEST_ID_HEADER = "X-Request-ID"


def generate_request_id() -> str:
    return f"req_{uuid.uuid4().hex[:24]}"


class ObservabilityMiddleware(BaseHTTPMiddleware):
    """
    Unified observability middleware.

    Combines:
    - Prometheus metrics
    - OpenTelemetry tracing
    - Structured logging with context

    The request ID is taken from X-Request-ID when the client sends one,
    otherwise generated, and echoed on every response.
    """

    # Paths excluded from metrics and request logging
    EXCLUDE_PATHS = {"/health", "/ready", "/metrics", "/openapi.json", "/docs", "/redoc"}

    def __init__(
        self,
        app: ASGIApp,
        exclude_paths: Optional[set] = None,
    ):
        super().__init__(app)
        self.exclude_paths = exclude_paths or self.EXCLUDE_PATHS
        self.logger = get_logger("observability.middleware")

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        headers = dict(request.headers)

        request_id = headers.get("x-request-id", "") or generate_request_id()
        request.state.request_id = request_id

        if request.url.path in self.exclude_paths:
            response = await call_next(request)
            response.headers[REQUEST_ID_HEADER] = request_id
            return response

        metrics = get_metrics()
        tracing = get_tracing_manager()

        start_time = time.perf_counter()

        with tracing.start_server_span(
            name=f"{request.method} {request.url.path}",
            headers=headers,
            attributes={
                "http.method": request.method,
                "http.route": request.url.path,
                "http.scheme": request.url.scheme,
                "http.user_agent": headers.get("user-agent", ""),
                "gemini_proxy.request_id": request_id,
            },
        ) as span:
            trace_ctx = TraceContext.from_span(span)

            log_ctx = LogContext(
                request_id=request_id,
                trace_id=trace_ctx.trace_id,
                span_id=trace_ctx.span_id,
                endpoint=request.url.path,
            )
            LogContext.set_current(log_ctx)

            request.state.trace_id = trace_ctx.trace_id
            request.state.span_id = trace_ctx.span_id
            request.state.log_context = log_ctx

            endpoint_group = self._get_endpoint_group(request.url.path)
            model = "unknown"

            try:
                with metrics.track_active_request(endpoint_group):
                    response = await call_next(request)

                    duration_seconds = time.perf_counter() - start_time
                    model = response.headers.get("x-model", model)

                    span.set_attribute("http.status_code", response.status_code)
                    span.set_attribute("gemini.model", model)

                    if response.status_code >= 500:
                        span.set_status(Status(StatusCode.ERROR, f"HTTP {response.status_code}"))
                    elif response.status_code >= 400:
                        span.set_attribute("http.error", True)
                    else:
                        span.set_status(Status(StatusCode.OK))

                    metrics.record_request(
                        endpoint=endpoint_group,
                        model=model,
                        status_code=response.status_code,
                        duration_seconds=duration_seconds,
                        streaming=self._is_streaming(response),
                    )

                    self._log_request(
                        request=request,
                        response=response,
                        duration_ms=duration_seconds * 1000,
                        model=model,
                    )

                    response.headers[REQUEST_ID_HEADER] = request_id
                    response.headers["X-Trace-Id"] = trace_ctx.trace_id
                    return response

            except Exception as e:
                duration_seconds = time.perf_counter() - start_time

                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, str(e)))

                metrics.record_request(
                    endpoint=endpoint_group,
                    model=model,
                    status_code=500,
                    duration_seconds=duration_seconds,
                )

                self.logger.exception(
                    "Request failed with exception",
                    error=str(e),
                    error_type=type(e).__name__,
                    duration_ms=round(duration_seconds * 1000, 2),
                )
                raise

            finally:
                LogContext.clear()

    def _get_endpoint_group(self, path: str) -> str:
        """Group endpoints for metrics aggregation; model ids stay out of the label."""
        parts = [p for p in path.split("/") if p]
        if len(parts) >= 2 and parts[0] == "api" and parts[1] == "gemini":
            rest = parts[2:]
            if not rest:
                return "/api/gemini"
            if rest[0] in ("v1beta", "v1"):
                return f"/api/gemini/{rest[0]}"
            if len(rest) == 1:
                return f"/api/gemini/{rest[0]}"
            return f"/api/gemini/{{model}}/{rest[-1]}"
        return path

    @staticmethod
    def _is_streaming(response: Response) -> bool:
        return response.headers.get("content-type", "").startswith("text/event-stream")

    def _log_request(
        self,
        request: Request,
        response: Response,
        duration_ms: float,
        model: str,
    ):
        status_code = response.status_code

        log_data = {
            "method": request.method,
            "path": request.url.path,
            "status_code": status_code,
            "duration_ms": round(duration_ms, 2),
            "model": model,
            "client_ip": request.client.host if request.client else None,
        }

        if status_code >= 500:
            self.logger.error("Request completed with server error", **log_data)
        elif status_code >= 400:
            self.logger.warning("Request completed with client error", **log_data)
        else:
            self.logger.info("Request completed", **log_data)


_observability_initialized = False


def setup_observability(
    service_name: str = proxy_config.SERVICE_NAME,
    service_version: str = proxy_config.SERVICE_VERSION,
    otlp_endpoint: Optional[str] = None,
    log_level: str = "INFO",
    metrics_enabled: bool = True,
    tracing_enabled: bool = True,
    logging_enabled: bool = True,
) -> Dict[str, Any]:
    """
    Setup the observability stack.

    Call once at application startup. Safe to call multiple times.

    Returns:
        Dict with initialized components
    """
    global _observability_initialized

    result: Dict[str, Any] = {}

    if otlp_endpoint is None:
        otlp_endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")

    log_level = os.getenv("LOG_LEVEL", log_level)

    # Logging first; the other components log during setup
    if logging_enabled:
        json_output = os.getenv("LOG_FORMAT", "json").lower() == "json"
        setup_logging(level=log_level, json_output=json_output)
        result["logging"] = True

    if metrics_enabled:
        try:
            result["metrics"] = setup_metrics()
        except ValueError as e:
            if "Duplicated timeseries" in str(e):
                result["metrics"] = get_metrics()
            else:
                raise

    if tracing_enabled:
        result["tracing"] = setup_tracing(
            service_name=service_name,
            service_version=service_version,
            otlp_endpoint=otlp_endpoint,
        )

    if not _observability_initialized:
        get_logger("observability").info(
            "Observability initialized",
            service_name=service_name,
            service_version=service_version,
            metrics_enabled=metrics_enabled,
            tracing_enabled=tracing_enabled,
            otlp_endpoint=otlp_endpoint or "none",
        )
        _observability_initialized = True

    return result


def get_request_id(request: Request) -> str:
    """Request ID assigned by the middleware, generating one if it did not run."""
    request_id = getattr(request.state, "request_id", "")
    if not request_id:
        request_id = generate_request_id()
        request.state.request_id = request_id
    return request_id


def set_request_info(request: Request, **fields):
    """
    Attach user/model/kind to the current log context.

    Call in route handlers once the values are known.
    """
    log_ctx = getattr(request.state, "log_context", None) or LogContext.get_current()
    if log_ctx:
        log_ctx.update(**fields)
