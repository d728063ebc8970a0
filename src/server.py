"""
Gemini Proxy - Main API Server

FastAPI server that fronts the Gemini REST API with per-user auth,
quota enforcement and usage accounting.
Uses canonical error layer from src/core/errors.py

Supports three modes:
- MODE=local: Development mode (any bearer token, in-memory store, error detail in bodies)
- MODE=test: Like local, without error detail
- MODE=prod: Supabase identity and PostgreSQL store, fail-closed config checks

Features:
- Typed Gemini endpoints with request validation
- Transparent forwarding for /v1beta and /v1 paths
- Usage tracking and cost calculation
- Hourly request and daily token/cost ceilings
- Per-IP fallback rate limit with a slow-down band
- Full observability (metrics, tracing, logging)
"""

import os
import traceback
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .adapters.gemini import GeminiForwarder
from .auth.config import (
    AuthMode,
    get_auth_mode,
    get_cors_allowed_origins,
    validate_security_config,
)
from .auth.identity import IdentityProvider, LocalIdentityProvider, SupabaseIdentityProvider
from .auth.middleware import AuthGate
from .core.config import SERVICE_NAME, SERVICE_VERSION, ProxySettings
from .core.errors import (
    ErrorDetails,
    ErrorType,
    InternalError,
    ProxyException,
    ValidationError,
)
from .db.base import ProfileStore, UsageStore
from .db.connection import DatabasePool
from .db.memory import InMemoryUsageStore
from .db.services import ProfileService, UsageService
from .usage.limits import ClientRateLimiter, QuotaGuard
from .usage.tracker import UsageRecorder

# API imports
from .api import (
    gemini_router,
    models_router,
    proxy_router,
    usage_router,
)
from .api.middleware import ClientRateLimitMiddleware

# Observability imports
from .observability import (
    setup_observability,
    ObservabilityMiddleware,
    get_logger,
    get_request_id,
    metrics_endpoint,
)


logger = get_logger("server")


# ============================================================
# Collaborators
# ============================================================

@dataclass
class ProxyComponents:
    """Everything the request pipeline needs, built once per process."""
    settings: ProxySettings
    identity: IdentityProvider
    profiles: ProfileStore
    usage_store: UsageStore
    forwarder: GeminiForwarder
    recorder: UsageRecorder
    db: Optional[DatabasePool] = None

    async def close(self):
        await self.forwarder.close()
        await self.identity.close()
        if self.db is not None:
            await self.db.close()


async def build_components(settings: ProxySettings, mode: AuthMode) -> ProxyComponents:
    """
    Construct collaborators for the given mode.

    prod talks to Supabase and PostgreSQL; local and test keep everything
    in process.
    """
    db: Optional[DatabasePool] = None

    if mode == AuthMode.PROD:
        db = DatabasePool(settings.database_url)
        await db.connect()
        logger.info("Database connected")
        identity: IdentityProvider = SupabaseIdentityProvider(
            settings.supabase_url,
            settings.supabase_anon_key,
        )
        profiles: ProfileStore = ProfileService(db)
        usage_store: UsageStore = UsageService(db)
    else:
        memory_store = InMemoryUsageStore(settings.default_limits)
        identity = LocalIdentityProvider()
        profiles = memory_store
        usage_store = memory_store

    if not settings.gemini_api_key:
        logger.warning("GEMINI_API_KEY not set; upstream calls will be rejected")

    forwarder = GeminiForwarder(
        api_key=settings.gemini_api_key,
        base_url=settings.gemini_base_url,
        timeouts=settings.timeouts,
    )
    recorder = UsageRecorder(
        usage_store,
        max_queue_size=settings.usage_queue_size,
        dead_letter_size=settings.usage_dead_letter_size,
    )

    return ProxyComponents(
        settings=settings,
        identity=identity,
        profiles=profiles,
        usage_store=usage_store,
        forwarder=forwarder,
        recorder=recorder,
        db=db,
    )


def install_components(app: FastAPI, components: ProxyComponents):
    """Expose collaborators to the dependency getters."""
    app.state.components = components
    app.state.settings = components.settings
    app.state.auth_gate = AuthGate(identity=components.identity, profiles=components.profiles)
    app.state.usage_store = components.usage_store
    app.state.quota_guard = QuotaGuard(components.usage_store)
    app.state.usage_recorder = components.recorder
    app.state.forwarder = components.forwarder


# ============================================================
# Error responses
# ============================================================

def _error_response(request: Request, exc: ProxyException) -> JSONResponse:
    if not exc.error.request_id:
        exc.error.request_id = get_request_id(request)

    headers = {
        "X-Request-Id": exc.error.request_id,
        "X-Error-Type": exc.error.type.value,
        "X-Error-Code": exc.error.code,
    }
    trace_id = getattr(request.state, "trace_id", None)
    if trace_id:
        headers["X-Trace-Id"] = trace_id
    if exc.error.retry_after:
        headers["Retry-After"] = str(exc.error.retry_after)

    return JSONResponse(
        status_code=exc.status_code,
        content=exc.error.to_dict(),
        headers=headers,
    )


def _validation_error_from(exc: RequestValidationError) -> ValidationError:
    errors = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part != "body"]
        errors.append({"loc": loc, "msg": err.get("msg", ""), "type": err.get("type", "")})

    first = errors[0] if errors else {"loc": [], "msg": "Invalid request"}
    param = ".".join(first["loc"])
    message = f"{param}: {first['msg']}" if param else first["msg"]

    return ValidationError(message=message, param=param, details={"errors": errors})


# ============================================================
# App factory
# ============================================================

def create_app(
    settings: Optional[ProxySettings] = None,
    components: Optional[ProxyComponents] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    When `components` is given it is used as-is (tests); otherwise the
    lifespan builds them for the current MODE.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage application lifespan - startup and shutdown."""
        mode = get_auth_mode()

        # Observability first (for logging during startup)
        observability = setup_observability(
            service_name=SERVICE_NAME,
            service_version=SERVICE_VERSION,
            otlp_endpoint=os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )
        logger.info(f"Gemini proxy starting in {mode.value.upper()} mode")

        built = components
        if built is None:
            validate_security_config()
            built = await build_components(settings or ProxySettings.from_env(), mode)

        install_components(app, built)
        await built.recorder.start()
        logger.info("Gemini proxy ready", mode=mode.value)
        if mode == AuthMode.LOCAL:
            logger.info("Local mode: any bearer token is accepted")

        try:
            yield
        finally:
            # Drain pending usage before closing the store
            await built.recorder.stop()
            logger.info(
                "Usage recorder stopped",
                dead_letters=len(built.recorder.dead_letters),
            )
            if components is None:
                await built.close()

            if "tracing" in observability:
                observability["tracing"].shutdown()

            logger.info("Gemini proxy stopped")

    app = FastAPI(
        title="Gemini Proxy",
        description="Authenticated Gemini API proxy with per-user quotas and usage accounting",
        version=SERVICE_VERSION,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    # Order matters - last added is outermost
    app_settings = settings or (components.settings if components else ProxySettings.from_env())
    client_limiter = ClientRateLimiter(app_settings.client_limits)
    app.state.client_rate_limiter = client_limiter
    app.add_middleware(ClientRateLimitMiddleware, limiter=client_limiter)
    app.add_middleware(ObservabilityMiddleware)

    cors_origins = get_cors_allowed_origins()
    if cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    # Transparent paths first so /v1beta/... is never read as a model name
    app.include_router(proxy_router)
    app.include_router(usage_router)
    app.include_router(models_router)
    app.include_router(gemini_router)

    # ============================================================
    # Core Endpoints (not in routes)
    # ============================================================

    @app.get("/health")
    async def health_check(request: Request):
        """Health check endpoint."""
        recorder: Optional[UsageRecorder] = getattr(request.app.state, "usage_recorder", None)
        return {
            "status": "healthy",
            "service": SERVICE_NAME,
            "version": SERVICE_VERSION,
            "mode": get_auth_mode().value,
            "usage_recorder": {
                "running": recorder.running if recorder else False,
                "pending": recorder.pending if recorder else 0,
                "dead_letters": len(recorder.dead_letters) if recorder else 0,
            },
        }

    @app.get("/ready")
    async def readiness_check(request: Request):
        """
        Readiness check endpoint.

        Returns 200 once collaborators are installed and the usage recorder
        is running; 503 otherwise.
        """
        built: Optional[ProxyComponents] = getattr(request.app.state, "components", None)
        reasons = []
        if built is None:
            reasons.append("Service not initialized")
        else:
            if not built.recorder.running:
                reasons.append("Usage recorder not running")
            if built.db is not None and not built.db.is_connected:
                reasons.append("Database not connected")

        if reasons:
            return JSONResponse(
                status_code=503,
                content={"status": "not_ready", "reasons": reasons},
            )
        return {"status": "ready"}

    @app.get("/metrics")
    async def prometheus_metrics():
        """Prometheus metrics endpoint."""
        return metrics_endpoint()

    # ============================================================
    # Error handlers
    # ============================================================

    @app.exception_handler(ProxyException)
    async def proxy_exception_handler(request: Request, exc: ProxyException):
        """Handle all canonical proxy errors."""
        if exc.status_code >= 500:
            logger.error(
                "Request failed",
                error_code=exc.error.code,
                status_code=exc.status_code,
                error=exc.error.message,
            )
        return _error_response(request, exc)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        """Render body/query validation failures as canonical 400s."""
        return _error_response(request, _validation_error_from(exc))

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        """Handle unknown routes and other framework HTTP errors."""
        code = "not_found" if exc.status_code == 404 else "http_error"
        message = "Endpoint not found" if exc.status_code == 404 else str(exc.detail)
        error = ProxyException(
            ErrorDetails(
                code=code,
                message=message,
                type=ErrorType.SEMANTIC if exc.status_code < 500 else ErrorType.INFRA,
                retryable=exc.status_code >= 500,
                details={"path": request.url.path} if exc.status_code == 404 else {},
            ),
            status_code=exc.status_code,
        )
        return _error_response(request, error)

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle unexpected exceptions."""
        logger.exception(
            "Unhandled exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
        )

        details: Dict[str, Any] = {}
        if get_auth_mode() == AuthMode.LOCAL:
            details = {
                "exception": type(exc).__name__,
                "message": str(exc),
                "traceback": traceback.format_exception(type(exc), exc, exc.__traceback__),
            }

        return _error_response(request, InternalError(details=details))

    return app


app = create_app()


# ============================================================
# Run server
# ============================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "src.server:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
        reload=get_auth_mode() == AuthMode.LOCAL,
    )
