"""
Gemini Proxy - API Layer

REST surface under /api/gemini.

Provides:
- Typed generate, stream, countTokens and embeddings endpoints
- Transparent forwarding for /v1beta and /v1 paths
- Model listing
- Per-user usage reporting
"""

from .models import (
    # Request models
    GenerateContentRequest,
    CountTokensRequest,
    # Shared models
    Content,
    ContentRole,
    GenerationConfig,
    InlineData,
    Part,
    SafetySetting,
    SystemInstruction,
    # Response models
    HealthResponse,
    UsageResponse,
)
from .dependencies import (
    add_standard_headers,
    enforce_quota,
    estimate_request,
    get_forwarder,
    get_quota_guard,
    get_settings,
    get_usage_recorder,
    get_usage_store,
)
from .routes import (
    gemini_router,
    models_router,
    proxy_router,
    usage_router,
)


__all__ = [
    # Routers
    "gemini_router",
    "models_router",
    "proxy_router",
    "usage_router",
    # Request models
    "GenerateContentRequest",
    "CountTokensRequest",
    # Shared models
    "Content",
    "ContentRole",
    "GenerationConfig",
    "InlineData",
    "Part",
    "SafetySetting",
    "SystemInstruction",
    # Response models
    "HealthResponse",
    "UsageResponse",
    # Dependencies
    "add_standard_headers",
    "enforce_quota",
    "estimate_request",
    "get_forwarder",
    "get_quota_guard",
    "get_settings",
    "get_usage_recorder",
    "get_usage_store",
]
