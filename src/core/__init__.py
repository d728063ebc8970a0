"""
Gemini Proxy Core Module

Shared data models, settings and the error taxonomy.
"""

from .models import (
    # Enums
    SubscriptionTier,
    RequestKind,

    # Identity
    Principal,

    # Accounting
    TokenUsage,
    UsageRecord,
)

from .errors import (
    # Base classes
    ErrorType,
    ErrorDetails,
    ProxyException,
    InfraError,
    SemanticError,

    # Specific errors
    AuthenticationRequiredError,
    InvalidCredentialError,
    AccountInactiveError,
    AuthServiceError,
    ValidationError,
    RateLimitExceededError,
    QuotaExceededError,
    ClientRateLimitError,
    UpstreamConnectionError,
    UpstreamError,
    InternalError,

    # Factory functions
    map_httpx_error,
    upstream_error_from_response,
)

from .config import ProxySettings, UpstreamTimeouts, DefaultLimits, ClientRateLimits

__all__ = [
    "SubscriptionTier",
    "RequestKind",
    "Principal",
    "TokenUsage",
    "UsageRecord",
    "ErrorType",
    "ErrorDetails",
    "ProxyException",
    "InfraError",
    "SemanticError",
    "AuthenticationRequiredError",
    "InvalidCredentialError",
    "AccountInactiveError",
    "AuthServiceError",
    "ValidationError",
    "RateLimitExceededError",
    "QuotaExceededError",
    "ClientRateLimitError",
    "UpstreamConnectionError",
    "UpstreamError",
    "InternalError",
    "map_httpx_error",
    "upstream_error_from_response",
    "ProxySettings",
    "UpstreamTimeouts",
    "DefaultLimits",
    "ClientRateLimits",
]
