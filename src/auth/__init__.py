"""
Gemini Proxy - Authentication Module

Bearer token validation, identity providers and user context for requests.
"""

from .middleware import (
    AuthGate,
    get_auth_context,
    get_auth_gate,
    parse_bearer_token,
)
from .identity import (
    IdentityProvider,
    LocalIdentityProvider,
    SupabaseIdentityProvider,
)
from .config import AuthMode, get_auth_mode, validate_security_config

__all__ = [
    "AuthGate",
    "get_auth_context",
    "get_auth_gate",
    "parse_bearer_token",
    "IdentityProvider",
    "LocalIdentityProvider",
    "SupabaseIdentityProvider",
    "AuthMode",
    "get_auth_mode",
    "validate_security_config",
]
