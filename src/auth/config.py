"""
Gemini Proxy - Auth Configuration

Handles local vs production mode for authentication and startup safety checks.
"""

import os
from enum import Enum
from typing import List, Mapping, Optional


class AuthMode(str, Enum):
    """Authentication mode."""

    LOCAL = "local"  # Any bearer token accepted, in-memory store
    PROD = "prod"    # Supabase identity, PostgreSQL store
    TEST = "test"    # Deterministic test mode (in-memory store)


def get_auth_mode(env: Optional[Mapping[str, str]] = None) -> AuthMode:
    """
    Get the current authentication mode.

    MODE must be one of: local, prod/production, test.

    Default: prod (fail-closed default for safer deployments).
    """
    env = os.environ if env is None else env
    mode = env.get("MODE", "prod").lower().strip()
    if mode in {"prod", "production"}:
        return AuthMode.PROD
    if mode == "local":
        return AuthMode.LOCAL
    if mode == "test":
        return AuthMode.TEST
    raise ValueError("Invalid MODE. Use one of: local, prod, production, test")


def is_local_mode() -> bool:
    """Check if running in local mode."""
    return get_auth_mode() == AuthMode.LOCAL


def is_prod_mode() -> bool:
    """Check if running in production mode."""
    return get_auth_mode() == AuthMode.PROD


def is_test_mode() -> bool:
    """Check if running in test mode."""
    return get_auth_mode() == AuthMode.TEST


# Local mode identity
LOCAL_DEFAULT_USER_ID = "00000000-0000-0000-0000-000000000001"
LOCAL_DEFAULT_EMAIL = "dev@localhost"

# Variables that must be set before serving traffic in prod
PROD_REQUIRED_VARS = (
    "GEMINI_API_KEY",
    "SUPABASE_URL",
    "SUPABASE_ANON_KEY",
    "SUPABASE_SERVICE_ROLE",
    "DATABASE_URL",
)


def get_cors_allowed_origins(env: Optional[Mapping[str, str]] = None) -> List[str]:
    """Parse CORS_ALLOW_ORIGINS from environment."""
    env = os.environ if env is None else env
    raw = env.get("CORS_ALLOW_ORIGINS", "")
    if not raw.strip():
        return []
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


def validate_security_config(env: Optional[Mapping[str, str]] = None) -> None:
    """Fail closed for unsafe production startup configuration."""
    env = os.environ if env is None else env
    mode = get_auth_mode(env)
    if mode in {AuthMode.LOCAL, AuthMode.TEST}:
        return

    # Production guardrails
    for name in PROD_REQUIRED_VARS:
        if not env.get(name):
            raise RuntimeError(f"{name} is required in production mode")

    if "*" in get_cors_allowed_origins(env):
        raise RuntimeError("CORS_ALLOW_ORIGINS cannot include '*' in production mode")
