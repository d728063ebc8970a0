"""
Gemini Proxy - Settings

Process configuration read from the environment once at startup.
"""

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional


DEFAULT_GEMINI_BASE_URL = "https://generativelanguage.googleapis.com"
USER_AGENT = "GeminiProxy/1.0"
SERVICE_NAME = "gemini-proxy"
SERVICE_VERSION = "1.0.0"


@dataclass
class UpstreamTimeouts:
    """Per-operation ceilings in seconds."""
    generate: float = 60.0
    stream: float = 120.0
    metadata: float = 30.0  # countTokens, embeddings, list models


@dataclass
class DefaultLimits:
    """Ceilings applied by the in-memory usage store."""
    requests_per_hour: int = 100
    tokens_per_day: int = 10_000
    max_cost_per_day: float = 50.0


@dataclass
class ClientRateLimits:
    """Per-IP fallback protection applied before authentication."""
    requests_per_window: int = 1000  # 0 disables the limiter
    window_seconds: int = 900
    delay_after: int = 100
    delay_ms: int = 500


@dataclass
class ProxySettings:
    """
    Settings for the proxy process.

    Usage:
        settings = ProxySettings.from_env()
        forwarder = GeminiForwarder(api_key=settings.gemini_api_key, ...)
    """
    gemini_api_key: str = ""
    gemini_base_url: str = DEFAULT_GEMINI_BASE_URL

    supabase_url: str = ""
    supabase_anon_key: str = ""
    supabase_service_role: str = ""

    database_url: Optional[str] = None

    usage_queue_size: int = 1000
    usage_dead_letter_size: int = 100

    timeouts: UpstreamTimeouts = field(default_factory=UpstreamTimeouts)
    default_limits: DefaultLimits = field(default_factory=DefaultLimits)
    client_limits: ClientRateLimits = field(default_factory=ClientRateLimits)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "ProxySettings":
        """Build settings from environment variables."""
        env = os.environ if env is None else env

        return cls(
            gemini_api_key=env.get("GEMINI_API_KEY", ""),
            gemini_base_url=env.get("GEMINI_BASE_URL", DEFAULT_GEMINI_BASE_URL).rstrip("/"),
            supabase_url=env.get("SUPABASE_URL", "").rstrip("/"),
            supabase_anon_key=env.get("SUPABASE_ANON_KEY", ""),
            supabase_service_role=env.get("SUPABASE_SERVICE_ROLE", ""),
            database_url=env.get("DATABASE_URL") or None,
            usage_queue_size=int(env.get("USAGE_QUEUE_SIZE", "1000")),
            usage_dead_letter_size=int(env.get("USAGE_DEAD_LETTER_SIZE", "100")),
            default_limits=DefaultLimits(
                requests_per_hour=int(env.get("DEFAULT_REQUESTS_PER_HOUR", "100")),
                tokens_per_day=int(env.get("DEFAULT_TOKENS_PER_DAY", "10000")),
                max_cost_per_day=float(env.get("DEFAULT_MAX_COST_PER_DAY", "50.0")),
            ),
            client_limits=ClientRateLimits(
                requests_per_window=int(env.get("CLIENT_RATE_LIMIT", "1000")),
                window_seconds=int(env.get("CLIENT_RATE_WINDOW_SECONDS", "900")),
                delay_after=int(env.get("CLIENT_SLOWDOWN_AFTER", "100")),
                delay_ms=int(env.get("CLIENT_SLOWDOWN_DELAY_MS", "500")),
            ),
        )
