"""
Gemini Proxy - API Dependencies

Shared dependencies for FastAPI routes.

Collaborators are built in the server lifespan and stored on app.state;
these getters are the only way routes reach them, so tests can swap any
of them through app.state or dependency_overrides.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from fastapi import Request

from ..adapters.gemini import GeminiForwarder
from ..core.config import ProxySettings
from ..core.errors import InternalError
from ..db.base import UsageStore
from ..db.models import AuthContext
from ..observability.logging import get_logger
from ..observability.middleware import get_request_id
from ..usage.estimator import TokenEstimate, estimate_tokens
from ..usage.limits import LimitCheckResult, QuotaGuard
from ..usage.tracker import UsageRecorder

logger = get_logger(__name__)


def _state_attr(request: Request, name: str) -> Any:
    value = getattr(request.app.state, name, None)
    if value is None:
        raise InternalError(
            message="Service not initialized. Server may be starting up.",
            request_id=get_request_id(request),
        )
    return value


def get_settings(request: Request) -> ProxySettings:
    return _state_attr(request, "settings")


def get_forwarder(request: Request) -> GeminiForwarder:
    return _state_attr(request, "forwarder")


def get_quota_guard(request: Request) -> QuotaGuard:
    return _state_attr(request, "quota_guard")


def get_usage_recorder(request: Request) -> UsageRecorder:
    return _state_attr(request, "usage_recorder")


def get_usage_store(request: Request) -> UsageStore:
    return _state_attr(request, "usage_store")


async def enforce_quota(guard: QuotaGuard, auth: AuthContext) -> LimitCheckResult:
    """Run the quota guard for the authenticated user; raises 429 errors."""
    return await guard.check(auth.user_id, request_id=auth.request_id)


def estimate_request(request: Request, payload: Optional[Dict[str, Any]]) -> TokenEstimate:
    """
    Estimate token usage before forwarding.

    Informational only: logged and kept on request.state.
    """
    estimate = estimate_tokens(payload)
    request.state.token_estimate = estimate
    logger.info(
        "Estimated token usage",
        estimated_input_tokens=estimate.input_tokens,
        estimated_total_tokens=estimate.total_tokens,
    )
    return estimate


# Set by the response's media_type, never copied from upstream
_MEDIA_HEADERS = frozenset({"content-type"})


def add_standard_headers(
    auth: AuthContext,
    model: str,
    response_headers: Optional[Mapping[str, str]] = None,
    **extra_headers
) -> Dict[str, str]:
    """
    Build headers for billable route responses.

    Relays upstream response headers (already filtered by the forwarder),
    then adds user, model and request ID, plus any extra headers.
    """
    standard = {
        "X-User-ID": auth.user_id,
        "X-Model": model,
        "X-Request-ID": auth.request_id,
        **{k: str(v) for k, v in extra_headers.items() if v is not None},
    }
    overridden = _MEDIA_HEADERS | {name.lower() for name in standard}
    headers = {
        name: value
        for name, value in (response_headers or {}).items()
        if name.lower() not in overridden
    }
    headers.update(standard)
    return headers


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()
