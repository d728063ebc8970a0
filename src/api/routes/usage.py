"""
Gemini Proxy - Usage and Health API

Per-user usage reporting and the unauthenticated service health probe.
"""

from fastapi import APIRouter, Depends

from ...auth.middleware import get_auth_context
from ...core.config import SERVICE_NAME, SERVICE_VERSION
from ...db.base import UsageStore
from ...db.models import AuthContext
from ...observability.logging import get_logger

from ..dependencies import get_usage_store, utc_timestamp
from ..models import HealthResponse, UsageResponse

logger = get_logger(__name__)

router = APIRouter(prefix="/api/gemini", tags=["usage"])


@router.get("/usage", response_model=UsageResponse)
async def get_usage(
    auth: AuthContext = Depends(get_auth_context),
    store: UsageStore = Depends(get_usage_store),
):
    """
    Usage summary and current limits for the caller.

    Store failures propagate as 500; reporting has no fail-open path.
    """
    summary = await store.get_usage_summary(auth.user_id)
    snapshot = await store.check_limits(auth.user_id)

    return {
        "usage": summary.to_dict(),
        "limits": snapshot.to_dict(),
        "timestamp": utc_timestamp(),
    }


@router.get("/health", response_model=HealthResponse)
async def gemini_health():
    return {
        "status": "healthy",
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "timestamp": utc_timestamp(),
    }
