"""
Gemini Proxy - Models API

Lists the models available to the proxy's upstream key.
"""

from fastapi import APIRouter, Depends, Request

from ...adapters.gemini import GeminiForwarder
from ...auth.middleware import get_auth_context
from ...db.models import AuthContext
from ...observability.middleware import set_request_info

from ..dependencies import add_standard_headers, get_forwarder
from .gemini import buffered_response


router = APIRouter(prefix="/api/gemini", tags=["models"])


@router.get("/models")
async def list_models(
    request: Request,
    auth: AuthContext = Depends(get_auth_context),
    forwarder: GeminiForwarder = Depends(get_forwarder),
):
    """Forward Gemini's list-models call. Not billed, not quota-checked."""
    set_request_info(request, model="models")
    result = await forwarder.list_models(request_id=auth.request_id)
    return buffered_response(result, add_standard_headers(auth, "models", response_headers=result.headers))
