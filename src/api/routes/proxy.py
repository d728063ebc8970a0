"""
Gemini Proxy - Transparent Forwarding

Any method on /api/gemini/v1beta/{path} or /api/gemini/v1/{path} is
forwarded to the same path upstream, after auth and quota.

Payloads are not validated. When the path names
`models/{model}:{operation}` with a billable operation, usage is recorded
from the response; otherwise no record is attempted.
"""

import json
import re
from typing import Optional, Tuple

from fastapi import APIRouter, Depends, Request
from fastapi.responses import Response, StreamingResponse

from ...adapters.endpoints import ApiVersion, request_kind_for
from ...adapters.gemini import GeminiForwarder, UpstreamResponse
from ...auth.middleware import get_auth_context
from ...core.models import RequestKind, TokenUsage
from ...db.models import AuthContext
from ...observability.logging import get_logger
from ...observability.middleware import set_request_info
from ...usage.extractor import extract_embedding_usage, extract_usage
from ...usage.limits import QuotaGuard
from ...usage.tracker import UsageRecorder, build_usage_record

from ..dependencies import (
    add_standard_headers,
    enforce_quota,
    get_forwarder,
    get_quota_guard,
    get_usage_recorder,
)
from .gemini import relay_stream

logger = get_logger(__name__)

router = APIRouter(prefix="/api/gemini", tags=["proxy"])

FORWARDED_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE"]

_MODEL_OPERATION_RE = re.compile(r"^(?:tunedModels|models)/([^/:]+):([A-Za-z]+)$")


def parse_model_operation(path: str) -> Tuple[Optional[str], Optional[RequestKind]]:
    """
    Extract (model, billable request kind) from an upstream path.

    Returns (model, None) for non-billable operations and (None, None) when
    the path does not name a model operation.
    """
    match = _MODEL_OPERATION_RE.match(path.strip("/"))
    if not match:
        return None, None
    model, operation = match.groups()
    try:
        return model, request_kind_for(operation)
    except ValueError:
        return model, None


def _is_streaming(kind: Optional[RequestKind], request: Request) -> bool:
    return kind == RequestKind.STREAM or request.query_params.get("alt") == "sse"


def _usage_for(kind: RequestKind, request_body: bytes, result: UpstreamResponse) -> TokenUsage:
    if kind == RequestKind.COUNT_TOKENS:
        return TokenUsage.zero()
    if kind == RequestKind.EMBEDDING:
        try:
            parsed = json.loads(request_body) if request_body else None
        except ValueError:
            parsed = None
        return extract_embedding_usage(parsed, result.body)
    return extract_usage(result.body)


async def _forward(
    version: ApiVersion,
    path: str,
    request: Request,
    auth: AuthContext,
    forwarder: GeminiForwarder,
    guard: QuotaGuard,
    recorder: UsageRecorder,
) -> Response:
    model, kind = parse_model_operation(path)
    set_request_info(request, model=model or "", request_kind=kind.value if kind else "")
    await enforce_quota(guard, auth)

    content = await request.body()
    streaming = _is_streaming(kind, request)
    upstream_path = f"/{version.value}/{path}"

    result = await forwarder.forward_raw(
        request.method,
        upstream_path,
        headers=request.headers,
        params=request.query_params.multi_items(),
        content=content,
        streaming=streaming,
        model=model or "",
        request_id=auth.request_id,
    )

    model_label = model or "unknown"

    if streaming:
        headers = add_standard_headers(auth, model_label, response_headers=result.headers)
        if kind is None:
            return StreamingResponse(
                result.iter_bytes(),
                status_code=result.status_code,
                media_type=result.media_type,
                headers=headers,
            )
        return StreamingResponse(
            relay_stream(result, recorder, auth, model, kind),
            status_code=result.status_code,
            media_type=result.media_type,
            headers=headers,
        )

    if kind is not None and result.is_json:
        usage = _usage_for(kind, content, result)
        recorder.submit(build_usage_record(auth.user_id, model, kind, usage, auth.request_id))
    elif kind is not None:
        logger.info("Skipping usage record for non-JSON response", path=upstream_path)

    return Response(
        content=result.content,
        status_code=result.status_code,
        media_type=result.media_type,
        headers=add_standard_headers(auth, model_label, response_headers=result.headers),
    )


@router.api_route("/v1beta/{path:path}", methods=FORWARDED_METHODS)
async def forward_v1beta(
    path: str,
    request: Request,
    auth: AuthContext = Depends(get_auth_context),
    forwarder: GeminiForwarder = Depends(get_forwarder),
    guard: QuotaGuard = Depends(get_quota_guard),
    recorder: UsageRecorder = Depends(get_usage_recorder),
):
    """Transparent forwarding to /v1beta."""
    return await _forward(ApiVersion.V1BETA, path, request, auth, forwarder, guard, recorder)


@router.api_route("/v1/{path:path}", methods=FORWARDED_METHODS)
async def forward_v1(
    path: str,
    request: Request,
    auth: AuthContext = Depends(get_auth_context),
    forwarder: GeminiForwarder = Depends(get_forwarder),
    guard: QuotaGuard = Depends(get_quota_guard),
    recorder: UsageRecorder = Depends(get_usage_recorder),
):
    """Transparent forwarding to /v1."""
    return await _forward(ApiVersion.V1, path, request, auth, forwarder, guard, recorder)
