"""
Gemini Proxy - Gemini API Routes

Typed endpoints under /api/gemini.

Every billable request runs the same stages in order:
auth -> model/operation check -> quota -> estimate -> forward -> account.
"""

from typing import Any, AsyncIterator, Dict

import httpx
from fastapi import APIRouter, Body, Depends, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse

from ...adapters.endpoints import Operation, resolve_endpoint
from ...adapters.gemini import GeminiForwarder, UpstreamResponse, UpstreamStream
from ...auth.middleware import get_auth_context
from ...core.models import RequestKind, TokenUsage
from ...db.models import AuthContext
from ...observability.logging import get_logger
from ...observability.middleware import set_request_info
from ...usage.extractor import extract_embedding_usage, extract_stream_usage, extract_usage
from ...usage.limits import QuotaGuard
from ...usage.pricing import round_cost
from ...usage.tracker import UsageRecorder, build_usage_record

from ..models import CountTokensRequest, GenerateContentRequest
from ..dependencies import (
    add_standard_headers,
    enforce_quota,
    estimate_request,
    get_forwarder,
    get_quota_guard,
    get_usage_recorder,
    utc_timestamp,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/api/gemini", tags=["gemini"])


# ============================================================
# Helpers
# ============================================================

def buffered_response(result: UpstreamResponse, headers: Dict[str, str], body: Any = None) -> Response:
    """Relay a buffered upstream result, re-serializing JSON when it was modified."""
    if result.is_json:
        return JSONResponse(
            content=result.body if body is None else body,
            status_code=result.status_code,
            headers=headers,
        )
    return Response(
        content=result.content,
        status_code=result.status_code,
        media_type=result.media_type,
        headers=headers,
    )


async def relay_stream(
    stream: UpstreamStream,
    recorder: UsageRecorder,
    auth: AuthContext,
    model: str,
    request_kind: RequestKind,
) -> AsyncIterator[bytes]:
    """
    Relay upstream bytes and record usage once the stream ends.

    The upstream response is closed when iteration stops, including when
    the client disconnects.
    """
    try:
        async for chunk in stream.iter_bytes():
            yield chunk
    except httpx.HTTPError as e:
        # Status and headers are already sent; the client sees a truncated body
        logger.error(
            "Upstream stream interrupted",
            model=model,
            error=str(e),
            error_type=type(e).__name__,
        )
    finally:
        await stream.aclose()
        usage = extract_stream_usage(stream.body)
        recorder.submit(build_usage_record(auth.user_id, model, request_kind, usage, auth.request_id))
        logger.info(
            "Stream completed",
            model=model,
            bytes_relayed=len(stream.body),
            total_tokens=usage.total_tokens,
            estimated=usage.estimated,
        )


def _usage_metadata(result_body: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    metadata = result_body.get("usageMetadata")
    metadata = dict(metadata) if isinstance(metadata, dict) else {}
    metadata.update(extra)
    return metadata


# ============================================================
# Generation
# ============================================================

@router.post("/{model}/generateContent")
async def generate_content(
    model: str,
    body: GenerateContentRequest,
    request: Request,
    auth: AuthContext = Depends(get_auth_context),
    forwarder: GeminiForwarder = Depends(get_forwarder),
    guard: QuotaGuard = Depends(get_quota_guard),
    recorder: UsageRecorder = Depends(get_usage_recorder),
):
    """
    Generate content.

    The response's usageMetadata gains `cost` (USD, 6 dp), `model` and
    `timestamp`.
    """
    endpoint = resolve_endpoint(model, Operation.GENERATE_CONTENT)
    set_request_info(request, model=model, request_kind=RequestKind.GENERATE.value)
    await enforce_quota(guard, auth)

    payload = body.to_payload()
    estimate_request(request, payload)

    result = await forwarder.send(
        endpoint,
        payload,
        headers=request.headers,
        model=model,
        request_id=auth.request_id,
    )

    headers = add_standard_headers(auth, model, response_headers=result.headers)
    if not (result.is_json and isinstance(result.body, dict)):
        return buffered_response(result, headers)

    usage = extract_usage(result.body)
    record = build_usage_record(auth.user_id, model, RequestKind.GENERATE, usage, auth.request_id)
    recorder.submit(record)

    data = dict(result.body)
    data["usageMetadata"] = _usage_metadata(data, {
        "cost": round_cost(record.cost),
        "model": model,
        "timestamp": utc_timestamp(),
    })

    logger.info(
        "Generate content completed",
        prompt_tokens=usage.prompt_tokens,
        completion_tokens=usage.completion_tokens,
        total_tokens=usage.total_tokens,
        cost=record.cost,
    )
    return buffered_response(result, headers, body=data)


@router.post("/{model}/streamGenerateContent")
async def stream_generate_content(
    model: str,
    body: GenerateContentRequest,
    request: Request,
    auth: AuthContext = Depends(get_auth_context),
    forwarder: GeminiForwarder = Depends(get_forwarder),
    guard: QuotaGuard = Depends(get_quota_guard),
    recorder: UsageRecorder = Depends(get_usage_recorder),
):
    """
    Stream generated content.

    Chunks are relayed as they arrive, in the framing the client asked for
    (JSON array by default, SSE with ?alt=sse). Usage is recorded after the
    stream ends.
    """
    endpoint = resolve_endpoint(model, Operation.STREAM_GENERATE_CONTENT)
    set_request_info(request, model=model, request_kind=RequestKind.STREAM.value)
    await enforce_quota(guard, auth)

    payload = body.to_payload()
    estimate_request(request, payload)

    stream = await forwarder.open_stream(
        endpoint,
        payload,
        headers=request.headers,
        params=request.query_params.multi_items(),
        model=model,
        request_id=auth.request_id,
    )

    return StreamingResponse(
        relay_stream(stream, recorder, auth, model, RequestKind.STREAM),
        status_code=stream.status_code,
        media_type=stream.media_type,
        headers=add_standard_headers(auth, model, response_headers=stream.headers),
    )


# ============================================================
# Token counting
# ============================================================

@router.post("/{model}/countTokens")
async def count_tokens(
    model: str,
    body: CountTokensRequest,
    request: Request,
    auth: AuthContext = Depends(get_auth_context),
    forwarder: GeminiForwarder = Depends(get_forwarder),
    guard: QuotaGuard = Depends(get_quota_guard),
    recorder: UsageRecorder = Depends(get_usage_recorder),
):
    """Count tokens. The upstream response is returned unmodified."""
    endpoint = resolve_endpoint(model, Operation.COUNT_TOKENS)
    set_request_info(request, model=model, request_kind=RequestKind.COUNT_TOKENS.value)
    await enforce_quota(guard, auth)

    result = await forwarder.send(
        endpoint,
        body.to_payload(),
        headers=request.headers,
        model=model,
        request_id=auth.request_id,
    )

    # Counted toward hourly requests, free of tokens and cost
    recorder.submit(build_usage_record(
        auth.user_id, model, RequestKind.COUNT_TOKENS, TokenUsage.zero(), auth.request_id,
    ))

    return buffered_response(result, add_standard_headers(auth, model, response_headers=result.headers))


# ============================================================
# Embeddings
# ============================================================

@router.post("/{model}/embeddings")
async def embeddings(
    model: str,
    request: Request,
    body: Dict[str, Any] = Body(...),
    auth: AuthContext = Depends(get_auth_context),
    forwarder: GeminiForwarder = Depends(get_forwarder),
    guard: QuotaGuard = Depends(get_quota_guard),
    recorder: UsageRecorder = Depends(get_usage_recorder),
):
    """
    Create embeddings with an embedding model.

    gemini-embedding-001 uses v1beta embedContent; the legacy models use
    v1 embedText. The response gains usageMetadata with `inputTokens`,
    `cost`, `model` and `timestamp`.
    """
    endpoint = resolve_endpoint(model, Operation.EMBED)
    set_request_info(request, model=model, request_kind=RequestKind.EMBEDDING.value)
    await enforce_quota(guard, auth)

    result = await forwarder.send(
        endpoint,
        body,
        headers=request.headers,
        model=model,
        request_id=auth.request_id,
    )

    headers = add_standard_headers(auth, model, response_headers=result.headers)
    response_body = result.body if result.is_json else None
    usage = extract_embedding_usage(body, response_body)
    record = build_usage_record(auth.user_id, model, RequestKind.EMBEDDING, usage, auth.request_id)
    recorder.submit(record)

    if not isinstance(response_body, dict):
        return buffered_response(result, headers)

    data = dict(response_body)
    data["usageMetadata"] = _usage_metadata(data, {
        "inputTokens": usage.prompt_tokens,
        "cost": round_cost(record.cost),
        "model": model,
        "timestamp": utc_timestamp(),
    })
    return buffered_response(result, headers, body=data)
