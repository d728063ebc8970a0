"""
Gemini Proxy - Upstream Forwarder

Forwards requests to the Gemini REST API over a shared httpx.AsyncClient.

Response modes:
- Buffered JSON: parsed body returned to the route
- Buffered text: non-JSON content types relayed as text
- Streaming: bytes relayed as they arrive, upstream closed when the
  consumer stops (including client disconnect)

The API key travels as the `key` query parameter and is redacted from
every log line.
"""

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Iterable, List, Mapping, Optional, Tuple, Union

import httpx

from ..core.config import DEFAULT_GEMINI_BASE_URL, USER_AGENT, UpstreamTimeouts
from ..core.errors import map_httpx_error, upstream_error_from_response
from ..observability.logging import TimedOperation, get_logger, redact_url
from ..observability.metrics import get_metrics
from ..observability.tracing import get_tracing_manager, trace_upstream_call
from .endpoints import LIST_MODELS_ENDPOINT, EndpointSpec, TimeoutClass

logger = get_logger(__name__)


# Inbound headers never copied upstream
REQUEST_HEADER_BLOCKLIST = frozenset({
    "host",
    "authorization",
    "accept-encoding",
    "content-length",
    "connection",
    "keep-alive",
    "proxy-authorization",
    "proxy-authenticate",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
    "x-goog-api-key",
})

# Upstream headers never relayed to the client; the server recomputes them
RESPONSE_HEADER_BLOCKLIST = frozenset({
    "content-encoding",
    "transfer-encoding",
    "content-length",
    "connection",
    "keep-alive",
})


def filter_request_headers(headers: Optional[Mapping[str, str]]) -> Dict[str, str]:
    """Copy inbound headers minus Host, Authorization and hop-by-hop headers."""
    result: Dict[str, str] = {}
    for name, value in (headers or {}).items():
        if name.lower() not in REQUEST_HEADER_BLOCKLIST:
            result[name] = value
    result["User-Agent"] = USER_AGENT
    return result


def filter_response_headers(headers: Union[httpx.Headers, Mapping[str, str]]) -> Dict[str, str]:
    return {
        name: value
        for name, value in headers.items()
        if name.lower() not in RESPONSE_HEADER_BLOCKLIST
    }


def _is_json(content_type: str) -> bool:
    return "json" in (content_type or "").lower()


def _strip_key(params: Optional[Iterable[Tuple[str, str]]]) -> List[Tuple[str, str]]:
    return [(k, v) for k, v in (params or []) if k != "key"]


@dataclass
class UpstreamResponse:
    """A buffered upstream response (2xx only)."""
    status_code: int
    headers: Dict[str, str]
    content: bytes
    body: Any = None          # parsed JSON when is_json, else decoded text
    is_json: bool = False
    duration_ms: float = 0.0

    @property
    def media_type(self) -> str:
        return self.headers.get("content-type", "application/json" if self.is_json else "text/plain")


@dataclass
class UpstreamStream:
    """
    A live upstream response relayed chunk by chunk.

    Iterate exactly once. The accumulated body is available afterwards for
    usage extraction. The upstream connection is closed when iteration
    ends for any reason.
    """
    response: httpx.Response
    status_code: int
    headers: Dict[str, str]
    _chunks: List[bytes] = field(default_factory=list)
    _closed: bool = False

    @property
    def media_type(self) -> str:
        return self.headers.get("content-type", "application/json")

    @property
    def body(self) -> bytes:
        return b"".join(self._chunks)

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self.response.aiter_bytes():
                if chunk:
                    self._chunks.append(chunk)
                    yield chunk
        finally:
            await self.aclose()

    async def aclose(self):
        if not self._closed:
            self._closed = True
            await self.response.aclose()


class GeminiForwarder:
    """
    Gemini REST client.

    Usage:
        forwarder = GeminiForwarder(api_key=settings.gemini_api_key)
        result = await forwarder.send(resolve_endpoint("gemini-pro", Operation.GENERATE_CONTENT), payload)
        stream = await forwarder.open_stream(endpoint, payload)
        async for chunk in stream.iter_bytes():
            ...
        await forwarder.close()
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_GEMINI_BASE_URL,
        timeouts: Optional[UpstreamTimeouts] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeouts = timeouts or UpstreamTimeouts()
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(base_url=self.base_url)

    def _seconds(self, timeout_class: TimeoutClass) -> float:
        return {
            TimeoutClass.GENERATE: self.timeouts.generate,
            TimeoutClass.STREAM: self.timeouts.stream,
            TimeoutClass.METADATA: self.timeouts.metadata,
        }[timeout_class]

    def _timeout(self, timeout_class: TimeoutClass) -> httpx.Timeout:
        return httpx.Timeout(self._seconds(timeout_class))

    def _build_request(
        self,
        method: str,
        path: str,
        timeout: httpx.Timeout,
        headers: Optional[Mapping[str, str]] = None,
        params: Optional[Iterable[Tuple[str, str]]] = None,
        payload: Any = None,
        content: Optional[bytes] = None,
    ) -> httpx.Request:
        query = _strip_key(params) + [("key", self.api_key)]
        out_headers = filter_request_headers(headers)

        kwargs: Dict[str, Any] = {}
        if payload is not None:
            kwargs["content"] = json.dumps(payload).encode("utf-8")
            out_headers = {k: v for k, v in out_headers.items() if k.lower() != "content-type"}
            out_headers["Content-Type"] = "application/json"
        elif content:
            kwargs["content"] = content

        return self.client.build_request(
            method,
            f"{self.base_url}{path}",
            params=query,
            headers=out_headers,
            timeout=timeout,
            **kwargs,
        )

    async def _raise_for_status(self, response: httpx.Response, model: str, request_id: str):
        if response.is_success:
            return
        await response.aread()
        try:
            body: Any = response.json()
        except ValueError:
            body = response.text

        logger.warning(
            "Gemini API returned error",
            model=model,
            status_code=response.status_code,
            url=redact_url(str(response.request.url)),
        )
        get_metrics().record_upstream_error(model, f"http_{response.status_code}")
        raise upstream_error_from_response(response.status_code, body, request_id=request_id)

    def _transport_error(self, error: Exception, request: httpx.Request, model: str, request_id: str):
        mapped = map_httpx_error(error, request_id=request_id)
        logger.error(
            "Gemini API request failed",
            model=model,
            url=redact_url(str(request.url)),
            error=redact_url(str(error)),
            error_type=type(error).__name__,
        )
        get_tracing_manager().record_exception(error)
        get_metrics().record_upstream_error(model, mapped.error.details.get("cause", "transport"))
        return mapped

    async def _send_buffered(
        self,
        request: httpx.Request,
        deadline: float,
        model: str,
        operation: str,
        request_id: str,
    ) -> UpstreamResponse:
        """Send and read the whole body; `deadline` bounds the call end to end."""
        timer = TimedOperation("gemini_upstream_call", logger, extra={"model": model, "operation": operation})
        with timer, trace_upstream_call(model, operation) as span:
            try:
                response = await asyncio.wait_for(self.client.send(request), timeout=deadline)
            except (httpx.HTTPError, asyncio.TimeoutError) as e:
                raise self._transport_error(e, request, model, request_id) from e

            span.set_attribute("http.status_code", response.status_code)
            await self._raise_for_status(response, model, request_id)

        duration_ms = timer.duration_ms or 0.0
        headers = filter_response_headers(response.headers)
        content_type = response.headers.get("content-type", "")

        body: Any
        is_json = _is_json(content_type)
        if is_json:
            try:
                body = response.json()
            except ValueError:
                body, is_json = response.text, False
        else:
            body = response.text

        logger.info(
            "Gemini request completed",
            model=model,
            operation=operation,
            status_code=response.status_code,
            duration_ms=round(duration_ms, 2),
        )

        return UpstreamResponse(
            status_code=response.status_code,
            headers=headers,
            content=response.content,
            body=body,
            is_json=is_json,
            duration_ms=duration_ms,
        )

    async def _send_streaming(self, request: httpx.Request, model: str, operation: str, request_id: str) -> UpstreamStream:
        with trace_upstream_call(model, operation) as span:
            try:
                response = await self.client.send(request, stream=True)
            except httpx.HTTPError as e:
                raise self._transport_error(e, request, model, request_id) from e

            span.set_attribute("http.status_code", response.status_code)
            try:
                await self._raise_for_status(response, model, request_id)
            except Exception:
                await response.aclose()
                raise

        logger.info(
            "Gemini stream opened",
            model=model,
            operation=operation,
            status_code=response.status_code,
        )

        return UpstreamStream(
            response=response,
            status_code=response.status_code,
            headers=filter_response_headers(response.headers),
        )

    # ============================================================
    # Typed operations
    # ============================================================

    async def send(
        self,
        endpoint: EndpointSpec,
        payload: Any = None,
        headers: Optional[Mapping[str, str]] = None,
        params: Optional[Iterable[Tuple[str, str]]] = None,
        model: str = "",
        request_id: str = "",
    ) -> UpstreamResponse:
        """Buffered call to a resolved endpoint."""
        request = self._build_request(
            endpoint.method,
            endpoint.url_path,
            self._timeout(endpoint.timeout_class),
            headers=headers,
            params=params,
            payload=payload,
        )
        logger.debug("Forwarding to Gemini", model=model, url=redact_url(str(request.url)))
        return await self._send_buffered(
            request,
            self._seconds(endpoint.timeout_class),
            model,
            endpoint.path.rsplit(":", 1)[-1],
            request_id,
        )

    async def open_stream(
        self,
        endpoint: EndpointSpec,
        payload: Any = None,
        headers: Optional[Mapping[str, str]] = None,
        params: Optional[Iterable[Tuple[str, str]]] = None,
        model: str = "",
        request_id: str = "",
    ) -> UpstreamStream:
        """Open a streaming call; raises before any byte is relayed on upstream errors."""
        request = self._build_request(
            endpoint.method,
            endpoint.url_path,
            self._timeout(TimeoutClass.STREAM),
            headers=headers,
            params=params,
            payload=payload,
        )
        logger.debug("Streaming from Gemini", model=model, url=redact_url(str(request.url)))
        return await self._send_streaming(request, model, endpoint.path.rsplit(":", 1)[-1], request_id)

    async def list_models(self, request_id: str = "") -> UpstreamResponse:
        return await self.send(LIST_MODELS_ENDPOINT, model="models", request_id=request_id)

    # ============================================================
    # Transparent mode
    # ============================================================

    async def forward_raw(
        self,
        method: str,
        path: str,
        headers: Optional[Mapping[str, str]] = None,
        params: Optional[Iterable[Tuple[str, str]]] = None,
        content: Optional[bytes] = None,
        streaming: bool = False,
        model: str = "",
        request_id: str = "",
    ) -> Union[UpstreamResponse, UpstreamStream]:
        """
        Forward an arbitrary request to the same path upstream.

        `path` includes the version prefix, e.g. "/v1beta/models/gemini-pro:generateContent".
        """
        timeout_class = TimeoutClass.STREAM if streaming else TimeoutClass.GENERATE
        request = self._build_request(
            method,
            path,
            self._timeout(timeout_class),
            headers=headers,
            params=params,
            content=content,
        )
        operation = path.rsplit(":", 1)[-1] if ":" in path else method.lower()
        logger.debug("Transparent forward", method=method, url=redact_url(str(request.url)))

        if streaming:
            return await self._send_streaming(request, model or "unknown", operation, request_id)
        return await self._send_buffered(
            request, self._seconds(timeout_class), model or "unknown", operation, request_id
        )

    async def close(self):
        if self._owns_client:
            await self.client.aclose()
