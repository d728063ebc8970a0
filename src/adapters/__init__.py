"""
Gemini Proxy Adapters Module

Upstream endpoint table and the httpx forwarder for the Gemini REST API.
"""

from .endpoints import (
    ApiVersion,
    EndpointSpec,
    GeminiModel,
    Operation,
    TimeoutClass,
    EMBEDDING_MODELS,
    LIST_MODELS_ENDPOINT,
    parse_model,
    request_kind_for,
    resolve_endpoint,
)
from .gemini import (
    GeminiForwarder,
    UpstreamResponse,
    UpstreamStream,
    filter_request_headers,
    filter_response_headers,
)

__all__ = [
    "ApiVersion",
    "EndpointSpec",
    "GeminiModel",
    "Operation",
    "TimeoutClass",
    "EMBEDDING_MODELS",
    "LIST_MODELS_ENDPOINT",
    "parse_model",
    "request_kind_for",
    "resolve_endpoint",
    "GeminiForwarder",
    "UpstreamResponse",
    "UpstreamStream",
    "filter_request_headers",
    "filter_response_headers",
]
