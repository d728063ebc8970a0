"""
Gemini Proxy - Upstream Endpoint Table

Closed mapping from (model, operation) to the Gemini REST endpoint.

Every combination the proxy can call is listed here; anything else is
rejected with a ValidationError before a request leaves the process.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Tuple

from ..core.errors import ValidationError
from ..core.models import RequestKind


class GeminiModel(str, Enum):
    """Models the proxy accepts on its typed routes."""
    GEMINI_PRO = "gemini-pro"
    GEMINI_PRO_VISION = "gemini-pro-vision"
    GEMINI_1_5_PRO = "gemini-1.5-pro"
    GEMINI_1_5_PRO_LATEST = "gemini-1.5-pro-latest"
    GEMINI_1_5_FLASH = "gemini-1.5-flash"
    GEMINI_1_5_FLASH_LATEST = "gemini-1.5-flash-latest"
    GEMINI_1_5_FLASH_8B = "gemini-1.5-flash-8b"
    GEMINI_1_5_FLASH_8B_LATEST = "gemini-1.5-flash-8b-latest"
    GEMINI_2_0_FLASH_EXP = "gemini-2.0-flash-exp"
    GEMINI_2_5_PRO = "gemini-2.5-pro"
    GEMINI_2_5_PRO_LATEST = "gemini-2.5-pro-latest"
    GEMINI_EMBEDDING_001 = "gemini-embedding-001"
    TEXT_EMBEDDING_004 = "text-embedding-004"
    TEXT_MULTILINGUAL_EMBEDDING_002 = "text-multilingual-embedding-002"

    @classmethod
    def values(cls) -> List[str]:
        return [m.value for m in cls]

    @property
    def is_embedding(self) -> bool:
        return self in EMBEDDING_MODELS


class Operation(str, Enum):
    """Upstream operations."""
    GENERATE_CONTENT = "generateContent"
    STREAM_GENERATE_CONTENT = "streamGenerateContent"
    COUNT_TOKENS = "countTokens"
    EMBED = "embed"
    LIST_MODELS = "listModels"


class ApiVersion(str, Enum):
    V1 = "v1"
    V1BETA = "v1beta"


class TimeoutClass(str, Enum):
    GENERATE = "generate"
    STREAM = "stream"
    METADATA = "metadata"


EMBEDDING_MODELS = frozenset({
    GeminiModel.GEMINI_EMBEDDING_001,
    GeminiModel.TEXT_EMBEDDING_004,
    GeminiModel.TEXT_MULTILINGUAL_EMBEDDING_002,
})

# Legacy embedding models live on v1 with the embedText verb
LEGACY_EMBEDDING_MODELS = frozenset({
    GeminiModel.TEXT_EMBEDDING_004,
    GeminiModel.TEXT_MULTILINGUAL_EMBEDDING_002,
})

OPERATION_REQUEST_KINDS: Dict[Operation, RequestKind] = {
    Operation.GENERATE_CONTENT: RequestKind.GENERATE,
    Operation.STREAM_GENERATE_CONTENT: RequestKind.STREAM,
    Operation.COUNT_TOKENS: RequestKind.COUNT_TOKENS,
    Operation.EMBED: RequestKind.EMBEDDING,
}


@dataclass(frozen=True)
class EndpointSpec:
    """A resolved upstream call."""
    method: str
    version: ApiVersion
    path: str             # relative to the version, e.g. "models/gemini-pro:generateContent"
    timeout_class: TimeoutClass
    streaming: bool = False

    @property
    def url_path(self) -> str:
        return f"/{self.version.value}/{self.path}"


def parse_model(model: str) -> GeminiModel:
    """
    Resolve a model id to the closed enum.

    Raises:
        ValidationError: unknown model, listing the allowed ones
    """
    try:
        return GeminiModel(model)
    except ValueError:
        raise ValidationError(
            message=f"Model '{model}' is not supported. Allowed models: {', '.join(GeminiModel.values())}",
            param="model",
            code="invalid_model",
            details={"allowed_models": GeminiModel.values()},
        )


def _model_endpoint(model: GeminiModel, operation: Operation) -> EndpointSpec:
    if operation == Operation.EMBED:
        if not model.is_embedding:
            embedding_ids = sorted(m.value for m in EMBEDDING_MODELS)
            raise ValidationError(
                message=(
                    f"Model '{model.value}' is not an embedding model. "
                    f"Use one of: {', '.join(embedding_ids)}"
                ),
                param="model",
                code="unsupported_operation",
                details={"embedding_models": embedding_ids},
            )
        if model in LEGACY_EMBEDDING_MODELS:
            return EndpointSpec("POST", ApiVersion.V1, f"models/{model.value}:embedText", TimeoutClass.METADATA)
        return EndpointSpec("POST", ApiVersion.V1BETA, f"models/{model.value}:embedContent", TimeoutClass.METADATA)

    if model.is_embedding:
        raise ValidationError(
            message=f"Operation '{operation.value}' is not supported for embedding model '{model.value}'",
            param="model",
            code="unsupported_operation",
        )

    path = f"models/{model.value}:{operation.value}"
    if operation == Operation.GENERATE_CONTENT:
        return EndpointSpec("POST", ApiVersion.V1BETA, path, TimeoutClass.GENERATE)
    if operation == Operation.STREAM_GENERATE_CONTENT:
        return EndpointSpec("POST", ApiVersion.V1BETA, path, TimeoutClass.STREAM, streaming=True)
    return EndpointSpec("POST", ApiVersion.V1BETA, path, TimeoutClass.METADATA)


LIST_MODELS_ENDPOINT = EndpointSpec("GET", ApiVersion.V1BETA, "models", TimeoutClass.METADATA)

ENDPOINTS: Dict[Tuple[GeminiModel, Operation], EndpointSpec] = {}
for _model in GeminiModel:
    for _operation in (Operation.GENERATE_CONTENT, Operation.STREAM_GENERATE_CONTENT,
                       Operation.COUNT_TOKENS, Operation.EMBED):
        try:
            ENDPOINTS[(_model, _operation)] = _model_endpoint(_model, _operation)
        except ValidationError:
            continue


def resolve_endpoint(model: str, operation: Operation) -> EndpointSpec:
    """
    Look up the upstream endpoint for a model and operation.

    Raises:
        ValidationError: unknown model or unsupported combination
    """
    if operation == Operation.LIST_MODELS:
        return LIST_MODELS_ENDPOINT

    parsed = parse_model(model)
    spec = ENDPOINTS.get((parsed, operation))
    if spec is None:
        # Re-derive to raise the specific error
        return _model_endpoint(parsed, operation)
    return spec


def request_kind_for(operation: str) -> RequestKind:
    """Map an upstream verb (as seen in a transparent path) to a request kind."""
    aliases = {
        "generateContent": RequestKind.GENERATE,
        "streamGenerateContent": RequestKind.STREAM,
        "countTokens": RequestKind.COUNT_TOKENS,
        "embedContent": RequestKind.EMBEDDING,
        "batchEmbedContents": RequestKind.EMBEDDING,
        "embedText": RequestKind.EMBEDDING,
    }
    kind = aliases.get(operation)
    if kind is None:
        raise ValueError(f"Operation '{operation}' is not billable")
    return kind
