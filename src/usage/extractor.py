"""
Gemini Proxy - Usage Extraction

Recovers token counts from Gemini responses.

Provider usageMetadata is preferred. When it is absent, output tokens are
estimated from candidate text with the same 1-token-per-4-characters rule
as the pre-flight estimator, and the prompt side is reported as zero.
Extraction never raises.
"""

import json
import math
from typing import Any, Iterable, List, Optional

from ..core.models import TokenUsage
from ..observability.logging import get_logger

logger = get_logger(__name__)

CHARS_PER_TOKEN = 4


def _as_int(value: Any) -> int:
    try:
        return max(0, int(value or 0))
    except (TypeError, ValueError):
        return 0


def _usage_from_metadata(metadata: dict) -> TokenUsage:
    prompt = _as_int(metadata.get("promptTokenCount"))
    completion = _as_int(metadata.get("candidatesTokenCount"))
    total = _as_int(metadata.get("totalTokenCount")) or prompt + completion
    return TokenUsage(
        prompt_tokens=prompt,
        completion_tokens=completion,
        total_tokens=total,
    )


def _candidate_text_tokens(chunk: dict) -> int:
    tokens = 0
    for candidate in chunk.get("candidates") or []:
        if not isinstance(candidate, dict):
            continue
        content = candidate.get("content") or {}
        for part in content.get("parts") or []:
            if isinstance(part, dict) and isinstance(part.get("text"), str):
                tokens += math.ceil(len(part["text"]) / CHARS_PER_TOKEN)
    return tokens


def _extract_from_chunks(chunks: Iterable[Any]) -> TokenUsage:
    chunks = [c for c in chunks if isinstance(c, dict)]

    # Streams repeat cumulative usageMetadata; the last one wins
    for chunk in reversed(chunks):
        metadata = chunk.get("usageMetadata")
        if isinstance(metadata, dict):
            return _usage_from_metadata(metadata)

    # Fallback attributes everything to output; prompt side unknown
    output_tokens = sum(_candidate_text_tokens(c) for c in chunks)
    return TokenUsage(
        prompt_tokens=0,
        completion_tokens=output_tokens,
        total_tokens=output_tokens,
        estimated=True,
    )


def extract_usage(response: Any) -> TokenUsage:
    """
    Extract token usage from a parsed Gemini response.

    Accepts a single GenerateContentResponse dict or a list of streamed
    chunks. Malformed input yields an all-zero TokenUsage.
    """
    try:
        if isinstance(response, list):
            return _extract_from_chunks(response)
        if isinstance(response, dict):
            return _extract_from_chunks([response])
    except Exception as e:
        logger.error("Error extracting token usage", error=str(e))
    return TokenUsage.zero()


def parse_stream_body(body: bytes) -> List[Any]:
    """
    Parse a relayed streamGenerateContent body into chunks.

    Handles both the default JSON-array framing and `alt=sse` framing
    (`data: {...}` lines).
    """
    text = body.decode("utf-8", errors="replace").strip()
    if not text:
        return []

    if text.startswith("["):
        try:
            parsed = json.loads(text)
            return parsed if isinstance(parsed, list) else [parsed]
        except ValueError:
            return []

    chunks = []
    for line in text.splitlines():
        line = line.strip()
        if not line.startswith("data:"):
            continue
        data = line[len("data:"):].strip()
        if not data or data == "[DONE]":
            continue
        try:
            chunks.append(json.loads(data))
        except ValueError:
            continue
    return chunks


def extract_stream_usage(body: Optional[bytes]) -> TokenUsage:
    """Extract token usage from a complete streamed body. Never raises."""
    if not body:
        return TokenUsage.zero()
    try:
        return extract_usage(parse_stream_body(body))
    except Exception as e:
        logger.error("Error extracting stream token usage", error=str(e))
        return TokenUsage.zero()


def extract_embedding_usage(request_body: Any, response: Any = None) -> TokenUsage:
    """
    Input-token usage for an embedding call.

    Embedding responses usually carry no usageMetadata; the input side is
    then estimated from the compact JSON request body. Output is always zero.
    """
    try:
        if isinstance(response, dict) and isinstance(response.get("usageMetadata"), dict):
            metadata = response["usageMetadata"]
            prompt = _as_int(metadata.get("promptTokenCount")) or _as_int(metadata.get("totalTokenCount"))
            if prompt:
                return TokenUsage(prompt_tokens=prompt, completion_tokens=0, total_tokens=prompt)

        if not request_body:
            return TokenUsage.zero()
        serialized = json.dumps(request_body, separators=(",", ":"), ensure_ascii=False)
        tokens = math.ceil(len(serialized) / CHARS_PER_TOKEN)
        return TokenUsage(prompt_tokens=tokens, completion_tokens=0, total_tokens=tokens, estimated=True)
    except Exception as e:
        logger.error("Error extracting embedding usage", error=str(e))
        return TokenUsage.zero()
