"""
Gemini Proxy - Token Estimation

Pre-flight token estimate for Gemini request payloads.

The estimate is informational only: it is attached to the request context
for logging and telemetry and never blocks a request.
"""

import math
from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..observability.logging import get_logger

logger = get_logger(__name__)


@dataclass
class TokenEstimate:
    """
    Token count estimate for a request.

    `total_tokens` doubles the input estimate as a crude output-size proxy.
    """
    input_tokens: int = 0
    total_tokens: int = 0
    text_tokens: int = 0
    media_tokens: int = 0
    overhead_tokens: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"input": self.input_tokens, "total": self.total_tokens}


class TokenEstimator:
    """
    Character-count heuristic for Gemini payloads.

    - text part: ceil(len / 4)
    - inlineData part: flat 1000 (unknown multimedia cost)
    - per-request overhead: 100
    """

    CHARS_PER_TOKEN = 4
    INLINE_DATA_TOKENS = 1000
    REQUEST_OVERHEAD = 100
    OUTPUT_MULTIPLIER = 2

    def estimate_text_tokens(self, text: str) -> int:
        if not text:
            return 0
        return math.ceil(len(text) / self.CHARS_PER_TOKEN)

    def estimate(self, payload: Optional[Dict[str, Any]]) -> TokenEstimate:
        """
        Estimate tokens for a request payload.

        Any failure degrades to a zero estimate.
        """
        try:
            return self._estimate(payload or {})
        except Exception as e:
            logger.warning("Token estimation failed", error=str(e))
            return TokenEstimate()

    def _estimate(self, payload: Dict[str, Any]) -> TokenEstimate:
        text_tokens = 0
        media_tokens = 0

        contents = payload.get("contents")
        if isinstance(contents, list):
            for content in contents:
                parts = content.get("parts") if isinstance(content, dict) else None
                if not isinstance(parts, list):
                    continue
                for part in parts:
                    if not isinstance(part, dict):
                        continue
                    if isinstance(part.get("text"), str):
                        text_tokens += self.estimate_text_tokens(part["text"])
                    if part.get("inlineData"):
                        media_tokens += self.INLINE_DATA_TOKENS
        elif isinstance(payload.get("prompt"), str):
            text_tokens = self.estimate_text_tokens(payload["prompt"])

        input_tokens = text_tokens + media_tokens + self.REQUEST_OVERHEAD

        return TokenEstimate(
            input_tokens=input_tokens,
            total_tokens=input_tokens * self.OUTPUT_MULTIPLIER,
            text_tokens=text_tokens,
            media_tokens=media_tokens,
            overhead_tokens=self.REQUEST_OVERHEAD,
        )


_estimator = TokenEstimator()


def estimate_tokens(payload: Optional[Dict[str, Any]]) -> TokenEstimate:
    """Estimate tokens using the default estimator."""
    return _estimator.estimate(payload)
