"""
Gemini Proxy - Core Data Models

Identity and token accounting types shared by every pipeline stage.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict


# ============================================================
# Enums
# ============================================================

class SubscriptionTier(str, Enum):
    """Subscription tiers stored on user profiles."""
    FREE = "free"
    PRO = "pro"
    PREMIUM = "premium"
    ENTERPRISE = "enterprise"

    @classmethod
    def parse(cls, value: Any) -> "SubscriptionTier":
        """Unknown or empty tiers fall back to FREE."""
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.FREE


class RequestKind(str, Enum):
    """Kind of billable call written to the usage store."""
    GENERATE = "generate"
    STREAM = "stream"
    COUNT_TOKENS = "countTokens"
    EMBEDDING = "embedding"


# ============================================================
# Identity
# ============================================================

@dataclass
class Principal:
    """Authenticated end-user identity resolved from a bearer credential."""
    id: str
    email: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)


# ============================================================
# Token accounting
# ============================================================

@dataclass
class TokenUsage:
    """
    Token counts for one upstream call.

    `estimated` is True when the provider omitted usage metadata and the
    counts come from the character heuristic.
    """
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    estimated: bool = False

    @classmethod
    def zero(cls) -> "TokenUsage":
        return cls()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "promptTokenCount": self.prompt_tokens,
            "candidatesTokenCount": self.completion_tokens,
            "totalTokenCount": self.total_tokens,
        }


@dataclass(frozen=True)
class UsageRecord:
    """
    Durable accounting entry for one completed upstream call.

    Created once, never mutated; ownership passes to the usage store.
    `cost` is unrounded.
    """
    user_id: str
    model: str
    request_kind: RequestKind
    total_tokens: int
    cost: float
    prompt_tokens: int = 0
    completion_tokens: int = 0
    request_id: str = ""
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "model": self.model,
            "request_kind": self.request_kind.value,
            "total_tokens": self.total_tokens,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "cost": self.cost,
            "request_id": self.request_id,
            "created_at": self.created_at.isoformat(),
        }
