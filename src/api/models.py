"""
Gemini Proxy - API Request/Response Models

Pydantic models for request validation and response serialization.
Field names follow the Gemini REST API (camelCase) so validated bodies
can be forwarded as-is.
"""

from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


# ============================================================
# Enums
# ============================================================

class ContentRole(str, Enum):
    """Roles accepted in contents[]."""
    USER = "user"
    MODEL = "model"


# ============================================================
# Content
# ============================================================

class InlineData(BaseModel):
    """Base64 media embedded in a part."""
    mimeType: str
    data: str

    model_config = ConfigDict(extra="allow")


class Part(BaseModel):
    """A content part: text, inline media, or both."""
    text: Optional[str] = None
    inlineData: Optional[InlineData] = None

    model_config = ConfigDict(extra="allow")

    @model_validator(mode="after")
    def require_text_or_inline_data(self) -> "Part":
        if self.text is None and self.inlineData is None:
            raise ValueError("part must contain 'text' or 'inlineData'")
        return self


class Content(BaseModel):
    """One turn of a conversation."""
    parts: List[Part]
    role: Optional[ContentRole] = None

    model_config = ConfigDict(extra="allow")


class GenerationConfig(BaseModel):
    """Sampling and output controls."""
    temperature: Optional[float] = Field(default=None, ge=0, le=2)
    topK: Optional[int] = Field(default=None, ge=1)
    topP: Optional[float] = Field(default=None, ge=0, le=1)
    maxOutputTokens: Optional[int] = Field(default=None, ge=1, le=8192)
    stopSequences: Optional[List[str]] = None
    candidateCount: Optional[Literal[1]] = None
    presencePenalty: Optional[float] = Field(default=None, ge=-2, le=2)
    frequencyPenalty: Optional[float] = Field(default=None, ge=-2, le=2)

    model_config = ConfigDict(extra="allow")


class SafetySetting(BaseModel):
    category: str
    threshold: str


class TextPart(BaseModel):
    text: str


class SystemInstruction(BaseModel):
    parts: List[TextPart]


# ============================================================
# Requests
# ============================================================

class GenerateContentRequest(BaseModel):
    """
    Body for generateContent and streamGenerateContent.

    Unknown top-level fields (tools, toolConfig, cachedContent, ...)
    are accepted and forwarded unchanged.
    """
    contents: List[Content]
    generationConfig: Optional[GenerationConfig] = None
    safetySettings: Optional[List[SafetySetting]] = None
    systemInstruction: Optional[SystemInstruction] = None

    model_config = ConfigDict(extra="allow")

    def to_payload(self) -> Dict[str, Any]:
        """Serialize for forwarding; only fields the client sent are included."""
        return self.model_dump(mode="json", exclude_unset=True)


class CountTokensRequest(BaseModel):
    """Body for countTokens."""
    contents: Optional[List[Content]] = None

    model_config = ConfigDict(extra="allow")

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_unset=True)


# ============================================================
# Responses
# ============================================================

class UsageSummaryModel(BaseModel):
    total_tokens: int = 0
    total_cost: float = 0.0
    requests_today: int = 0
    tokens_today: int = 0
    cost_today: float = 0.0
    last_request: Optional[str] = None


class QuotaSnapshotModel(BaseModel):
    requests_last_hour: int = 0
    tokens_today: int = 0
    cost_today: float = 0.0
    within_hourly_limit: bool = False
    within_daily_token_limit: bool = False
    within_daily_cost_limit: bool = False


class UsageResponse(BaseModel):
    """GET /api/gemini/usage."""
    usage: UsageSummaryModel
    limits: QuotaSnapshotModel
    timestamp: str


class HealthResponse(BaseModel):
    """Health check response."""
    status: Literal["healthy", "degraded", "unhealthy"]
    service: str
    version: str
    timestamp: str
    checks: Dict[str, str] = Field(default_factory=dict)
