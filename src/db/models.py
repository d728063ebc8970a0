"""
Gemini Proxy - Database Models

Dataclass models for rows returned by the usage store.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from ..core.models import Principal, SubscriptionTier


def _as_float(value: Any) -> float:
    # NUMERIC columns arrive as Decimal
    return float(value) if value is not None else 0.0


@dataclass
class UserProfile:
    """Row of `user_profiles`."""

    user_id: str
    email: str = ""
    subscription_tier: SubscriptionTier = SubscriptionTier.FREE
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record) -> "UserProfile":
        """Create UserProfile from database record."""
        return cls(
            user_id=str(record["user_id"]),
            email=record["email"] or "",
            subscription_tier=SubscriptionTier.parse(record["subscription_tier"]),
            is_active=bool(record["is_active"]),
            created_at=record["created_at"],
            updated_at=record["updated_at"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "email": self.email,
            "subscription_tier": self.subscription_tier.value,
            "is_active": self.is_active,
        }


@dataclass
class QuotaSnapshot:
    """
    Point-in-time counters from `check_user_limits`.

    The proxy only reads and branches on it; the store computes it.
    """

    requests_last_hour: int = 0
    tokens_today: int = 0
    cost_today: float = 0.0
    within_hourly_limit: bool = False
    within_daily_token_limit: bool = False
    within_daily_cost_limit: bool = False

    @classmethod
    def empty(cls) -> "QuotaSnapshot":
        """Snapshot used when the store returns no row (all ceilings unmet)."""
        return cls()

    @classmethod
    def from_record(cls, record) -> "QuotaSnapshot":
        """Create QuotaSnapshot from database record."""
        return cls(
            requests_last_hour=int(record["requests_last_hour"] or 0),
            tokens_today=int(record["tokens_today"] or 0),
            cost_today=_as_float(record["cost_today"]),
            within_hourly_limit=bool(record["within_hourly_limit"]),
            within_daily_token_limit=bool(record["within_daily_token_limit"]),
            within_daily_cost_limit=bool(record["within_daily_cost_limit"]),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requests_last_hour": self.requests_last_hour,
            "tokens_today": self.tokens_today,
            "cost_today": self.cost_today,
            "within_hourly_limit": self.within_hourly_limit,
            "within_daily_token_limit": self.within_daily_token_limit,
            "within_daily_cost_limit": self.within_daily_cost_limit,
        }


@dataclass
class UsageSummary:
    """Aggregate usage from `get_user_usage_summary`."""

    total_tokens: int = 0
    total_cost: float = 0.0
    requests_today: int = 0
    tokens_today: int = 0
    cost_today: float = 0.0
    last_request: Optional[datetime] = None

    @classmethod
    def from_record(cls, record) -> "UsageSummary":
        """Create UsageSummary from database record."""
        return cls(
            total_tokens=int(record["total_tokens"] or 0),
            total_cost=_as_float(record["total_cost"]),
            requests_today=int(record["requests_today"] or 0),
            tokens_today=int(record["tokens_today"] or 0),
            cost_today=_as_float(record["cost_today"]),
            last_request=record["last_request"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_tokens": self.total_tokens,
            "total_cost": self.total_cost,
            "requests_today": self.requests_today,
            "tokens_today": self.tokens_today,
            "cost_today": self.cost_today,
            "last_request": self.last_request.isoformat() if self.last_request else None,
        }


@dataclass
class AuthContext:
    """
    Authentication context for a request.

    Populated by the auth gate after verifying the bearer credential and
    loading the profile.
    """

    principal: Principal
    profile: UserProfile

    # Request tracing
    request_id: str = ""
    trace_id: str = ""

    @property
    def user_id(self) -> str:
        return self.principal.id

    @property
    def tier(self) -> SubscriptionTier:
        return self.profile.subscription_tier
