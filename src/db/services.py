"""
Gemini Proxy - Database Services

PostgreSQL-backed profile and usage stores.

Schema (managed outside this service):
- user_profiles(user_id PK, email, subscription_tier, is_active, created_at, updated_at)
- api_usage(user_id, tokens_used, cost, model_name, request_type, service, created_at)
- check_user_limits(p_user_id) -> requests_last_hour, tokens_today, cost_today,
  within_hourly_limit, within_daily_token_limit, within_daily_cost_limit
- get_user_usage_summary(p_user_id) -> total_tokens, total_cost, requests_today,
  tokens_today, cost_today, last_request
"""

from typing import Optional

from ..core.models import Principal, SubscriptionTier, UsageRecord
from ..observability.logging import get_logger
from .base import ProfileStore, UsageStore
from .connection import DatabasePool
from .models import QuotaSnapshot, UsageSummary, UserProfile

logger = get_logger(__name__)

USAGE_SERVICE_NAME = "gemini"


class ProfileService(ProfileStore):
    """
    Service for user profile operations.

    Handles:
    - Profile lookup
    - Default profile creation on first use
    """

    def __init__(self, db: DatabasePool):
        self.db = db

    async def get_profile(self, user_id: str) -> Optional[UserProfile]:
        record = await self.db.fetchrow(
            "SELECT * FROM user_profiles WHERE user_id = $1",
            user_id,
        )
        return UserProfile.from_record(record) if record else None

    async def get_or_create_profile(self, principal: Principal) -> UserProfile:
        """
        Get the profile, creating a free/active one if none exists.

        Concurrent first requests race on the insert; ON CONFLICT makes the
        losers no-ops and every caller re-reads the winning row.
        """
        profile = await self.get_profile(principal.id)
        if profile is not None:
            return profile

        query = """
            INSERT INTO user_profiles (user_id, email, subscription_tier, is_active)
            VALUES ($1, $2, $3, TRUE)
            ON CONFLICT (user_id) DO NOTHING
        """
        await self.db.execute(
            query,
            principal.id,
            principal.email,
            SubscriptionTier.FREE.value,
        )
        logger.info("Created default user profile", user_id=principal.id)

        profile = await self.get_profile(principal.id)
        if profile is None:
            raise RuntimeError(f"Profile for {principal.id} missing after insert")
        return profile


class UsageService(UsageStore):
    """
    Service for limits and usage accounting.

    Counters and ceilings are computed by stored functions so concurrent
    requests see a consistent snapshot.
    """

    def __init__(self, db: DatabasePool):
        self.db = db

    async def check_limits(self, user_id: str) -> QuotaSnapshot:
        record = await self.db.fetchrow(
            "SELECT * FROM check_user_limits($1)",
            user_id,
        )
        if record is None:
            return QuotaSnapshot.empty()
        return QuotaSnapshot.from_record(record)

    async def get_usage_summary(self, user_id: str) -> UsageSummary:
        record = await self.db.fetchrow(
            "SELECT * FROM get_user_usage_summary($1)",
            user_id,
        )
        if record is None:
            return UsageSummary()
        return UsageSummary.from_record(record)

    async def record_usage(self, record: UsageRecord) -> None:
        """
        Insert one usage row.

        Cost is stored unrounded.
        """
        query = """
            INSERT INTO api_usage (
                user_id, tokens_used, cost, model_name,
                request_type, service, created_at
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7)
        """
        await self.db.execute(
            query,
            record.user_id,
            record.total_tokens,
            record.cost,
            record.model,
            record.request_kind.value,
            USAGE_SERVICE_NAME,
            record.created_at,
        )
