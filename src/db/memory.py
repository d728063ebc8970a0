"""
Gemini Proxy - In-Memory Store

Process-local profile and usage store for MODE=local and MODE=test.

Computes the same QuotaSnapshot the PostgreSQL stored functions do:
requests in the rolling last hour, tokens and cost since UTC midnight,
checked against tier-based ceilings.
"""

import asyncio
from collections import defaultdict, deque
from datetime import datetime, timedelta, timezone
from typing import Deque, Dict, List, Optional

from ..core.config import DefaultLimits
from ..core.models import Principal, SubscriptionTier, UsageRecord
from .base import ProfileStore, UsageStore
from .models import QuotaSnapshot, UsageSummary, UserProfile


# Requests per hour by tier; FREE uses DefaultLimits.requests_per_hour
TIER_REQUESTS_PER_HOUR = {
    SubscriptionTier.PRO: 1000,
    SubscriptionTier.PREMIUM: 5000,
    SubscriptionTier.ENTERPRISE: 10000,
}


# Longest window any snapshot reads (UTC day); older records only feed lifetime totals
RETENTION = timedelta(hours=24)


class InMemoryUsageStore(ProfileStore, UsageStore):
    """
    Profile and usage store kept in process memory.

    Records are kept per user for the last 24 hours; lifetime totals are
    accumulated separately so pruning never changes the usage summary.

    Usage:
        store = InMemoryUsageStore(DefaultLimits())
        profile = await store.get_or_create_profile(principal)
        snapshot = await store.check_limits(principal.id)
    """

    def __init__(self, limits: Optional[DefaultLimits] = None):
        self.limits = limits or DefaultLimits()
        self._profiles: Dict[str, UserProfile] = {}
        self._records: Dict[str, Deque[UsageRecord]] = defaultdict(deque)
        self._lifetime: Dict[str, UsageSummary] = {}
        self._lock = asyncio.Lock()

    async def get_or_create_profile(self, principal: Principal) -> UserProfile:
        async with self._lock:
            profile = self._profiles.get(principal.id)
            if profile is None:
                now = datetime.now(timezone.utc)
                profile = UserProfile(
                    user_id=principal.id,
                    email=principal.email,
                    created_at=now,
                    updated_at=now,
                )
                self._profiles[principal.id] = profile
            return profile

    def set_profile(self, profile: UserProfile) -> None:
        """Install or replace a profile (tier changes, deactivation)."""
        self._profiles[profile.user_id] = profile

    def requests_per_hour(self, user_id: str) -> int:
        profile = self._profiles.get(user_id)
        tier = profile.subscription_tier if profile else SubscriptionTier.FREE
        return TIER_REQUESTS_PER_HOUR.get(tier, self.limits.requests_per_hour)

    async def _recent(self, user_id: str) -> List[UsageRecord]:
        async with self._lock:
            return list(self._records.get(user_id, ()))

    async def check_limits(self, user_id: str) -> QuotaSnapshot:
        now = datetime.now(timezone.utc)
        hour_ago = now - timedelta(hours=1)
        midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)

        records = await self._recent(user_id)

        requests_last_hour = sum(1 for r in records if r.created_at > hour_ago)
        today = [r for r in records if r.created_at >= midnight]
        tokens_today = sum(r.total_tokens for r in today)
        cost_today = sum(r.cost for r in today)

        return QuotaSnapshot(
            requests_last_hour=requests_last_hour,
            tokens_today=tokens_today,
            cost_today=cost_today,
            within_hourly_limit=requests_last_hour < self.requests_per_hour(user_id),
            within_daily_token_limit=tokens_today < self.limits.tokens_per_day,
            within_daily_cost_limit=cost_today < self.limits.max_cost_per_day,
        )

    async def get_usage_summary(self, user_id: str) -> UsageSummary:
        midnight = datetime.now(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)

        async with self._lock:
            lifetime = self._lifetime.get(user_id)
            records = list(self._records.get(user_id, ()))

        if lifetime is None:
            return UsageSummary()

        today = [r for r in records if r.created_at >= midnight]
        return UsageSummary(
            total_tokens=lifetime.total_tokens,
            total_cost=lifetime.total_cost,
            requests_today=len(today),
            tokens_today=sum(r.total_tokens for r in today),
            cost_today=sum(r.cost for r in today),
            last_request=lifetime.last_request,
        )

    async def record_usage(self, record: UsageRecord) -> None:
        cutoff = datetime.now(timezone.utc) - RETENTION

        async with self._lock:
            lifetime = self._lifetime.setdefault(record.user_id, UsageSummary())
            lifetime.total_tokens += record.total_tokens
            lifetime.total_cost += record.cost
            if lifetime.last_request is None or record.created_at > lifetime.last_request:
                lifetime.last_request = record.created_at

            recent = self._records[record.user_id]
            while recent and recent[0].created_at < cutoff:
                recent.popleft()
            if record.created_at >= cutoff:
                recent.append(record)

    @property
    def records(self) -> List[UsageRecord]:
        """Retained records across users, oldest first."""
        retained = [r for recent in self._records.values() for r in recent]
        return sorted(retained, key=lambda r: r.created_at)
