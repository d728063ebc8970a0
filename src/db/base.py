"""
Gemini Proxy - Store Interfaces

Abstract collaborators for profile, limits and usage storage.
Implementations: ProfileService/UsageService (asyncpg) and InMemoryUsageStore.
"""

from abc import ABC, abstractmethod

from ..core.models import Principal, UsageRecord
from .models import QuotaSnapshot, UsageSummary, UserProfile


class ProfileStore(ABC):
    """Profile lookup with implicit default creation."""

    @abstractmethod
    async def get_or_create_profile(self, principal: Principal) -> UserProfile:
        """
        Return the principal's profile, creating a default one if missing.

        Default: free tier, active. Must be idempotent under concurrent
        first use.
        """
        pass


class UsageStore(ABC):
    """
    Limits and usage accounting.

    The store owns all cross-request state and its concurrency control.
    """

    @abstractmethod
    async def check_limits(self, user_id: str) -> QuotaSnapshot:
        """Current counters and ceiling flags for a user."""
        pass

    @abstractmethod
    async def get_usage_summary(self, user_id: str) -> UsageSummary:
        """Aggregate usage for reporting."""
        pass

    @abstractmethod
    async def record_usage(self, record: UsageRecord) -> None:
        """Persist one usage record. Raises on failure."""
        pass
