"""
Gemini Proxy - Database Module

Profile, limits and usage storage behind the ProfileStore/UsageStore
interfaces, with an asyncpg-backed implementation and an in-memory one.
"""

from .base import ProfileStore, UsageStore
from .connection import DatabasePool
from .memory import InMemoryUsageStore
from .models import AuthContext, QuotaSnapshot, UsageSummary, UserProfile
from .services import ProfileService, UsageService

__all__ = [
    "ProfileStore",
    "UsageStore",
    "DatabasePool",
    "InMemoryUsageStore",
    "AuthContext",
    "QuotaSnapshot",
    "UsageSummary",
    "UserProfile",
    "ProfileService",
    "UsageService",
]
