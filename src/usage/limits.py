"""
Gemini Proxy - Quota Guard

Admission control against three independent per-user ceilings:

1. requests in the last hour
2. tokens today
3. cost today

The snapshot is computed by the usage store; the guard owns no counters.
If the store cannot be reached the guard fails open: the request is
admitted and the outage is logged. This is a known over-admission window
accepted in favour of availability.

ClientRateLimiter is the per-IP fallback in front of all of this; it keeps
its own in-process counters and never consults the store.
"""

import math
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional

from ..core.config import ClientRateLimits
from ..core.errors import ClientRateLimitError, QuotaExceededError, RateLimitExceededError
from ..db.base import UsageStore
from ..db.models import QuotaSnapshot
from ..observability.logging import get_logger
from ..observability.metrics import get_metrics

logger = get_logger(__name__)


class LimitDimension(str, Enum):
    """Quota dimensions, in evaluation order."""
    REQUESTS = "requests"
    TOKENS = "tokens"
    COST = "cost"


HOURLY_WINDOW = timedelta(hours=1)
DAILY_WINDOW = timedelta(hours=24)


@dataclass
class LimitCheckResult:
    """
    Result of an admitted quota check.

    `snapshot` is None when the check failed open.
    """
    allowed: bool
    snapshot: Optional[QuotaSnapshot] = None
    failed_open: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "failed_open": self.failed_open,
            "snapshot": self.snapshot.to_dict() if self.snapshot else None,
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QuotaGuard:
    """
    Decides admit/reject for a user from a QuotaSnapshot.

    Usage:
        guard = QuotaGuard(store)
        result = await guard.check(user_id, request_id=request_id)
        # raises RateLimitExceededError / QuotaExceededError when over a ceiling
    """

    def __init__(
        self,
        store: UsageStore,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.clock = clock

    async def check(self, user_id: str, request_id: str = "") -> LimitCheckResult:
        try:
            snapshot = await self.store.check_limits(user_id)
        except Exception as e:
            logger.warning(
                "Quota check failed, admitting request (fail-open)",
                user_id=user_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            get_metrics().record_quota_fail_open()
            return LimitCheckResult(allowed=True, failed_open=True)

        logger.debug("Checked user limits", user_id=user_id, **snapshot.to_dict())
        self.evaluate(snapshot, user_id=user_id, request_id=request_id)
        return LimitCheckResult(allowed=True, snapshot=snapshot)

    def evaluate(self, snapshot: QuotaSnapshot, user_id: str = "", request_id: str = "") -> None:
        """
        Raise for the first violated ceiling, checked in fixed order.

        Reset instants are wall-clock: now + 1h for the hourly ceiling,
        now + 24h for the daily ones.
        """
        now = self.clock()

        if not snapshot.within_hourly_limit:
            logger.warning(
                "User exceeded hourly request limit",
                user_id=user_id,
                requests_last_hour=snapshot.requests_last_hour,
            )
            get_metrics().record_quota_rejection(LimitDimension.REQUESTS.value)
            raise RateLimitExceededError(
                requests_last_hour=snapshot.requests_last_hour,
                reset_at=now + HOURLY_WINDOW,
                retry_after=int(HOURLY_WINDOW.total_seconds()),
                request_id=request_id,
            )

        if not snapshot.within_daily_token_limit:
            logger.warning(
                "User exceeded daily token limit",
                user_id=user_id,
                tokens_today=snapshot.tokens_today,
            )
            get_metrics().record_quota_rejection(LimitDimension.TOKENS.value)
            raise QuotaExceededError(
                dimension=LimitDimension.TOKENS.value,
                observed=snapshot.tokens_today,
                reset_at=now + DAILY_WINDOW,
                retry_after=int(DAILY_WINDOW.total_seconds()),
                request_id=request_id,
            )

        if not snapshot.within_daily_cost_limit:
            logger.warning(
                "User exceeded daily cost limit",
                user_id=user_id,
                cost_today=snapshot.cost_today,
            )
            get_metrics().record_quota_rejection(LimitDimension.COST.value)
            raise QuotaExceededError(
                dimension=LimitDimension.COST.value,
                observed=snapshot.cost_today,
                reset_at=now + DAILY_WINDOW,
                retry_after=int(DAILY_WINDOW.total_seconds()),
                request_id=request_id,
            )


# ============================================================
# Per-IP fallback protection
# ============================================================

@dataclass
class ClientWindow:
    """Fixed window of requests from one client address."""
    count: int
    reset_at: float  # epoch seconds


@dataclass
class ClientRateDecision:
    """Outcome of counting one request against its client's window."""
    allowed: bool
    limit: int
    count: int
    reset_at: float
    delay_ms: int = 0

    @property
    def remaining(self) -> int:
        return max(self.limit - self.count, 0)

    def retry_after(self, now: float) -> int:
        return max(int(math.ceil(self.reset_at - now)), 1)

    def headers(self, now: float) -> Dict[str, str]:
        return {
            "RateLimit-Limit": str(self.limit),
            "RateLimit-Remaining": str(self.remaining),
            "RateLimit-Reset": str(self.retry_after(now)),
        }


class ClientRateLimiter:
    """
    Per-IP request counter with a slow-down band.

    Every request counts, rejected ones included. Past `delay_after`
    requests in a window each request is delayed by `delay_ms`; past
    `requests_per_window` it is rejected until the window resets.

    Usage:
        limiter = ClientRateLimiter(settings.client_limits)
        decision = limiter.hit(request.client.host)
    """

    def __init__(
        self,
        limits: ClientRateLimits,
        clock: Callable[[], float] = time.time,
        max_tracked: int = 10_000,
    ):
        self.limits = limits
        self.clock = clock
        self.max_tracked = max_tracked
        self._windows: Dict[str, ClientWindow] = {}

    @property
    def enabled(self) -> bool:
        return self.limits.requests_per_window > 0

    @property
    def tracked(self) -> int:
        return len(self._windows)

    def hit(self, client: str) -> ClientRateDecision:
        now = self.clock()
        window = self._windows.get(client)
        if window is None or window.reset_at <= now:
            if window is None and len(self._windows) >= self.max_tracked:
                self._cleanup(now)
            window = ClientWindow(count=0, reset_at=now + self.limits.window_seconds)
            self._windows[client] = window

        window.count += 1

        delay_ms = 0
        if self.limits.delay_after > 0 and window.count > self.limits.delay_after:
            delay_ms = self.limits.delay_ms

        return ClientRateDecision(
            allowed=window.count <= self.limits.requests_per_window,
            limit=self.limits.requests_per_window,
            count=window.count,
            reset_at=window.reset_at,
            delay_ms=delay_ms,
        )

    def reject(self, decision: ClientRateDecision, request_id: str = "") -> ClientRateLimitError:
        now = self.clock()
        return ClientRateLimitError(
            limit=decision.limit,
            reset_at=datetime.fromtimestamp(decision.reset_at, tz=timezone.utc),
            retry_after=decision.retry_after(now),
            request_id=request_id,
        )

    def _cleanup(self, now: float):
        """Remove expired windows."""
        self._windows = {
            client: window for client, window in self._windows.items()
            if window.reset_at > now
        }
