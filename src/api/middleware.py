"""
Gemini Proxy - API Middleware

Per-IP fallback protection in front of every route.

Runs before authentication, so it also shields the identity provider
from credential stuffing. Rejections use the canonical error body.
"""

import asyncio
from typing import Awaitable, Callable, Optional

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.types import ASGIApp

from ..observability.logging import get_logger
from ..observability.metrics import get_metrics
from ..observability.middleware import get_request_id
from ..usage.limits import ClientRateLimiter

logger = get_logger(__name__)


class ClientRateLimitMiddleware(BaseHTTPMiddleware):
    """
    Count every request against its client address.

    Adds RateLimit-Limit, RateLimit-Remaining and RateLimit-Reset to every
    counted response. Over the ceiling it answers 429 without calling the
    route; in the slow-down band it delays before calling it.
    """

    EXCLUDE_PATHS = {"/health", "/ready", "/metrics"}

    def __init__(
        self,
        app: ASGIApp,
        limiter: ClientRateLimiter,
        exclude_paths: Optional[set] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        super().__init__(app)
        self.limiter = limiter
        self.exclude_paths = exclude_paths or self.EXCLUDE_PATHS
        self.sleep = sleep

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        if not self.limiter.enabled or request.url.path in self.exclude_paths:
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        decision = self.limiter.hit(client_ip)
        rate_headers = decision.headers(self.limiter.clock())

        if not decision.allowed:
            logger.warning(
                "Client rate limit exceeded",
                client_ip=client_ip,
                user_agent=request.headers.get("user-agent", ""),
                count=decision.count,
            )
            get_metrics().record_quota_rejection("client_ip")
            error = self.limiter.reject(decision, request_id=get_request_id(request))
            return JSONResponse(
                status_code=error.status_code,
                content=error.error.to_dict(),
                headers={
                    **rate_headers,
                    "Retry-After": str(error.error.retry_after),
                    "X-Error-Type": error.error.type.value,
                    "X-Error-Code": error.error.code,
                },
            )

        if decision.delay_ms:
            logger.debug("Slowing down client", client_ip=client_ip, delay_ms=decision.delay_ms)
            await self.sleep(decision.delay_ms / 1000)

        response = await call_next(request)
        response.headers.update(rate_headers)
        return response
