"""
Gemini Proxy - Error Definitions

Error taxonomy for the proxy with infra vs semantic classification.

Every error rendered to a client has the shape:

    {"error": {"code": ..., "message": ..., "type": ..., "request_id": ..., ...}}

Auth, validation and quota errors short-circuit the pipeline before any
upstream call. Upstream failures are normalized here so route handlers only
ever see ProxyException subclasses.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

import httpx


class ErrorType(str, Enum):
    """Error classification."""
    INFRA = "infra_error"
    SEMANTIC = "semantic_error"


@dataclass
class ErrorDetails:
    """Full error information for API response."""
    # Core fields (always present)
    code: str
    message: str
    type: ErrorType

    # Context fields
    param: Optional[str] = None
    status: Optional[int] = None

    # Trace fields
    request_id: str = ""

    # Recovery fields
    retryable: bool = False
    retry_after: Optional[int] = None

    # Provider error details or quota context
    details: Any = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "code": self.code,
            "message": self.message,
            "type": self.type.value,
            "request_id": self.request_id,
            "retryable": self.retryable,
        }

        if self.param:
            result["param"] = self.param
        if self.status is not None:
            result["status"] = self.status
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        if self.details:
            result["details"] = self.details

        return {"error": result}


class ProxyException(Exception):
    """Base exception for all proxy errors."""

    def __init__(self, error: ErrorDetails, status_code: int = 500):
        self.error = error
        self.status_code = status_code
        super().__init__(error.message)


# ============================================================
# Infra Errors
# ============================================================

class InfraError(ProxyException):
    """Base class for infrastructure errors."""
    pass


class AuthServiceError(InfraError):
    """Identity provider or profile store failed while authenticating."""

    def __init__(self, message: str = "Authentication service error", request_id: str = ""):
        super().__init__(
            ErrorDetails(
                code="auth_service_error",
                message=message,
                type=ErrorType.INFRA,
                request_id=request_id,
                retryable=True,
            ),
            status_code=503
        )


class UpstreamConnectionError(InfraError):
    """
    Upstream could not be reached.

    Status depends on the cause: 503 for refused connections and DNS
    failures, 504 for timeouts, 500 for anything else at transport level.
    """

    def __init__(
        self,
        message: str = "Failed to connect to Gemini API",
        status_code: int = 500,
        cause: str = "",
        request_id: str = ""
    ):
        super().__init__(
            ErrorDetails(
                code="connection_error",
                message=message,
                type=ErrorType.INFRA,
                status=status_code,
                request_id=request_id,
                retryable=True,
                details={"cause": cause} if cause else {}
            ),
            status_code=status_code
        )


class UpstreamError(InfraError):
    """Gemini returned a non-2xx response; relayed with its own status."""

    def __init__(
        self,
        status_code: int,
        code: str = "UNKNOWN_ERROR",
        message: str = "",
        details: Any = None,
        request_id: str = ""
    ):
        super().__init__(
            ErrorDetails(
                code=code,
                message=message or f"Gemini API returned error {status_code}",
                type=ErrorType.INFRA if status_code >= 500 else ErrorType.SEMANTIC,
                status=status_code,
                request_id=request_id,
                retryable=status_code >= 500 or status_code == 429,
                details=details or []
            ),
            status_code=status_code
        )


class InternalError(InfraError):
    """Unexpected fault. Never carries internals to the client in production."""

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        request_id: str = "",
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            ErrorDetails(
                code="internal_error",
                message=message,
                type=ErrorType.INFRA,
                request_id=request_id,
                retryable=True,
                details=details or {}
            ),
            status_code=500
        )


# ============================================================
# Semantic Errors (Not Retryable)
# ============================================================

class SemanticError(ProxyException):
    """Base class for semantic errors (client must fix request)."""
    pass


class AuthenticationRequiredError(SemanticError):
    """Authorization header missing or not a Bearer credential."""

    def __init__(self, request_id: str = ""):
        super().__init__(
            ErrorDetails(
                code="authentication_required",
                message="Please provide a valid Bearer token",
                type=ErrorType.SEMANTIC,
                request_id=request_id,
                retryable=False
            ),
            status_code=401
        )


class InvalidCredentialError(SemanticError):
    """Bearer credential rejected by the identity provider."""

    def __init__(self, message: str = "Invalid or expired token", request_id: str = ""):
        super().__init__(
            ErrorDetails(
                code="invalid_credential",
                message=message,
                type=ErrorType.SEMANTIC,
                request_id=request_id,
                retryable=False
            ),
            status_code=401
        )


class AccountInactiveError(SemanticError):
    """Principal's profile is deactivated."""

    def __init__(self, request_id: str = ""):
        super().__init__(
            ErrorDetails(
                code="account_inactive",
                message="Your account has been deactivated. Please contact support.",
                type=ErrorType.SEMANTIC,
                request_id=request_id,
                retryable=False
            ),
            status_code=403
        )


class ValidationError(SemanticError):
    """Request payload, model or operation rejected before forwarding."""

    def __init__(
        self,
        message: str,
        param: str = "",
        code: str = "validation_error",
        details: Any = None,
        request_id: str = ""
    ):
        super().__init__(
            ErrorDetails(
                code=code,
                message=message,
                type=ErrorType.SEMANTIC,
                param=param or None,
                request_id=request_id,
                retryable=False,
                details=details or {}
            ),
            status_code=400
        )


class RateLimitExceededError(SemanticError):
    """Hourly request ceiling reached."""

    def __init__(
        self,
        requests_last_hour: int,
        reset_at: datetime,
        retry_after: int = 3600,
        request_id: str = ""
    ):
        super().__init__(
            ErrorDetails(
                code="rate_limit_exceeded",
                message="You have exceeded your hourly request limit",
                type=ErrorType.SEMANTIC,
                request_id=request_id,
                retryable=True,
                retry_after=retry_after,
                details={
                    "dimension": "requests",
                    "requests_last_hour": requests_last_hour,
                    "reset_at": reset_at.isoformat(),
                }
            ),
            status_code=429
        )
        self.reset_at = reset_at


class QuotaExceededError(SemanticError):
    """Daily token or cost ceiling reached."""

    def __init__(
        self,
        dimension: str,
        observed: float,
        reset_at: datetime,
        retry_after: int = 86400,
        request_id: str = ""
    ):
        super().__init__(
            ErrorDetails(
                code="quota_exceeded",
                message=f"You have exceeded your daily {dimension} limit",
                type=ErrorType.SEMANTIC,
                request_id=request_id,
                retryable=True,
                retry_after=retry_after,
                details={
                    "dimension": dimension,
                    f"{dimension}_today": observed,
                    "reset_at": reset_at.isoformat(),
                }
            ),
            status_code=429
        )
        self.dimension = dimension
        self.observed = observed
        self.reset_at = reset_at


class ClientRateLimitError(SemanticError):
    """Too many requests from one client address, regardless of user."""

    def __init__(
        self,
        limit: int,
        reset_at: datetime,
        retry_after: int,
        request_id: str = ""
    ):
        super().__init__(
            ErrorDetails(
                code="too_many_requests",
                message="Too many requests from this IP, please try again later",
                type=ErrorType.SEMANTIC,
                request_id=request_id,
                retryable=True,
                retry_after=retry_after,
                details={
                    "dimension": "client_ip",
                    "limit": limit,
                    "reset_at": reset_at.isoformat(),
                }
            ),
            status_code=429
        )
        self.reset_at = reset_at


# ============================================================
# Upstream error mapping
# ============================================================

def map_httpx_error(error: Exception, request_id: str = "") -> ProxyException:
    """
    Convert a transport-level httpx exception to UpstreamConnectionError.

    - Timeouts (connect, read, write, pool, overall deadline) -> 504
    - Connection refused / DNS resolution failure -> 503
    - Any other transport error -> 500
    """
    if isinstance(error, (httpx.TimeoutException, asyncio.TimeoutError)):
        return UpstreamConnectionError(
            message="Gemini API request timed out",
            status_code=504,
            cause="timeout",
            request_id=request_id,
        )

    if isinstance(error, httpx.ConnectError):
        return UpstreamConnectionError(
            message="Gemini API is temporarily unavailable",
            status_code=503,
            cause="connect",
            request_id=request_id,
        )

    return UpstreamConnectionError(
        message="Failed to connect to Gemini API",
        status_code=500,
        cause=type(error).__name__,
        request_id=request_id,
    )


def upstream_error_from_response(
    status_code: int,
    body: Any,
    request_id: str = ""
) -> UpstreamError:
    """
    Normalize a Gemini error body into an UpstreamError.

    Gemini error format:
    {
        "error": {
            "code": 400,
            "message": "...",
            "status": "INVALID_ARGUMENT|PERMISSION_DENIED|...",
            "details": [...]
        }
    }
    """
    error_info: Dict[str, Any] = {}
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        error_info = body["error"]

    code = error_info.get("status") or error_info.get("code") or "UNKNOWN_ERROR"
    message = error_info.get("message")
    if not message:
        message = body if isinstance(body, str) and body else "Gemini API error"

    return UpstreamError(
        status_code=status_code,
        code=str(code),
        message=str(message),
        details=error_info.get("details") or [],
        request_id=request_id,
    )
