"""
Gemini Proxy - Auth Gate

FastAPI dependency for bearer credential validation and user context.

Flow:
1. Authorization header must be "Bearer <token>" (case-sensitive scheme)
2. Token verified once by the identity provider
3. Profile loaded, created with defaults on first use
4. Inactive accounts rejected
"""

from typing import Optional

from fastapi import Header, Request

from ..core.errors import (
    AccountInactiveError,
    AuthServiceError,
    AuthenticationRequiredError,
    ProxyException,
)
from ..db.base import ProfileStore
from ..db.models import AuthContext
from ..observability.logging import get_logger
from ..observability.middleware import get_request_id, set_request_info
from .identity import IdentityProvider

logger = get_logger(__name__)

BEARER_PREFIX = "Bearer "


def parse_bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Return the credential from a Bearer header, or None when absent or malformed."""
    if not authorization or not authorization.startswith(BEARER_PREFIX):
        return None
    token = authorization[len(BEARER_PREFIX):].strip()
    return token or None


class AuthGate:
    """
    Resolves a request's Authorization header to an AuthContext.

    Usage:
        gate = AuthGate(identity=SupabaseIdentityProvider(...), profiles=ProfileService(db))
        auth = await gate.authenticate(request.headers.get("Authorization"), request_id)
    """

    def __init__(self, identity: IdentityProvider, profiles: ProfileStore):
        self.identity = identity
        self.profiles = profiles

    async def authenticate(
        self,
        authorization: Optional[str],
        request_id: str = "",
        trace_id: str = "",
    ) -> AuthContext:
        """
        Raises:
            AuthenticationRequiredError: header missing or not a Bearer credential
            InvalidCredentialError: identity provider rejected the token
            AccountInactiveError: profile is deactivated
            AuthServiceError: identity provider or profile store failed
        """
        token = parse_bearer_token(authorization)
        if token is None:
            raise AuthenticationRequiredError(request_id=request_id)

        try:
            principal = await self.identity.verify_token(token, request_id=request_id)
        except ProxyException:
            raise
        except Exception as e:
            logger.exception("Token verification failed", error_type=type(e).__name__)
            raise AuthServiceError(request_id=request_id) from e

        try:
            profile = await self.profiles.get_or_create_profile(principal)
        except Exception as e:
            logger.exception(
                "Profile lookup failed",
                user_id=principal.id,
                error_type=type(e).__name__,
            )
            raise AuthServiceError(
                message="Failed to load user profile",
                request_id=request_id,
            ) from e

        if not profile.is_active:
            logger.warning("Rejected inactive account", user_id=principal.id)
            raise AccountInactiveError(request_id=request_id)

        return AuthContext(
            principal=principal,
            profile=profile,
            request_id=request_id,
            trace_id=trace_id,
        )


def get_auth_gate(request: Request) -> AuthGate:
    gate = getattr(request.app.state, "auth_gate", None)
    if gate is None:
        raise AuthServiceError(
            message="Authentication service not initialized",
            request_id=get_request_id(request),
        )
    return gate


async def get_auth_context(
    request: Request,
    authorization: Optional[str] = Header(None, alias="Authorization"),
) -> AuthContext:
    """
    FastAPI dependency that validates the bearer token and returns auth context.

    Usage:
        @router.get("/usage")
        async def usage(auth: AuthContext = Depends(get_auth_context)):
            ...
    """
    request_id = get_request_id(request)
    trace_id = getattr(request.state, "trace_id", "")

    auth = await get_auth_gate(request).authenticate(
        authorization,
        request_id=request_id,
        trace_id=trace_id,
    )

    request.state.auth = auth
    set_request_info(request, user_id=auth.user_id)
    return auth
