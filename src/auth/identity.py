"""
Gemini Proxy - Identity Providers

Resolve a bearer credential to a Principal.

- SupabaseIdentityProvider: verifies the token against Supabase Auth
- LocalIdentityProvider: accepts any non-empty token (MODE=local/test)
"""

import uuid
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from ..core.config import USER_AGENT
from ..core.errors import AuthServiceError, InvalidCredentialError
from ..core.models import Principal
from ..observability.logging import get_logger
from .config import LOCAL_DEFAULT_EMAIL, LOCAL_DEFAULT_USER_ID

logger = get_logger(__name__)

IDENTITY_TIMEOUT_SECONDS = 10.0


class IdentityProvider(ABC):
    """Verifies bearer credentials."""

    @abstractmethod
    async def verify_token(self, token: str, request_id: str = "") -> Principal:
        """
        Return the principal for a token.

        Raises:
            InvalidCredentialError: token rejected or no user behind it
            AuthServiceError: provider unreachable or misbehaving
        """
        pass

    async def close(self):
        """Release any held resources."""
        pass


class SupabaseIdentityProvider(IdentityProvider):
    """
    Supabase Auth token verification.

    Calls GET {SUPABASE_URL}/auth/v1/user with the user's access token.
    """

    def __init__(
        self,
        supabase_url: str,
        anon_key: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = IDENTITY_TIMEOUT_SECONDS,
    ):
        self.supabase_url = supabase_url.rstrip("/")
        self.anon_key = anon_key
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def verify_token(self, token: str, request_id: str = "") -> Principal:
        try:
            response = await self._client.get(
                f"{self.supabase_url}/auth/v1/user",
                headers={
                    "apikey": self.anon_key,
                    "Authorization": f"Bearer {token}",
                    "User-Agent": USER_AGENT,
                },
            )
        except httpx.HTTPError as e:
            logger.error(
                "Identity provider request failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            raise AuthServiceError(request_id=request_id) from e

        if response.status_code in (400, 401, 403, 404):
            raise InvalidCredentialError(request_id=request_id)

        if response.status_code != 200:
            logger.error(
                "Identity provider returned unexpected status",
                status_code=response.status_code,
            )
            raise AuthServiceError(request_id=request_id)

        try:
            data = response.json()
        except ValueError as e:
            raise AuthServiceError(request_id=request_id) from e

        user_id = data.get("id") if isinstance(data, dict) else None
        if not user_id:
            raise InvalidCredentialError(request_id=request_id)

        return Principal(
            id=str(user_id),
            email=data.get("email") or "",
            metadata=data.get("user_metadata") or {},
        )

    async def close(self):
        if self._owns_client:
            await self._client.aclose()


class LocalIdentityProvider(IdentityProvider):
    """
    Development identity: any non-empty token is valid.

    The same token always maps to the same user id.
    """

    def __init__(self, email: str = LOCAL_DEFAULT_EMAIL):
        self.email = email
        self._namespace = uuid.UUID(LOCAL_DEFAULT_USER_ID)

    async def verify_token(self, token: str, request_id: str = "") -> Principal:
        if not token.strip():
            raise InvalidCredentialError(request_id=request_id)

        return Principal(
            id=str(uuid.uuid5(self._namespace, token)),
            email=self.email,
            metadata={"mode": "local"},
        )
