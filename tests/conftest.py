"""
Gemini Proxy - Pytest Configuration

Configures:
- Integration test markers (skip by default)
- Fakes for the identity provider and the usage store
- A scripted Gemini upstream behind httpx.MockTransport
- An app factory wired with those fakes
"""

import os
import logging
from typing import Any, Callable, Dict, List, Optional, Union

import httpx
import pytest
from fastapi.testclient import TestClient

from src.adapters.gemini import GeminiForwarder
from src.auth.identity import IdentityProvider
from src.core.config import ProxySettings
from src.core.errors import InvalidCredentialError
from src.core.models import Principal, SubscriptionTier
from src.db.memory import InMemoryUsageStore
from src.db.models import QuotaSnapshot, UserProfile
from src.server import ProxyComponents, create_app
from src.usage.tracker import UsageRecorder


# ============================================================
# Environment Configuration
# ============================================================

def _is_truthy(value: Optional[str]) -> bool:
    """Check if environment variable is truthy."""
    if value is None:
        return False
    return value.lower() in ("1", "true", "yes", "on")


RUN_INTEGRATION = _is_truthy(os.getenv("RUN_INTEGRATION"))

GEMINI_TEST_KEY = "test-gemini-key-123"
GEMINI_TEST_BASE_URL = "https://gemini.test"
VALID_TOKEN = "valid-token"
TEST_USER_ID = "11111111-1111-1111-1111-111111111111"


# ============================================================
# Pytest Markers
# ============================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "integration: mark test as integration test (requires RUN_INTEGRATION=1)"
    )


def pytest_collection_modifyitems(config, items):
    """Skip integration tests unless RUN_INTEGRATION=1."""
    skip_integration = pytest.mark.skip(
        reason="Integration test - set RUN_INTEGRATION=1 to run"
    )
    for item in items:
        if "integration" in item.keywords and not RUN_INTEGRATION:
            item.add_marker(skip_integration)


@pytest.fixture(autouse=True)
def _test_mode(monkeypatch):
    monkeypatch.setenv("MODE", "test")
    yield


# ============================================================
# Fakes
# ============================================================

class FakeIdentityProvider(IdentityProvider):
    """Maps known tokens to principals; anything else is rejected."""

    def __init__(self, principals: Optional[Dict[str, Principal]] = None):
        self.principals = principals if principals is not None else {
            VALID_TOKEN: Principal(id=TEST_USER_ID, email="user@example.com"),
        }
        self.calls: List[str] = []

    async def verify_token(self, token: str, request_id: str = "") -> Principal:
        self.calls.append(token)
        principal = self.principals.get(token)
        if principal is None:
            raise InvalidCredentialError(request_id=request_id)
        return principal


class FakeUsageStore(InMemoryUsageStore):
    """
    In-memory store with switchable failure modes.

    `snapshot` overrides the computed limits when set.
    """

    def __init__(self):
        super().__init__()
        self.snapshot: Optional[QuotaSnapshot] = None
        self.fail_limits = False
        self.fail_writes = False
        self.fail_profiles = False
        self.limit_checks = 0
        self.profile_lookups = 0

    async def get_or_create_profile(self, principal: Principal) -> UserProfile:
        self.profile_lookups += 1
        if self.fail_profiles:
            raise ConnectionError("profile store unavailable")
        return await super().get_or_create_profile(principal)

    async def check_limits(self, user_id: str) -> QuotaSnapshot:
        self.limit_checks += 1
        if self.fail_limits:
            raise ConnectionError("limits store unavailable")
        if self.snapshot is not None:
            return self.snapshot
        return await super().check_limits(user_id)

    async def record_usage(self, record) -> None:
        if self.fail_writes:
            raise ConnectionError("usage store unavailable")
        await super().record_usage(record)

    def deactivate(self, user_id: str = TEST_USER_ID):
        self.set_profile(UserProfile(user_id=user_id, is_active=False))

    def set_tier(self, tier: SubscriptionTier, user_id: str = TEST_USER_ID):
        self.set_profile(UserProfile(user_id=user_id, subscription_tier=tier))


ResponseFactory = Callable[[httpx.Request], httpx.Response]


class FakeUpstream:
    """
    Scripted Gemini API.

    Queued responses are served in order; once the queue is empty every
    request gets a generateContent-style 200.
    """

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self._queue: List[ResponseFactory] = []

    def respond(
        self,
        status_code: int = 200,
        json: Any = None,
        content: Union[bytes, str, None] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        def factory(request: httpx.Request) -> httpx.Response:
            if json is not None:
                return httpx.Response(status_code, json=json, headers=headers)
            return httpx.Response(status_code, content=content or b"", headers=headers)
        self._queue.append(factory)

    def fail(self, exc_type, message: str = "upstream failure"):
        def factory(request: httpx.Request) -> httpx.Response:
            raise exc_type(message, request=request)
        self._queue.append(factory)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self._queue:
            return self._queue.pop(0)(request)
        return httpx.Response(200, json=gemini_response())

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    @property
    def last_request(self) -> httpx.Request:
        return self.requests[-1]


def gemini_response(text: str = "Hello there!", prompt: int = 6, completion: int = 3) -> Dict[str, Any]:
    """A generateContent response with usageMetadata."""
    return {
        "candidates": [
            {
                "content": {"role": "model", "parts": [{"text": text}]},
                "finishReason": "STOP",
            }
        ],
        "usageMetadata": {
            "promptTokenCount": prompt,
            "candidatesTokenCount": completion,
            "totalTokenCount": prompt + completion,
        },
    }


def hello_request() -> Dict[str, Any]:
    return {"contents": [{"role": "user", "parts": [{"text": "hello"}]}]}


# ============================================================
# Fixtures
# ============================================================

@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def identity() -> FakeIdentityProvider:
    return FakeIdentityProvider()


@pytest.fixture
def store() -> FakeUsageStore:
    return FakeUsageStore()


@pytest.fixture
def make_components(upstream, identity, store):
    """Build ProxyComponents around the fakes; keyword overrides replace any part."""
    def _make(**overrides) -> ProxyComponents:
        settings = ProxySettings(
            gemini_api_key=GEMINI_TEST_KEY,
            gemini_base_url=GEMINI_TEST_BASE_URL,
        )
        parts = {
            "settings": settings,
            "identity": identity,
            "profiles": store,
            "usage_store": store,
            "forwarder": GeminiForwarder(
                api_key=GEMINI_TEST_KEY,
                base_url=GEMINI_TEST_BASE_URL,
                client=upstream.client(),
            ),
            "recorder": UsageRecorder(store),
        }
        parts.update(overrides)
        return ProxyComponents(**parts)
    return _make


@pytest.fixture
def app(make_components):
    return create_app(components=make_components())


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers() -> Dict[str, str]:
    return {"Authorization": f"Bearer {VALID_TOKEN}"}


# ============================================================
# Logging Configuration
# ============================================================

@pytest.fixture(autouse=True)
def configure_test_logging():
    """Configure logging for tests."""
    logging.basicConfig(
        level=logging.DEBUG,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    yield


# ============================================================
# Skip Helpers
# ============================================================

requires_integration = pytest.mark.skipif(
    not RUN_INTEGRATION,
    reason="Requires RUN_INTEGRATION=1"
)
