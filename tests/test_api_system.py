"""
Gemini Proxy - API System Tests

End-to-end tests of the typed /api/gemini routes against a scripted
upstream:
- Auth gate (missing, malformed, invalid, inactive)
- Quota enforcement and fail-open
- Request validation
- Response augmentation and usage recording
- Upstream error relay
"""

import asyncio
import json
import math
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from fastapi.testclient import TestClient

from src.core.models import RequestKind, SubscriptionTier, UsageRecord
from src.db.models import QuotaSnapshot
from src.server import create_app
from src.usage.tracker import DeadLetterReason

from conftest import (
    GEMINI_TEST_KEY,
    TEST_USER_ID,
    VALID_TOKEN,
    gemini_response,
    hello_request,
)


GENERATE_PATH = "/api/gemini/gemini-1.5-flash/generateContent"
STREAM_PATH = "/api/gemini/gemini-1.5-flash/streamGenerateContent"
COUNT_PATH = "/api/gemini/gemini-1.5-flash/countTokens"
EMBED_PATH = "/api/gemini/gemini-embedding-001/embeddings"

EMBED_BODY = {"content": {"parts": [{"text": "hello world"}]}}

AUTHENTICATED_CALLS = [
    ("POST", GENERATE_PATH, hello_request()),
    ("POST", STREAM_PATH, hello_request()),
    ("POST", COUNT_PATH, hello_request()),
    ("POST", EMBED_PATH, EMBED_BODY),
    ("GET", "/api/gemini/models", None),
    ("GET", "/api/gemini/usage", None),
    ("POST", "/api/gemini/v1beta/models/gemini-pro:generateContent", hello_request()),
]


def _call(client, method, path, body, headers=None):
    if method == "GET":
        return client.get(path, headers=headers)
    return client.post(path, json=body, headers=headers)


# ============================================================
# Authentication
# ============================================================

class TestAuthentication:
    """Requests without a usable bearer credential never reach a collaborator."""

    @pytest.mark.parametrize("method,path,body", AUTHENTICATED_CALLS)
    def test_missing_authorization_returns_401(self, client, upstream, identity, store, method, path, body):
        response = _call(client, method, path, body)

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "authentication_required"
        assert upstream.requests == []
        assert identity.calls == []
        assert store.profile_lookups == 0
        assert store.limit_checks == 0

    @pytest.mark.parametrize("header", [
        "Basic dXNlcjpwYXNz",
        "Bearer ",
        "bearer valid-token",
        VALID_TOKEN,
    ])
    def test_malformed_authorization_returns_401(self, client, upstream, identity, header):
        response = client.post(GENERATE_PATH, json=hello_request(), headers={"Authorization": header})

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "authentication_required"
        assert response.headers["X-Error-Code"] == "authentication_required"
        assert upstream.requests == []
        assert identity.calls == []

    def test_rejected_token_returns_401_invalid_credential(self, client, upstream, store):
        response = client.post(
            GENERATE_PATH,
            json=hello_request(),
            headers={"Authorization": "Bearer expired-token"},
        )

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_credential"
        assert upstream.requests == []
        assert store.limit_checks == 0

    @pytest.mark.parametrize("method,path,body", AUTHENTICATED_CALLS)
    def test_inactive_account_returns_403_without_upstream_call(
        self, client, upstream, store, auth_headers, method, path, body
    ):
        store.deactivate()

        response = _call(client, method, path, body, headers=auth_headers)

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "account_inactive"
        assert upstream.requests == []
        assert store.limit_checks == 0

    def test_profile_store_failure_returns_503(self, client, upstream, store, auth_headers):
        store.fail_profiles = True

        response = client.post(GENERATE_PATH, json=hello_request(), headers=auth_headers)

        assert response.status_code == 503
        assert response.json()["error"]["code"] == "auth_service_error"
        assert upstream.requests == []


# ============================================================
# Quota enforcement
# ============================================================

class TestQuota:
    @pytest.mark.parametrize("snapshot,code,dimension", [
        (
            QuotaSnapshot(requests_last_hour=100, within_hourly_limit=False,
                          within_daily_token_limit=True, within_daily_cost_limit=True),
            "rate_limit_exceeded", "requests",
        ),
        (
            QuotaSnapshot(tokens_today=10000, within_hourly_limit=True,
                          within_daily_token_limit=False, within_daily_cost_limit=True),
            "quota_exceeded", "tokens",
        ),
        (
            QuotaSnapshot(cost_today=50.0, within_hourly_limit=True,
                          within_daily_token_limit=True, within_daily_cost_limit=False),
            "quota_exceeded", "cost",
        ),
    ])
    def test_exceeded_ceiling_returns_429_without_side_effects(
        self, app, upstream, store, auth_headers, snapshot, code, dimension
    ):
        store.snapshot = snapshot

        with TestClient(app) as client:
            response = client.post(GENERATE_PATH, json=hello_request(), headers=auth_headers)

        assert response.status_code == 429
        error = response.json()["error"]
        assert error["code"] == code
        assert error["details"]["dimension"] == dimension
        assert datetime.fromisoformat(error["details"]["reset_at"]) > datetime.now(timezone.utc)
        assert int(response.headers["Retry-After"]) > 0
        assert upstream.requests == []
        assert store.records == []

    def test_hourly_ceiling_checked_before_daily(self, client, store, auth_headers):
        store.snapshot = QuotaSnapshot()

        response = client.post(GENERATE_PATH, json=hello_request(), headers=auth_headers)

        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limit_exceeded"
        assert response.headers["Retry-After"] == "3600"

    def test_limits_store_failure_admits_request(self, app, upstream, store, auth_headers):
        store.fail_limits = True

        with TestClient(app) as client:
            response = client.post(GENERATE_PATH, json=hello_request(), headers=auth_headers)

        assert response.status_code == 200
        assert len(upstream.requests) == 1
        assert len(store.records) == 1

    def test_higher_tier_gets_higher_hourly_ceiling(self, store):
        store.limits.requests_per_hour = 1
        store.set_tier(SubscriptionTier.PRO)

        assert store.requests_per_hour(TEST_USER_ID) == 1000


# ============================================================
# Validation
# ============================================================

class TestValidation:
    def test_unknown_model_returns_400_listing_allowed_models(self, client, upstream, store, auth_headers):
        response = client.post(
            "/api/gemini/gpt-4o/generateContent",
            json=hello_request(),
            headers=auth_headers,
        )

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "invalid_model"
        assert "gemini-1.5-flash" in error["details"]["allowed_models"]
        assert upstream.requests == []
        assert store.limit_checks == 0

    def test_non_embedding_model_rejected_on_embeddings(self, client, upstream, auth_headers):
        response = client.post(
            "/api/gemini/gemini-1.5-flash/embeddings",
            json=EMBED_BODY,
            headers=auth_headers,
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "unsupported_operation"
        assert upstream.requests == []

    def test_embedding_model_rejected_on_generate(self, client, upstream, auth_headers):
        response = client.post(
            "/api/gemini/gemini-embedding-001/generateContent",
            json=hello_request(),
            headers=auth_headers,
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "unsupported_operation"
        assert upstream.requests == []

    @pytest.mark.parametrize("body,param", [
        ({}, "contents"),
        ({"contents": [{"parts": [{"text": "hi"}]}], "generationConfig": {"temperature": 3}},
         "generationConfig.temperature"),
        ({"contents": [{"parts": [{"text": "hi"}]}], "generationConfig": {"topP": 1.5}},
         "generationConfig.topP"),
        ({"contents": [{"parts": [{"text": "hi"}]}], "generationConfig": {"maxOutputTokens": 9000}},
         "generationConfig.maxOutputTokens"),
        ({"contents": [{"parts": [{"text": "hi"}]}], "generationConfig": {"candidateCount": 2}},
         "generationConfig.candidateCount"),
        ({"contents": [{"role": "system", "parts": [{"text": "hi"}]}]}, "contents.0.role"),
    ])
    def test_invalid_payload_returns_400_before_quota(self, client, upstream, store, auth_headers, body, param):
        response = client.post(GENERATE_PATH, json=body, headers=auth_headers)

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert error["param"].startswith(param)
        assert error["request_id"]
        assert upstream.requests == []
        assert store.limit_checks == 0

    def test_part_without_text_or_inline_data_rejected(self, client, upstream, auth_headers):
        response = client.post(
            GENERATE_PATH,
            json={"contents": [{"parts": [{}]}]},
            headers=auth_headers,
        )

        assert response.status_code == 400
        assert response.json()["error"]["param"].startswith("contents.0.parts.0")
        assert upstream.requests == []

    def test_unknown_top_level_fields_are_forwarded(self, client, upstream, auth_headers):
        body = {**hello_request(), "tools": [{"functionDeclarations": []}]}

        response = client.post(GENERATE_PATH, json=body, headers=auth_headers)

        assert response.status_code == 200
        forwarded = json.loads(upstream.last_request.content)
        assert forwarded["tools"] == [{"functionDeclarations": []}]
        assert forwarded["contents"][0]["parts"][0]["text"] == "hello"

    def test_only_client_sent_fields_are_forwarded(self, client, upstream, auth_headers):
        body = {
            "contents": [{"parts": [{"text": "hello"}]}],
            "generationConfig": {"temperature": 0.5},
            "cachedContent": None,
        }

        client.post(GENERATE_PATH, json=body, headers=auth_headers)

        forwarded = json.loads(upstream.last_request.content)
        assert forwarded == body

    def test_count_tokens_accepts_empty_body(self, client, upstream, auth_headers):
        upstream.respond(200, json={"totalTokens": 0})

        response = client.post(COUNT_PATH, json={}, headers=auth_headers)

        assert response.status_code == 200


# ============================================================
# Generate content
# ============================================================

class TestGenerateContent:
    def test_cost_added_to_usage_metadata(self, app, upstream, store, auth_headers):
        upstream.respond(200, json=gemini_response(prompt=6, completion=3))

        with TestClient(app) as client:
            response = client.post(GENERATE_PATH, json=hello_request(), headers=auth_headers)

        assert response.status_code == 200
        metadata = response.json()["usageMetadata"]
        assert metadata["promptTokenCount"] == 6
        assert metadata["candidatesTokenCount"] == 3
        assert metadata["cost"] == 0.000001
        assert metadata["model"] == "gemini-1.5-flash"
        assert metadata["timestamp"]

        assert len(store.records) == 1
        record = store.records[0]
        assert record.user_id == TEST_USER_ID
        assert record.request_kind == RequestKind.GENERATE
        assert record.total_tokens == 9
        assert record.cost == pytest.approx(0.00000135)

    def test_standard_headers(self, client, auth_headers):
        response = client.post(
            GENERATE_PATH,
            json=hello_request(),
            headers={**auth_headers, "X-Request-ID": "req_fromclient"},
        )

        assert response.headers["X-User-ID"] == TEST_USER_ID
        assert response.headers["X-Model"] == "gemini-1.5-flash"
        assert response.headers["X-Request-ID"] == "req_fromclient"
        assert "X-Trace-Id" in response.headers

    def test_provider_headers_relayed(self, client, upstream, auth_headers):
        upstream.respond(200, json=gemini_response(), headers={"x-goog-trace": "abc"})

        response = client.post(GENERATE_PATH, json=hello_request(), headers=auth_headers)

        assert response.headers["x-goog-trace"] == "abc"
        assert response.headers["content-type"] == "application/json"
        # Body was re-serialized with cost added; length matches the new body
        assert int(response.headers["content-length"]) == len(response.content)

    def test_upstream_request_id_header_does_not_override_ours(self, client, upstream, auth_headers):
        upstream.respond(200, json=gemini_response(), headers={"x-request-id": "upstream-id"})

        response = client.post(
            GENERATE_PATH,
            json=hello_request(),
            headers={**auth_headers, "X-Request-ID": "req_fromclient"},
        )

        assert response.headers.get_list("x-request-id") == ["req_fromclient"]

    def test_upstream_request_carries_server_key_only(self, client, upstream, auth_headers):
        client.post(
            GENERATE_PATH,
            json=hello_request(),
            headers={**auth_headers, "x-goog-api-key": "client-key"},
        )

        sent = upstream.last_request
        assert sent.method == "POST"
        assert sent.url.path == "/v1beta/models/gemini-1.5-flash:generateContent"
        assert sent.url.params.get_list("key") == [GEMINI_TEST_KEY]
        assert "authorization" not in sent.headers
        assert "x-goog-api-key" not in sent.headers
        assert sent.headers["content-type"] == "application/json"

    def test_estimate_does_not_block_request(self, client, upstream, auth_headers):
        body = {"contents": [{"parts": [{"text": "x" * 100_000}]}]}

        response = client.post(GENERATE_PATH, json=body, headers=auth_headers)

        assert response.status_code == 200
        assert len(upstream.requests) == 1

    def test_missing_usage_metadata_falls_back_to_output_estimate(self, app, upstream, store, auth_headers):
        upstream.respond(200, json={
            "candidates": [{"content": {"parts": [{"text": "abcdefgh"}]}}],
        })

        with TestClient(app) as client:
            response = client.post(GENERATE_PATH, json=hello_request(), headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["usageMetadata"]["model"] == "gemini-1.5-flash"
        record = store.records[0]
        assert record.prompt_tokens == 0
        assert record.completion_tokens == 2
        assert record.total_tokens == 2

    def test_failing_usage_store_does_not_change_response(self, make_components, upstream, store, auth_headers):
        upstream.respond(200, json=gemini_response(prompt=6, completion=3))
        with TestClient(create_app(components=make_components())) as client:
            healthy = client.post(GENERATE_PATH, json=hello_request(), headers=auth_headers)

        store.fail_writes = True
        components = make_components()
        upstream.respond(200, json=gemini_response(prompt=6, completion=3))
        with TestClient(create_app(components=components)) as client:
            failing = client.post(GENERATE_PATH, json=hello_request(), headers=auth_headers)

        assert failing.status_code == healthy.status_code == 200
        failing_body, healthy_body = failing.json(), healthy.json()
        failing_body["usageMetadata"].pop("timestamp")
        healthy_body["usageMetadata"].pop("timestamp")
        assert failing_body == healthy_body

        dead = components.recorder.dead_letters
        assert len(dead) == 1
        assert dead[0].reason == DeadLetterReason.WRITE_FAILED

    def test_non_json_upstream_body_relayed_without_record(self, app, upstream, store, auth_headers):
        upstream.respond(200, content="plain text", headers={"content-type": "text/plain"})

        with TestClient(app) as client:
            response = client.post(GENERATE_PATH, json=hello_request(), headers=auth_headers)

        assert response.status_code == 200
        assert response.text == "plain text"
        assert store.records == []


# ============================================================
# Streaming
# ============================================================

class TestStreamGenerateContent:
    def test_chunks_relayed_and_usage_recorded(self, app, upstream, store, auth_headers):
        chunks = [
            {"candidates": [{"content": {"parts": [{"text": "Hel"}]}}]},
            {
                "candidates": [{"content": {"parts": [{"text": "lo"}]}}],
                "usageMetadata": {"promptTokenCount": 10, "candidatesTokenCount": 20, "totalTokenCount": 30},
            },
        ]
        body = json.dumps(chunks).encode()
        upstream.respond(200, content=body, headers={"content-type": "application/json"})

        with TestClient(app) as client:
            response = client.post(STREAM_PATH, json=hello_request(), headers=auth_headers)

        assert response.status_code == 200
        assert response.content == body
        assert response.headers["X-Model"] == "gemini-1.5-flash"

        assert len(store.records) == 1
        record = store.records[0]
        assert record.request_kind == RequestKind.STREAM
        assert record.total_tokens == 30

    def test_provider_headers_relayed(self, client, upstream, auth_headers):
        upstream.respond(200, content=b"[]", headers={
            "content-type": "application/json",
            "x-goog-trace": "abc",
        })

        response = client.post(STREAM_PATH, json=hello_request(), headers=auth_headers)

        assert response.headers["x-goog-trace"] == "abc"
        assert response.headers["X-Model"] == "gemini-1.5-flash"

    def test_sse_framing_passed_through(self, app, upstream, store, auth_headers):
        event = {"candidates": [{"content": {"parts": [{"text": "hi"}]}}],
                 "usageMetadata": {"promptTokenCount": 2, "candidatesTokenCount": 1, "totalTokenCount": 3}}
        body = f"data: {json.dumps(event)}\r\n\r\n".encode()
        upstream.respond(200, content=body, headers={"content-type": "text/event-stream"})

        with TestClient(app) as client:
            response = client.post(
                f"{STREAM_PATH}?alt=sse&key=client-key",
                json=hello_request(),
                headers=auth_headers,
            )

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.content == body

        sent = upstream.last_request
        assert sent.url.params["alt"] == "sse"
        assert sent.url.params.get_list("key") == [GEMINI_TEST_KEY]
        assert store.records[0].total_tokens == 3

    def test_upstream_error_before_first_byte_is_relayed(self, app, upstream, store, auth_headers):
        upstream.respond(429, json={"error": {"code": 429, "message": "Resource exhausted", "status": "RESOURCE_EXHAUSTED"}})

        with TestClient(app) as client:
            response = client.post(STREAM_PATH, json=hello_request(), headers=auth_headers)

        assert response.status_code == 429
        assert response.json()["error"]["code"] == "RESOURCE_EXHAUSTED"
        assert store.records == []


# ============================================================
# Count tokens and embeddings
# ============================================================

class TestCountTokens:
    def test_response_unmodified_and_zero_record_written(self, app, upstream, store, auth_headers):
        upstream.respond(200, json={"totalTokens": 2})

        with TestClient(app) as client:
            response = client.post(COUNT_PATH, json=hello_request(), headers=auth_headers)

        assert response.status_code == 200
        assert response.json() == {"totalTokens": 2}
        assert upstream.last_request.url.path == "/v1beta/models/gemini-1.5-flash:countTokens"

        record = store.records[0]
        assert record.request_kind == RequestKind.COUNT_TOKENS
        assert record.total_tokens == 0
        assert record.cost == 0


class TestEmbeddings:
    def test_input_tokens_estimated_from_request(self, app, upstream, store, auth_headers):
        upstream.respond(200, json={"embedding": {"values": [0.1, 0.2, 0.3]}})

        with TestClient(app) as client:
            response = client.post(EMBED_PATH, json=EMBED_BODY, headers=auth_headers)

        expected = math.ceil(len(json.dumps(EMBED_BODY, separators=(",", ":"))) / 4)

        assert response.status_code == 200
        data = response.json()
        assert data["embedding"]["values"] == [0.1, 0.2, 0.3]
        assert data["usageMetadata"]["inputTokens"] == expected
        assert data["usageMetadata"]["model"] == "gemini-embedding-001"
        assert upstream.last_request.url.path == "/v1beta/models/gemini-embedding-001:embedContent"

        record = store.records[0]
        assert record.request_kind == RequestKind.EMBEDDING
        assert record.prompt_tokens == expected
        assert record.completion_tokens == 0

    def test_legacy_embedding_model_uses_v1_embed_text(self, client, upstream, auth_headers):
        upstream.respond(200, json={"embedding": {"value": [0.5]}})

        response = client.post(
            "/api/gemini/text-embedding-004/embeddings",
            json={"text": "hello"},
            headers=auth_headers,
        )

        assert response.status_code == 200
        assert upstream.last_request.url.path == "/v1/models/text-embedding-004:embedText"


# ============================================================
# Upstream failures
# ============================================================

class TestUpstreamErrors:
    def test_gemini_error_body_relayed_with_status(self, app, upstream, store, auth_headers):
        upstream.respond(400, json={
            "error": {"code": 400, "message": "Invalid argument", "status": "INVALID_ARGUMENT"},
        })

        with TestClient(app) as client:
            response = client.post(GENERATE_PATH, json=hello_request(), headers=auth_headers)

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "INVALID_ARGUMENT"
        assert error["message"] == "Invalid argument"
        assert "provider" not in error
        assert store.records == []

    @pytest.mark.parametrize("exc_type,status", [
        (httpx.ReadTimeout, 504),
        (httpx.ConnectTimeout, 504),
        (httpx.ConnectError, 503),
        (httpx.RemoteProtocolError, 500),
    ])
    def test_transport_errors_mapped(self, client, upstream, auth_headers, exc_type, status):
        upstream.fail(exc_type)

        response = client.post(GENERATE_PATH, json=hello_request(), headers=auth_headers)

        assert response.status_code == status
        error = response.json()["error"]
        assert error["code"] == "connection_error"
        assert error["retryable"] is True
        assert GEMINI_TEST_KEY not in response.text

    @pytest.mark.parametrize("mode,has_detail", [("local", True), ("test", False)])
    def test_unexpected_error_returns_internal_error(self, make_components, monkeypatch, auth_headers, mode, has_detail):
        monkeypatch.setenv("MODE", mode)
        forwarder = MagicMock()
        forwarder.send = AsyncMock(side_effect=RuntimeError("boom"))
        app = create_app(components=make_components(forwarder=forwarder))

        with TestClient(app, raise_server_exceptions=False) as client:
            response = client.post(GENERATE_PATH, json=hello_request(), headers=auth_headers)

        assert response.status_code == 500
        error = response.json()["error"]
        assert error["code"] == "internal_error"
        assert ("details" in error) is has_detail
        if has_detail:
            assert error["details"]["exception"] == "RuntimeError"


# ============================================================
# Models, usage, health
# ============================================================

class TestAuxiliaryRoutes:
    def test_list_models_forwarded_without_quota_or_record(self, app, upstream, store, auth_headers):
        upstream.respond(200, json={"models": [{"name": "models/gemini-pro"}]})

        with TestClient(app) as client:
            response = client.get("/api/gemini/models", headers=auth_headers)

        assert response.status_code == 200
        assert response.json() == {"models": [{"name": "models/gemini-pro"}]}
        assert upstream.last_request.method == "GET"
        assert upstream.last_request.url.path == "/v1beta/models"
        assert store.limit_checks == 0
        assert store.records == []

    def test_list_models_relays_provider_headers(self, client, upstream, auth_headers):
        upstream.respond(200, json={"models": []}, headers={"x-goog-trace": "abc"})

        response = client.get("/api/gemini/models", headers=auth_headers)

        assert response.headers["x-goog-trace"] == "abc"

    def test_usage_report(self, client, store, auth_headers):
        asyncio.run(store.record_usage(UsageRecord(
            user_id=TEST_USER_ID,
            model="gemini-1.5-flash",
            request_kind=RequestKind.GENERATE,
            total_tokens=9,
            cost=0.00000135,
        )))

        response = client.get("/api/gemini/usage", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["usage"]["total_tokens"] == 9
        assert data["usage"]["requests_today"] == 1
        assert data["limits"]["within_hourly_limit"] is True
        assert data["timestamp"]

    def test_gemini_health_is_public(self, client):
        response = client.get("/api/gemini/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["service"] == "gemini-proxy"

    def test_root_health_ready_and_metrics(self, client):
        assert client.get("/health").json()["usage_recorder"]["running"] is True
        assert client.get("/ready").status_code == 200

        metrics = client.get("/metrics")
        assert metrics.status_code == 200
        assert "gemini_proxy_requests_total" in metrics.text

    def test_unknown_route_returns_json_404(self, client):
        response = client.get("/api/gemini/nope/nothing/here")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"
        assert response.headers["X-Request-Id"]
