"""
Unit tests for the individual pipeline stages.

Tests cover:
- Correlation id generation and reuse
- Security headers (per tier, CSP and HSTS toggles, handler overrides)
- Rate-limit headers, auth-path scoping and layering with the global class
- Client address resolution behind a proxy
- CORS headers
"""

import uuid

import pytest
from fastapi import APIRouter
from fastapi.responses import JSONResponse
from starlette.requests import Request

from sentinel.core.rate_limit import RateLimitDecision
from sentinel.middleware import (
    CONTENT_SECURITY_POLICY,
    STRICT_HEADERS,
    client_key,
    path_in_scope,
    rate_limit_headers,
)
from sentinel.pipeline import create_app

from .conftest import client_for, make_config


def _request(headers=None, client=("10.0.0.1", 5000), path="/") -> Request:
    scope = {
        "type": "http",
        "method": "GET",
        "path": path,
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": client,
        "query_string": b"",
    }
    return Request(scope)


def _auth_router() -> APIRouter:
    router = APIRouter()

    @router.post("/login")
    async def login():
        return {"token": "t"}

    @router.get("/auth/session")
    async def session():
        return {"ok": True}

    @router.get("/authority")
    async def authority():
        return {"ok": True}

    @router.get("/framed")
    async def framed():
        return JSONResponse({"ok": True}, headers={"X-Frame-Options": "SAMEORIGIN"})

    return router


# ────────────────────────────────────────────────────────────────────────────
# Correlation
# ────────────────────────────────────────────────────────────────────────────


class TestCorrelation:
    @pytest.mark.asyncio
    async def test_generates_uuid_when_absent(self, test_config):
        async with client_for(create_app(test_config)) as client:
            resp = await client.get("/healthz")
        request_id = resp.headers["X-Request-ID"]
        assert uuid.UUID(request_id).version == 4

    @pytest.mark.asyncio
    async def test_reuses_incoming_id_verbatim(self, test_config):
        async with client_for(create_app(test_config)) as client:
            resp = await client.get("/healthz", headers={"X-Request-ID": "abc-123"})
        assert resp.headers["X-Request-ID"] == "abc-123"

    @pytest.mark.asyncio
    async def test_header_name_is_case_insensitive(self, test_config):
        async with client_for(create_app(test_config)) as client:
            resp = await client.get("/healthz", headers={"x-request-id": "lower-1"})
        assert resp.headers["X-Request-ID"] == "lower-1"

    @pytest.mark.asyncio
    async def test_blank_id_is_replaced(self, test_config):
        async with client_for(create_app(test_config)) as client:
            resp = await client.get("/healthz", headers={"X-Request-ID": "   "})
        assert resp.headers["X-Request-ID"].strip()
        assert uuid.UUID(resp.headers["X-Request-ID"])

    @pytest.mark.asyncio
    async def test_ids_differ_between_requests(self, test_config):
        async with client_for(create_app(test_config)) as client:
            first = await client.get("/healthz")
            second = await client.get("/healthz")
        assert first.headers["X-Request-ID"] != second.headers["X-Request-ID"]

    @pytest.mark.asyncio
    async def test_not_found_carries_id(self, test_config):
        async with client_for(create_app(test_config)) as client:
            resp = await client.get("/missing", headers={"X-Request-ID": "nf-1"})
        assert resp.status_code == 404
        assert resp.headers["X-Request-ID"] == "nf-1"
        assert resp.json() == {"error": "Not Found", "path": "/missing", "requestId": "nf-1"}


# ────────────────────────────────────────────────────────────────────────────
# Security headers
# ────────────────────────────────────────────────────────────────────────────


class TestSecurityHeaders:
    @pytest.mark.asyncio
    async def test_production_sets_strict_csp_and_hsts(self, prod_config):
        async with client_for(create_app(prod_config)) as client:
            resp = await client.get("/healthz")
        for name, value in STRICT_HEADERS.items():
            assert resp.headers[name] == value
        assert resp.headers["Content-Security-Policy"] == CONTENT_SECURITY_POLICY
        assert resp.headers["Strict-Transport-Security"] == (
            "max-age=15552000; includeSubDomains"
        )

    @pytest.mark.asyncio
    async def test_hsts_max_age_configurable(self):
        config = make_config("production", HSTS_MAX_AGE=60)
        async with client_for(create_app(config)) as client:
            resp = await client.get("/healthz")
        assert resp.headers["Strict-Transport-Security"] == "max-age=60; includeSubDomains"

    @pytest.mark.asyncio
    async def test_development_has_strict_headers_only(self, dev_config):
        async with client_for(create_app(dev_config)) as client:
            resp = await client.get("/healthz")
        assert resp.headers["X-Content-Type-Options"] == "nosniff"
        assert "Content-Security-Policy" not in resp.headers
        assert "Strict-Transport-Security" not in resp.headers

    @pytest.mark.asyncio
    async def test_test_tier_has_no_security_headers(self, test_config):
        async with client_for(create_app(test_config)) as client:
            resp = await client.get("/healthz")
        assert "X-Frame-Options" not in resp.headers
        assert "X-Content-Type-Options" not in resp.headers

    @pytest.mark.asyncio
    async def test_handler_value_is_kept(self):
        config = make_config("production")
        async with client_for(create_app(config, routers=[_auth_router()])) as client:
            resp = await client.get("/framed")
        assert resp.headers["X-Frame-Options"] == "SAMEORIGIN"

    @pytest.mark.asyncio
    async def test_error_responses_are_hardened(self, prod_config):
        async with client_for(create_app(prod_config)) as client:
            resp = await client.get("/missing")
        assert resp.status_code == 404
        assert resp.headers["X-Content-Type-Options"] == "nosniff"


# ────────────────────────────────────────────────────────────────────────────
# Rate limiting
# ────────────────────────────────────────────────────────────────────────────


class TestPathScope:
    @pytest.mark.parametrize(
        "path, expected",
        [
            ("/auth", True),
            ("/auth/session", True),
            ("/login", True),
            ("/login/", True),
            ("/authority", False),
            ("/api/auth", False),
            ("/", False),
        ],
    )
    def test_segment_boundaries(self, path, expected):
        assert path_in_scope(path, ("/auth", "/login")) is expected


class TestClientKey:
    def test_peer_address_without_proxy_header(self):
        assert client_key(_request(), trust_proxy=True) == "10.0.0.1"

    def test_last_forwarded_hop_when_trusted(self):
        request = _request({"X-Forwarded-For": "203.0.113.9, 198.51.100.7"})
        assert client_key(request, trust_proxy=True) == "198.51.100.7"

    def test_forwarded_header_ignored_when_untrusted(self):
        request = _request({"X-Forwarded-For": "203.0.113.9"})
        assert client_key(request, trust_proxy=False) == "10.0.0.1"

    def test_missing_peer(self):
        assert client_key(_request(client=None), trust_proxy=False) == "unknown"


class TestRateLimitHeaders:
    def test_values(self):
        decision = RateLimitDecision(allowed=True, limit=10, remaining=7, reset_after=12.2)
        assert rate_limit_headers(decision) == {
            "RateLimit-Limit": "10",
            "RateLimit-Remaining": "7",
            "RateLimit-Reset": "13",
        }

    @pytest.mark.asyncio
    async def test_admitted_responses_carry_headers(self):
        config = make_config("production", RATE_LIMIT_DEFAULT_PER_MIN=5)
        async with client_for(create_app(config)) as client:
            first = await client.get("/healthz")
            second = await client.get("/healthz")
        assert first.headers["RateLimit-Limit"] == "5"
        assert first.headers["RateLimit-Remaining"] == "4"
        assert second.headers["RateLimit-Remaining"] == "3"
        assert 0 < int(first.headers["RateLimit-Reset"]) <= 60

    @pytest.mark.asyncio
    async def test_disabled_class_sends_no_headers(self, test_config):
        async with client_for(create_app(test_config)) as client:
            resp = await client.get("/healthz")
        assert "RateLimit-Limit" not in resp.headers

    @pytest.mark.asyncio
    async def test_rejection_body_and_headers(self):
        config = make_config("production", RATE_LIMIT_DEFAULT_PER_MIN=1)
        async with client_for(create_app(config)) as client:
            await client.get("/healthz")
            resp = await client.get("/healthz", headers={"X-Request-ID": "rl-1"})
        assert resp.status_code == 429
        assert resp.json() == {
            "error": "Too Many Requests",
            "message": "Too many requests, please try again later.",
            "requestId": "rl-1",
        }
        assert resp.headers["X-Request-ID"] == "rl-1"
        assert resp.headers["RateLimit-Remaining"] == "0"
        assert int(resp.headers["Retry-After"]) >= 1

    @pytest.mark.asyncio
    async def test_clients_behind_proxy_are_limited_separately(self):
        config = make_config("production", RATE_LIMIT_DEFAULT_PER_MIN=1)
        async with client_for(create_app(config)) as client:
            a = await client.get("/healthz", headers={"X-Forwarded-For": "203.0.113.1"})
            b = await client.get("/healthz", headers={"X-Forwarded-For": "203.0.113.2"})
            a_again = await client.get("/healthz", headers={"X-Forwarded-For": "203.0.113.1"})
        assert (a.status_code, b.status_code, a_again.status_code) == (200, 200, 429)


class TestAuthRateLimit:
    @pytest.mark.asyncio
    async def test_auth_paths_have_their_own_ceiling(self):
        config = make_config(
            "production", RATE_LIMIT_DEFAULT_PER_MIN=100, RATE_LIMIT_AUTH_PER_MIN=2
        )
        app = create_app(config, routers=[_auth_router()])
        async with client_for(app) as client:
            codes = [(await client.post("/login")).status_code for _ in range(3)]
            other = await client.get("/healthz")
        assert codes == [200, 200, 429]
        assert other.status_code == 200

    @pytest.mark.asyncio
    async def test_prefix_shares_segment_boundary_only(self):
        config = make_config("production", RATE_LIMIT_AUTH_PER_MIN=1)
        app = create_app(config, routers=[_auth_router()])
        async with client_for(app) as client:
            first = await client.get("/auth/session")
            second = await client.get("/auth/session")
            unrelated = await client.get("/authority")
        assert (first.status_code, second.status_code) == (200, 429)
        assert unrelated.status_code == 200

    @pytest.mark.asyncio
    async def test_global_ceiling_still_applies_to_auth_paths(self):
        config = make_config(
            "production", RATE_LIMIT_DEFAULT_PER_MIN=1, RATE_LIMIT_AUTH_PER_MIN=10
        )
        app = create_app(config, routers=[_auth_router()])
        async with client_for(app) as client:
            first = await client.post("/login")
            second = await client.post("/login")
        assert (first.status_code, second.status_code) == (200, 429)

    @pytest.mark.asyncio
    async def test_auth_headers_win_on_auth_paths(self):
        config = make_config(
            "production", RATE_LIMIT_DEFAULT_PER_MIN=100, RATE_LIMIT_AUTH_PER_MIN=10
        )
        app = create_app(config, routers=[_auth_router()])
        async with client_for(app) as client:
            resp = await client.post("/login")
        assert resp.headers["RateLimit-Limit"] == "10"

    @pytest.mark.asyncio
    async def test_custom_auth_paths(self):
        config = make_config(
            "production", RATE_LIMIT_AUTH_PER_MIN=1, RATE_LIMIT_AUTH_PATHS="/healthz"
        )
        async with client_for(create_app(config)) as client:
            first = await client.get("/healthz")
            second = await client.get("/healthz")
        assert (first.status_code, second.status_code) == (200, 429)


# ────────────────────────────────────────────────────────────────────────────
# CORS
# ────────────────────────────────────────────────────────────────────────────


class TestCors:
    @pytest.mark.asyncio
    async def test_wildcard_in_development(self, dev_config):
        async with client_for(create_app(dev_config)) as client:
            resp = await client.get("/healthz", headers={"Origin": "https://x.example"})
        assert resp.headers["access-control-allow-origin"] in ("*", "https://x.example")

    @pytest.mark.asyncio
    async def test_allow_list_in_production(self):
        config = make_config("production", CORS_ORIGINS="https://app.example")
        async with client_for(create_app(config)) as client:
            allowed = await client.get("/healthz", headers={"Origin": "https://app.example"})
            denied = await client.get("/healthz", headers={"Origin": "https://evil.example"})
        assert allowed.headers["access-control-allow-origin"] == "https://app.example"
        assert "access-control-allow-origin" not in denied.headers

    @pytest.mark.asyncio
    async def test_correlation_header_is_exposed(self, dev_config):
        async with client_for(create_app(dev_config)) as client:
            resp = await client.get("/healthz", headers={"Origin": "https://x.example"})
        assert "X-Request-ID" in resp.headers["access-control-expose-headers"]
