"""
Shared pytest fixtures.

Every test starts from a clean process environment (no recognised variable
set), so configuration always comes from the tier defaults plus whatever the
test passes explicitly.  Apps are exercised in-process through
``httpx.ASGITransport``; no socket is opened.
"""

from contextlib import asynccontextmanager

import pytest
from httpx import ASGITransport, AsyncClient

from sentinel.core.config import ServiceConfig, resolve
from sentinel.core.metrics import MetricsRecorder

RECOGNISED_VARIABLES = (
    "APP_ENV",
    "NODE_ENV",
    "SERVICE_NAME",
    "HOST",
    "PORT",
    "CORS_ORIGINS",
    "RATE_LIMIT_DEFAULT_PER_MIN",
    "RATE_LIMIT_PER_MINUTE",
    "RATE_LIMIT_AUTH_PER_MIN",
    "RATE_LIMIT_AUTHZ_PER_MINUTE",
    "RATE_LIMIT_AUTH_PATHS",
    "SECURITY_HEADERS",
    "ENABLE_CSP",
    "ENABLE_HSTS",
    "HSTS_MAX_AGE",
    "LOG_LEVEL",
    "LOG_PRETTY",
    "LOG_INCLUDE_BODIES",
    "TRUST_PROXY",
    "SHUTDOWN_GRACE_SECONDS",
    "GIT_COMMIT",
)


# ────────────────────────────────────────────────────────────────────────────
# Factory helpers
# ────────────────────────────────────────────────────────────────────────────


def make_config(env: str = "test", **overrides) -> ServiceConfig:
    """Resolve a configuration for ``env`` with explicit overrides."""
    return resolve(APP_ENV=env, **overrides)


@asynccontextmanager
async def client_for(app):
    """AsyncClient talking to ``app`` in-process."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


# ────────────────────────────────────────────────────────────────────────────
# Pytest fixtures
# ────────────────────────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def _clean_environment(monkeypatch):
    """Remove every recognised variable so tests never see the host's values."""
    for name in RECOGNISED_VARIABLES:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def test_config() -> ServiceConfig:
    return make_config("test")


@pytest.fixture()
def dev_config() -> ServiceConfig:
    return make_config("development")


@pytest.fixture()
def prod_config() -> ServiceConfig:
    return make_config("production")


@pytest.fixture()
def metrics() -> MetricsRecorder:
    """A recorder with its own registry and no process collectors."""
    return MetricsRecorder(collect_process_metrics=False)
