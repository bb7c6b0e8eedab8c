"""
Request pipeline stages.

Each stage is a Starlette ``BaseHTTPMiddleware`` (the metrics timer is plain
ASGI) that either continues to the next stage or short-circuits with its own
response.  The order they run in is fixed by ``sentinel.pipeline``:

- **Correlation**: every request/response carries an ``X-Request-ID``.
- **Request logging**: one structured start and one finish record.
- **Security headers**: strict browser headers, optional CSP and HSTS.
- **Shutdown gate**: refuses new work once shutdown has begun.
- **Rate limiting**: fixed-window ceilings, global and auth-scoped.
- **Metrics timer**: request duration into the Prometheus histogram.
- **Error handler**: turns handler failures into the error envelope.
"""

import json
import logging
import math
import time
import uuid
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Iterable, Optional, Tuple

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from sentinel.core.config import SecurityConfig, ServiceConfig
from sentinel.core.exceptions import REQUEST_ID_HEADER, error_response, request_id_of
from sentinel.core.lifecycle import Lifecycle
from sentinel.core.logging import redact, redact_response
from sentinel.core.metrics import MetricsRecorder
from sentinel.core.rate_limit import (
    FixedWindowRateLimiter,
    RateLimitClass,
    RateLimitDecision,
)

logger = logging.getLogger(__name__)
http_logger = logging.getLogger("sentinel.http")

MAX_LOGGED_BODY_BYTES = 1024 * 1024


@dataclass(frozen=True)
class RequestContext:
    """Per-request values shared by the later stages."""

    request_id: str
    started_at: float


def _context(request: Request) -> Optional[RequestContext]:
    return getattr(request.state, "context", None)


# ────────────────────────────────────────────────────────────────────────────
# Correlation
# ────────────────────────────────────────────────────────────────────────────


class CorrelationMiddleware(BaseHTTPMiddleware):
    """
    Assigns a correlation id to every request.

    - A non-blank ``X-Request-ID`` from the caller (gateway, load balancer)
      is reused verbatim.
    - Otherwise a new UUID4 is generated.
    - The id is stored on ``request.state`` and echoed on the response.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        incoming = request.headers.get(REQUEST_ID_HEADER)
        request_id = incoming if incoming and incoming.strip() else str(uuid.uuid4())
        request.state.request_id = request_id
        request.state.context = RequestContext(
            request_id=request_id, started_at=time.perf_counter()
        )

        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


# ────────────────────────────────────────────────────────────────────────────
# Request logging
# ────────────────────────────────────────────────────────────────────────────


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Emits ``request.start`` and ``request.finish`` records for every request.

    Headers (and JSON bodies when ``LOG_INCLUDE_BODIES`` is on) are redacted
    before they are attached to the record.
    """

    def __init__(self, app: ASGIApp, config: ServiceConfig):
        super().__init__(app)
        self._env = config.env.value
        self._service = config.service_name
        self._include_bodies = config.logging.include_bodies

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        context = _context(request)
        started_at = context.started_at if context else time.perf_counter()
        fields: Dict[str, Any] = {
            "request_id": request_id_of(request),
            "method": request.method,
            "path": request.url.path,
            "client_ip": request.client.host if request.client else None,
            "env": self._env,
            "service": self._service,
        }

        req: Dict[str, Any] = {"headers": dict(request.headers)}
        if self._include_bodies:
            body = await self._read_body(request)
            if body is not None:
                req["body"] = body
        http_logger.info(
            "request started",
            extra={**fields, "event": "request.start", "req": redact(req)},
        )

        try:
            response = await call_next(request)
        except Exception:
            http_logger.error(
                "request failed",
                extra={
                    **fields,
                    "event": "request.finish",
                    "status_code": 500,
                    "duration_ms": round((time.perf_counter() - started_at) * 1000, 2),
                },
            )
            raise

        body_iterator = response.body_iterator

        async def logged_body() -> AsyncIterator[Any]:
            try:
                async for chunk in body_iterator:
                    yield chunk
            finally:
                self._log_finish(fields, started_at, response)

        # Finish is logged once the last chunk has gone out
        response.body_iterator = logged_body()
        return response

    @staticmethod
    def _log_finish(fields: Dict[str, Any], started_at: float, response: Response) -> None:
        elapsed_ms = (time.perf_counter() - started_at) * 1000
        level = logging.ERROR if response.status_code >= 500 else logging.INFO
        http_logger.log(
            level,
            "request completed",
            extra={
                **fields,
                "event": "request.finish",
                "status_code": response.status_code,
                "duration_ms": round(elapsed_ms, 2),
                "res": redact_response({"headers": dict(response.headers)}),
            },
        )

    @staticmethod
    async def _read_body(request: Request) -> Optional[Any]:
        if "json" not in request.headers.get("content-type", ""):
            return None
        length = request.headers.get("content-length")
        if length is None or not length.isdigit() or int(length) > MAX_LOGGED_BODY_BYTES:
            return None
        raw = await request.body()
        if not raw:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            return "<invalid json>"


# ────────────────────────────────────────────────────────────────────────────
# Security headers
# ────────────────────────────────────────────────────────────────────────────

STRICT_HEADERS = {
    "Cross-Origin-Opener-Policy": "same-origin",
    "Cross-Origin-Resource-Policy": "same-origin",
    "Origin-Agent-Cluster": "?1",
    "Referrer-Policy": "no-referrer",
    "X-Content-Type-Options": "nosniff",
    "X-DNS-Prefetch-Control": "off",
    "X-Download-Options": "noopen",
    "X-Frame-Options": "DENY",
    "X-Permitted-Cross-Domain-Policies": "none",
    "X-XSS-Protection": "0",
}

CONTENT_SECURITY_POLICY = "; ".join(
    (
        "default-src 'self'",
        "base-uri 'self'",
        "font-src 'self' https: data:",
        "form-action 'self'",
        "frame-ancestors 'self'",
        "img-src 'self' data:",
        "object-src 'none'",
        "script-src 'self'",
        "script-src-attr 'none'",
        "style-src 'self' https: 'unsafe-inline'",
        "upgrade-insecure-requests",
    )
)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds hardening headers; handlers may still set their own values."""

    def __init__(self, app: ASGIApp, security: SecurityConfig):
        super().__init__(app)
        self._headers = dict(STRICT_HEADERS)
        if security.enable_csp:
            self._headers["Content-Security-Policy"] = CONTENT_SECURITY_POLICY
        if security.enable_hsts:
            self._headers["Strict-Transport-Security"] = (
                f"max-age={security.hsts_max_age}; includeSubDomains"
            )

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        response = await call_next(request)
        for name, value in self._headers.items():
            response.headers.setdefault(name, value)
        return response


# ────────────────────────────────────────────────────────────────────────────
# Shutdown gate
# ────────────────────────────────────────────────────────────────────────────


class ShutdownGateMiddleware(BaseHTTPMiddleware):
    """Refuses requests once shutdown began and counts the ones in flight."""

    def __init__(self, app: ASGIApp, lifecycle: Lifecycle):
        super().__init__(app)
        self._lifecycle = lifecycle

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if not self._lifecycle.request_started():
            return JSONResponse(
                status_code=503,
                content={
                    "error": "Service is shutting down",
                    "requestId": request_id_of(request),
                },
                headers={"Connection": "close"},
            )
        try:
            return await call_next(request)
        finally:
            self._lifecycle.request_finished()


# ────────────────────────────────────────────────────────────────────────────
# Rate limiting
# ────────────────────────────────────────────────────────────────────────────


def client_key(request: Request, trust_proxy: bool) -> str:
    """
    Address the limiter keys on.

    Behind one trusted proxy the caller is the last ``X-Forwarded-For`` hop
    (the one the proxy appended); otherwise the socket peer.
    """
    if trust_proxy:
        forwarded = request.headers.get("x-forwarded-for", "")
        hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
        if hops:
            return hops[-1]
    return request.client.host if request.client else "unknown"


def path_in_scope(path: str, prefixes: Iterable[str]) -> bool:
    """True if ``path`` equals a prefix or sits below it on a segment boundary."""
    for prefix in prefixes:
        base = prefix.rstrip("/")
        if path == base or path.startswith(base + "/"):
            return True
    return False


def rate_limit_headers(decision: RateLimitDecision) -> Dict[str, str]:
    return {
        "RateLimit-Limit": str(decision.limit),
        "RateLimit-Remaining": str(max(decision.remaining, 0)),
        "RateLimit-Reset": str(math.ceil(decision.reset_after)),
    }


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Applies one rate-limit class.

    With ``paths`` set the stage only considers requests under those
    prefixes (the auth class); otherwise every request (the global class).
    Rejections short-circuit with 429 before the metrics timer and the
    route handler.
    """

    def __init__(
        self,
        app: ASGIApp,
        limiter: FixedWindowRateLimiter,
        rate_class: RateLimitClass,
        metrics: MetricsRecorder,
        trust_proxy: bool = True,
        paths: Tuple[str, ...] = (),
    ):
        super().__init__(app)
        self._limiter = limiter
        self._class = rate_class
        self._metrics = metrics
        self._trust_proxy = trust_proxy
        self._paths = paths

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if self._paths and not path_in_scope(request.url.path, self._paths):
            return await call_next(request)

        decision = self._limiter.admit(self._class, client_key(request, self._trust_proxy))
        if not decision.limited:
            return await call_next(request)

        headers = rate_limit_headers(decision)
        if not decision.allowed:
            self._metrics.record_rejection(self._class.value)
            logger.info(
                "Rate limit exceeded (%s, limit %d/min)",
                self._class.value,
                decision.limit,
                extra={"request_id": request_id_of(request), "path": request.url.path},
            )
            headers["Retry-After"] = str(max(math.ceil(decision.reset_after), 1))
            return JSONResponse(
                status_code=429,
                content={
                    "error": "Too Many Requests",
                    "message": "Too many requests, please try again later.",
                    "requestId": request_id_of(request),
                },
                headers=headers,
            )

        response = await call_next(request)
        for name, value in headers.items():
            response.headers.setdefault(name, value)
        return response


# ────────────────────────────────────────────────────────────────────────────
# Metrics timer
# ────────────────────────────────────────────────────────────────────────────


def route_template(scope: Scope) -> str:
    """Matched route path (``/items/{item_id}``), or the raw path if unmatched."""
    route = scope.get("route")
    return getattr(route, "path", None) or scope.get("path", "")


class MetricsMiddleware:
    """
    Records one histogram observation per completed request.

    Plain ASGI rather than ``BaseHTTPMiddleware``: the timer stops when the
    last body chunk has been sent, so streamed responses are measured in
    full.  The scrape endpoint is excluded so scraping never reports on
    itself.
    """

    def __init__(
        self,
        app: ASGIApp,
        metrics: MetricsRecorder,
        exclude_paths: Tuple[str, ...] = ("/metrics",),
    ):
        self.app = app
        self._metrics = metrics
        self._exclude_paths = exclude_paths

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or scope.get("path") in self._exclude_paths:
            await self.app(scope, receive, send)
            return

        start = time.perf_counter()
        status_code = 500
        observed = False

        def observe() -> None:
            nonlocal observed
            if not observed:
                observed = True
                elapsed_ms = (time.perf_counter() - start) * 1000
                self._metrics.observe(
                    scope["method"], route_template(scope), status_code, elapsed_ms
                )

        async def send_wrapper(message: Message) -> None:
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)
            if message["type"] == "http.response.body" and not message.get("more_body", False):
                observe()

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            # Failed or abandoned responses still count, with the status sent so far
            observe()


# ────────────────────────────────────────────────────────────────────────────
# Error handler
# ────────────────────────────────────────────────────────────────────────────


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """
    Converts exceptions escaping the route handlers into the error envelope.

    Sits innermost so the resulting response still passes through the
    metrics, logging and correlation stages.
    """

    def __init__(self, app: ASGIApp, config: ServiceConfig):
        super().__init__(app)
        self._config = config

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        try:
            return await call_next(request)
        except Exception as exc:
            return error_response(request, exc, self._config)
