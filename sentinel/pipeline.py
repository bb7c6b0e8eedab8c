"""
Pipeline composition.

``create_app`` assembles the request pipeline from an explicit, ordered
stage list and mounts the service routes and any user routers behind it.
Request order (outermost first)::

    correlation → request logging → CORS → security headers → shutdown gate
    → global rate limit → auth rate limit → metrics timer → error handler
    → routes → not-found / error handlers

Correlation precedes logging so every record has an id; rate limiting
precedes the metrics timer so rejected requests are not counted as served
latency; the error handler is innermost so its responses are still timed,
logged and tagged.
"""

import logging
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Dict, List, NamedTuple, Optional, Sequence, Union

from fastapi import APIRouter, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from sentinel.api.routes import router as service_router
from sentinel.core.config import ServiceConfig
from sentinel.core.exceptions import REQUEST_ID_HEADER, add_exception_handlers
from sentinel.core.lifecycle import Lifecycle
from sentinel.core.metrics import MetricsRecorder
from sentinel.core.rate_limit import FixedWindowRateLimiter, RateLimitClass
from sentinel.middleware import (
    CorrelationMiddleware,
    ErrorHandlerMiddleware,
    MetricsMiddleware,
    RateLimitMiddleware,
    RequestLoggingMiddleware,
    SecurityHeadersMiddleware,
    ShutdownGateMiddleware,
)
from sentinel.schemas.common import (
    ErrorResponse,
    NotFoundResponse,
    RateLimitedResponse,
    ValidationErrorResponse,
)

logger = logging.getLogger(__name__)

ReadinessCheck = Callable[[], Union[bool, Awaitable[bool]]]

EXPOSED_HEADERS = [
    REQUEST_ID_HEADER,
    "RateLimit-Limit",
    "RateLimit-Remaining",
    "RateLimit-Reset",
    "Retry-After",
]

# Responses any route can produce, documented once for the whole app
COMMON_RESPONSES: Dict[Union[int, str], Dict[str, Any]] = {
    404: {"model": NotFoundResponse, "description": "No route matched"},
    422: {"model": ValidationErrorResponse, "description": "Request validation failed"},
    429: {"model": RateLimitedResponse, "description": "Rate limit exceeded"},
    500: {"model": ErrorResponse, "description": "Unhandled error"},
    503: {"model": ErrorResponse, "description": "Service is shutting down"},
}


class Stage(NamedTuple):
    """One pipeline stage: a middleware class and its constructor options."""

    name: str
    middleware: type
    options: Dict[str, Any]


def build_stages(
    config: ServiceConfig,
    lifecycle: Lifecycle,
    metrics: MetricsRecorder,
    rate_limiter: FixedWindowRateLimiter,
) -> List[Stage]:
    """Pipeline stages in request order."""
    stages = [
        Stage("correlation", CorrelationMiddleware, {}),
        Stage("request_logging", RequestLoggingMiddleware, {"config": config}),
        Stage(
            "cors",
            CORSMiddleware,
            {
                "allow_origins": ["*"] if config.cors_allow_all else sorted(config.cors_origins),
                "allow_credentials": True,
                "allow_methods": ["*"],
                "allow_headers": ["*"],
                "expose_headers": EXPOSED_HEADERS,
            },
        ),
    ]
    if config.security.enable_headers:
        stages.append(
            Stage("security_headers", SecurityHeadersMiddleware, {"security": config.security})
        )
    stages += [
        Stage("shutdown_gate", ShutdownGateMiddleware, {"lifecycle": lifecycle}),
        Stage(
            "global_rate_limit",
            RateLimitMiddleware,
            {
                "limiter": rate_limiter,
                "rate_class": RateLimitClass.GLOBAL,
                "metrics": metrics,
                "trust_proxy": config.trust_proxy,
            },
        ),
        Stage(
            "auth_rate_limit",
            RateLimitMiddleware,
            {
                "limiter": rate_limiter,
                "rate_class": RateLimitClass.AUTH,
                "metrics": metrics,
                "trust_proxy": config.trust_proxy,
                "paths": config.rate_limit.auth_paths,
            },
        ),
        Stage("metrics", MetricsMiddleware, {"metrics": metrics}),
        Stage("error_handler", ErrorHandlerMiddleware, {"config": config}),
    ]
    return stages


def create_app(
    config: ServiceConfig,
    *,
    routers: Sequence[APIRouter] = (),
    readiness_check: Optional[ReadinessCheck] = None,
    lifecycle: Optional[Lifecycle] = None,
    metrics: Optional[MetricsRecorder] = None,
    rate_limiter: Optional[FixedWindowRateLimiter] = None,
) -> FastAPI:
    """
    Build the FastAPI application for ``config``.

    ``routers`` hold the business routes and are mounted after the service
    routes.  Components not passed in are created here; pass them to share
    state with a ``LifecycleController`` or to inspect it in tests.
    """
    lifecycle = lifecycle or Lifecycle()
    metrics = metrics or MetricsRecorder()
    rate_limiter = rate_limiter or FixedWindowRateLimiter(
        {
            RateLimitClass.GLOBAL: config.rate_limit.global_per_min,
            RateLimitClass.AUTH: config.rate_limit.auth_per_min,
        }
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Run the background process-metrics sampler while serving."""
        metrics.start_background()
        yield
        await metrics.stop_background()

    app = FastAPI(
        title=config.service_name,
        version="1.0.0",
        debug=False,
        docs_url=None if config.is_production else "/docs",
        redoc_url=None,
        openapi_url=None if config.is_production else "/openapi.json",
        responses=COMMON_RESPONSES,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.lifecycle = lifecycle
    app.state.metrics = metrics
    app.state.rate_limiter = rate_limiter
    app.state.readiness_check = readiness_check
    app.state.started_at = time.monotonic()

    # add_middleware prepends, so the first stage is added last
    stages = build_stages(config, lifecycle, metrics, rate_limiter)
    for stage in reversed(stages):
        app.add_middleware(stage.middleware, **stage.options)

    add_exception_handlers(app, config)

    app.include_router(service_router)
    for router in routers:
        app.include_router(router)

    logger.debug(
        "Pipeline assembled: %s", " -> ".join(stage.name for stage in stages)
    )
    return app
