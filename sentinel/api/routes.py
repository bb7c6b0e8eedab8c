"""
Service routes mounted by the pipeline ahead of user routers:

- GET /          - service banner
- GET /healthz   - liveness
- GET /readyz    - readiness (injected check, enforced in production)
- GET /version   - build metadata
- GET /metrics   - Prometheus scrape endpoint
"""

import inspect
import logging
import time

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, Response

from sentinel.schemas.common import (
    HealthResponse,
    ReadyResponse,
    RootResponse,
    VersionResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Service"])


def _now_ms() -> int:
    return int(time.time() * 1000)


@router.get("/", response_model=RootResponse)
async def root(request: Request) -> RootResponse:
    return RootResponse(name=request.app.state.config.service_name, ts=_now_ms())


@router.get("/healthz", response_model=HealthResponse)
async def healthz(request: Request) -> HealthResponse:
    """Liveness probe: succeeds whenever the process can answer."""
    uptime = time.monotonic() - request.app.state.started_at
    return HealthResponse(ok=True, uptime=round(uptime, 3), ts=_now_ms())


@router.get(
    "/readyz",
    response_model=ReadyResponse,
    responses={503: {"model": ReadyResponse, "description": "Not ready (production only)"}},
)
async def readyz(request: Request):
    """
    Readiness probe.

    Runs the readiness check injected into ``create_app`` (sync or async,
    returning a bool).  A failing or raising check turns into a 503 in
    production only; other tiers always report ready.
    """
    check = request.app.state.readiness_check
    healthy = True
    if check is not None:
        try:
            result = check()
            if inspect.isawaitable(result):
                result = await result
            healthy = bool(result)
        except Exception:
            logger.exception("Readiness check raised")
            healthy = False

    if not healthy and request.app.state.config.is_production:
        return JSONResponse(status_code=503, content={"ok": False})
    return ReadyResponse(ok=True)


@router.get("/version", response_model=VersionResponse)
async def version(request: Request) -> VersionResponse:
    config = request.app.state.config
    return VersionResponse(
        service=config.service_name,
        env=config.env.value,
        runtime=config.build.runtime,
        commit=config.build.commit,
    )


@router.get("/metrics", include_in_schema=False)
async def metrics(request: Request) -> Response:
    body, content_type = request.app.state.metrics.render()
    return Response(content=body, media_type=content_type)
