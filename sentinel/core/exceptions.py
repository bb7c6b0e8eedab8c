"""
Error taxonomy and global exception handlers.

Every error response follows one JSON envelope and always carries the
correlation id of the request::

    {
        "error": "<human-readable description>",
        "requestId": "<correlation id>",
        "stack": "<traceback, outside production only>"
    }

Unmatched routes get ``{"error": "Not Found", "path": ..., "requestId": ...}``.
Configuration problems never reach a client: ``ConfigurationError`` aborts
startup instead.
"""

import logging
import traceback
from typing import TYPE_CHECKING, Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

if TYPE_CHECKING:
    from sentinel.core.config import ServiceConfig

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


# ────────────────────────────────────────────────────────────────────────────
# Exceptions
# ────────────────────────────────────────────────────────────────────────────


class AppException(Exception):
    """Error raised by route handlers with a declared HTTP status."""

    def __init__(self, status_code: int, message: str, details: Any = None):
        self.status_code = status_code
        self.message = message
        self.details = details
        super().__init__(message)


class ConfigurationError(Exception):
    """The environment holds a value the service cannot start with."""


# ────────────────────────────────────────────────────────────────────────────
# Response builders
# ────────────────────────────────────────────────────────────────────────────


def request_id_of(request: Request) -> Optional[str]:
    """Correlation id attached by ``CorrelationMiddleware`` (None before it ran)."""
    return getattr(request.state, "request_id", None)


def error_status(exc: BaseException) -> int:
    """Declared status of ``exc`` (``status_code`` or ``status``), else 500."""
    for attr in ("status_code", "status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int) and 400 <= value <= 599:
            return value
    return 500


def _message(exc: BaseException) -> str:
    message = getattr(exc, "message", None) or getattr(exc, "detail", None) or str(exc)
    return str(message) if message else "Internal Server Error"


def _respond(
    request: Request,
    status_code: int,
    content: Dict[str, Any],
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    request_id = request_id_of(request)
    content["requestId"] = request_id
    response = JSONResponse(status_code=status_code, content=content, headers=headers)
    if request_id:
        response.headers[REQUEST_ID_HEADER] = request_id
    return response


def not_found_response(request: Request, message: str = "Not Found") -> JSONResponse:
    return _respond(request, 404, {"error": message, "path": request.url.path})


def error_response(
    request: Request, exc: BaseException, config: "ServiceConfig"
) -> JSONResponse:
    """
    Map a handler failure onto the error envelope.

    The failure is logged with its traceback server-side in every tier; the
    ``stack`` field is only sent to the client outside production.
    """
    status_code = error_status(exc)
    log = logger.error if status_code >= 500 else logger.warning
    log(
        "Request failed on %s %s: %s",
        request.method,
        request.url.path,
        exc,
        exc_info=(type(exc), exc, exc.__traceback__),
        extra={"request_id": request_id_of(request), "status_code": status_code},
    )

    content: Dict[str, Any] = {"error": _message(exc)}
    if not config.is_production:
        content["stack"] = "".join(
            traceback.format_exception(type(exc), exc, exc.__traceback__)
        )
    return _respond(request, status_code, content)


# ────────────────────────────────────────────────────────────────────────────
# FastAPI exception handler registration
# ────────────────────────────────────────────────────────────────────────────


def add_exception_handlers(app: FastAPI, config: "ServiceConfig") -> None:
    """Register the not-found, validation and error handlers on ``app``."""

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
        request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        """Unmatched routes (404) and other framework-raised HTTP errors."""
        if exc.status_code == 404:
            return not_found_response(request, str(exc.detail or "Not Found"))
        return _respond(
            request,
            exc.status_code,
            {"error": str(exc.detail)},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """
        Handle Pydantic / FastAPI request-validation errors.

        Returns a 422 with a concise list of validation issues so the caller
        knows exactly which fields failed and why.
        """
        errors = []
        for err in exc.errors():
            loc = " -> ".join(str(part) for part in err["loc"])
            errors.append({"field": loc, "message": err["msg"]})
        return _respond(
            request, 422, {"error": "Validation failed", "details": errors}
        )

    @app.exception_handler(AppException)
    async def app_exception_handler(
        request: Request, exc: AppException
    ) -> JSONResponse:
        return error_response(request, exc, config)

    @app.exception_handler(Exception)
    async def global_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        """
        Catch-all for failures raised outside the error-handler stage,
        i.e. by a middleware stage itself.
        """
        return error_response(request, exc, config)
