"""
Response schemas for the service routes and the error envelope.

Declared so the OpenAPI document reflects the real payloads, error cases
included; the handlers in ``sentinel.core.exceptions`` build the same shapes.
"""

from typing import List, Optional

from pydantic import BaseModel, Field


class RootResponse(BaseModel):
    name: str
    message: str = "Service is running"
    health: str = "/healthz"
    ready: str = "/readyz"
    version: str = "/version"
    ts: int = Field(..., description="Epoch milliseconds")


class HealthResponse(BaseModel):
    """Liveness payload; always ``ok`` while the process can answer."""

    ok: bool = True
    uptime: float = Field(..., description="Seconds since the app was created")
    ts: int = Field(..., description="Epoch milliseconds")


class ReadyResponse(BaseModel):
    ok: bool


class VersionResponse(BaseModel):
    service: str
    env: str
    runtime: str = Field(..., examples=["CPython 3.12.4"])
    commit: Optional[str] = None


class ErrorResponse(BaseModel):
    """
    Standard error envelope returned by the error handler.

    ``stack`` is only present outside production.
    """

    error: str = Field(..., description="Human-readable error description")
    requestId: Optional[str] = Field(None, description="Correlation id of the request")
    stack: Optional[str] = None


class NotFoundResponse(BaseModel):
    error: str = "Not Found"
    path: str
    requestId: Optional[str] = None


class ValidationErrorDetail(BaseModel):
    """Single field-level validation failure."""

    field: str = Field(
        ...,
        description="Dot-separated path to the invalid field",
        examples=["body -> password"],
    )
    message: str = Field(
        ...,
        description="Explanation of the validation failure",
        examples=["Field required"],
    )


class ValidationErrorResponse(BaseModel):
    error: str = "Validation failed"
    details: List[ValidationErrorDetail]
    requestId: Optional[str] = None


class RateLimitedResponse(BaseModel):
    error: str = "Too Many Requests"
    message: str
    requestId: Optional[str] = None
