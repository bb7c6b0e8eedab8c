"""
Application configuration module.

Resolves one immutable ``ServiceConfig`` snapshot from environment variables
(or a .env file) using pydantic-settings.  Every option is optional: when a
variable is absent its value comes from the tier default table below, so the
running service never sees an "undefined" setting.

The only failure mode is a numeric option that is not a non-negative integer,
which aborts startup with a ``ConfigurationError`` naming the variable.
"""

import platform
from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Literal, Optional, Tuple, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from sentinel.core.exceptions import ConfigurationError

ANY_ORIGIN = "*"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}

# pino-style names are accepted alongside the stdlib ones
_LEVEL_ALIASES = {
    "TRACE": "DEBUG",
    "DEBUG": "DEBUG",
    "INFO": "INFO",
    "WARN": "WARNING",
    "WARNING": "WARNING",
    "ERROR": "ERROR",
    "FATAL": "CRITICAL",
    "CRITICAL": "CRITICAL",
}


class Environment(str, Enum):
    """Deployment tier; selects the default for every unset option."""

    PRODUCTION = "production"
    DEVELOPMENT = "development"
    TEST = "test"


# ────────────────────────────────────────────────────────────────────────────
# Tier defaults
# ────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class TierDefaults:
    """Values used for options the environment leaves unset."""

    service_name: str
    cors_origins: str
    rate_limit_global: int
    rate_limit_auth: int
    security_headers: bool
    enable_csp: bool
    enable_hsts: bool
    log_level: str
    log_pretty: bool
    log_include_bodies: bool


TIER_DEFAULTS: Dict[Environment, TierDefaults] = {
    Environment.PRODUCTION: TierDefaults(
        service_name="nexus-sentinel",
        cors_origins="",
        rate_limit_global=100,
        rate_limit_auth=10,
        security_headers=True,
        enable_csp=True,
        enable_hsts=True,
        log_level="INFO",
        log_pretty=False,
        log_include_bodies=False,
    ),
    Environment.DEVELOPMENT: TierDefaults(
        service_name="local-dev",
        cors_origins=ANY_ORIGIN,
        rate_limit_global=1000,
        rate_limit_auth=0,
        security_headers=True,
        enable_csp=False,
        enable_hsts=False,
        log_level="DEBUG",
        log_pretty=True,
        log_include_bodies=True,
    ),
    Environment.TEST: TierDefaults(
        service_name="test-suite",
        cors_origins=ANY_ORIGIN,
        rate_limit_global=0,
        rate_limit_auth=0,
        security_headers=False,
        enable_csp=False,
        enable_hsts=False,
        log_level="ERROR",
        log_pretty=False,
        log_include_bodies=False,
    ),
}

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8000
DEFAULT_HSTS_MAX_AGE = 15552000  # 180 days
DEFAULT_SHUTDOWN_GRACE_SECONDS = 30
DEFAULT_AUTH_PATHS = "/auth,/login"


# ────────────────────────────────────────────────────────────────────────────
# Immutable snapshot
# ────────────────────────────────────────────────────────────────────────────


class RateLimitConfig(BaseModel):
    """Per-minute ceilings; ``0`` disables the class."""

    model_config = ConfigDict(frozen=True)

    global_per_min: int
    auth_per_min: int
    auth_paths: Tuple[str, ...]


class SecurityConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    enable_headers: bool
    enable_csp: bool
    enable_hsts: bool
    hsts_max_age: int


class LoggingConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    level: str
    pretty: bool
    include_bodies: bool


class BuildInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    commit: Optional[str]
    runtime: str


class ServiceConfig(BaseModel):
    """
    Configuration snapshot shared read-only by every component.

    Built once by :func:`resolve` at process start and injected into the
    pipeline; nothing else in the service reads the environment.
    """

    model_config = ConfigDict(frozen=True)

    env: Environment
    service_name: str
    host: str
    port: int
    cors_origins: Union[Literal["*"], FrozenSet[str]]
    rate_limit: RateLimitConfig
    security: SecurityConfig
    logging: LoggingConfig
    build: BuildInfo
    trust_proxy: bool = True
    shutdown_grace_seconds: int = DEFAULT_SHUTDOWN_GRACE_SECONDS

    @property
    def is_production(self) -> bool:
        return self.env is Environment.PRODUCTION

    @property
    def is_development(self) -> bool:
        return self.env is Environment.DEVELOPMENT

    @property
    def is_test(self) -> bool:
        return self.env is Environment.TEST

    @property
    def cors_allow_all(self) -> bool:
        return self.cors_origins == ANY_ORIGIN


# ────────────────────────────────────────────────────────────────────────────
# Environment source
# ────────────────────────────────────────────────────────────────────────────


class EnvSettings(BaseSettings):
    """
    Raw view of the recognised environment variables.

    Every field defaults to ``None`` meaning "not set"; empty strings are
    treated as unset too.  Numeric fields are validated here, which is where
    the fail-fast behaviour comes from.
    """

    APP_ENV: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("APP_ENV", "NODE_ENV")
    )
    SERVICE_NAME: Optional[str] = None
    HOST: Optional[str] = None
    PORT: Optional[int] = Field(default=None, ge=0, le=65535)

    # ── CORS ──
    # Comma-separated list of allowed origins, or "*" for all.
    CORS_ORIGINS: Optional[str] = None

    # ── Rate limiting (requests per minute, 0 disables) ──
    RATE_LIMIT_DEFAULT_PER_MIN: Optional[int] = Field(
        default=None,
        ge=0,
        validation_alias=AliasChoices("RATE_LIMIT_DEFAULT_PER_MIN", "RATE_LIMIT_PER_MINUTE"),
    )
    RATE_LIMIT_AUTH_PER_MIN: Optional[int] = Field(
        default=None,
        ge=0,
        validation_alias=AliasChoices(
            "RATE_LIMIT_AUTH_PER_MIN", "RATE_LIMIT_AUTHZ_PER_MINUTE"
        ),
    )
    RATE_LIMIT_AUTH_PATHS: Optional[str] = None

    # ── Security headers ──
    SECURITY_HEADERS: Optional[str] = None
    ENABLE_CSP: Optional[str] = None
    ENABLE_HSTS: Optional[str] = None
    HSTS_MAX_AGE: Optional[int] = Field(default=None, ge=0)

    # ── Logging ──
    LOG_LEVEL: Optional[str] = None
    LOG_PRETTY: Optional[str] = None
    LOG_INCLUDE_BODIES: Optional[str] = None

    # ── Misc ──
    TRUST_PROXY: Optional[str] = None
    SHUTDOWN_GRACE_SECONDS: Optional[int] = Field(default=None, ge=0)
    GIT_COMMIT: Optional[str] = None

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        env_ignore_empty=True,
        populate_by_name=True,
    )


def _flag(value: Optional[str], default: bool) -> bool:
    """Interpret a boolean-ish string; anything unrecognised keeps the default."""
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    return default


def _tier(value: Optional[str]) -> Environment:
    if value:
        try:
            return Environment(value.strip().lower())
        except ValueError:
            pass
    return Environment.DEVELOPMENT


def _level(value: Optional[str], default: str) -> str:
    if value is None:
        return default
    return _LEVEL_ALIASES.get(value.strip().upper(), default)


def _split(value: str) -> Tuple[str, ...]:
    return tuple(part.strip() for part in value.split(",") if part.strip())


def _origins(value: str) -> Union[Literal["*"], FrozenSet[str]]:
    origins = _split(value)
    if ANY_ORIGIN in origins:
        return ANY_ORIGIN
    return frozenset(origins)


def _describe(exc: ValidationError) -> str:
    problems = []
    for err in exc.errors():
        name = ".".join(str(part) for part in err["loc"])
        problems.append(
            f"{name} must be a non-negative integer (got {err.get('input')!r})"
        )
    return "; ".join(problems)


def resolve(**overrides: object) -> ServiceConfig:
    """
    Build the configuration snapshot from the process environment.

    Keyword ``overrides`` use the environment variable names (``PORT=8080``)
    and win over the environment.

    Raises ``ConfigurationError`` if a numeric option cannot be parsed as a
    non-negative integer.
    """
    try:
        raw = EnvSettings(**overrides)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid configuration: {_describe(exc)}") from exc

    env = _tier(raw.APP_ENV)
    defaults = TIER_DEFAULTS[env]

    def pick(value, default):
        return default if value is None else value

    return ServiceConfig(
        env=env,
        service_name=pick(raw.SERVICE_NAME, defaults.service_name),
        host=pick(raw.HOST, DEFAULT_HOST),
        port=pick(raw.PORT, DEFAULT_PORT),
        cors_origins=_origins(pick(raw.CORS_ORIGINS, defaults.cors_origins)),
        rate_limit=RateLimitConfig(
            global_per_min=pick(raw.RATE_LIMIT_DEFAULT_PER_MIN, defaults.rate_limit_global),
            auth_per_min=pick(raw.RATE_LIMIT_AUTH_PER_MIN, defaults.rate_limit_auth),
            auth_paths=_split(pick(raw.RATE_LIMIT_AUTH_PATHS, DEFAULT_AUTH_PATHS)),
        ),
        security=SecurityConfig(
            enable_headers=_flag(raw.SECURITY_HEADERS, defaults.security_headers),
            enable_csp=_flag(raw.ENABLE_CSP, defaults.enable_csp),
            enable_hsts=_flag(raw.ENABLE_HSTS, defaults.enable_hsts),
            hsts_max_age=pick(raw.HSTS_MAX_AGE, DEFAULT_HSTS_MAX_AGE),
        ),
        logging=LoggingConfig(
            level=_level(raw.LOG_LEVEL, defaults.log_level),
            pretty=_flag(raw.LOG_PRETTY, defaults.log_pretty),
            include_bodies=_flag(raw.LOG_INCLUDE_BODIES, defaults.log_include_bodies),
        ),
        build=BuildInfo(
            commit=raw.GIT_COMMIT,
            runtime=f"{platform.python_implementation()} {platform.python_version()}",
        ),
        trust_proxy=_flag(raw.TRUST_PROXY, True),
        shutdown_grace_seconds=pick(
            raw.SHUTDOWN_GRACE_SECONDS, DEFAULT_SHUTDOWN_GRACE_SECONDS
        ),
    )
