"""
In-memory fixed-window rate limiting.

Each rate-limit class ("global", "auth") has its own per-minute ceiling and
keeps one window per client key.  A window opens on the first request after
the previous one expired; requests are admitted while the admitted count is
below the ceiling and rejected afterwards until the window expires.

A ceiling of ``0`` disables the class: every call is admitted and no state
is kept.

State is process-local.  It is not shared between instances and does not
survive a restart.
"""

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Mapping, Tuple

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60.0


class RateLimitClass(str, Enum):
    """Independent admission classes; AUTH is layered on top of GLOBAL."""

    GLOBAL = "global"
    AUTH = "auth"


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of one admission check plus the values for rate-limit headers."""

    allowed: bool
    limit: int
    remaining: int
    reset_after: float

    @property
    def limited(self) -> bool:
        """True when the class is enforced (a ceiling above zero)."""
        return self.limit > 0


class _Window:
    __slots__ = ("count", "expires_at")

    def __init__(self, expires_at: float):
        self.count = 0
        self.expires_at = expires_at


class FixedWindowRateLimiter:
    """
    Fixed-window counter per ``(class, client)``.

    Parameters
    ----------
    ceilings : Mapping[RateLimitClass, int]
        Admitted requests per window for each class; ``0`` disables it.
    window_seconds : float
        Window length, 60 seconds for per-minute ceilings.
    clock : Callable[[], float]
        Monotonic time source, replaceable in tests.
    """

    def __init__(
        self,
        ceilings: Mapping[RateLimitClass, int],
        window_seconds: float = WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._ceilings = dict(ceilings)
        self._window_seconds = window_seconds
        self._clock = clock
        self._windows: Dict[Tuple[RateLimitClass, str], _Window] = {}
        self._lock = threading.Lock()
        self._next_sweep = clock() + window_seconds

    def ceiling(self, rate_class: RateLimitClass) -> int:
        return self._ceilings.get(rate_class, 0)

    def admit(self, rate_class: RateLimitClass, client_key: str) -> RateLimitDecision:
        """
        Record one request for ``client_key`` in ``rate_class``.

        Rejected requests do not count towards the window, so the admitted
        count never exceeds the ceiling.
        """
        ceiling = self.ceiling(rate_class)
        if ceiling <= 0:
            return RateLimitDecision(allowed=True, limit=0, remaining=0, reset_after=0.0)

        with self._lock:
            now = self._clock()
            if now >= self._next_sweep:
                self._sweep(now)

            key = (rate_class, client_key)
            window = self._windows.get(key)
            if window is None or now >= window.expires_at:
                window = _Window(now + self._window_seconds)
                self._windows[key] = window

            allowed = window.count < ceiling
            if allowed:
                window.count += 1

            return RateLimitDecision(
                allowed=allowed,
                limit=ceiling,
                remaining=ceiling - window.count,
                reset_after=max(window.expires_at - now, 0.0),
            )

    def reset(self) -> None:
        """Drop every window."""
        with self._lock:
            self._windows.clear()

    def active_windows(self) -> int:
        with self._lock:
            return len(self._windows)

    def _sweep(self, now: float) -> None:
        """Forget expired windows so memory tracks only active clients."""
        expired = [key for key, window in self._windows.items() if now >= window.expires_at]
        for key in expired:
            del self._windows[key]
        self._next_sweep = now + self._window_seconds
        if expired:
            logger.debug("Swept %d expired rate-limit windows", len(expired))
