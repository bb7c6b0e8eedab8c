"""
Service lifecycle: state machine and graceful shutdown.

States::

    RUNNING ──signal──▶ SHUTTING_DOWN ──drained──▶ CLOSED
                              │
                              └──grace timer elapsed──▶ forced exit (status 1)

``Lifecycle`` holds the state and the in-flight request count; the pipeline
consults it to refuse new work once shutdown begins.  ``LifecycleController``
owns the uvicorn server, turns SIGINT/SIGTERM into a single shutdown request
and races the drain against one cancellable grace timer.  In-flight requests
are never cancelled: either they all finish or the whole process exits.
"""

import asyncio
import os
import signal
import threading
from enum import Enum
from types import FrameType
from typing import TYPE_CHECKING, Any, Callable, Optional

import uvicorn

from sentinel.core.logging import get_lifecycle_logger

if TYPE_CHECKING:
    from sentinel.core.config import ServiceConfig

logger = get_lifecycle_logger()


class LifecycleState(str, Enum):
    """Process-wide serving state."""

    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    CLOSED = "closed"


class Lifecycle:
    """
    Thread-safe lifecycle state shared by the controller and the pipeline.

    Transitions only move forward; ``begin_shutdown`` is idempotent.
    """

    def __init__(self) -> None:
        # Reentrant: a signal handler may run while the loop thread holds it
        self._lock = threading.RLock()
        self._state = LifecycleState.RUNNING
        self._in_flight = 0

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def is_accepting(self) -> bool:
        return self._state is LifecycleState.RUNNING

    @property
    def in_flight(self) -> int:
        with self._lock:
            return self._in_flight

    def request_started(self) -> bool:
        """Admit one request; False once shutdown has begun."""
        with self._lock:
            if self._state is not LifecycleState.RUNNING:
                return False
            self._in_flight += 1
            return True

    def request_finished(self) -> None:
        with self._lock:
            self._in_flight = max(self._in_flight - 1, 0)

    def begin_shutdown(self) -> bool:
        """Move to SHUTTING_DOWN. Returns False if shutdown already began."""
        with self._lock:
            if self._state is not LifecycleState.RUNNING:
                return False
            self._state = LifecycleState.SHUTTING_DOWN
            return True

    def mark_closed(self) -> None:
        with self._lock:
            self._state = LifecycleState.CLOSED


class SignalAwareServer(uvicorn.Server):
    """uvicorn server whose SIGINT/SIGTERM handling is delegated to the controller."""

    def __init__(self, config: uvicorn.Config, controller: "LifecycleController"):
        super().__init__(config)
        self._controller = controller

    def handle_exit(self, sig: int, frame: Optional[FrameType]) -> None:
        self.should_exit = True
        self._controller.signal_received(sig)


def _signal_name(sig: int) -> str:
    try:
        return signal.Signals(sig).name
    except ValueError:
        return str(sig)


class LifecycleController:
    """
    Runs the HTTP server and coordinates graceful shutdown.

    Parameters
    ----------
    app : ASGI application
        The composed pipeline (``sentinel.pipeline.create_app``).
    config : ServiceConfig
        Supplies bind address and ``shutdown_grace_seconds``.
    lifecycle : Lifecycle
        State shared with the pipeline's shutdown gate.
    exit_func : Callable[[int], Any]
        Called with ``1`` when the grace timer elapses.  The timer runs on its
        own thread, so it fires even if a stuck handler blocks the event
        loop; ``os._exit`` by default for the same reason.
    server : optional
        Server object exposing ``serve()``, ``should_exit`` and ``started``;
        a ``SignalAwareServer`` is built when omitted.
    """

    def __init__(
        self,
        app: Any,
        config: "ServiceConfig",
        lifecycle: Lifecycle,
        exit_func: Callable[[int], Any] = os._exit,
        server: Optional[Any] = None,
    ):
        self.config = config
        self.lifecycle = lifecycle
        self.grace_seconds = float(config.shutdown_grace_seconds)
        self._exit = exit_func
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._grace_timer: Optional[threading.Timer] = None
        self.server = server or SignalAwareServer(
            uvicorn.Config(
                app,
                host=config.host,
                port=config.port,
                log_config=None,
                server_header=False,
                # The grace timer below is the only shutdown timeout
                timeout_graceful_shutdown=None,
            ),
            controller=self,
        )

    # ── Shutdown ──

    def signal_received(self, sig: int) -> None:
        """
        Entry point for SIGINT/SIGTERM.

        Runs inside the signal handler, so the shutdown itself is handed to the
        event loop rather than performed here.
        """
        loop = self._loop
        if loop is not None and loop.is_running():
            loop.call_soon_threadsafe(self.request_shutdown, sig)
        else:
            self.request_shutdown(sig)

    def request_shutdown(self, sig: int = signal.SIGTERM) -> None:
        """Begin draining.  A second call while already shutting down does nothing."""
        if not self.lifecycle.begin_shutdown():
            logger.debug("Shutdown already in progress; ignoring %s", _signal_name(sig))
            return

        logger.warning(
            "Shutdown initiated by %s: draining %d in-flight request(s), "
            "grace period %.0fs",
            _signal_name(sig),
            self.lifecycle.in_flight,
            self.grace_seconds,
            extra={"event": "shutdown.start", "signal": _signal_name(sig)},
        )
        self.server.should_exit = True
        self._arm_grace_timer()

    def _arm_grace_timer(self) -> None:
        if self._grace_timer is None:
            self._grace_timer = threading.Timer(self.grace_seconds, self._force_exit)
            self._grace_timer.daemon = True
            self._grace_timer.start()

    def _cancel_grace_timer(self) -> None:
        if self._grace_timer is not None:
            self._grace_timer.cancel()
            self._grace_timer = None

    def _force_exit(self) -> None:
        self._grace_timer = None
        logger.error(
            "Force exit after timeout: %d request(s) still in flight after %.0fs",
            self.lifecycle.in_flight,
            self.grace_seconds,
            extra={"event": "shutdown.forced"},
        )
        self._exit(1)

    # ── Serving ──

    async def serve(self) -> int:
        """Serve until shutdown completes; returns the process exit status."""
        self._loop = asyncio.get_running_loop()
        logger.warning(
            "Starting %s (%s) on http://%s:%d",
            self.config.service_name,
            self.config.env.value,
            self.config.host,
            self.config.port,
            extra={"event": "startup"},
        )
        try:
            await self.server.serve()
        except (OSError, RuntimeError) as exc:
            logger.error(
                "Error closing server: %s", exc, exc_info=True, extra={"event": "shutdown.error"}
            )
            return 1
        finally:
            self._cancel_grace_timer()

        if not self.server.started:
            logger.error("Server failed to start", extra={"event": "startup.failed"})
            return 1

        self.lifecycle.mark_closed()
        logger.warning("Server closed cleanly", extra={"event": "shutdown.complete"})
        return 0

    def run(self) -> int:
        return asyncio.run(self.serve())
