"""
Prometheus metrics for the request pipeline.

Every metric lives on a registry owned by one ``MetricsRecorder`` instance,
which the pipeline receives at construction time.  Nothing is registered on
the prometheus_client global registry, so separate apps (and tests) never
share counters.

Metrics:
- ``http_request_duration_ms`` - histogram of request duration labelled by
  method, matched route template and final status code.
- ``http_rate_limited_total`` - requests rejected with 429, per class.
- ``event_loop_lag_seconds`` - scheduling delay sampled in the background.
- process / platform / GC collectors from prometheus_client (memory, CPU,
  open file descriptors, interpreter info).
"""

import asyncio
import contextlib
import logging
from typing import Optional, Tuple

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    GCCollector,
    Histogram,
    PlatformCollector,
    ProcessCollector,
    generate_latest,
)

logger = logging.getLogger(__name__)

DURATION_BUCKETS_MS = (50, 100, 200, 300, 400, 500, 1000, 2000)
LAG_SAMPLE_INTERVAL = 1.0


class MetricsRecorder:
    """
    Owns the metric registry and the background process sampler.

    Parameters
    ----------
    registry : CollectorRegistry, optional
        Registry to populate; a fresh one is created when omitted.
    collect_process_metrics : bool
        Register the default process, platform and GC collectors.
    """

    def __init__(
        self,
        registry: Optional[CollectorRegistry] = None,
        collect_process_metrics: bool = True,
    ):
        self.registry = registry or CollectorRegistry()

        self.request_duration = Histogram(
            "http_request_duration_ms",
            "Duration of HTTP requests in ms",
            ["method", "route", "status"],
            buckets=DURATION_BUCKETS_MS,
            registry=self.registry,
        )
        self.rate_limited = Counter(
            "http_rate_limited_total",
            "Requests rejected by rate limiting (429s)",
            ["class"],
            registry=self.registry,
        )
        self.event_loop_lag = Gauge(
            "event_loop_lag_seconds",
            "Delay between a scheduled wake-up and the event loop running it",
            registry=self.registry,
        )

        if collect_process_metrics:
            ProcessCollector(registry=self.registry)
            PlatformCollector(registry=self.registry)
            GCCollector(registry=self.registry)

        self._sampler: Optional["asyncio.Task[None]"] = None

    # ── Recording ──

    def observe(self, method: str, route: str, status: int, duration_ms: float) -> None:
        self.request_duration.labels(method, route, str(status)).observe(duration_ms)

    def record_rejection(self, rate_class: str) -> None:
        self.rate_limited.labels(rate_class).inc()

    def render(self) -> Tuple[bytes, str]:
        """Current state in the Prometheus text exposition format."""
        return generate_latest(self.registry), CONTENT_TYPE_LATEST

    # ── Background sampling ──

    def start_background(self, interval: float = LAG_SAMPLE_INTERVAL) -> None:
        """Start sampling event-loop lag on the running loop (idempotent)."""
        if self._sampler is not None and not self._sampler.done():
            return
        self._sampler = asyncio.get_running_loop().create_task(
            self._sample_loop_lag(interval)
        )
        logger.debug("Event-loop lag sampler started (every %.1fs)", interval)

    async def stop_background(self) -> None:
        if self._sampler is None:
            return
        self._sampler.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._sampler
        self._sampler = None

    async def _sample_loop_lag(self, interval: float) -> None:
        loop = asyncio.get_running_loop()
        while True:
            scheduled = loop.time()
            await asyncio.sleep(interval)
            lag = loop.time() - scheduled - interval
            self.event_loop_lag.set(max(lag, 0.0))
