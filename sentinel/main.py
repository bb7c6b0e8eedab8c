"""
Nexus Sentinel - process entry-point.

Resolves the configuration snapshot once, initialises logging, composes the
request pipeline and hands it to the lifecycle controller, which serves
until a termination signal and returns the process exit status.

Run with ``python -m sentinel.main`` or the ``sentinel`` console script.
"""

import sys
from typing import Optional, Sequence

from fastapi import APIRouter

from sentinel.core.config import resolve
from sentinel.core.exceptions import ConfigurationError
from sentinel.core.lifecycle import Lifecycle, LifecycleController
from sentinel.core.logging import setup_logging
from sentinel.pipeline import ReadinessCheck, create_app


def run(
    routers: Sequence[APIRouter] = (),
    readiness_check: Optional[ReadinessCheck] = None,
) -> None:
    """Boot and serve; exits the process with the controller's status."""
    try:
        config = resolve()
    except ConfigurationError as exc:
        sys.exit(f"Refusing to start: {exc}")

    setup_logging(config)

    lifecycle = Lifecycle()
    app = create_app(
        config,
        routers=routers,
        readiness_check=readiness_check,
        lifecycle=lifecycle,
    )
    controller = LifecycleController(app, config, lifecycle)
    sys.exit(controller.run())


if __name__ == "__main__":
    run()
