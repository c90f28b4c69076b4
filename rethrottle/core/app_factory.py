"""Application factory for the FastAPI app.

Centralizes app construction (middleware, handlers, routers, lifespan) so
tests can build apps around their own throttle engine.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from rethrottle.api.routes import demo_router, health_router
from rethrottle.core.config import Settings, settings
from rethrottle.core.exception_handlers import setup_exception_handlers
from rethrottle.core.logging import configure_logging
from rethrottle.core.middleware import build_request_id_middleware
from rethrottle.services.throttle_service import ThrottleEngine, build_throttle_engine

logger = logging.getLogger(__name__)


def create_app(
    engine: ThrottleEngine | None = None,
    app_settings: Settings | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application instance.

    Args:
        engine: Throttle engine to install; built from settings when omitted.
        app_settings: Settings container; defaults to global settings.

    Returns:
        Configured FastAPI app. The counter store is connected during
        startup, and an unreachable store aborts startup.
    """
    cfg = app_settings or settings

    # Logging first so subsequent init logs are formatted as desired
    configure_logging(cfg.log)

    throttle_engine = engine or build_throttle_engine(cfg)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await throttle_engine.start()
        logger.info(
            "throttle.started",
            extra={
                "enabled": throttle_engine.enabled,
                "limit": throttle_engine.config.max_requests_per_interval,
                "window_s": throttle_engine.config.interval_in_seconds,
            },
        )
        try:
            yield
        finally:
            await throttle_engine.close()

    app = FastAPI(
        title="reThrottle",
        description="Per-client request throttling backed by a volatile Redis counter store.",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.throttle_engine = throttle_engine

    # Last registered runs first: request ids wrap the throttle step
    app.middleware("http")(throttle_engine.throttle)
    app.middleware("http")(build_request_id_middleware(cfg.log))

    setup_exception_handlers(app)

    app.include_router(demo_router)
    app.include_router(health_router)

    return app
