"""FastAPI application factory and main app.

This module creates the FastAPI application with all routers and the
build orchestrator configured.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from bundle_imagegen import __version__
from bundle_imagegen.builds.retention import RetentionSweeper
from bundle_imagegen.builds.service import BuildOrchestrator
from bundle_imagegen.config import Settings, get_settings
from web.routers import builds, config, health

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    orchestrator: BuildOrchestrator | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Settings for the orchestrator (loaded from env if omitted).
        orchestrator: Pre-built orchestrator, mainly for tests.

    Returns:
        Configured FastAPI application.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Construct the orchestrator and retention sweeper for the app."""
        build_orchestrator = orchestrator or BuildOrchestrator(
            settings or get_settings()
        )
        sweeper = RetentionSweeper(build_orchestrator)
        app.state.orchestrator = build_orchestrator
        app.state.sweeper = sweeper
        await sweeper.start()
        try:
            yield
        finally:
            await sweeper.stop()
            await build_orchestrator.aclose()
            logger.info("Build orchestrator shut down")

    application = FastAPI(
        title="Bundle Image Builder API",
        description="HTTP API for building container images from source bundles",
        version=__version__,
        lifespan=lifespan,
    )

    # Include routers
    application.include_router(health.router, tags=["health"])
    application.include_router(config.router, prefix="/config", tags=["config"])
    application.include_router(builds.router, prefix="/builds", tags=["builds"])

    return application


# Create the default application instance
app = create_app()
