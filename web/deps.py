"""Orchestrator dependency for FastAPI.

Provides the application's single BuildOrchestrator to route handlers via
FastAPI dependency injection. The instance is created in the app lifespan.
"""

from __future__ import annotations

from typing import Any

from fastapi import Request

from bundle_imagegen.builds.service import BuildOrchestrator


def get_orchestrator(request: Request) -> BuildOrchestrator:
    """Get the build orchestrator from app state.

    Args:
        request: FastAPI request object.

    Returns:
        The application's build orchestrator.
    """
    orchestrator: Any = request.app.state.orchestrator
    return orchestrator  # type: ignore[no-any-return]
