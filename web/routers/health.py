"""Health check endpoints."""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from bundle_imagegen import __version__
from bundle_imagegen.builds.service import BuildOrchestrator
from web.deps import get_orchestrator

router = APIRouter()


@router.get("/health")
async def health(
    orchestrator: BuildOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    """Health check endpoint.

    Returns:
        200 when the container runtime is usable, 503 otherwise.
    """
    if await orchestrator.health_check():
        return JSONResponse({"status": "healthy", "version": __version__})
    return JSONResponse(
        {"status": "unhealthy", "version": __version__}, status_code=503
    )


@router.get("/")
def root() -> dict[str, str]:
    """Root endpoint.

    Returns:
        API name and version.
    """
    return {"name": "Bundle Image Builder API", "version": __version__}
