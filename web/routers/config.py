"""Configuration endpoints."""

from typing import Any

from fastapi import APIRouter, Depends

from bundle_imagegen.builds.service import BuildOrchestrator
from web.deps import get_orchestrator

router = APIRouter()


@router.get("")
def get_config(
    orchestrator: BuildOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Get effective configuration.

    Returns:
        Current configuration as JSON.
    """
    settings = orchestrator.settings
    return {
        "work_dir": str(settings.work_dir),
        "blob_store_url": settings.blob_store_url,
        "runtime_command": settings.runtime_command,
        "image_name": settings.image_name,
        "default_namespace": settings.default_namespace,
        "log_level": settings.log_level,
        "max_concurrent_builds": settings.max_concurrent_builds,
        "active_builds": orchestrator.active_count,
        "build_timeout": settings.build_timeout,
        "blob_download_timeout": settings.blob_download_timeout,
        "retention": settings.retention,
        "cleanup_interval": settings.cleanup_interval,
    }
