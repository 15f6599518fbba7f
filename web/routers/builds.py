"""Build management endpoints.

- GET /builds - List builds
- GET /builds/{id} - Get build by ID
- POST /builds - Start a build
- DELETE /builds/{id} - Cancel a build
- POST /builds/{id}/push - Push a successful build to a registry
"""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi import status as http_status

from bundle_imagegen.builds.schema import BuildRequest, RegistryCredentials
from bundle_imagegen.builds.service import BuildOrchestrator
from bundle_imagegen.errors import (
    BuilderError,
    CapacityExceededError,
    InvalidInputError,
    InvalidStateError,
    NotFoundError,
    PushFailedError,
)
from bundle_imagegen.types import BuildStatus
from web.deps import get_orchestrator

router = APIRouter()


def _error(status_code: int, error: BuilderError) -> HTTPException:
    return HTTPException(
        status_code=status_code,
        detail={"code": error.code, "message": str(error)},
    )


def _not_found(build_id: str) -> HTTPException:
    return _error(http_status.HTTP_404_NOT_FOUND, NotFoundError(build_id))


@router.post("", status_code=http_status.HTTP_202_ACCEPTED)
async def start_build_endpoint(
    body: BuildRequest,
    request: Request,
    orchestrator: BuildOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Start a build from a bundle.

    Args:
        body: Build request.
        request: FastAPI request object.
        orchestrator: Build orchestrator.

    Returns:
        The new build id and the URL to poll for status.
    """
    try:
        build_id = await orchestrator.start(body)
    except CapacityExceededError as e:
        raise _error(http_status.HTTP_429_TOO_MANY_REQUESTS, e) from None
    except InvalidInputError as e:
        raise _error(http_status.HTTP_400_BAD_REQUEST, e) from None

    return {
        "build_id": build_id,
        "status": BuildStatus.PENDING.value,
        "status_url": str(request.url_for("get_build_endpoint", build_id=build_id)),
    }


@router.get("")
async def list_builds_endpoint(
    status: str | None = Query(None, description="Filter by status"),
    include_logs: bool = Query(False, description="Include build logs"),
    orchestrator: BuildOrchestrator = Depends(get_orchestrator),
) -> list[dict[str, Any]]:
    """List builds, newest first.

    Args:
        status: Filter by status.
        include_logs: Include build logs.
        orchestrator: Build orchestrator.

    Returns:
        List of build snapshots.
    """
    status_filter: BuildStatus | None = None
    if status:
        try:
            status_filter = BuildStatus(status)
        except ValueError:
            raise HTTPException(
                status_code=http_status.HTTP_400_BAD_REQUEST,
                detail={
                    "code": "invalid_status",
                    "message": f"Invalid status: {status}. Valid values: pending, building, success, failed",
                },
            ) from None

    snapshots = orchestrator.list_builds(status=status_filter, include_log=include_logs)
    return [s.model_dump(mode="json") for s in snapshots]


@router.get("/{build_id}")
async def get_build_endpoint(
    build_id: str,
    orchestrator: BuildOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Get a build by ID.

    Raises:
        HTTPException: If build not found.
    """
    snapshot = orchestrator.status(build_id)
    if snapshot is None:
        raise _not_found(build_id)
    return snapshot.model_dump(mode="json")


@router.delete("/{build_id}")
async def cancel_build_endpoint(
    build_id: str,
    orchestrator: BuildOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Cancel a build.

    Cancelling a finished build is accepted and leaves it unchanged.

    Raises:
        HTTPException: If build not found.
    """
    if not orchestrator.cancel(build_id):
        raise _not_found(build_id)
    snapshot = orchestrator.status(build_id)
    return {
        "build_id": build_id,
        "status": snapshot.status.value if snapshot else BuildStatus.FAILED.value,
        "message": "Build cancelled",
    }


@router.post("/{build_id}/push")
async def push_build_endpoint(
    build_id: str,
    registry: RegistryCredentials,
    orchestrator: BuildOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Push a successful build to a registry.

    Args:
        build_id: Build ID.
        registry: Registry address and credentials.
        orchestrator: Build orchestrator.

    Returns:
        The registry-qualified tag.
    """
    try:
        reference = await orchestrator.push(build_id, registry)
    except NotFoundError as e:
        raise _error(http_status.HTTP_404_NOT_FOUND, e) from None
    except InvalidStateError as e:
        raise _error(http_status.HTTP_409_CONFLICT, e) from None
    except InvalidInputError as e:
        raise _error(http_status.HTTP_400_BAD_REQUEST, e) from None
    except PushFailedError as e:
        raise _error(http_status.HTTP_502_BAD_GATEWAY, e) from None

    return {"build_id": build_id, "registry_tag": reference}
