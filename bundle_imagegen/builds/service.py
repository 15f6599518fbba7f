"""Build service module.

This module provides the build orchestration API:
- start(): accept a build request under the concurrency ceiling
- status() / list_builds(): read-only snapshots with a progress estimate
- cancel(): terminate a build and clean up after it
- push(): log in, tag and push a successful build to a registry
- Lifecycle: context preparation -> recipe resolution -> supervised build

All state (records, running builds, slots) is owned by one
``BuildOrchestrator`` instance that is constructed explicitly at startup.
"""

from __future__ import annotations

import asyncio
import logging
import re
import shutil
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from bundle_imagegen import errors
from bundle_imagegen.blobstore import BlobStoreClient
from bundle_imagegen.builds.context import prepare_context
from bundle_imagegen.builds.models import BuildRecord, generate_build_id
from bundle_imagegen.builds.recipe import ensure_recipe
from bundle_imagegen.builds.runner import BuildOutcome, ProcessSupervisor
from bundle_imagegen.builds.schema import (
    BuildRequest,
    BuildSnapshot,
    RegistryCredentials,
)
from bundle_imagegen.config import Settings, get_settings
from bundle_imagegen.errors import (
    BuilderError,
    CapacityExceededError,
    ExternalToolUnavailableError,
    InvalidInputError,
    InvalidStateError,
    NotFoundError,
    PushFailedError,
    RuntimeCommandError,
)
from bundle_imagegen.types import BuildStatus, OutcomeKind

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Build cancelled by caller"

# Progress milestones found in runtime output (classic builder and BuildKit)
CONTEXT_MARKERS = ("Sending build context", "transferring context")
STEP_PATTERN = re.compile(r"^Step \d+/\d+|\[\s*\d+/\d+\]", re.MULTILINE)
DONE_MARKERS = ("Successfully built", "naming to")
PROGRESS_CAP = 95

CLASSIC_STEP_PATTERN = re.compile(r"Step (\d+/\d+)\s*:\s*(.+)")
BUILDKIT_STEP_PATTERN = re.compile(r"\[\s*(?:[\w.-]+\s+)?(\d+/\d+)\]\s*(.+)")

_OUTCOME_CODES = {
    OutcomeKind.FAILED: errors.BUILD_FAILED,
    OutcomeKind.TIMEOUT: errors.TIMEOUT,
    OutcomeKind.UNAVAILABLE: errors.RUNTIME_UNAVAILABLE,
}

_ERROR_CLASSES: dict[str, type[BuilderError]] = {
    errors.BUILD_FAILED: errors.BuildFailedError,
    errors.TIMEOUT: errors.BuildTimeoutError,
    errors.CANCELLED: errors.BuildCancelledError,
    errors.CONTEXT_PREPARATION_FAILED: errors.ContextPreparationError,
    errors.RUNTIME_UNAVAILABLE: errors.ExternalToolUnavailableError,
    errors.INVALID_INPUT: errors.InvalidInputError,
}


def estimate_progress(status: BuildStatus, log: list[str]) -> int:
    """Estimate build progress from log milestones.

    This is a heuristic: it only looks for well-known runtime output and
    never reports more than PROGRESS_CAP before the build has finished.

    Args:
        status: Current build status.
        log: Output chunks so far.

    Returns:
        Percentage between 0 and 100.
    """
    if status is BuildStatus.SUCCESS:
        return 100
    if status is not BuildStatus.BUILDING:
        return 0

    text = "".join(log)
    progress = 0
    if any(marker in text for marker in CONTEXT_MARKERS):
        progress = 10
    if STEP_PATTERN.search(text):
        progress = max(progress, 20)
    if any(marker in text for marker in DONE_MARKERS):
        progress = max(progress, 90)
    return min(progress, PROGRESS_CAP)


def current_step(status: BuildStatus, log: list[str]) -> str:
    """Describe the current build step for display."""
    if status is BuildStatus.PENDING:
        return "Queued"
    if status is BuildStatus.FAILED:
        return "Failed"
    if status is BuildStatus.SUCCESS:
        return "Completed"

    text = "".join(log)
    classic = CLASSIC_STEP_PATTERN.findall(text)
    if classic:
        number, instruction = classic[-1]
        return f"{number} : {instruction.strip()}"
    buildkit = BUILDKIT_STEP_PATTERN.findall(text)
    if buildkit:
        number, instruction = buildkit[-1]
        return f"{number} : {instruction.strip()}"
    return "Building"


def qualified_tag(
    image_tag: str,
    registry: RegistryCredentials,
    default_namespace: str,
) -> str:
    """Compose the registry-qualified reference for a local image tag.

    Returns:
        ``{registry}/{namespace}/{image-name}:{tag}``.
    """
    name, sep, tag = image_tag.rpartition(":")
    if not sep:
        name, tag = image_tag, "latest"
    namespace = registry.namespace or default_namespace
    return f"{registry.url}/{namespace}/{name}:{tag}"


def _coerce(model: type[Any], value: Any, what: str) -> Any:
    if isinstance(value, model):
        return value
    if value is None:
        raise InvalidInputError(f"{what} is required")
    try:
        return model.model_validate(value)
    except ValidationError as e:
        raise InvalidInputError(f"Invalid {what}: {e}") from e


class BuildOrchestrator:
    """Owns build records and drives builds through their lifecycle.

    Args:
        settings: Application settings.
        blob_client: Blob store client (created from settings if omitted).
        supervisor: Process supervisor (created from settings if omitted).
    """

    def __init__(
        self,
        settings: Settings | None = None,
        blob_client: BlobStoreClient | None = None,
        supervisor: ProcessSupervisor | None = None,
    ) -> None:
        if settings is None:
            settings = get_settings()
        self.settings = settings
        self.work_dir = settings.work_dir
        self.max_concurrent_builds = settings.max_concurrent_builds
        self.blob_client = blob_client or BlobStoreClient(
            settings.blob_store_url, timeout=settings.blob_download_timeout
        )
        self.supervisor = supervisor or ProcessSupervisor(
            runtime_command=settings.runtime_command,
            build_timeout=settings.build_timeout,
            kill_grace=settings.kill_grace,
        )

        self._records: dict[str, BuildRecord] = {}
        self._active: set[str] = set()
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._pushes: dict[str, list[str]] = {}
        self._push_locks: dict[str, asyncio.Lock] = {}

        self.work_dir.mkdir(parents=True, exist_ok=True)
        logger.info("Build directory initialized: %s", self.work_dir)

    @property
    def active_count(self) -> int:
        """Number of builds holding a concurrency slot."""
        return len(self._active)

    def workdir_for(self, build_id: str) -> Path:
        """Return the private working directory of a build."""
        return self.work_dir / build_id

    async def start(self, request: BuildRequest | Mapping[str, Any]) -> str:
        """Start a build.

        The concurrency check, slot reservation and record creation happen
        without yielding to the event loop, so concurrent callers cannot
        overshoot the ceiling.

        Args:
            request: Build request (model or plain mapping).

        Returns:
            The new build id.

        Raises:
            InvalidInputError: If the request is malformed.
            CapacityExceededError: If the concurrency ceiling is reached.
        """
        request = _coerce(BuildRequest, request, "build request")

        if len(self._active) >= self.max_concurrent_builds:
            raise CapacityExceededError(self.max_concurrent_builds)

        build_id = generate_build_id()
        while build_id in self._records:
            build_id = generate_build_id()

        record = BuildRecord(
            id=build_id,
            bundle_id=request.bundle_id,
            image_tag=f"{self.settings.image_name}:{build_id}",
        )
        self._records[build_id] = record
        self._active.add(build_id)

        logger.info("Starting build %s for bundle %s", build_id, request.bundle_id)
        task = asyncio.create_task(
            self._run_lifecycle(record, request), name=f"build-{build_id}"
        )
        self._tasks[build_id] = task
        task.add_done_callback(lambda _t, bid=build_id: self._forget_task(bid, _t))
        return build_id

    def _forget_task(self, build_id: str, task: asyncio.Task[None]) -> None:
        if self._tasks.get(build_id) is task:
            del self._tasks[build_id]

    async def _run_lifecycle(self, record: BuildRecord, request: BuildRequest) -> None:
        workdir = self.workdir_for(record.id)
        options = request.build_options
        try:
            try:
                src_dir = await prepare_context(
                    self.blob_client, request.bundle_id, workdir
                )
                recipe = await asyncio.to_thread(
                    ensure_recipe, src_dir, options.recipe if options else None
                )
            except BuilderError as e:
                logger.error("Build %s preparation failed: %s", record.id, e)
                record.mark_failed(str(e), e.code)
                return

            if not record.mark_building():
                return

            outcome = await self.supervisor.run_build(
                record.id,
                src_dir,
                recipe.path,
                record.image_tag,
                options,
                record.append_log,
            )
            self._apply_outcome(record, outcome)
        except asyncio.CancelledError:
            # cancel() already recorded the failure
            raise
        except Exception as e:
            logger.exception("Build %s crashed", record.id)
            record.mark_failed(f"Internal error: {e}", "internal_error")
        finally:
            self._release(record.id)
            self._remove_workdir(workdir)

        if record.is_succeeded() and request.registry is not None:
            await self._auto_push(record.id, request.registry)

    def _apply_outcome(self, record: BuildRecord, outcome: BuildOutcome) -> None:
        if outcome.success and outcome.image is not None:
            applied = record.mark_succeeded(
                outcome.image.image_id, outcome.image.size_bytes
            )
        else:
            applied = record.mark_failed(
                outcome.message or "Build failed",
                _OUTCOME_CODES.get(outcome.kind, errors.BUILD_FAILED),
            )
        if applied:
            logger.info(
                "Build %s finished: %s after %.1fs (%s)",
                record.id,
                record.status.value,
                outcome.duration,
                outcome.command,
            )
        else:
            logger.debug(
                "Build %s outcome %s ignored, record already %s",
                record.id,
                outcome.kind.value,
                record.status.value,
            )

    def _release(self, build_id: str) -> None:
        if build_id in self._active:
            self._active.discard(build_id)
            logger.debug(
                "Released build slot for %s (%d/%d in use)",
                build_id,
                len(self._active),
                self.max_concurrent_builds,
            )

    def _remove_workdir(self, workdir: Path) -> None:
        if not workdir.exists():
            return
        try:
            shutil.rmtree(workdir)
            logger.info("Cleaned up build directory: %s", workdir)
        except OSError as e:
            logger.warning("Failed to clean up build directory %s: %s", workdir, e)

    def _snapshot(self, record: BuildRecord, include_log: bool = True) -> BuildSnapshot:
        return BuildSnapshot(
            build_id=record.id,
            bundle_id=record.bundle_id,
            status=record.status,
            image_tag=record.image_tag,
            image_id=record.image_id,
            image_size_bytes=record.image_size_bytes,
            progress=estimate_progress(record.status, record.log),
            current_step=current_step(record.status, record.log),
            log=list(record.log) if include_log else [],
            started_at=record.started_at,
            ended_at=record.ended_at,
            error=record.error,
            error_code=record.error_code,
            pushes=list(self._pushes.get(record.id, [])),
        )

    def get_record(self, build_id: str) -> BuildRecord:
        """Get a build record by ID.

        Raises:
            NotFoundError: If the build is unknown.
        """
        record = self._records.get(build_id)
        if record is None:
            raise NotFoundError(build_id)
        return record

    def status(self, build_id: str) -> BuildSnapshot | None:
        """Get a snapshot of a build, or None if it is unknown."""
        record = self._records.get(build_id)
        if record is None:
            return None
        return self._snapshot(record)

    def list_builds(
        self,
        status: BuildStatus | None = None,
        include_log: bool = True,
    ) -> list[BuildSnapshot]:
        """List build snapshots, newest first.

        Args:
            status: Filter by status.
            include_log: Whether to include log contents.
        """
        records = sorted(
            self._records.values(), key=lambda r: r.started_at, reverse=True
        )
        return [
            self._snapshot(r, include_log=include_log)
            for r in records
            if status is None or r.status is status
        ]

    def records(self) -> list[BuildRecord]:
        """Return the current records (for the retention sweeper)."""
        return list(self._records.values())

    def remove_record(self, build_id: str) -> BuildRecord | None:
        """Forget a terminal build record.

        Returns:
            The removed record, or None if it is unknown or still running.
        """
        record = self._records.get(build_id)
        if record is None or not record.is_terminal:
            return None
        del self._records[build_id]
        self._pushes.pop(build_id, None)
        self._push_locks.pop(build_id, None)
        return record

    def cancel(self, build_id: str) -> bool:
        """Cancel a build.

        Sends SIGTERM to the build process if one is running, prevents a
        build still in preparation from ever starting, marks the record
        failed, releases the slot and removes the working directory.

        Returns:
            False if the build is unknown, True otherwise (including builds
            that had already finished, which are left unchanged).
        """
        record = self._records.get(build_id)
        if record is None:
            return False
        if record.is_terminal:
            return True

        logger.info("Cancelling build %s", build_id)
        self.supervisor.terminate(build_id)
        record.mark_failed(CANCELLED_MESSAGE, errors.CANCELLED)

        task = self._tasks.get(build_id)
        if task is not None and not task.done():
            task.cancel()

        self._release(build_id)
        self._remove_workdir(self.workdir_for(build_id))
        return True

    async def push(
        self,
        build_id: str,
        registry: RegistryCredentials | Mapping[str, Any] | None,
    ) -> str:
        """Push a successful build to a registry.

        Performs login, tag and push against the runtime. The build record
        is not modified.

        Args:
            build_id: Build ID.
            registry: Registry address and credentials.

        Returns:
            The registry-qualified tag.

        Raises:
            NotFoundError: If the build is unknown.
            InvalidStateError: If the build has not succeeded.
            InvalidInputError: If the registry configuration is incomplete.
            PushFailedError: If login, tag or push fails.
        """
        record = self.get_record(build_id)
        if record.status is not BuildStatus.SUCCESS:
            raise InvalidStateError(
                f"Build {build_id} is {record.status.value}; "
                "only successful builds can be pushed"
            )
        credentials = _coerce(RegistryCredentials, registry, "registry configuration")
        reference = qualified_tag(
            record.image_tag, credentials, self.settings.default_namespace
        )

        logger.info("Pushing image %s to %s", record.image_tag, reference)
        lock = self._push_locks.setdefault(build_id, asyncio.Lock())
        async with lock:
            try:
                await self.supervisor.login(credentials)
                await self.supervisor.tag_image(
                    record.image_id or record.image_tag, reference
                )
                await self.supervisor.push_image(reference)
            except (RuntimeCommandError, ExternalToolUnavailableError) as e:
                logger.error("Failed to push image %s: %s", record.image_tag, e)
                raise PushFailedError(f"Failed to push image: {e}") from e

        pushes = self._pushes.setdefault(build_id, [])
        if reference not in pushes:
            pushes.append(reference)
        logger.info("Image pushed successfully: %s", reference)
        return reference

    async def _auto_push(self, build_id: str, registry: RegistryCredentials) -> None:
        try:
            await self.push(build_id, registry)
        except BuilderError as e:
            logger.warning("Automatic push of build %s failed: %s", build_id, e)

    async def wait(self, build_id: str) -> BuildSnapshot:
        """Wait until a build (and its automatic push, if any) has finished.

        Returns:
            Final snapshot of a successful build.

        Raises:
            NotFoundError: If the build is unknown.
            BuilderError: The error class matching the failure code if the
                build failed (BuildFailedError, BuildTimeoutError, ...).
        """
        record = self.get_record(build_id)
        task = self._tasks.get(build_id)
        if task is not None:
            await asyncio.wait({task})

        if record.status is BuildStatus.FAILED:
            message = record.error or "Build failed"
            code = record.error_code or errors.BUILD_FAILED
            error_class = _ERROR_CLASSES.get(code)
            if error_class is None:
                raise BuilderError(message, code)
            raise error_class(message)
        return self._snapshot(record)

    async def health_check(self) -> bool:
        """Check that the runtime is usable and the build directory exists."""
        try:
            version = await self.supervisor.probe()
        except ExternalToolUnavailableError as e:
            logger.error("Build service health check failed: %s", e)
            return False
        logger.debug("Runtime version: %s", version.strip().splitlines()[:1])

        if not self.work_dir.is_dir():
            logger.error("Build directory missing: %s", self.work_dir)
            return False
        return True

    async def aclose(self) -> None:
        """Cancel in-flight builds and release client resources."""
        pending = [t for t in self._tasks.values() if not t.done()]
        for build_id in list(self._records):
            self.cancel(build_id)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        await self.supervisor.aclose()
        await self.blob_client.aclose()


__all__ = [
    "CANCELLED_MESSAGE",
    "BuildOrchestrator",
    "current_step",
    "estimate_progress",
    "qualified_tag",
]
