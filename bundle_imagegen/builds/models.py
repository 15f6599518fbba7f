"""Build record model.

A BuildRecord is the orchestrator-owned state of one build attempt. Records
live in memory only; they are created by ``BuildOrchestrator.start`` and
removed by the retention sweeper.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone

from bundle_imagegen.types import BuildStatus


def generate_build_id() -> str:
    """Return a new random build identifier (16 hex characters)."""
    return secrets.token_hex(8)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class BuildRecord:
    """State of a single build attempt.

    Status transitions are monotonic: ``pending -> building ->
    {success, failed}`` or ``pending -> failed``. The ``mark_*`` methods
    refuse to leave a terminal state and return False instead.

    Attributes:
        id: Build identifier.
        bundle_id: Bundle the build was requested for.
        image_tag: Local image tag, fixed at creation.
        status: Current status.
        log: Output chunks in arrival order.
        started_at: Creation time.
        ended_at: Time of the terminal transition.
        image_id: Image id (success only).
        image_size_bytes: Image size (success only).
        error: Failure reason (failed only).
        error_code: Stable failure code (failed only).
    """

    id: str
    bundle_id: str
    image_tag: str
    status: BuildStatus = BuildStatus.PENDING
    log: list[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=_utcnow)
    ended_at: datetime | None = None
    image_id: str | None = None
    image_size_bytes: int | None = None
    error: str | None = None
    error_code: str | None = None

    def __repr__(self) -> str:
        """Return string representation of BuildRecord."""
        return (
            f"<BuildRecord(id={self.id}, bundle_id='{self.bundle_id}', "
            f"status='{self.status.value}', image_tag='{self.image_tag}')>"
        )

    @property
    def is_terminal(self) -> bool:
        """Whether the build has finished."""
        return self.status.is_terminal

    def append_log(self, chunk: str) -> None:
        """Append an output chunk while the build is still running."""
        if not self.is_terminal:
            self.log.append(chunk)

    def mark_building(self) -> bool:
        """Mark this build as building."""
        if self.status is not BuildStatus.PENDING:
            return False
        self.status = BuildStatus.BUILDING
        return True

    def mark_succeeded(self, image_id: str, size_bytes: int) -> bool:
        """Mark this build as succeeded.

        Args:
            image_id: Runtime image id.
            size_bytes: Image size in bytes.
        """
        if self.status is not BuildStatus.BUILDING:
            return False
        self.image_id = image_id
        self.image_size_bytes = size_bytes
        self.status = BuildStatus.SUCCESS
        self.ended_at = _utcnow()
        return True

    def mark_failed(self, message: str, code: str) -> bool:
        """Mark this build as failed.

        Args:
            message: Human-readable failure reason.
            code: Stable error code.
        """
        if self.is_terminal:
            return False
        self.status = BuildStatus.FAILED
        self.error = message
        self.error_code = code
        self.ended_at = _utcnow()
        return True

    def is_succeeded(self) -> bool:
        """Check if this build succeeded."""
        return self.status is BuildStatus.SUCCESS


__all__ = ["BuildRecord", "generate_build_id"]
