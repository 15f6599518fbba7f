"""Shared type definitions for bundle_imagegen.

This module contains enums and small dataclasses shared across
subpackages to avoid circular imports.
"""

from dataclasses import dataclass
from enum import Enum


class BuildStatus(str, Enum):
    """Status of a build record."""

    PENDING = "pending"
    BUILDING = "building"
    SUCCESS = "success"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Whether no further transition is possible."""
        return self in (BuildStatus.SUCCESS, BuildStatus.FAILED)


class ProjectArchetype(str, Enum):
    """Project category detected from a source tree."""

    NODE = "node"
    PYTHON = "python"
    GO = "go"
    RUST = "rust"
    JAVA = "java"
    GENERIC = "generic"


class OutcomeKind(str, Enum):
    """How a supervised build process ended."""

    SUCCESS = "success"
    FAILED = "failed"
    TIMEOUT = "timeout"
    UNAVAILABLE = "unavailable"


@dataclass
class ImageInfo:
    """Image metadata resolved from the runtime."""

    image_id: str
    size_bytes: int


__all__ = [
    "BuildStatus",
    "ImageInfo",
    "OutcomeKind",
    "ProjectArchetype",
]
