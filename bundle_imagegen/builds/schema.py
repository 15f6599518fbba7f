"""Pydantic models for build requests and build status views.

Requests are validated here before they reach the orchestrator; the
orchestrator itself only re-checks presence of the fields it relies on.
"""

from __future__ import annotations

import re
from datetime import datetime
from pathlib import PurePosixPath

from pydantic import BaseModel, ConfigDict, Field, field_validator

from bundle_imagegen.types import BuildStatus

# Keys accepted for --build-arg and --label
KEY_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_.\-]*$")


def _validate_keys(mapping: dict[str, str], what: str) -> dict[str, str]:
    for key in mapping:
        if not KEY_PATTERN.match(key):
            raise ValueError(f"invalid {what} key: '{key}'")
    return mapping


class BuildOptions(BaseModel):
    """Options forwarded to the image build.

    Attributes:
        platform: Target platform, e.g. 'linux/amd64'.
        recipe: Recipe path relative to the context root.
        build_args: Build-time variables.
        labels: Image labels.
        target: Multi-stage target name.
    """

    model_config = ConfigDict(extra="forbid")

    platform: str | None = Field(default=None, description="Target platform")
    recipe: str | None = Field(
        default=None, description="Recipe path relative to the context root"
    )
    build_args: dict[str, str] = Field(default_factory=dict)
    labels: dict[str, str] = Field(default_factory=dict)
    target: str | None = Field(default=None, description="Multi-stage target")

    @field_validator("recipe")
    @classmethod
    def validate_recipe(cls, v: str | None) -> str | None:
        """Validate the recipe path stays inside the build context."""
        if v is None:
            return v
        path = PurePosixPath(v)
        if not v.strip() or path.is_absolute() or ".." in path.parts:
            raise ValueError("recipe must be a relative path inside the context")
        return v

    @field_validator("build_args")
    @classmethod
    def validate_build_args(cls, v: dict[str, str]) -> dict[str, str]:
        """Validate build-arg names."""
        return _validate_keys(v, "build-arg")

    @field_validator("labels")
    @classmethod
    def validate_labels(cls, v: dict[str, str]) -> dict[str, str]:
        """Validate label names."""
        return _validate_keys(v, "label")


class RegistryCredentials(BaseModel):
    """Registry address and credentials for a push.

    Attributes:
        url: Registry address, e.g. 'registry.example.com:5000'.
        username: Registry user.
        password: Registry password or token.
        namespace: Repository namespace (configured default if omitted).
    """

    model_config = ConfigDict(extra="forbid")

    url: str = Field(min_length=1)
    username: str = Field(min_length=1)
    password: str = Field(min_length=1, repr=False)
    namespace: str | None = Field(default=None)

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Strip the scheme and trailing slash from the registry address."""
        v = re.sub(r"^[a-z]+://", "", v.strip()).rstrip("/")
        if not v:
            raise ValueError("url must name a registry address")
        return v


class BuildRequest(BaseModel):
    """A request to build an image from a bundle.

    Attributes:
        bundle_id: Opaque blob store identifier of the source bundle.
        build_options: Optional build options.
        registry: Optional registry credentials; when present the image is
            pushed automatically after a successful build.
    """

    model_config = ConfigDict(extra="forbid")

    bundle_id: str = Field(min_length=1)
    build_options: BuildOptions | None = None
    registry: RegistryCredentials | None = None

    @field_validator("bundle_id")
    @classmethod
    def validate_bundle_id(cls, v: str) -> str:
        """Validate the bundle id is not blank."""
        if not v.strip():
            raise ValueError("bundle_id must not be blank")
        return v.strip()


class BuildSnapshot(BaseModel):
    """Read-only view of a build record.

    ``progress`` is a heuristic estimate derived from log text, not an
    authoritative measure.
    """

    build_id: str
    bundle_id: str
    status: BuildStatus
    image_tag: str
    image_id: str | None = None
    image_size_bytes: int | None = None
    progress: int = 0
    current_step: str | None = None
    log: list[str] = Field(default_factory=list)
    started_at: datetime
    ended_at: datetime | None = None
    error: str | None = None
    error_code: str | None = None
    pushes: list[str] = Field(default_factory=list)


__all__ = [
    "BuildOptions",
    "BuildRequest",
    "BuildSnapshot",
    "RegistryCredentials",
]
