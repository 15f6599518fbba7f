"""Configuration settings for bundle_imagegen.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

import tempfile
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_work_dir() -> Path:
    """Return the default root for per-build working directories."""
    return Path(tempfile.gettempdir()) / "bundle-builds"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the BUNDLE_IMG_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="BUNDLE_IMG_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    work_dir: Path = Field(
        default_factory=_default_work_dir,
        description="Root directory for per-build working directories",
    )

    # Blob store
    blob_store_url: str = Field(
        default="http://localhost:31415",
        description="Base URL of the blob store aggregator",
    )
    blob_download_timeout: float = Field(
        default=180.0,
        gt=0,
        description="Timeout for bundle downloads (seconds)",
    )

    # Container runtime
    runtime_command: str = Field(
        default="docker",
        description="Container runtime executable used for build/tag/push",
    )
    image_name: str = Field(
        default="bundle-app",
        description="Repository name given to every built image",
    )
    default_namespace: str = Field(
        default="bundles",
        description="Registry namespace used when a push does not name one",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Concurrency
    max_concurrent_builds: int = Field(
        default=3,
        ge=1,
        le=64,
        description="Maximum simultaneously pending or building builds",
    )

    # Timeouts (in seconds)
    build_timeout: float = Field(
        default=600.0,
        gt=0,
        description="Timeout for a single image build",
    )
    kill_grace: float = Field(
        default=10.0,
        ge=0,
        description="Grace period between SIGTERM and SIGKILL for a timed out build",
    )

    # Retention
    retention: float = Field(
        default=24 * 60 * 60,
        gt=0,
        description="Age after which finished builds and their images are removed",
    )
    cleanup_interval: float = Field(
        default=60 * 60,
        gt=0,
        description="Interval between retention sweeps",
    )


def get_settings() -> Settings:
    """Get the application settings.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = ["Settings", "get_settings", "print_settings_json"]
