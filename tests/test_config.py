"""Tests for configuration module."""

import json
import os
import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from bundle_imagegen.config import Settings, get_settings, print_settings_json


class TestSettings:
    """Test Settings class."""

    def test_default_settings(self) -> None:
        """Settings should have sensible defaults."""
        settings = Settings()

        assert settings.work_dir == Path(tempfile.gettempdir()) / "bundle-builds"
        assert settings.blob_store_url == "http://localhost:31415"
        assert settings.runtime_command == "docker"
        assert settings.image_name == "bundle-app"
        assert settings.default_namespace == "bundles"
        assert settings.log_level == "INFO"
        assert settings.max_concurrent_builds == 3
        assert settings.build_timeout == 600.0
        assert settings.retention == 86400
        assert settings.cleanup_interval == 3600

    def test_settings_from_env(self) -> None:
        """Settings should be loadable from environment variables."""
        with patch.dict(
            os.environ,
            {
                "BUNDLE_IMG_LOG_LEVEL": "DEBUG",
                "BUNDLE_IMG_MAX_CONCURRENT_BUILDS": "5",
                "BUNDLE_IMG_BUILD_TIMEOUT": "1.5",
                "BUNDLE_IMG_RUNTIME_COMMAND": "podman",
            },
        ):
            settings = Settings()
            assert settings.log_level == "DEBUG"
            assert settings.max_concurrent_builds == 5
            assert settings.build_timeout == 1.5
            assert settings.runtime_command == "podman"

    def test_work_dir_from_env(self) -> None:
        """Work dir should be configurable via env."""
        with patch.dict(os.environ, {"BUNDLE_IMG_WORK_DIR": "/tmp/test-builds"}):
            settings = Settings()
            assert settings.work_dir == Path("/tmp/test-builds")

    def test_concurrency_ceiling_must_be_positive(self) -> None:
        """A ceiling of zero should be rejected."""
        with pytest.raises(ValidationError):
            Settings(max_concurrent_builds=0)

    def test_build_timeout_must_be_positive(self) -> None:
        """A non-positive build timeout should be rejected."""
        with pytest.raises(ValidationError):
            Settings(build_timeout=0)


class TestGetSettings:
    """Test get_settings function."""

    def test_returns_settings(self) -> None:
        """get_settings should return a Settings instance."""
        assert isinstance(get_settings(), Settings)


class TestPrintSettingsJson:
    """Test print_settings_json function."""

    def test_outputs_valid_json(self) -> None:
        """print_settings_json should produce parseable JSON."""
        data = json.loads(print_settings_json(Settings(image_name="demo-app")))
        assert data["image_name"] == "demo-app"
        assert "work_dir" in data
        assert "max_concurrent_builds" in data
