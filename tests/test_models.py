"""Tests for build records, shared types and request schemas."""

import pytest
from pydantic import ValidationError

from bundle_imagegen.builds.models import BuildRecord, generate_build_id
from bundle_imagegen.builds.schema import (
    BuildOptions,
    BuildRequest,
    RegistryCredentials,
)
from bundle_imagegen.types import BuildStatus


def _record() -> BuildRecord:
    return BuildRecord(id="0123456789abcdef", bundle_id="b1", image_tag="bundle-app:0123456789abcdef")


class TestBuildStatus:
    """Test BuildStatus enum."""

    def test_values(self) -> None:
        """BuildStatus should have expected values."""
        assert BuildStatus.PENDING.value == "pending"
        assert BuildStatus.BUILDING.value == "building"
        assert BuildStatus.SUCCESS.value == "success"
        assert BuildStatus.FAILED.value == "failed"

    def test_terminal(self) -> None:
        """Only success and failed are terminal."""
        assert not BuildStatus.PENDING.is_terminal
        assert not BuildStatus.BUILDING.is_terminal
        assert BuildStatus.SUCCESS.is_terminal
        assert BuildStatus.FAILED.is_terminal


class TestGenerateBuildId:
    """Test build id generation."""

    def test_format(self) -> None:
        """IDs should be 16 lowercase hex characters."""
        build_id = generate_build_id()
        assert len(build_id) == 16
        int(build_id, 16)

    def test_unique(self) -> None:
        """IDs should not repeat."""
        assert len({generate_build_id() for _ in range(1000)}) == 1000


class TestBuildRecord:
    """Test BuildRecord transitions."""

    def test_starts_pending(self) -> None:
        """New records should be pending with no outcome."""
        record = _record()
        assert record.status is BuildStatus.PENDING
        assert record.ended_at is None
        assert record.image_id is None

    def test_success_path(self) -> None:
        """pending -> building -> success should set image fields."""
        record = _record()
        assert record.mark_building()
        assert record.mark_succeeded("sha256:abc", 42)
        assert record.status is BuildStatus.SUCCESS
        assert record.image_id == "sha256:abc"
        assert record.image_size_bytes == 42
        assert record.ended_at is not None

    def test_pending_can_fail_directly(self) -> None:
        """pending -> failed is allowed."""
        record = _record()
        assert record.mark_failed("no bundle", "context_preparation_failed")
        assert record.status is BuildStatus.FAILED
        assert record.error_code == "context_preparation_failed"

    def test_cannot_succeed_from_pending(self) -> None:
        """Success requires the building state."""
        record = _record()
        assert not record.mark_succeeded("sha256:abc", 1)
        assert record.status is BuildStatus.PENDING

    def test_terminal_is_final(self) -> None:
        """Terminal records should never change again."""
        record = _record()
        record.mark_building()
        record.mark_failed("Build cancelled by caller", "cancelled")
        ended = record.ended_at

        assert not record.mark_succeeded("sha256:late", 1)
        assert not record.mark_failed("later failure", "build_failed")
        assert not record.mark_building()
        assert record.status is BuildStatus.FAILED
        assert record.error == "Build cancelled by caller"
        assert record.image_id is None
        assert record.ended_at == ended

    def test_log_frozen_after_terminal(self) -> None:
        """Output arriving after the terminal transition is dropped."""
        record = _record()
        record.mark_building()
        record.append_log("Step 1/2\n")
        record.mark_failed("timed out", "timeout")
        record.append_log("late\n")
        assert record.log == ["Step 1/2\n"]

    def test_repr_has_no_log(self) -> None:
        """repr should identify the record."""
        assert "0123456789abcdef" in repr(_record())


class TestBuildRequestSchema:
    """Test request validation."""

    def test_minimal_request(self) -> None:
        """bundle_id alone is a valid request."""
        request = BuildRequest(bundle_id="  abc  ")
        assert request.bundle_id == "abc"
        assert request.build_options is None
        assert request.registry is None

    def test_blank_bundle_id_rejected(self) -> None:
        """Blank bundle ids should be rejected."""
        with pytest.raises(ValidationError):
            BuildRequest(bundle_id="   ")

    def test_unknown_field_rejected(self) -> None:
        """Unknown request fields should be rejected."""
        with pytest.raises(ValidationError):
            BuildRequest.model_validate({"bundle_id": "abc", "dockerfile": "x"})

    def test_recipe_must_stay_inside_context(self) -> None:
        """Recipe paths may not be absolute or climb out of the context."""
        with pytest.raises(ValidationError):
            BuildOptions(recipe="../Dockerfile")
        with pytest.raises(ValidationError):
            BuildOptions(recipe="/etc/Dockerfile")
        assert BuildOptions(recipe="docker/Dockerfile.prod").recipe == "docker/Dockerfile.prod"

    def test_build_arg_keys_validated(self) -> None:
        """Build-arg names must be identifiers."""
        with pytest.raises(ValidationError):
            BuildOptions(build_args={"BAD KEY": "1"})
        assert BuildOptions(build_args={"NODE_ENV": "production"}).build_args == {
            "NODE_ENV": "production"
        }


class TestRegistryCredentials:
    """Test registry credential validation."""

    def test_url_normalized(self) -> None:
        """Scheme and trailing slash should be stripped."""
        creds = RegistryCredentials(
            url="https://registry.example.com:5000/", username="u", password="p"
        )
        assert creds.url == "registry.example.com:5000"

    def test_password_required(self) -> None:
        """Missing or empty passwords should be rejected."""
        with pytest.raises(ValidationError):
            RegistryCredentials(url="r.example.com", username="u", password="")
        with pytest.raises(ValidationError):
            RegistryCredentials.model_validate({"url": "r.example.com", "username": "u"})

    def test_password_hidden_from_repr(self) -> None:
        """The password should not appear in repr output."""
        creds = RegistryCredentials(url="r.example.com", username="u", password="s3cret")
        assert "s3cret" not in repr(creds)
