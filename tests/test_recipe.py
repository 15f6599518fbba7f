"""Tests for builds/recipe.py module.

Tests archetype detection, recipe rendering and recipe resolution.
"""

import json
from pathlib import Path

import pytest

from bundle_imagegen.builds.recipe import (
    detect_archetype,
    ensure_recipe,
    generate_recipe,
    resolve_recipe_path,
)
from bundle_imagegen.errors import InvalidInputError
from bundle_imagegen.types import ProjectArchetype

REQUIRED_INSTRUCTIONS = ("FROM ", "WORKDIR ", "RUN ", "COPY ", "EXPOSE ", "HEALTHCHECK ", "CMD ")


def _write(root: Path, files: dict[str, str]) -> Path:
    for name, content in files.items():
        path = root / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    return root


class TestDetectArchetype:
    """Tests for detect_archetype function."""

    @pytest.mark.parametrize(
        ("names", "expected"),
        [
            ({"package.json"}, ProjectArchetype.NODE),
            ({"requirements.txt"}, ProjectArchetype.PYTHON),
            ({"pyproject.toml"}, ProjectArchetype.PYTHON),
            ({"go.mod", "main.go"}, ProjectArchetype.GO),
            ({"Cargo.toml"}, ProjectArchetype.RUST),
            ({"pom.xml"}, ProjectArchetype.JAVA),
            ({"build.gradle"}, ProjectArchetype.JAVA),
            ({"README.md"}, ProjectArchetype.GENERIC),
            (set(), ProjectArchetype.GENERIC),
        ],
    )
    def test_markers(self, names, expected):
        """Each marker file should select its archetype."""
        assert detect_archetype(names) is expected

    def test_priority_order(self):
        """The first matching marker in priority order should win."""
        assert detect_archetype({"go.mod", "package.json"}) is ProjectArchetype.NODE
        assert detect_archetype({"Cargo.toml", "requirements.txt"}) is ProjectArchetype.PYTHON
        assert detect_archetype({"pom.xml", "go.mod"}) is ProjectArchetype.GO


class TestGenerateRecipe:
    """Tests for generate_recipe function."""

    @pytest.mark.parametrize(
        "files",
        [
            {"package.json": "{}"},
            {"requirements.txt": "flask\n"},
            {"go.mod": "module demo\n"},
            {"Cargo.toml": '[package]\nname = "demo"\n'},
            {"pom.xml": "<project/>"},
            {"build.gradle": ""},
            {"README.md": "hello"},
        ],
    )
    def test_every_recipe_is_complete(self, tmp_path, files):
        """Every archetype should produce the full set of instructions."""
        _, text = generate_recipe(_write(tmp_path, files))
        for instruction in REQUIRED_INSTRUCTIONS:
            assert instruction in text, instruction
        assert "/health" in text

    def test_deterministic(self, tmp_path):
        """The same tree should always produce the same recipe."""
        _write(tmp_path, {"package.json": '{"scripts": {"build": "tsc"}}'})
        assert generate_recipe(tmp_path) == generate_recipe(tmp_path)

    def test_node_engine_and_scripts(self, tmp_path):
        """Node recipes should honour engines.node, build and start scripts."""
        manifest = {
            "engines": {"node": ">=20.11"},
            "scripts": {"build": "tsc", "start": "node dist/server.js"},
        }
        _write(tmp_path, {"package.json": json.dumps(manifest), "package-lock.json": "{}"})

        archetype, text = generate_recipe(tmp_path)

        assert archetype is ProjectArchetype.NODE
        assert "FROM node:20.11-alpine" in text
        assert "RUN npm ci" in text
        assert "RUN npm run build" in text
        assert 'CMD ["sh", "-c", "node dist/server.js"]' in text

    def test_node_start_command_and_runtime_version(self, tmp_path):
        """The final command and base image should follow the manifest."""
        manifest = {"engines": {"node": "20"}, "scripts": {"start": "serve.sh"}}
        _write(tmp_path, {"package.json": json.dumps(manifest)})

        _, text = generate_recipe(tmp_path)

        last_line = text.strip().splitlines()[-1]
        assert last_line.startswith("CMD ")
        assert "serve.sh" in last_line
        assert "FROM node:20-alpine" in text

    def test_node_defaults(self, tmp_path):
        """Without engines or start script, defaults should be used."""
        _write(tmp_path, {"package.json": '{"name": "demo"}'})
        _, text = generate_recipe(tmp_path)
        assert "FROM node:18-alpine" in text
        assert "RUN npm install --omit=dev" in text
        assert "npm run build" not in text
        assert 'CMD ["node", "index.js"]' in text

    def test_node_unparseable_manifest(self, tmp_path):
        """A broken package.json should fall back to the default Node recipe."""
        _write(tmp_path, {"package.json": "{not json"})
        archetype, text = generate_recipe(tmp_path)
        assert archetype is ProjectArchetype.NODE
        assert "FROM node:18-alpine" in text
        assert "(default manifest)" in text

    def test_rust_binary_name(self, tmp_path):
        """Rust recipes should copy the binary named after the package."""
        _write(tmp_path, {"Cargo.toml": '[package]\nname = "hello-api"\nversion = "0.1.0"\n'})
        _, text = generate_recipe(tmp_path)
        assert "fn main() {}" in text
        assert "/app/target/release/hello-api" in text

    def test_rust_default_binary_name(self, tmp_path):
        """Rust recipes should fall back to 'app' without a package name."""
        _write(tmp_path, {"Cargo.toml": "[workspace]\n"})
        _, text = generate_recipe(tmp_path)
        assert "/app/target/release/app " in text

    def test_java_gradle(self, tmp_path):
        """Java projects without pom.xml should use Gradle."""
        _write(tmp_path, {"build.gradle": ""})
        _, text = generate_recipe(tmp_path)
        assert "gradle build" in text
        assert "mvn" not in text

    def test_generic_refuses_to_start(self, tmp_path):
        """The generic recipe should exit non-zero with a hint."""
        _write(tmp_path, {"index.html": "<html/>"})
        archetype, text = generate_recipe(tmp_path)
        assert archetype is ProjectArchetype.GENERIC
        assert "configure your application startup command" in text
        assert "exit 1" in text


class TestEnsureRecipe:
    """Tests for ensure_recipe and resolve_recipe_path."""

    def test_existing_recipe_untouched(self, tmp_path):
        """An existing Dockerfile should be used as-is."""
        _write(tmp_path, {"Dockerfile": "FROM scratch\n", "package.json": "{}"})
        result = ensure_recipe(tmp_path)
        assert not result.generated
        assert result.path == (tmp_path / "Dockerfile").resolve()
        assert (tmp_path / "Dockerfile").read_text() == "FROM scratch\n"

    def test_custom_recipe_path(self, tmp_path):
        """A custom recipe path inside the context should be honoured."""
        _write(tmp_path, {"docker/prod.Dockerfile": "FROM busybox\n"})
        result = ensure_recipe(tmp_path, "docker/prod.Dockerfile")
        assert not result.generated
        assert result.path.name == "prod.Dockerfile"

    def test_generates_when_missing(self, tmp_path):
        """A recipe should be written when none exists."""
        _write(tmp_path, {"requirements.txt": "flask\n", "app.py": ""})
        result = ensure_recipe(tmp_path)
        assert result.generated
        assert result.archetype is ProjectArchetype.PYTHON
        assert "FROM python:3.11-slim" in (tmp_path / "Dockerfile").read_text()

    def test_escaping_path_rejected(self, tmp_path):
        """Recipe paths escaping the context should be rejected."""
        with pytest.raises(InvalidInputError):
            resolve_recipe_path(tmp_path, "../outside/Dockerfile")
