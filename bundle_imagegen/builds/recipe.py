"""Build recipe detection and generation.

This module handles:
- Detecting the project archetype from the top-level files of a source tree
- Rendering a Dockerfile for each archetype
- Using a caller-supplied or bundled recipe as-is when one exists

Generation is a pure function of the project's top-level file set (plus the
manifest contents for archetypes that read them): identical trees always
produce byte-identical recipes.
"""

from __future__ import annotations

import json
import logging
import re
import tomllib
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from bundle_imagegen.errors import InvalidInputError
from bundle_imagegen.types import ProjectArchetype

logger = logging.getLogger(__name__)

DEFAULT_RECIPE_NAME = "Dockerfile"
DEFAULT_NODE_VERSION = "18"
HEALTH_PATH = "/health"

# Marker files checked in priority order; first match wins
ARCHETYPE_MARKERS: list[tuple[ProjectArchetype, tuple[str, ...]]] = [
    (ProjectArchetype.NODE, ("package.json",)),
    (ProjectArchetype.PYTHON, ("requirements.txt", "pyproject.toml")),
    (ProjectArchetype.GO, ("go.mod",)),
    (ProjectArchetype.RUST, ("Cargo.toml",)),
    (ProjectArchetype.JAVA, ("pom.xml", "build.gradle")),
]

_NODE_VERSION_PATTERN = re.compile(r"\d+(?:\.\d+){0,2}")


@dataclass
class RecipeResult:
    """Outcome of resolving a build recipe.

    Attributes:
        path: Path of the recipe inside the build context.
        generated: Whether the recipe was generated.
        archetype: Detected archetype (generated recipes only).
    """

    path: Path
    generated: bool
    archetype: ProjectArchetype | None = None


def detect_archetype(file_names: Iterable[str]) -> ProjectArchetype:
    """Select the project archetype for a set of top-level file names.

    Args:
        file_names: Names of the files at the project root.

    Returns:
        The first archetype whose marker file is present, else GENERIC.
    """
    names = set(file_names)
    for archetype, markers in ARCHETYPE_MARKERS:
        if any(marker in names for marker in markers):
            return archetype
    return ProjectArchetype.GENERIC


def _healthcheck(port: int, probe: str = "curl -f") -> str:
    return (
        "HEALTHCHECK --interval=30s --timeout=3s --start-period=5s --retries=3 \\\n"
        f"  CMD {probe} http://localhost:{port}{HEALTH_PATH} || exit 1"
    )


def _cmd(argv: list[str]) -> str:
    return f"CMD {json.dumps(argv)}"


def _read_json(path: Path) -> dict[str, Any] | None:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.warning("Could not parse %s: %s", path.name, e)
        return None
    return data if isinstance(data, dict) else None


def _node_version(manifest: dict[str, Any]) -> str:
    engines = manifest.get("engines")
    if isinstance(engines, dict) and isinstance(engines.get("node"), str):
        match = _NODE_VERSION_PATTERN.search(engines["node"])
        if match:
            return match.group(0)
    return DEFAULT_NODE_VERSION


def _node_start(manifest: dict[str, Any]) -> list[str]:
    scripts = manifest.get("scripts")
    if isinstance(scripts, dict) and isinstance(scripts.get("start"), str):
        return ["sh", "-c", scripts["start"]]
    main = manifest.get("main")
    if isinstance(main, str) and main:
        return ["node", main]
    return ["node", "index.js"]


def render_node(project_dir: Path, names: set[str]) -> str:
    """Render a Node.js recipe from package.json metadata."""
    manifest = _read_json(project_dir / "package.json")
    if manifest is None:
        manifest = {}
        header = "# Auto-generated Dockerfile for Node.js application (default manifest)"
    else:
        header = "# Auto-generated Dockerfile for Node.js application"

    install = "npm ci" if "package-lock.json" in names else "npm install"
    scripts = manifest.get("scripts")
    has_build = isinstance(scripts, dict) and "build" in scripts

    if has_build:
        install_step = f"RUN {install}"
        build_steps = (
            "\n\n# Build application\nRUN npm run build\nRUN npm prune --omit=dev"
        )
    else:
        install_step = f"RUN {install} --omit=dev"
        build_steps = ""

    return f"""{header}
FROM node:{_node_version(manifest)}-alpine

WORKDIR /app

# Copy package files
COPY package*.json ./

# Install dependencies
{install_step}

# Copy application code
COPY . .{build_steps}

EXPOSE 3000

{_healthcheck(3000, "wget -q --spider")}

{_cmd(_node_start(manifest))}
"""


def render_python(project_dir: Path, names: set[str]) -> str:
    """Render a Python recipe."""
    entry = "main.py" if "main.py" in names and "app.py" not in names else "app.py"
    return f"""# Auto-generated Dockerfile for Python application
FROM python:3.11-slim

WORKDIR /app

# Install system dependencies
RUN apt-get update && apt-get install -y --no-install-recommends curl \\
    && rm -rf /var/lib/apt/lists/*

# Copy dependency manifests
COPY requirements.txt* pyproject.toml* ./

# Install Python dependencies
RUN if [ -f requirements.txt ]; then pip install --no-cache-dir -r requirements.txt; fi

# Copy application code
COPY . .
RUN if [ -f pyproject.toml ]; then pip install --no-cache-dir .; fi

EXPOSE 8000

{_healthcheck(8000)}

{_cmd(["python", entry])}
"""


def render_go(project_dir: Path, names: set[str]) -> str:
    """Render a two-stage Go recipe."""
    return f"""# Auto-generated Dockerfile for Go application
FROM golang:1.21-alpine AS builder

WORKDIR /app
COPY go.mod go.sum* ./
RUN go mod download

COPY . .
RUN CGO_ENABLED=0 GOOS=linux go build -o /app/main .

# Runtime image
FROM alpine:3.19
RUN apk --no-cache add ca-certificates
WORKDIR /app

COPY --from=builder /app/main .

EXPOSE 8080

{_healthcheck(8080, "wget -q --spider")}

{_cmd(["./main"])}
"""


def _cargo_package_name(project_dir: Path) -> str:
    try:
        with (project_dir / "Cargo.toml").open("rb") as f:
            manifest = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        logger.warning("Could not parse Cargo.toml: %s", e)
        return "app"
    package = manifest.get("package")
    if isinstance(package, dict) and isinstance(package.get("name"), str):
        return package["name"]
    return "app"


def render_rust(project_dir: Path, names: set[str]) -> str:
    """Render a two-stage Rust recipe with a dependency-prefetch layer."""
    binary = _cargo_package_name(project_dir)
    return f"""# Auto-generated Dockerfile for Rust application
FROM rust:1.75 AS builder

WORKDIR /app

# Prefetch and compile dependencies against a stub crate
COPY Cargo.toml Cargo.lock* ./
RUN mkdir src && echo "fn main() {{}}" > src/main.rs \\
    && cargo build --release \\
    && rm -rf src

# Copy application code
COPY . .
RUN touch src/main.rs && cargo build --release

# Runtime image
FROM debian:bookworm-slim
RUN apt-get update && apt-get install -y --no-install-recommends curl ca-certificates \\
    && rm -rf /var/lib/apt/lists/*
WORKDIR /app
COPY --from=builder /app/target/release/{binary} /usr/local/bin/app

EXPOSE 8080

{_healthcheck(8080)}

{_cmd(["app"])}
"""


def render_java(project_dir: Path, names: set[str]) -> str:
    """Render a two-stage Java recipe for Maven or Gradle."""
    if "pom.xml" in names:
        builder = """FROM maven:3.9-eclipse-temurin-17 AS builder

WORKDIR /app
COPY pom.xml ./
RUN mvn -B dependency:go-offline

COPY . .
RUN mvn -B clean package -DskipTests"""
        jar_glob = "/app/target/*.jar"
    else:
        builder = """FROM gradle:8-jdk17 AS builder

WORKDIR /app
COPY build.gradle settings.gradle* ./
RUN gradle dependencies --no-daemon

COPY . .
RUN gradle build -x test --no-daemon"""
        jar_glob = "/app/build/libs/*.jar"

    return f"""# Auto-generated Dockerfile for Java application
{builder}

# Runtime image
FROM eclipse-temurin:17-jre
RUN apt-get update && apt-get install -y --no-install-recommends curl \\
    && rm -rf /var/lib/apt/lists/*
WORKDIR /app
COPY --from=builder {jar_glob} app.jar

EXPOSE 8080

{_healthcheck(8080)}

{_cmd(["java", "-jar", "app.jar"])}
"""


def render_generic(project_dir: Path, names: set[str]) -> str:
    """Render a placeholder recipe that refuses to start."""
    message = (
        "echo 'No start command detected: configure your application "
        "startup command' >&2; exit 1"
    )
    return f"""# Auto-generated generic Dockerfile
FROM alpine:3.19

RUN apk --no-cache add curl

WORKDIR /app
COPY . .

EXPOSE 8080

{_healthcheck(8080)}

{_cmd(["sh", "-c", message])}
"""


RENDERERS: dict[ProjectArchetype, Callable[[Path, set[str]], str]] = {
    ProjectArchetype.NODE: render_node,
    ProjectArchetype.PYTHON: render_python,
    ProjectArchetype.GO: render_go,
    ProjectArchetype.RUST: render_rust,
    ProjectArchetype.JAVA: render_java,
    ProjectArchetype.GENERIC: render_generic,
}


def list_top_level(project_dir: Path) -> set[str]:
    """Return the names of the regular files at the project root."""
    return {p.name for p in project_dir.iterdir() if p.is_file()}


def generate_recipe(project_dir: Path) -> tuple[ProjectArchetype, str]:
    """Generate a recipe for a project tree.

    Args:
        project_dir: Root of the expanded project.

    Returns:
        Tuple of (detected archetype, recipe text).
    """
    names = list_top_level(project_dir)
    archetype = detect_archetype(names)
    return archetype, RENDERERS[archetype](project_dir, names)


def resolve_recipe_path(src_dir: Path, recipe: str | None = None) -> Path:
    """Resolve the recipe location inside a build context.

    Args:
        src_dir: Build context root.
        recipe: Optional caller-supplied path relative to ``src_dir``.

    Returns:
        Absolute recipe path.

    Raises:
        InvalidInputError: If the path escapes the build context.
    """
    root = src_dir.resolve()
    path = (root / (recipe or DEFAULT_RECIPE_NAME)).resolve()
    if not path.is_relative_to(root) or path == root:
        raise InvalidInputError(f"Recipe path escapes the build context: {recipe}")
    return path


def ensure_recipe(src_dir: Path, recipe: str | None = None) -> RecipeResult:
    """Use the existing recipe or generate one.

    Args:
        src_dir: Build context root.
        recipe: Optional recipe path relative to ``src_dir``.

    Returns:
        RecipeResult describing the recipe used.

    Raises:
        InvalidInputError: If the recipe path escapes the build context.
    """
    path = resolve_recipe_path(src_dir, recipe)
    if path.is_file():
        logger.info("Using existing recipe: %s", path)
        return RecipeResult(path=path, generated=False)

    archetype, text = generate_recipe(src_dir)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    logger.info("Generated %s recipe: %s", archetype.value, path)
    return RecipeResult(path=path, generated=True, archetype=archetype)


__all__ = [
    "ARCHETYPE_MARKERS",
    "DEFAULT_RECIPE_NAME",
    "RENDERERS",
    "RecipeResult",
    "detect_archetype",
    "ensure_recipe",
    "generate_recipe",
    "list_top_level",
    "resolve_recipe_path",
]
