"""Shared fixtures for bundle_imagegen tests.

Builds run against a fake container runtime: a small shell script written
into tmp_path that records its invocations and answers build, inspect,
login, tag, push, rmi and version the way a real runtime would.
"""

from __future__ import annotations

import io
import json
import shlex
import stat
import tarfile
from collections.abc import Callable
from pathlib import Path

import pytest
import respx

from bundle_imagegen.config import Settings

BLOB_STORE_URL = "http://blobs.test"
IMAGE_ID = "sha256:feedbeef"
IMAGE_SIZE = 12345

BUILD_BEHAVIOURS = {
    "ok": """
echo "Sending build context to Docker daemon  2.048kB"
echo "Step 1/2 : FROM alpine:3.19"
echo "Step 2/2 : COPY . ."
echo "Successfully built feedbeef"
exit 0
""",
    "fail": """
echo "Step 1/2 : FROM alpine:3.19"
echo "npm ERR! missing script: build" >&2
exit 2
""",
    "hang": """
echo "Sending build context to Docker daemon  2.048kB"
echo "Step 1/3 : FROM alpine:3.19"
exec sleep 30
""",
    "stubborn": """
trap "" TERM
echo "Sending build context to Docker daemon  2.048kB"
echo "Step 1/3 : FROM alpine:3.19"
sleep 30
""",
}


def _runtime_script(calls: Path, stdin_file: Path, build: str, fail: set[str]) -> str:
    def answer(command: str, body: str) -> str:
        if command in fail:
            return f'echo "{command} refused by fake runtime" >&2; exit 1'
        return body

    inspection = json.dumps([{"Id": IMAGE_ID, "Size": IMAGE_SIZE}])
    bodies = {
        "build": answer("build", BUILD_BEHAVIOURS[build]),
        "inspect": answer("inspect", f"echo '{inspection}'"),
        "login": answer("login", 'echo "Login Succeeded"'),
        "tag": answer("tag", "exit 0"),
        "push": answer("push", 'echo "latest: digest: sha256:0000 size: 528"'),
        "rmi": answer("rmi", 'echo "Deleted: $2"'),
        "version": answer("version", 'echo "Version: 24.0.0-fake"'),
    }
    calls_path = shlex.quote(str(calls))
    stdin_path = shlex.quote(str(stdin_file))

    return f"""#!/bin/sh
echo "$*" >> {calls_path}
case "$1" in
  build)
{bodies["build"]}
    ;;
  image)
{bodies["inspect"]}
    ;;
  login)
    cat > {stdin_path}
{bodies["login"]}
    ;;
  tag)
{bodies["tag"]}
    ;;
  push)
{bodies["push"]}
    ;;
  rmi)
{bodies["rmi"]}
    ;;
  version)
{bodies["version"]}
    ;;
esac
"""


class FakeRuntime:
    """Handle on a fake runtime script and what it was asked to do."""

    def __init__(self, path: Path, calls: Path, stdin_file: Path) -> None:
        self.path = path
        self.calls_file = calls
        self.stdin_file = stdin_file

    @property
    def command(self) -> str:
        return shlex.quote(str(self.path))

    def calls(self) -> list[list[str]]:
        """Return the recorded invocations as argument lists."""
        if not self.calls_file.exists():
            return []
        return [line.split() for line in self.calls_file.read_text().splitlines()]

    def subcommands(self) -> list[str]:
        return [call[0] for call in self.calls() if call]


@pytest.fixture
def fake_runtime(tmp_path: Path) -> Callable[..., FakeRuntime]:
    """Factory for fake runtime scripts.

    Args (of the returned factory):
        build: One of 'ok', 'fail', 'hang', 'stubborn' (ignores SIGTERM).
        fail: Subcommands that should exit non-zero
            ('inspect', 'login', 'tag', 'push', 'rmi', 'version', 'build').
    """

    def _make(build: str = "ok", fail: tuple[str, ...] = ()) -> FakeRuntime:
        root = tmp_path / "runtime"
        root.mkdir(exist_ok=True)
        path = root / "fake-docker"
        calls = root / "calls.log"
        stdin_file = root / "login-stdin"
        path.write_text(_runtime_script(calls, stdin_file, build, set(fail)))
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return FakeRuntime(path, calls, stdin_file)

    return _make


@pytest.fixture
def make_settings(tmp_path: Path) -> Callable[..., Settings]:
    """Factory for settings pointing at tmp_path and the mocked blob store."""

    def _make(runtime: FakeRuntime | None = None, **overrides: object) -> Settings:
        values: dict[str, object] = {
            "work_dir": tmp_path / "work",
            "blob_store_url": BLOB_STORE_URL,
            "runtime_command": runtime.command if runtime else "docker",
            "build_timeout": 20.0,
            "kill_grace": 1.0,
            "max_concurrent_builds": 3,
        }
        values.update(overrides)
        return Settings(**values)

    return _make


def _make_bundle(files: dict[str, str], mode: str = "w:gz") -> bytes:
    """Create a tar archive from a mapping of relative path -> content."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode=mode) as tar:
        for name, content in files.items():
            data = content.encode("utf-8")
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


@pytest.fixture
def make_bundle() -> Callable[..., bytes]:
    """Factory for in-memory bundle archives."""
    return _make_bundle


@pytest.fixture
def node_bundle() -> bytes:
    """A small Node.js project bundle."""
    return _make_bundle(
        {
            "package.json": '{"name": "demo", "scripts": {"start": "node server.js"}}',
            "server.js": "require('http').createServer().listen(3000)\n",
        }
    )


@pytest.fixture
def blob_store():
    """Mock the blob store aggregator."""
    with respx.mock(base_url=BLOB_STORE_URL, assert_all_called=False) as mock:
        yield mock
