"""Process supervisor for container runtime commands.

This module handles:
- Composing `build` invocations from build options
- Executing builds as child processes with streamed stdout/stderr capture
- Enforcing build timeouts and cooperative termination
- The auxiliary runtime operations: inspect, tag, push, login, rmi, version

Every operation is exactly one child process; its exit code and standard
streams are the whole contract with the runtime.
"""

from __future__ import annotations

import asyncio
import codecs
import json
import logging
import os
import shlex
import signal
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from bundle_imagegen.builds.schema import BuildOptions, RegistryCredentials
from bundle_imagegen.errors import ExternalToolUnavailableError, RuntimeCommandError
from bundle_imagegen.types import ImageInfo, OutcomeKind

logger = logging.getLogger(__name__)

# Read size for output pipes (bytes)
READ_CHUNK_SIZE = 64 * 1024

# Timeout for short runtime commands (seconds)
COMMAND_TIMEOUT = 120.0

# How long to wait for output pipes to drain after the process exits (seconds)
DRAIN_TIMEOUT = 5.0

OutputCallback = Callable[[str], None]


@dataclass
class BuildOutcome:
    """Result of a supervised build.

    Attributes:
        kind: How the build ended.
        exit_code: Process exit code, if the process ran.
        image: Image metadata (success only).
        message: Failure description.
        duration: Wall-clock duration in seconds.
        command: The command that was executed.
    """

    kind: OutcomeKind
    exit_code: int | None = None
    image: ImageInfo | None = None
    message: str | None = None
    duration: float = 0.0
    command: str = ""

    @property
    def success(self) -> bool:
        """Whether the build produced an image."""
        return self.kind is OutcomeKind.SUCCESS


def compose_build_args(
    image_tag: str,
    context_dir: Path,
    recipe_path: Path,
    options: BuildOptions | None = None,
) -> list[str]:
    """Compose the runtime `build` arguments.

    Args:
        image_tag: Tag to give the image.
        context_dir: Build context directory.
        recipe_path: Recipe (Dockerfile) path.
        options: Optional build options.

    Returns:
        Arguments (without the runtime executable) suitable for subprocess.
    """
    args = ["build", "-t", image_tag, "-f", str(recipe_path)]

    if options is not None:
        for key in sorted(options.build_args):
            args.extend(["--build-arg", f"{key}={options.build_args[key]}"])

        for key in sorted(options.labels):
            args.extend(["--label", f"{key}={options.labels[key]}"])

        if options.platform:
            args.extend(["--platform", options.platform])

        if options.target:
            args.extend(["--target", options.target])

    args.append(str(context_dir))
    return args


def _signal_group(process: asyncio.subprocess.Process, sig: int) -> None:
    """Send a signal to the process group led by a child process."""
    try:
        os.killpg(process.pid, sig)
    except ProcessLookupError:
        pass
    except PermissionError:
        process.send_signal(sig)


class ProcessSupervisor:
    """Runs container runtime commands as supervised child processes.

    Running build processes are tracked by build id so that ``terminate``
    can reach them.
    """

    def __init__(
        self,
        runtime_command: str = "docker",
        build_timeout: float = 600.0,
        kill_grace: float = 10.0,
        command_timeout: float = COMMAND_TIMEOUT,
    ) -> None:
        self.runtime = shlex.split(runtime_command)
        self.build_timeout = build_timeout
        self.kill_grace = kill_grace
        self.command_timeout = command_timeout
        self._processes: dict[str, asyncio.subprocess.Process] = {}
        self._reaping: dict[asyncio.Task[None], asyncio.subprocess.Process] = {}

    def is_running(self, build_id: str) -> bool:
        """Whether a build process is currently running for an id."""
        process = self._processes.get(build_id)
        return process is not None and process.returncode is None

    async def _spawn(
        self,
        args: list[str],
        cwd: Path | None = None,
        with_stdin: bool = False,
    ) -> asyncio.subprocess.Process:
        try:
            return await asyncio.create_subprocess_exec(
                *self.runtime,
                *args,
                cwd=cwd,
                stdin=asyncio.subprocess.PIPE
                if with_stdin
                else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise ExternalToolUnavailableError(
                f"Container runtime '{self.runtime[0]}' cannot be executed: {e}"
            ) from e

    async def _stop(
        self, process: asyncio.subprocess.Process, signalled: bool = False
    ) -> None:
        """Terminate a process gracefully, killing it after the grace period."""
        if process.returncode is not None:
            return
        if not signalled:
            _signal_group(process, signal.SIGTERM)
        try:
            await asyncio.wait_for(process.wait(), timeout=self.kill_grace)
        except TimeoutError:
            logger.warning(
                "Process %d ignored SIGTERM for %ss, killing", process.pid, self.kill_grace
            )
            _signal_group(process, signal.SIGKILL)
            await process.wait()

    async def _pump(
        self,
        build_id: str,
        stream: asyncio.StreamReader,
        name: str,
        on_output: OutputCallback,
    ) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            text = decoder.decode(chunk)
            if text:
                on_output(text)
                logger.debug("[%s:%s] %s", build_id, name, text.rstrip())
        tail = decoder.decode(b"", final=True)
        if tail:
            on_output(tail)

    async def run_build(
        self,
        build_id: str,
        context_dir: Path,
        recipe_path: Path,
        image_tag: str,
        options: BuildOptions | None,
        on_output: OutputCallback,
    ) -> BuildOutcome:
        """Execute an image build.

        Output chunks from both pipes are handed to ``on_output`` as they
        arrive. If the build outlives ``build_timeout`` it is sent SIGTERM and a
        TIMEOUT outcome is returned at once; escalation to SIGKILL after
        ``kill_grace`` and collecting the process happen in the background.
        If the calling task is cancelled, the process is terminated before
        the cancellation propagates.

        Args:
            build_id: Build identifier (used to track the process).
            context_dir: Build context directory.
            recipe_path: Recipe path.
            image_tag: Tag for the resulting image.
            options: Optional build options.
            on_output: Callback receiving decoded output chunks.

        Returns:
            BuildOutcome describing how the build ended.
        """
        args = compose_build_args(image_tag, context_dir, recipe_path, options)
        cmd_str = shlex.join([*self.runtime, *args])
        logger.info("Executing build %s: %s", build_id, cmd_str)

        started = time.monotonic()
        try:
            process = await self._spawn(args, cwd=context_dir)
        except ExternalToolUnavailableError as e:
            logger.error("Build %s could not start: %s", build_id, e)
            return BuildOutcome(
                kind=OutcomeKind.UNAVAILABLE, message=str(e), command=cmd_str
            )

        self._processes[build_id] = process
        readers = [
            asyncio.create_task(self._pump(build_id, stream, name, on_output))
            for name, stream in (("stdout", process.stdout), ("stderr", process.stderr))
            if stream is not None
        ]

        try:
            try:
                exit_code = await asyncio.wait_for(
                    process.wait(), timeout=self.build_timeout
                )
            except TimeoutError:
                message = f"Build timed out after {self.build_timeout:g} seconds"
                logger.error("Build %s: %s", build_id, message)
                _signal_group(process, signal.SIGTERM)
                self._reap_in_background(build_id, process, readers)
                readers = []
                return BuildOutcome(
                    kind=OutcomeKind.TIMEOUT,
                    exit_code=None,
                    message=message,
                    duration=time.monotonic() - started,
                    command=cmd_str,
                )
            await self._drain(readers)
        except asyncio.CancelledError:
            logger.info("Build %s cancelled, terminating process %d", build_id, process.pid)
            await self._stop(process)
            raise
        finally:
            self._processes.pop(build_id, None)
            for reader in readers:
                if not reader.done():
                    reader.cancel()

        duration = time.monotonic() - started
        if exit_code != 0:
            message = f"Build failed with exit code {exit_code}"
            logger.error("Build %s: %s", build_id, message)
            return BuildOutcome(
                kind=OutcomeKind.FAILED,
                exit_code=exit_code,
                message=message,
                duration=duration,
                command=cmd_str,
            )

        try:
            image = await self.inspect_image(image_tag)
        except (RuntimeCommandError, ExternalToolUnavailableError) as e:
            message = f"Failed to get image info: {e}"
            logger.error("Build %s: %s", build_id, message)
            return BuildOutcome(
                kind=OutcomeKind.FAILED,
                exit_code=exit_code,
                message=message,
                duration=duration,
                command=cmd_str,
            )

        logger.info(
            "Build %s finished in %.1fs: %s (%d bytes)",
            build_id,
            duration,
            image.image_id,
            image.size_bytes,
        )
        return BuildOutcome(
            kind=OutcomeKind.SUCCESS,
            exit_code=exit_code,
            image=image,
            duration=duration,
            command=cmd_str,
        )

    async def _drain(self, readers: list[asyncio.Task[None]]) -> None:
        if not readers:
            return
        _, pending = await asyncio.wait(readers, timeout=DRAIN_TIMEOUT)
        for reader in pending:
            reader.cancel()

    def _reap_in_background(
        self,
        build_id: str,
        process: asyncio.subprocess.Process,
        readers: list[asyncio.Task[None]],
    ) -> None:
        """Escalate and collect a timed out process without holding up the caller."""
        task = asyncio.create_task(
            self._reap(build_id, process, readers), name=f"reap-{build_id}"
        )
        self._reaping[task] = process
        task.add_done_callback(lambda t: self._reaping.pop(t, None))

    async def _reap(
        self,
        build_id: str,
        process: asyncio.subprocess.Process,
        readers: list[asyncio.Task[None]],
    ) -> None:
        try:
            await self._stop(process, signalled=True)
            await self._drain(readers)
            logger.debug("Build %s process %d reaped", build_id, process.pid)
        finally:
            for reader in readers:
                if not reader.done():
                    reader.cancel()

    @property
    def reaping_count(self) -> int:
        """Number of timed out processes still being shut down."""
        return len(self._reaping)

    async def aclose(self) -> None:
        """Kill processes still being reaped and wait for them to exit."""
        reapers = list(self._reaping)
        for process in self._reaping.values():
            if process.returncode is None:
                _signal_group(process, signal.SIGKILL)
        if reapers:
            await asyncio.gather(*reapers, return_exceptions=True)

    def terminate(self, build_id: str) -> bool:
        """Request graceful termination of a running build.

        Sends SIGTERM (not SIGKILL) so the runtime can release resources.

        Returns:
            True if a running process received the signal.
        """
        process = self._processes.get(build_id)
        if process is None or process.returncode is not None:
            return False
        logger.info("Terminating build %s (pid %d)", build_id, process.pid)
        _signal_group(process, signal.SIGTERM)
        return True

    async def _run(
        self,
        args: list[str],
        input_data: bytes | None = None,
        timeout: float | None = None,
    ) -> tuple[int, str, str]:
        process = await self._spawn(args, with_stdin=input_data is not None)
        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(input_data),
                timeout=timeout or self.command_timeout,
            )
        except TimeoutError as e:
            await self._stop(process)
            raise RuntimeCommandError(
                f"{args[0]} timed out after {timeout or self.command_timeout:g}s",
                code="runtime_command_timeout",
            ) from e
        except asyncio.CancelledError:
            await self._stop(process)
            raise
        returncode = process.returncode if process.returncode is not None else -1
        return (
            returncode,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )

    async def _check(
        self,
        args: list[str],
        input_data: bytes | None = None,
        timeout: float | None = None,
    ) -> str:
        returncode, stdout, stderr = await self._run(args, input_data, timeout)
        if returncode != 0:
            raise RuntimeCommandError(
                f"{self.runtime[0]} {args[0]} failed with exit code {returncode}: "
                f"{stderr.strip()}",
                exit_code=returncode,
                stderr=stderr,
            )
        return stdout

    async def inspect_image(self, image_tag: str) -> ImageInfo:
        """Resolve image id and size for a tag.

        Raises:
            RuntimeCommandError: If inspect fails or its output is unusable.
        """
        stdout = await self._check(["image", "inspect", image_tag])
        try:
            inspection = json.loads(stdout)
        except ValueError as e:
            raise RuntimeCommandError(
                f"Failed to parse inspect output: {e}", code="inspect_parse_error"
            ) from e
        if not isinstance(inspection, list) or not inspection:
            raise RuntimeCommandError(
                f"No image found for {image_tag}", code="image_not_found"
            )
        try:
            image = inspection[0]
            return ImageInfo(
                image_id=str(image["Id"]), size_bytes=int(image.get("Size") or 0)
            )
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise RuntimeCommandError(
                f"Unexpected inspect output for {image_tag}: {e}",
                code="inspect_parse_error",
            ) from e

    async def tag_image(self, source: str, target: str) -> None:
        """Tag an image with an additional reference."""
        await self._check(["tag", source, target])

    async def push_image(self, reference: str) -> None:
        """Push an image reference to its registry."""
        logger.info("Pushing %s", reference)
        stdout = await self._check(["push", reference], timeout=self.build_timeout)
        for line in stdout.splitlines():
            logger.debug("[push] %s", line)

    async def login(self, registry: RegistryCredentials) -> None:
        """Log in to a registry, passing the password on stdin."""
        await self._check(
            ["login", "-u", registry.username, "--password-stdin", registry.url],
            input_data=registry.password.encode("utf-8"),
        )

    async def remove_image(self, image_id: str) -> None:
        """Remove an image from the runtime."""
        await self._check(["rmi", image_id])

    async def probe(self) -> str:
        """Check that the runtime can be invoked.

        Returns:
            The runtime's version output.

        Raises:
            ExternalToolUnavailableError: If the runtime is missing or fails.
        """
        try:
            return await self._check(["version"])
        except RuntimeCommandError as e:
            raise ExternalToolUnavailableError(
                f"Container runtime not available: {e}"
            ) from e


__all__ = [
    "BuildOutcome",
    "ProcessSupervisor",
    "compose_build_args",
]
