"""Thin CLI wrapper for bundle_imagegen.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import asyncio
import json
import logging
from enum import Enum
from pathlib import Path
from typing import Annotated, Any

import typer
import yaml
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler

from bundle_imagegen import __version__
from bundle_imagegen.builds.schema import BuildOptions, BuildRequest, BuildSnapshot
from bundle_imagegen.config import Settings, get_settings, print_settings_json
from bundle_imagegen.errors import BuilderError

app = typer.Typer(
    name="bundle-imagegen",
    help="Bundle Image Builder - turn source bundles into container images",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)


class LogLevel(str, Enum):
    """Accepted values for --log-level."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"bundle-imagegen version {__version__}")
        raise typer.Exit()


def _print_json(text: str) -> None:
    console.print(text, markup=False, highlight=False, soft_wrap=True)


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
    log_level: Annotated[
        LogLevel | None,
        typer.Option(
            "--log-level",
            help="Override the configured log level",
            case_sensitive=False,
        ),
    ] = None,
) -> None:
    """Bundle Image Builder - turn source bundles into container images."""
    _setup_logging(log_level.value if log_level else get_settings().log_level)


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        _print_json(print_settings_json(settings))
    else:
        console.print("[bold]Effective Configuration:[/bold]")
        console.print()
        console.print("[bold]Paths:[/bold]")
        console.print(f"  Work directory:      {settings.work_dir}")
        console.print()
        console.print("[bold]Blob store:[/bold]")
        console.print(f"  URL:                 {settings.blob_store_url}")
        console.print(f"  Download timeout:    {settings.blob_download_timeout}")
        console.print()
        console.print("[bold]Container runtime:[/bold]")
        console.print(f"  Runtime command:     {settings.runtime_command}")
        console.print(f"  Image name:          {settings.image_name}")
        console.print(f"  Default namespace:   {settings.default_namespace}")
        console.print()
        console.print("[bold]Operational:[/bold]")
        console.print(f"  Log level:           {settings.log_level}")
        console.print(f"  Max builds:          {settings.max_concurrent_builds}")
        console.print()
        console.print("[bold]Timeouts (seconds):[/bold]")
        console.print(f"  Build timeout:       {settings.build_timeout}")
        console.print(f"  Kill grace:          {settings.kill_grace}")
        console.print(f"  Retention:           {settings.retention}")
        console.print(f"  Cleanup interval:    {settings.cleanup_interval}")


recipe_app = typer.Typer(help="Inspect generated build recipes")
app.add_typer(recipe_app, name="recipe")


@recipe_app.command("show")
def recipe_show(
    path: Annotated[str, typer.Argument(help="Project directory")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show the recipe that would be generated for a project directory."""
    from bundle_imagegen.builds.recipe import generate_recipe

    project_dir = Path(path)
    if not project_dir.is_dir():
        console.print(f"[red]Directory not found: {path}[/red]")
        raise typer.Exit(code=1)

    archetype, text = generate_recipe(project_dir)
    if json_output:
        _print_json(json.dumps({"archetype": archetype.value, "recipe": text}, indent=2))
    else:
        console.print(f"[bold]Detected archetype:[/bold] {archetype.value}")
        console.print()
        console.print(text, markup=False, highlight=False, soft_wrap=True)


def _parse_pairs(values: list[str] | None, option: str) -> dict[str, str]:
    """Parse repeated KEY=VALUE options into a dict."""
    pairs: dict[str, str] = {}
    for value in values or []:
        key, sep, val = value.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"expected KEY=VALUE, got '{value}'", param_hint=option)
        pairs[key] = val
    return pairs


def _load_options_file(path: Path) -> dict[str, Any]:
    """Load build options from a YAML or JSON file."""
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        console.print(f"[red]Could not read options file {path}: {e}[/red]")
        raise typer.Exit(code=1) from None
    if data is None:
        return {}
    if not isinstance(data, dict):
        console.print(f"[red]Options file {path} must contain a mapping[/red]")
        raise typer.Exit(code=1)
    return data


async def _run_build(
    settings: Settings,
    request: BuildRequest,
) -> tuple[BuildSnapshot | None, BuilderError | None]:
    from bundle_imagegen.builds.service import BuildOrchestrator

    orchestrator = BuildOrchestrator(settings)
    try:
        build_id = await orchestrator.start(request)
        try:
            return await orchestrator.wait(build_id), None
        except BuilderError as e:
            return orchestrator.status(build_id), e
    finally:
        await orchestrator.aclose()


build_app = typer.Typer(help="Build images")
app.add_typer(build_app, name="build")


@build_app.command("run")
def build_run(
    bundle_id: Annotated[str, typer.Argument(help="Bundle ID in the blob store")],
    platform: Annotated[
        str | None,
        typer.Option("--platform", help="Target platform, e.g. linux/amd64"),
    ] = None,
    recipe: Annotated[
        str | None,
        typer.Option("--recipe", "-f", help="Recipe path relative to the bundle root"),
    ] = None,
    build_args: Annotated[
        list[str] | None,
        typer.Option("--build-arg", help="Build argument KEY=VALUE (can be repeated)"),
    ] = None,
    labels: Annotated[
        list[str] | None,
        typer.Option("--label", help="Image label KEY=VALUE (can be repeated)"),
    ] = None,
    target: Annotated[
        str | None,
        typer.Option("--target", help="Multi-stage target"),
    ] = None,
    options_file: Annotated[
        Path | None,
        typer.Option("--options-file", help="YAML or JSON file with build options"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Build an image from a bundle and wait for the result.

    Options given on the command line override those in --options-file.
    """
    options: dict[str, Any] = {}
    if options_file is not None:
        options = _load_options_file(options_file)

    if platform:
        options["platform"] = platform
    if recipe:
        options["recipe"] = recipe
    if target:
        options["target"] = target
    if build_args:
        options["build_args"] = {
            **options.get("build_args", {}),
            **_parse_pairs(build_args, "--build-arg"),
        }
    if labels:
        options["labels"] = {
            **options.get("labels", {}),
            **_parse_pairs(labels, "--label"),
        }

    try:
        request = BuildRequest(
            bundle_id=bundle_id,
            build_options=BuildOptions.model_validate(options) if options else None,
        )
    except ValidationError as e:
        console.print("[red]Invalid build options:[/red]")
        console.print(str(e), markup=False, highlight=False)
        raise typer.Exit(code=1) from None

    settings = get_settings()
    if not json_output:
        console.print(f"[blue]Building bundle {bundle_id}...[/blue]")

    snapshot, error = asyncio.run(_run_build(settings, request))

    if json_output:
        payload: dict[str, Any] = (
            snapshot.model_dump(mode="json") if snapshot is not None else {}
        )
        if error is not None:
            payload["error"] = str(error)
            payload["error_code"] = error.code
        _print_json(json.dumps(payload, indent=2))
    elif error is None and snapshot is not None:
        console.print("[green]✓ Build succeeded[/green]")
        console.print(f"  Build ID:  {snapshot.build_id}")
        console.print(f"  Image tag: {snapshot.image_tag}")
        console.print(f"  Image ID:  {snapshot.image_id}")
        console.print(f"  Size:      {snapshot.image_size_bytes} bytes")
    else:
        console.print(f"[red]✗ Build failed ({error.code if error else 'unknown'})[/red]")
        console.print(f"  {error}", markup=False)
        if snapshot is not None and snapshot.log:
            console.print()
            console.print("[bold]Build log (tail):[/bold]")
            tail = "".join(snapshot.log).splitlines()[-20:]
            console.print("\n".join(tail), markup=False, highlight=False)

    if error is not None:
        raise typer.Exit(code=1)


@app.command()
def health() -> None:
    """Check that the container runtime and work directory are usable."""
    from bundle_imagegen.builds.service import BuildOrchestrator

    async def _check() -> bool:
        orchestrator = BuildOrchestrator(get_settings())
        try:
            return await orchestrator.health_check()
        finally:
            await orchestrator.aclose()

    if asyncio.run(_check()):
        console.print("[green]healthy[/green]")
    else:
        console.print("[red]unhealthy[/red]")
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
