"""CLI entry point and base commands.

Provides the main CLI application with commands for:
- serve: Run the API server
- validate: Check a bundle directory against the security policy
- check-runtime: Report container runtime availability
"""

import asyncio
import json
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from appforge.logging_config import configure_logging
from appforge.sandbox.models import FileBundle
from appforge.settings import get_settings

app = typer.Typer(
    name="appforge",
    help="Sandboxed execution engine for generated applications",
    add_completion=False,
    no_args_is_help=True,
)

console = Console()

# Directories never treated as part of a bundle.
_SKIPPED_DIRS = {"node_modules", ".git", ".next", "build", "dist"}


@app.callback()
def main(
    log_level: Annotated[
        Optional[str],  # noqa: UP007
        typer.Option("--log-level", help="Override LOG_LEVEL (DEBUG, INFO, WARNING, ERROR)"),
    ] = None,
) -> None:
    """Configure logging before any command runs."""
    configure_logging(log_level.upper() if log_level else None)  # type: ignore[arg-type]


@app.command()
def serve(
    host: Annotated[
        Optional[str],  # noqa: UP007
        typer.Option("--host", "-h", help="Host to bind to (defaults to API_HOST)"),
    ] = None,
    port: Annotated[
        Optional[int],  # noqa: UP007
        typer.Option("--port", "-p", help="Port to bind to (defaults to API_PORT)"),
    ] = None,
    reload: Annotated[
        bool,
        typer.Option("--reload", "-r", help="Enable auto-reload for development"),
    ] = False,
) -> None:
    """Start the AppForge API server.

    Runs the FastAPI application with uvicorn.  A single worker owns the
    sandbox registry, so multi-worker mode is not offered.
    """
    import uvicorn

    settings = get_settings()
    host = host or settings.api_host
    port = port or settings.api_port

    console.print(
        Panel(
            f"[bold green]Starting AppForge API Server[/bold green]\n"
            f"Host: {host}\n"
            f"Port: {port}\n"
            f"Isolation: {settings.sandbox_isolation}\n"
            f"Workspace root: {settings.sandbox_workspace_root}\n"
            f"Reload: {reload}",
            title="AppForge",
            border_style="green",
        )
    )

    uvicorn.run(
        "appforge.api.main:get_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
        log_level=settings.log_level.lower(),
    )


def load_bundle(directory: Path) -> tuple[FileBundle, dict[str, str]]:
    """Read a bundle directory into (files, dependencies).

    Text files are read as UTF-8, anything else as bytes.  Dependencies
    come from the manifest's ``dependencies`` field.
    """
    files: FileBundle = {}
    for path in sorted(directory.rglob("*")):
        relative = path.relative_to(directory)
        if not path.is_file() or _SKIPPED_DIRS.intersection(relative.parts[:-1]):
            continue
        data = path.read_bytes()
        try:
            files[relative.as_posix()] = data.decode("utf-8")
        except UnicodeDecodeError:
            files[relative.as_posix()] = data

    dependencies: dict[str, str] = {}
    manifest = files.get("package.json")
    if isinstance(manifest, str):
        try:
            declared = json.loads(manifest).get("dependencies") or {}
        except (ValueError, AttributeError):
            declared = {}
        if isinstance(declared, dict):
            dependencies = {str(k): str(v) for k, v in declared.items()}
    return files, dependencies


@app.command()
def validate(
    directory: Annotated[
        Path,
        typer.Argument(exists=True, file_okay=False, dir_okay=True, help="Bundle directory"),
    ],
    strict: Annotated[
        bool,
        typer.Option("--strict", help="Require dependencies to be on the allowlist"),
    ] = False,
) -> None:
    """Validate a bundle directory against the security policy.

    Exits with status 1 when any rule is violated.
    """
    from appforge.sandbox.validator import SecurityValidator, ValidationPolicy

    settings = get_settings()
    policy = ValidationPolicy.from_settings(settings)
    if strict:
        policy = policy.model_copy(update={"strict_dependencies": True})

    files, dependencies = load_bundle(directory)
    verdict = SecurityValidator(policy).validate(files, dependencies)

    if verdict.passed:
        console.print(
            f"[green]✓ {len(files)} files and {len(dependencies)} dependencies passed[/green]"
        )
        return

    table = Table(title="Policy Violations", show_header=True)
    table.add_column("Rule", style="cyan")
    table.add_column("Target")
    table.add_column("Message", style="red")
    for violation in verdict.violations:
        target = violation.path or violation.dependency or "-"
        table.add_row(violation.rule, target, violation.message)
    console.print(table)
    raise typer.Exit(code=1)


@app.command(name="check-runtime")
def check_runtime() -> None:
    """Check the container runtime and base image."""
    from appforge.sandbox.container import check_runtime as _check_runtime

    settings = get_settings()
    result = asyncio.run(
        _check_runtime(settings.container_runtime_path, settings.container_base_image)
    )

    table = Table(title="Container Runtime", show_header=True)
    table.add_column("Check", style="cyan")
    table.add_column("Status")

    def _mark(ok: bool) -> str:
        return "[green]✓[/green]" if ok else "[red]✗[/red]"

    table.add_row(f"Runtime ({result['runtime']})", _mark(result["runtime_available"]))
    table.add_row(f"Image ({result['image']})", _mark(result["image_available"]))
    console.print(table)

    for error in result["errors"]:
        console.print(f"[yellow]⚠ {error}[/yellow]")

    if not result["runtime_available"]:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
