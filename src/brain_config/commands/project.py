"""Project subcommand group for brain-config CLI.

Commands for adding, changing, listing and relocating projects.
"""

import typer
from rich.table import Table

from brain_config.cli_utils import _fail, _info, _success, console
from brain_config.core.config import get_config_store, resolve_memories_path, summarize_config_diff
from brain_config.core.config.models import MemoriesMode
from brain_config.core.exceptions import BrainConfigError
from brain_config.core.service import ConfigService, ConfigUpdateResult

project_app = typer.Typer(
    name="project",
    help="Project management commands",
    no_args_is_help=True,
)


def _report(result: ConfigUpdateResult, action: str) -> None:
    if not result.changed:
        _info("No changes")
        return
    _success(action)
    for line in summarize_config_diff(result.diff).splitlines():
        console.print(f"  {line}")


@project_app.command("add")
def add_project(
    name: str = typer.Argument(..., help="Project name"),
    code_path: str = typer.Argument(..., help="Project source directory"),
    memories_path: str | None = typer.Option(
        None, "--memories-path", help="Memory store directory (CUSTOM mode)"
    ),
    mode: MemoriesMode | None = typer.Option(
        None, "--mode", "-m", case_sensitive=False, help="Memory path mode"
    ),
) -> None:
    """Add a project."""
    try:
        result = ConfigService().add_project(
            name, code_path, memories_path=memories_path, memories_mode=mode
        )
    except BrainConfigError as e:
        _fail(e)
    _report(result, f"Added project '{name}'")


@project_app.command("update")
def update_project(
    name: str = typer.Argument(..., help="Project name"),
    code_path: str | None = typer.Option(None, "--code-path", help="Project source directory"),
    memories_path: str | None = typer.Option(
        None, "--memories-path", help="Memory store directory (CUSTOM mode)"
    ),
    mode: MemoriesMode | None = typer.Option(
        None, "--mode", "-m", case_sensitive=False, help="Memory path mode"
    ),
) -> None:
    """Change fields of an existing project."""
    try:
        result = ConfigService().update_project(
            name, code_path=code_path, memories_path=memories_path, memories_mode=mode
        )
    except BrainConfigError as e:
        _fail(e)
    _report(result, f"Updated project '{name}'")


@project_app.command("remove")
def remove_project(name: str = typer.Argument(..., help="Project name")) -> None:
    """Remove a project from the config. Memory files are kept."""
    try:
        result = ConfigService().remove_project(name)
    except BrainConfigError as e:
        _fail(e)
    _report(result, f"Removed project '{name}'")


@project_app.command("list")
def list_projects() -> None:
    """List projects with their resolved memory paths."""
    try:
        config = get_config_store().load()
    except BrainConfigError as e:
        _fail(e)

    if not config.projects:
        _info("No projects configured")
        return

    table = Table(title="Projects")
    table.add_column("Name", style="cyan")
    table.add_column("Code path")
    table.add_column("Mode")
    table.add_column("Memories path")
    for name, entry in sorted(config.projects.items()):
        resolution = resolve_memories_path(name, entry, config.defaults)
        location = resolution.path if resolution.ok else f"[red]{resolution.error}[/red]"
        table.add_row(name, entry.code_path, resolution.mode.value, location)
    console.print(table)


@project_app.command("move")
def move_project(
    name: str = typer.Argument(..., help="Project name"),
    new_path: str = typer.Argument(..., help="New memory store directory"),
) -> None:
    """Copy a project's memories to a new directory and switch it to CUSTOM mode.

    Source files are left in place.
    """
    try:
        result = ConfigService().move_project_memories(name, new_path)
    except BrainConfigError as e:
        _fail(e)
    _success(
        f"Copied {result.files_copied} file(s) of '{name}' "
        f"from {result.source_path} to {result.target_path}"
    )
