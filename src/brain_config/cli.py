"""Typer CLI entry point for brain-config.

This module only parses arguments, delegates to brain_config.core and
renders results - no business logic here.
"""

import json
import logging
import time
from pathlib import Path
from typing import Any

import typer
from rich.table import Table

from brain_config import __version__
from brain_config.cli_utils import (
    EXIT_CONFIG_ERROR,
    EXIT_ERROR,
    EXIT_SIGINT,
    _error,
    _fail,
    _info,
    _setup_logging,
    _success,
    _warning,
    console,
)
from brain_config.core.config import (
    collect_path_errors,
    get_config_schema,
    get_config_store,
    load_upstream_config,
    parse_user_config,
    preview_translation,
    summarize_config_diff,
    sync_to_upstream,
    validate_translation,
)
from brain_config.core.exceptions import BrainConfigError
from brain_config.core.io import read_json_file
from brain_config.core.locking import register_signal_handlers, unregister_signal_handlers
from brain_config.core.manifest import get_manifest_manager
from brain_config.core.migration import LegacyMigrator, StepStatus
from brain_config.core.rollback import RollbackTarget, get_rollback_manager
from brain_config.core.service import ConfigService, ConfigUpdateResult, StartupResult
from brain_config.core.watcher import ConfigChangeEvent, ConfigEventType, get_config_watcher

# Module logger
logger = logging.getLogger(__name__)


app = typer.Typer(
    name="brain-config",
    help="Manage the brain user configuration and its upstream projection",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"brain-config {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable debug output (show detailed logging)",
    ),
    quiet: bool = typer.Option(
        False,
        "--quiet",
        "-q",
        help="Suppress non-error output",
    ),
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
) -> None:
    """Manage the brain user configuration and its upstream projection."""
    config_level = None
    if not (verbose or quiet):
        config_level = get_config_store().load_sync().logging.level
    _setup_logging(verbose, quiet, config_level)


def _get_service() -> ConfigService:
    return ConfigService()


def _print_json(data: Any) -> None:
    console.print_json(json.dumps(data, ensure_ascii=False))


def _report_update(result: ConfigUpdateResult, action: str) -> None:
    if not result.changed:
        _info("No changes")
        return
    _success(action)
    for line in summarize_config_diff(result.diff).splitlines():
        console.print(f"  {line}")


# =============================================================================
# Read commands
# =============================================================================


@app.command()
def show() -> None:
    """Print the current user config as JSON."""
    try:
        config = get_config_store().load()
    except BrainConfigError as e:
        _fail(e)
    _print_json(config.to_dict())


@app.command()
def get(key: str = typer.Argument(..., help="Dotted key, e.g. sync.delay_ms")) -> None:
    """Print one config value."""
    try:
        value = _get_service().get_value(key)
    except BrainConfigError as e:
        _fail(e)
    if isinstance(value, (dict, list)):
        _print_json(value)
    else:
        console.print(json.dumps(value) if not isinstance(value, str) else value)


@app.command()
def schema() -> None:
    """Print the JSON Schema of the user config."""
    _print_json(get_config_schema())


@app.command()
def validate(
    file: Path | None = typer.Option(
        None,
        "--file",
        "-f",
        help="Config file to check (defaults to the user config)",
    ),
) -> None:
    """Validate a config file: JSON, schema, path safety and upstream translation."""
    path = file or get_config_store().config_path
    if not path.exists():
        _error(f"Config file not found: {path}")
        raise typer.Exit(code=EXIT_CONFIG_ERROR) from None

    try:
        config = parse_user_config(read_json_file(path))
    except json.JSONDecodeError as e:
        _error(f"Invalid JSON in {path}: {e}")
        raise typer.Exit(code=EXIT_CONFIG_ERROR) from None
    except OSError as e:
        _error(f"Cannot read {path}: {e}")
        raise typer.Exit(code=EXIT_ERROR) from None
    except BrainConfigError as e:
        _fail(e)

    path_errors = collect_path_errors(config)
    for message in path_errors:
        _error(message)
    for message in validate_translation(config):
        _warning(message)
    if path_errors:
        raise typer.Exit(code=EXIT_CONFIG_ERROR)
    _success(f"{path} is valid")


@app.command()
def preview() -> None:
    """Show how each project resolves in the upstream config, without writing."""
    try:
        config = get_config_store().load()
    except BrainConfigError as e:
        _fail(e)
    result = preview_translation(config, load_upstream_config())

    table = Table(title="Upstream projection")
    table.add_column("Project", style="cyan")
    table.add_column("Mode")
    table.add_column("Memories path")
    for resolution in result.resolutions:
        location = resolution.path if resolution.ok else f"[red]{resolution.error}[/red]"
        table.add_row(resolution.project, resolution.mode.value, location)
    console.print(table)

    if result.errors:
        _warning(f"{len(result.errors)} project(s) would be dropped")


@app.command()
def history() -> None:
    """List rollback snapshots, oldest first."""
    manager = get_rollback_manager()
    try:
        manager.initialize()
    except BrainConfigError as e:
        _fail(e)

    anchor = manager.get_last_known_good()
    if anchor is not None:
        created = f"{anchor.created_at:%Y-%m-%d %H:%M:%S}"
        _info(f"Last known good: {anchor.id} ({anchor.reason}, {created})")

    snapshots = manager.get_history()
    if not snapshots:
        _info("No snapshots in rollback history")
        return

    table = Table(title="Rollback history")
    table.add_column("ID", style="cyan")
    table.add_column("Created (UTC)")
    table.add_column("Reason")
    table.add_column("Checksum")
    for snapshot in snapshots:
        table.add_row(
            snapshot.id,
            f"{snapshot.created_at:%Y-%m-%d %H:%M:%S}",
            snapshot.reason,
            snapshot.checksum[:12],
        )
    console.print(table)


# =============================================================================
# Mutating commands
# =============================================================================


@app.command(name="set")
def set_value(
    key: str = typer.Argument(..., help="Dotted key, e.g. sync.delay_ms"),
    value: str = typer.Argument(..., help="New value"),
) -> None:
    """Set a global config value."""
    try:
        result = _get_service().set_value(key, value)
    except BrainConfigError as e:
        _fail(e)
    _report_update(result, f"Set {key} = {value}")


@app.command()
def reset(
    section: str | None = typer.Argument(
        None, help="defaults, sync, logging or watcher (all if omitted)"
    ),
) -> None:
    """Restore global sections to their defaults. Projects are kept."""
    try:
        result = _get_service().reset(section)
    except BrainConfigError as e:
        _fail(e)
    _report_update(result, f"Reset {section or 'all sections'} to defaults")


@app.command()
def sync() -> None:
    """Write the upstream config from the current user config."""
    try:
        written = sync_to_upstream(get_config_store().load())
    except BrainConfigError as e:
        _fail(e)
    _success(f"Synced {len(written.projects)} project(s) to upstream config")


@app.command()
def rollback(
    target: RollbackTarget = typer.Option(
        RollbackTarget.LAST_KNOWN_GOOD,
        "--target",
        "-t",
        help="Snapshot to restore",
    ),
) -> None:
    """Restore the last-known-good config or the most recent snapshot."""
    manager = get_rollback_manager()
    try:
        manager.initialize()
    except BrainConfigError as e:
        _fail(e)

    result = manager.rollback(target)
    if not result.success:
        _error(result.error or "Rollback failed")
        raise typer.Exit(code=EXIT_ERROR)
    snapshot = result.snapshot
    _success(f"Restored snapshot {snapshot.id} ({snapshot.reason})" if snapshot else "Restored")


@app.command()
def migrate(
    dry_run: bool = typer.Option(
        False, "--dry-run", "-n", help="Transform only, write nothing"
    ),
    cleanup: bool = typer.Option(
        False, "--cleanup", help="Delete the legacy config after a successful migration"
    ),
    force: bool = typer.Option(
        False, "--force", "-f", help="Migrate even if a new config already exists"
    ),
) -> None:
    """Migrate the pre-2.0 config to the current format."""
    manager = get_rollback_manager()
    try:
        manager.initialize()
    except BrainConfigError as e:
        _fail(e)

    result = LegacyMigrator().migrate_with_rollback(
        manager, remove_old_config=cleanup, force=force, dry_run=dry_run
    )

    table = Table(title="Migration steps")
    table.add_column("Step", style="cyan")
    table.add_column("Status")
    table.add_column("Detail")
    styles = {StepStatus.COMPLETED: "green", StepStatus.FAILED: "red", StepStatus.SKIPPED: "yellow"}
    for step in result.steps:
        style = styles[step.status]
        table.add_row(step.name, f"[{style}]{step.status.value}[/{style}]", step.error or "")
    console.print(table)

    if not result.success:
        _error(result.error or "Migration failed")
        raise typer.Exit(code=EXIT_ERROR)
    if result.migrated_config is None:
        _info(result.error or "Nothing to migrate")
        return
    if dry_run:
        _print_json(result.migrated_config.to_dict())
        _info("Dry run: no files written")
        return
    if result.backup_path is not None:
        _info(f"Backup: {result.backup_path}")
    _success("Migration completed")


@app.command()
def recover() -> None:
    """Roll back memory moves interrupted by a crash."""
    result = get_manifest_manager().recover_incomplete_migrations()
    if result.found == 0:
        _info("No incomplete migrations found")
        return
    for migration_id in result.failures:
        _error(f"Could not fully roll back {migration_id}")
    if result.failures:
        raise typer.Exit(code=EXIT_ERROR)
    _success(f"Rolled back {result.recovered} incomplete migration(s)")


def _print_event(event: ConfigChangeEvent) -> None:
    if event.type is ConfigEventType.RECONFIGURE and event.diff is not None:
        _success("Config change applied")
        for line in summarize_config_diff(event.diff).splitlines():
            console.print(f"  {line}")
    elif event.type is ConfigEventType.VALIDATION_ERROR:
        _warning(f"Invalid config edit: {event.error}")
    elif event.type is ConfigEventType.ROLLBACK:
        if event.rollback_result is not None and event.rollback_result.success:
            _success("Restored last known good config")
        else:
            _error(f"Rollback failed: {event.error}")
    elif event.type is ConfigEventType.ERROR:
        _error(event.error or "Watcher error")


def _report_startup(result: StartupResult) -> None:
    recovery = result.recovery
    for migration_id in recovery.failures:
        _error(f"Could not fully roll back {migration_id}")
    if recovery.recovered:
        _info(f"Rolled back {recovery.recovered} incomplete migration(s)")

    migration = result.migration
    if migration is None:
        return
    if not migration.success:
        _warning(f"Legacy config migration failed: {migration.error}")
    elif migration.migrated_config is not None:
        _success("Migrated legacy config")


@app.command()
def watch() -> None:
    """Recover, migrate, then watch the config file and apply valid edits until interrupted."""
    watcher = get_config_watcher(_print_event)
    try:
        startup = ConfigService(watcher=watcher).startup()
    except BrainConfigError as e:
        _fail(e)
    _report_startup(startup)

    register_signal_handlers()
    try:
        watcher.start()
    except (BrainConfigError, OSError) as e:
        unregister_signal_handlers()
        _error(f"Cannot start watcher: {e}")
        raise typer.Exit(code=EXIT_ERROR) from None

    _info(f"Watching {watcher.config_path} (Ctrl+C to stop)")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        raise typer.Exit(code=EXIT_SIGINT) from None
    finally:
        watcher.stop()
        unregister_signal_handlers()


# ============================================================================
# Register sub-apps (command groups)
# ============================================================================

from brain_config.commands.project import project_app  # noqa: E402

app.add_typer(project_app, name="project")


if __name__ == "__main__":
    app()
