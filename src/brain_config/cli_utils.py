"""Shared CLI helpers: exit codes, Rich output and logging setup."""

import logging
from typing import NoReturn

import typer
from rich.console import Console
from rich.logging import RichHandler

from brain_config.core.exceptions import (
    BrainConfigError,
    ConfigStoreError,
    ErrorKind,
    LockError,
    PathValidationError,
)

# Exit codes
EXIT_SUCCESS: int = 0
EXIT_ERROR: int = 1
EXIT_CONFIG_ERROR: int = 2
EXIT_LOCK_ERROR: int = 3
EXIT_SIGINT: int = 130  # 128 + SIGINT(2)
EXIT_SIGTERM: int = 143  # 128 + SIGTERM(15)

# Custom level below DEBUG for logging.level = "trace"
TRACE: int = 5
logging.addLevelName(TRACE, "TRACE")

CONFIG_LOG_LEVELS: dict[str, int] = {
    "trace": TRACE,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}

# Rich console for formatted output
console = Console()


def _setup_logging(verbose: bool, quiet: bool, config_level: str | None = None) -> None:
    """Configure the root logger with a RichHandler.

    Args:
        verbose: DEBUG level; takes precedence over quiet.
        quiet: WARNING level.
        config_level: logging.level from the user config, used when neither
            flag is given.

    """
    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.WARNING
    elif config_level is not None:
        level = CONFIG_LOG_LEVELS.get(config_level, logging.INFO)
    else:
        level = logging.INFO

    root = logging.getLogger()
    root.setLevel(level)
    if not any(isinstance(h, RichHandler) for h in root.handlers):
        root.addHandler(
            RichHandler(
                console=Console(stderr=True),
                show_path=False,
                rich_tracebacks=True,
            )
        )


def _error(message: str) -> None:
    console.print(f"[red]Error:[/red] {message}")


def _success(message: str) -> None:
    console.print(f"[green]✓[/green] {message}")


def _warning(message: str) -> None:
    console.print(f"[yellow]Warning:[/yellow] {message}")


def _info(message: str) -> None:
    console.print(f"[blue]ℹ[/blue] {message}")


def _exit_code_for(error: BrainConfigError) -> int:
    """Map a domain error to an exit code."""
    if isinstance(error, LockError) or error.kind is ErrorKind.LOCK_ERROR:
        return EXIT_LOCK_ERROR
    if isinstance(error, PathValidationError):
        return EXIT_CONFIG_ERROR
    if isinstance(error, ConfigStoreError) and error.kind in (
        ErrorKind.PARSE_ERROR,
        ErrorKind.VALIDATION_ERROR,
    ):
        return EXIT_CONFIG_ERROR
    return EXIT_ERROR


def _fail(error: BrainConfigError) -> NoReturn:
    """Print error and exit with its mapped code."""
    _error(error.message)
    raise typer.Exit(code=_exit_code_for(error)) from None
