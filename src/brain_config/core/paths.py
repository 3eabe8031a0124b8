"""Centralized path resolution for all brain-config files.

Single source of truth for on-disk locations. All modules MUST import
paths from here instead of constructing them locally.

Usage:
    from brain_config.core.paths import get_paths, init_paths

    # At startup (optional, defaults come from the environment):
    paths = init_paths(home=Path("/home/me"))

    # Anywhere else:
    paths = get_paths()
    config_file = paths.config_file
    locks_dir = paths.locks_dir
"""

import logging
import os
from functools import cached_property
from pathlib import Path

logger = logging.getLogger(__name__)

__all__ = ["BrainPaths", "init_paths", "get_paths", "_reset_paths"]


class BrainPaths:
    """Resolves every file and directory the core reads or writes.

    User-facing config lives in an XDG-style directory:
        <XDG_CONFIG_HOME or ~/.config>/brain/config.json
    The upstream memory service keeps its own config in ~/.basic-memory/,
    which also holds the pre-2.0 brain-config.json.

    Attributes:
        home: User home directory.
        config_home: Base of the XDG config tree.

    """

    CONFIG_DIR_NAME = "brain"
    CONFIG_FILE_NAME = "config.json"
    UPSTREAM_DIR_NAME = ".basic-memory"
    LEGACY_CONFIG_NAME = "brain-config.json"

    def __init__(self, home: Path | None = None, config_home: Path | None = None):
        """Initialize BrainPaths.

        Args:
            home: Home directory override. Defaults to Path.home().
            config_home: XDG config base override. Defaults to $XDG_CONFIG_HOME,
                falling back to <home>/.config.

        """
        self.home = Path(home) if home is not None else Path.home()
        if config_home is None:
            xdg = os.environ.get("XDG_CONFIG_HOME")
            config_home = Path(xdg) if xdg else self.home / ".config"
        self.config_home = Path(config_home)

    @cached_property
    def config_dir(self) -> Path:
        """Directory owning config.json and all core state (mode 0700)."""
        return self.config_home / self.CONFIG_DIR_NAME

    @cached_property
    def config_file(self) -> Path:
        return self.config_dir / self.CONFIG_FILE_NAME

    @cached_property
    def config_temp_file(self) -> Path:
        """Temp file for atomic config writes."""
        return self.config_dir / f"{self.CONFIG_FILE_NAME}.tmp"

    @cached_property
    def locks_dir(self) -> Path:
        return self.config_dir / "locks"

    @cached_property
    def rollback_dir(self) -> Path:
        return self.config_dir / "rollback"

    @cached_property
    def manifests_dir(self) -> Path:
        return self.config_dir / "manifests"

    @cached_property
    def upstream_dir(self) -> Path:
        return self.home / self.UPSTREAM_DIR_NAME

    @cached_property
    def upstream_config_file(self) -> Path:
        """Config file read by the upstream memory service at startup."""
        return self.upstream_dir / "config.json"

    @cached_property
    def legacy_config_file(self) -> Path:
        """Pre-2.0 config location, migrated by LegacyMigrator."""
        return self.upstream_dir / self.LEGACY_CONFIG_NAME

    def __repr__(self) -> str:
        return f"BrainPaths(home={self.home!r}, config_home={self.config_home!r})"


# Module-level singleton
_paths_instance: BrainPaths | None = None


def init_paths(home: Path | None = None, config_home: Path | None = None) -> BrainPaths:
    """Initialize the paths singleton.

    Args:
        home: Home directory override.
        config_home: XDG config base override.

    Returns:
        Initialized BrainPaths instance.

    """
    global _paths_instance
    _paths_instance = BrainPaths(home, config_home)
    logger.debug("Initialized paths: %r", _paths_instance)
    return _paths_instance


def get_paths() -> BrainPaths:
    """Get the paths singleton, building it from the environment on first use."""
    if _paths_instance is None:
        return init_paths()
    return _paths_instance


def _reset_paths() -> None:
    """Reset paths singleton for testing purposes only."""
    global _paths_instance
    _paths_instance = None
