"""Shared constants for configuration modules.

This module provides constants used across config submodules to avoid
duplication and circular import issues.
"""

# Version tag written to every user config
CONFIG_VERSION: str = "2.0.0"

# Informational only, never fetched
CONFIG_SCHEMA_URL: str = "https://brain.dev/schemas/config-v2.json"

DEFAULT_MEMORIES_LOCATION: str = "~/memories"
DEFAULT_SYNC_DELAY_MS: int = 500
DEFAULT_WATCHER_DEBOUNCE_MS: int = 2000
DEFAULT_LOG_LEVEL: str = "info"

# Config-file lock: every store operation holds it
CONFIG_LOCK_NAME: str = "config"
CONFIG_LOCK_TIMEOUT_MS: int = 5000
CONFIG_LOCK_STALE_MS: int = 30_000

# Upstream config writes use their own lock
UPSTREAM_LOCK_NAME: str = "upstream-config"
UPSTREAM_LOCK_TIMEOUT_MS: int = 5000

# Subdirectory appended to code_path in CODE mode
CODE_MODE_MEMORIES_DIR: str = "docs"

# Top-level groups compared by the diff engine and resettable via the service
GLOBAL_SECTIONS: tuple[str, ...] = ("defaults", "sync", "logging", "watcher")
