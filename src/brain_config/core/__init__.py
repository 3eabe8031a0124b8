"""Core of the configuration lifecycle.

This package provides:
- Path safety rules (path_validator) and well-known locations (paths)
- Cross-process file locks (locking)
- The user config store, upstream translation and diffing (config)
- Snapshots and the last-known-good anchor (rollback)
- Legacy config migration (migration) and copy manifests (manifest)
- The config file watcher (watcher) and the mutation service (service)

Only the exception hierarchy is imported eagerly; import submodules directly.
"""

from brain_config.core.exceptions import (
    BrainConfigError,
    ConfigStoreError,
    ErrorKind,
    LockError,
    LockFilesystemError,
    LockTimeoutError,
    ManifestError,
    PathValidationError,
    SnapshotError,
    TranslationError,
)

__all__ = [
    "BrainConfigError",
    "ConfigStoreError",
    "ErrorKind",
    "LockError",
    "LockFilesystemError",
    "LockTimeoutError",
    "ManifestError",
    "PathValidationError",
    "SnapshotError",
    "TranslationError",
]
