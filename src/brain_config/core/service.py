"""Config mutation service.

Every mutation follows the same sequence:

    global lock (+ project locks) → load → transform → diff →
    snapshot previous → save → sync upstream → mark as good

An unchanged config short-circuits after the diff. If the upstream sync
fails, the previous config is saved and synced back before the error is
re-raised, so config.json and the upstream never disagree for long.

Also owns the project memory move (copy under a manifest, then switch the
project to CUSTOM mode) and the startup sequence (recover interrupted
moves, migrate a legacy config, initialize the store and rollback state).
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from brain_config.core.config.constants import GLOBAL_SECTIONS
from brain_config.core.config.diff import ConfigDiff, detect_config_diff
from brain_config.core.config.models import (
    MemoriesMode,
    ProjectConfig,
    UserConfig,
    default_user_config,
)
from brain_config.core.config.schema import parse_user_config
from brain_config.core.config.store import ConfigStore, get_config_store
from brain_config.core.config.translation import resolve_memories_path, sync_to_upstream
from brain_config.core.exceptions import (
    BrainConfigError,
    ConfigStoreError,
    ErrorKind,
    ManifestError,
    PathValidationError,
)
from brain_config.core.locking import LockManager, get_lock_manager
from brain_config.core.manifest import (
    ManifestManager,
    RecoveryResult,
    collect_files,
    get_manifest_manager,
)
from brain_config.core.migration import LegacyMigrator, MigrationResult
from brain_config.core.path_validator import is_path_within, validate_path_or_raise
from brain_config.core.rollback import RollbackManager, RollbackSnapshot, get_rollback_manager
from brain_config.core.watcher import ConfigWatcher

logger = logging.getLogger(__name__)

__all__ = [
    "SETTABLE_KEYS",
    "ConfigUpdateResult",
    "ProjectMoveResult",
    "StartupResult",
    "ConfigService",
]

# Settable dotted keys and the type raw CLI strings are coerced to
SETTABLE_KEYS: dict[str, type] = {
    "defaults.memories_location": str,
    "defaults.memories_mode": MemoriesMode,
    "sync.enabled": bool,
    "sync.delay_ms": int,
    "logging.level": str,
    "watcher.enabled": bool,
    "watcher.debounce_ms": int,
}

_TRUE_STRINGS = frozenset({"true", "1", "yes", "on"})
_FALSE_STRINGS = frozenset({"false", "0", "no", "off"})


@dataclass(frozen=True)
class ConfigUpdateResult:
    """Outcome of a mutation. snapshot is None when nothing changed."""

    config: UserConfig
    previous: UserConfig
    diff: ConfigDiff
    snapshot: RollbackSnapshot | None = None

    @property
    def changed(self) -> bool:
        return self.diff.has_changes


@dataclass(frozen=True)
class ProjectMoveResult:
    update: ConfigUpdateResult
    source_path: str
    target_path: str
    files_copied: int


@dataclass(frozen=True)
class StartupResult:
    config: UserConfig
    recovery: RecoveryResult
    migration: MigrationResult | None = None


def _get_nested_value(d: dict[str, Any], path: str) -> tuple[Any, bool]:
    """Get value at dot-notation path from nested dict.

    Returns:
        Tuple of (value, found). If path not found, returns (None, False).

    """
    current: Any = d
    for key in path.split("."):
        if not isinstance(current, dict) or key not in current:
            return None, False
        current = current[key]
    return current, True


def _set_nested_value(d: dict[str, Any], path: str, value: Any) -> None:
    """Set value at dot-notation path in nested dict, creating intermediate dicts.

    Raises:
        ValueError: If path is empty, has empty segments, or intermediate
            value exists but is not a dict.

    """
    if not path:
        raise ValueError("Path cannot be empty")

    keys = path.split(".")
    if any(not key for key in keys):
        raise ValueError(f"Invalid path '{path}': contains empty segment")

    current = d
    for key in keys[:-1]:
        if key not in current:
            current[key] = {}
        elif not isinstance(current[key], dict):
            raise ValueError(
                f"Cannot set '{path}': intermediate value at '{key}' "
                f"is {type(current[key]).__name__}, not dict"
            )
        current = current[key]
    current[keys[-1]] = value


def _coerce(key: str, raw: Any) -> Any:
    """Convert a raw (usually string) value to the type of a settable key.

    Raises:
        ValueError: If raw cannot be converted.

    """
    target = SETTABLE_KEYS[key]
    if not isinstance(raw, str):
        return raw.value if isinstance(raw, MemoriesMode) else raw
    text = raw.strip()
    if target is bool:
        lowered = text.lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
        raise ValueError(f"expected a boolean, got '{raw}'")
    if target is int:
        try:
            return int(text)
        except ValueError:
            raise ValueError(f"expected an integer, got '{raw}'") from None
    if target is MemoriesMode:
        return MemoriesMode(text.upper()).value
    if key == "logging.level":
        return text.lower()
    return text


class ConfigService:
    """Applies config mutations with locking, snapshots and upstream sync.

    Args:
        store: Config store.
        rollback_manager: Snapshot and anchor keeper.
        lock_manager: Global and project locks.
        manifest_manager: Copy manifests for memory moves.
        sync: Upstream sync callable, defaults to sync_to_upstream.
        watcher: Running watcher whose baseline follows every mutation.

    """

    def __init__(
        self,
        store: ConfigStore | None = None,
        rollback_manager: RollbackManager | None = None,
        lock_manager: LockManager | None = None,
        manifest_manager: ManifestManager | None = None,
        sync: Callable[[UserConfig], object] | None = None,
        watcher: ConfigWatcher | None = None,
    ) -> None:
        self.store = store or get_config_store()
        self.rollback_manager = rollback_manager or get_rollback_manager()
        self.lock_manager = lock_manager or get_lock_manager()
        self.manifest_manager = manifest_manager or get_manifest_manager()
        self._sync = sync or sync_to_upstream
        self.watcher = watcher

    # =========================================================================
    # Startup
    # =========================================================================

    def startup(self, *, migrate: bool = True) -> StartupResult:
        """Recover interrupted moves, migrate a legacy config, then init state."""
        recovery = self.manifest_manager.recover_incomplete_migrations()

        migration = None
        migrator = LegacyMigrator(self.store, self.store.paths, self._sync)
        if migrate and migrator.needs_migration():
            if not self.rollback_manager.is_initialized():
                self.rollback_manager.initialize()
            migration = migrator.migrate_with_rollback(self.rollback_manager, watcher=self.watcher)
            if not migration.success:
                logger.error("Legacy config migration failed: %s", migration.error)

        config = self.store.init()
        if not self.rollback_manager.is_initialized():
            self.rollback_manager.initialize()
        return StartupResult(config=config, recovery=recovery, migration=migration)

    # =========================================================================
    # Reads
    # =========================================================================

    def get_config(self) -> UserConfig:
        return self.store.load()

    def get_value(self, key: str) -> Any:
        """Value at a dotted key, e.g. "sync.delay_ms" or "projects.alpha.code_path".

        Raises:
            ConfigStoreError: VALIDATION_ERROR if the key does not exist.

        """
        value, found = _get_nested_value(self.get_config().to_dict(), key)
        if not found:
            raise ConfigStoreError(f"Unknown config key: {key}", kind=ErrorKind.VALIDATION_ERROR)
        return value

    # =========================================================================
    # Mutations
    # =========================================================================

    def set_value(self, key: str, raw: Any) -> ConfigUpdateResult:
        """Set one of SETTABLE_KEYS, coercing string input.

        Raises:
            ConfigStoreError: VALIDATION_ERROR for unknown keys or bad values.

        """
        if key not in SETTABLE_KEYS:
            raise ConfigStoreError(
                f"Key '{key}' is not settable (settable: {', '.join(SETTABLE_KEYS)})",
                kind=ErrorKind.VALIDATION_ERROR,
            )
        try:
            value = _coerce(key, raw)
        except ValueError as e:
            raise ConfigStoreError(
                f"Invalid value for {key}: {e}", kind=ErrorKind.VALIDATION_ERROR, cause=e
            ) from e

        def transform(current: UserConfig) -> UserConfig:
            data = current.to_dict()
            _set_nested_value(data, key, value)
            return parse_user_config(data)

        return self._mutate(transform, f"Set {key}")

    def reset(self, section: str | None = None) -> ConfigUpdateResult:
        """Restore one global section (or all of them) to defaults. Projects are kept."""
        if section is not None and section not in GLOBAL_SECTIONS:
            raise ConfigStoreError(
                f"Unknown section '{section}' (expected one of: {', '.join(GLOBAL_SECTIONS)})",
                kind=ErrorKind.VALIDATION_ERROR,
            )
        sections = GLOBAL_SECTIONS if section is None else (section,)
        defaults = default_user_config().to_dict()

        def transform(current: UserConfig) -> UserConfig:
            data = current.to_dict()
            for name in sections:
                data[name] = defaults[name]
            return parse_user_config(data)

        return self._mutate(transform, f"Reset {section or 'all sections'}")

    def add_project(
        self,
        name: str,
        code_path: str,
        *,
        memories_path: str | None = None,
        memories_mode: MemoriesMode | str | None = None,
    ) -> ConfigUpdateResult:
        """Add a new project.

        A memories_path without an explicit mode implies CUSTOM.

        Raises:
            ConfigStoreError: VALIDATION_ERROR if the project already exists.

        """
        if memories_mode is None and memories_path:
            memories_mode = MemoriesMode.CUSTOM

        def transform(current: UserConfig) -> UserConfig:
            if name in current.projects:
                raise ConfigStoreError(
                    f"Project '{name}' already exists", kind=ErrorKind.VALIDATION_ERROR
                )
            entry = {
                "code_path": code_path,
                "memories_path": memories_path,
                "memories_mode": memories_mode,
            }
            return self._with_project(current, name, entry)

        return self._mutate(transform, f"Add project {name}", projects=[name])

    def update_project(
        self,
        name: str,
        *,
        code_path: str | None = None,
        memories_path: str | None = None,
        memories_mode: MemoriesMode | str | None = None,
    ) -> ConfigUpdateResult:
        """Change fields of an existing project; None leaves a field as is.

        Raises:
            ConfigStoreError: VALIDATION_ERROR if the project does not exist
                or the result is invalid.

        """

        def transform(current: UserConfig) -> UserConfig:
            entry = self._require_project(current, name).model_dump(mode="json")
            for field_name, value in (
                ("code_path", code_path),
                ("memories_path", memories_path),
                ("memories_mode", memories_mode),
            ):
                if value is not None:
                    entry[field_name] = value
            return self._with_project(current, name, entry)

        return self._mutate(transform, f"Update project {name}", projects=[name])

    def remove_project(self, name: str) -> ConfigUpdateResult:
        """Remove a project. Its memory files are not touched."""

        def transform(current: UserConfig) -> UserConfig:
            self._require_project(current, name)
            data = current.to_dict()
            del data["projects"][name]
            return parse_user_config(data)

        return self._mutate(transform, f"Remove project {name}", projects=[name])

    def apply(self, config: UserConfig, reason: str = "Apply config") -> ConfigUpdateResult:
        """Replace the whole config."""
        return self._mutate(lambda _current: config, reason, projects=list(config.projects))

    # =========================================================================
    # Project memory move
    # =========================================================================

    def move_project_memories(self, name: str, new_memories_path: str) -> ProjectMoveResult:
        """Copy a project's memory files to a new directory and point the project at it.

        Files are copied and verified under a copy manifest. On success the
        project switches to CUSTOM mode with the new path; the old files stay
        where they are.

        Raises:
            PathValidationError: If the new path is unsafe or overlaps the old one.
            ManifestError: If a file could not be copied or verified. The
                partial copy has been rolled back.
            ConfigStoreError: If the project does not exist.

        """
        field_name = f"projects.{name}.memories_path"
        target = validate_path_or_raise(new_memories_path, field_name)

        with self._locked([name]):
            current = self.store.load()
            entry = self._require_project(current, name)
            resolution = resolve_memories_path(name, entry, current.defaults)
            if not resolution.ok or resolution.path is None:
                raise PathValidationError(f"{field_name}: {resolution.error}")
            source = resolution.path
            if is_path_within(target, source) or is_path_within(source, target):
                raise PathValidationError(
                    f"{field_name}: new location {target} overlaps current location {source}"
                )

            manifest = self.manifest_manager.create_manifest(
                name, source, target, collect_files(Path(source))
            )
            Path(target).mkdir(parents=True, exist_ok=True)
            copied = self.manifest_manager.copy_entries(manifest)
            if copied:
                self.manifest_manager.mark_manifest_completed(manifest)
            else:
                failed = self.manifest_manager.get_failed_entries(manifest)
                reason = failed[0].error if failed and failed[0].error else "copy incomplete"
                self.manifest_manager.rollback_partial_copy(manifest)
                kind = (
                    ErrorKind.CHECKSUM_MISMATCH
                    if reason.startswith("Checksum mismatch")
                    else ErrorKind.IO_ERROR
                )
                raise ManifestError(
                    f"Failed to move memories of project '{name}': {reason}", kind=kind
                )

            entry_data = entry.model_dump(mode="json")
            entry_data.update(memories_path=target, memories_mode=MemoriesMode.CUSTOM.value)
            try:
                update = self._commit(
                    current,
                    self._with_project(current, name, entry_data),
                    f"Move memories of project {name}",
                )
            except BrainConfigError:
                self.manifest_manager.rollback_partial_copy(manifest)
                raise

        self.manifest_manager.delete_manifest(manifest.migration_id)
        logger.info(
            "Moved %d memory file(s) of project '%s' from %s to %s",
            len(manifest.entries),
            name,
            source,
            target,
        )
        return ProjectMoveResult(update, source, target, len(manifest.entries))

    # =========================================================================
    # Internals
    # =========================================================================

    @staticmethod
    def _require_project(config: UserConfig, name: str) -> ProjectConfig:
        entry = config.projects.get(name)
        if entry is None:
            raise ConfigStoreError(f"Project '{name}' not found", kind=ErrorKind.VALIDATION_ERROR)
        return entry

    @staticmethod
    def _with_project(config: UserConfig, name: str, entry: dict[str, Any]) -> UserConfig:
        data = config.to_dict()
        cleaned = {}
        for key, value in entry.items():
            if value is None:
                continue
            cleaned[key] = value.value if isinstance(value, MemoriesMode) else value
        if isinstance(cleaned.get("memories_mode"), str):
            cleaned["memories_mode"] = cleaned["memories_mode"].upper()
        data["projects"][name] = cleaned
        return parse_user_config(data)

    @contextmanager
    def _locked(self, projects: list[str] | None = None) -> Iterator[None]:
        with ExitStack() as stack:
            stack.enter_context(self.lock_manager.with_global_lock())
            if projects:
                stack.enter_context(self.lock_manager.with_project_locks(projects))
            yield

    def _mutate(
        self,
        transform: Callable[[UserConfig], UserConfig],
        reason: str,
        projects: list[str] | None = None,
    ) -> ConfigUpdateResult:
        with self._locked(projects):
            previous = self.store.load()
            return self._commit(previous, transform(previous), reason)

    def _commit(self, previous: UserConfig, new: UserConfig, reason: str) -> ConfigUpdateResult:
        diff = detect_config_diff(previous, new)
        if not diff.has_changes:
            logger.debug("%s: no changes", reason)
            return ConfigUpdateResult(config=previous, previous=previous, diff=diff)

        if not self.rollback_manager.is_initialized():
            self.rollback_manager.initialize()
        snapshot = self.rollback_manager.create_snapshot(previous, reason)

        self.store.save(new)
        try:
            self._sync(new)
        except BrainConfigError as e:
            logger.error("%s: upstream sync failed, restoring previous config: %s", reason, e)
            self._restore(previous)
            raise

        self.rollback_manager.mark_as_good(new, reason)
        if self.watcher is not None:
            self.watcher.update_baseline(new)
        logger.info("%s: config updated", reason)
        return ConfigUpdateResult(config=new, previous=previous, diff=diff, snapshot=snapshot)

    def _restore(self, previous: UserConfig) -> None:
        try:
            self.store.save(previous)
            self._sync(previous)
        except BrainConfigError as e:
            logger.error("Failed to restore previous config: %s", e)
