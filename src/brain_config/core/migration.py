"""Migration of the pre-2.0 config (~/.basic-memory/brain-config.json).

The legacy file is transformed into a 2.0.0 UserConfig and saved through the
config store. migrate() runs a fixed, recorded pipeline:

    check_migration_needed → load_old_config → create_backup →
    transform_schema → save_new_config → verify_new_config →
    sync_basic_memory → remove_old_config

Every step is appended to MigrationResult.steps as completed, failed or
skipped. A failure up to verify_new_config aborts the migration; failures in
the last two steps are recorded but the migration still succeeds.

Legacy field mapping:
    notes_path | default_notes_path     → defaults.memories_location
    projects.<n>.code_path              → projects.<n>.code_path
    code_paths.<n>                      → projects.<n>.code_path (mode DEFAULT)
    projects.<n>.mode                   → projects.<n>.memories_mode
    projects.<n>.notes_path             → projects.<n>.memories_path (mode CUSTOM)
    sync.enabled / sync.delay           → sync.enabled / sync.delay_ms
    log_level                           → logging.level
"""

from __future__ import annotations

import json
import logging
import os
import shutil
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from brain_config.core.config.constants import CONFIG_SCHEMA_URL, CONFIG_VERSION
from brain_config.core.config.models import MemoriesMode, UserConfig, default_user_config
from brain_config.core.config.schema import parse_user_config
from brain_config.core.config.store import ConfigStore, get_config_store
from brain_config.core.config.translation import sync_to_upstream
from brain_config.core.exceptions import BrainConfigError, ConfigStoreError, ErrorKind
from brain_config.core.io import PRIVATE_FILE_MODE, get_timestamp
from brain_config.core.paths import BrainPaths, get_paths

if TYPE_CHECKING:
    from brain_config.core.rollback import RollbackManager
    from brain_config.core.watcher import ConfigWatcher

logger = logging.getLogger(__name__)

__all__ = [
    "BACKUP_SUFFIX",
    "StepStatus",
    "MigrationStep",
    "MigrationResult",
    "LegacyMigrator",
    "transform_legacy_config",
]

BACKUP_SUFFIX: str = ".backup"

_MODE_MAP: dict[str, MemoriesMode] = {mode.value.lower(): mode for mode in MemoriesMode}


class StepStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class MigrationStep:
    name: str
    status: StepStatus
    error: str | None = None


@dataclass
class MigrationResult:
    """Outcome of a migration run."""

    success: bool
    steps: list[MigrationStep] = field(default_factory=list)
    error: str | None = None
    backup_path: Path | None = None
    migrated_config: UserConfig | None = None
    old_config_removed: bool = False

    def step(self, name: str) -> MigrationStep | None:
        return next((s for s in self.steps if s.name == name), None)


def _map_mode(value: Any) -> MemoriesMode:
    mode = _MODE_MAP.get(str(value).lower())
    if mode is None:
        logger.debug("Unknown legacy mode %r, using DEFAULT", value)
        return MemoriesMode.DEFAULT
    return mode


def _legacy_group(old: dict[str, Any], key: str) -> dict[str, Any]:
    """Return an object-valued legacy field; absent or empty values give {}."""
    value = old.get(key)
    if not value:
        return {}
    if not isinstance(value, dict):
        raise ConfigStoreError(
            f"Legacy field '{key}' must be an object, got {type(value).__name__}",
            kind=ErrorKind.VALIDATION_ERROR,
        )
    return value


def transform_legacy_config(old: dict[str, Any]) -> UserConfig:
    """Transform a legacy config dict into a validated UserConfig.

    Per-project entries (Format A) win over the flat code_paths map (Format B).
    A per-project notes_path always forces CUSTOM mode.

    Raises:
        ConfigStoreError: VALIDATION_ERROR if a legacy group is not an object
            or the result fails the schema.

    """
    defaults = default_user_config()
    old_sync = _legacy_group(old, "sync")

    projects: dict[str, dict[str, Any]] = {}
    for name, entry in _legacy_group(old, "projects").items():
        if not isinstance(entry, dict) or not entry.get("code_path"):
            logger.debug("Skipping legacy project '%s' without code_path", name)
            continue
        project: dict[str, Any] = {"code_path": entry["code_path"]}
        if entry.get("mode"):
            project["memories_mode"] = _map_mode(entry["mode"]).value
        if entry.get("notes_path"):
            project["memories_path"] = entry["notes_path"]
            project["memories_mode"] = MemoriesMode.CUSTOM.value
        projects[name] = project

    for name, code_path in _legacy_group(old, "code_paths").items():
        if name in projects:
            logger.debug("Project '%s' defined per-project, ignoring code_paths entry", name)
            continue
        projects[name] = {"code_path": code_path, "memories_mode": MemoriesMode.DEFAULT.value}

    data = {
        "$schema": CONFIG_SCHEMA_URL,
        "version": CONFIG_VERSION,
        "defaults": {
            "memories_location": (
                old.get("notes_path")
                or old.get("default_notes_path")
                or defaults.defaults.memories_location
            ),
            "memories_mode": defaults.defaults.memories_mode.value,
        },
        "projects": projects,
        "sync": {
            "enabled": old_sync.get("enabled", defaults.sync.enabled),
            "delay_ms": old_sync.get("delay", defaults.sync.delay_ms),
        },
        "logging": {"level": old.get("log_level") or defaults.logging.level},
        "watcher": defaults.watcher.model_dump(),
    }
    return parse_user_config(data)


class LegacyMigrator:
    """Moves a legacy config to the 2.0.0 location.

    Args:
        store: Config store receiving the migrated config.
        paths: Location resolver (legacy file location).
        sync: Upstream sync callable, defaults to sync_to_upstream.

    """

    def __init__(
        self,
        store: ConfigStore | None = None,
        paths: BrainPaths | None = None,
        sync: Callable[[UserConfig], object] | None = None,
    ) -> None:
        self._store = store
        self._paths = paths
        self._sync = sync or sync_to_upstream

    @property
    def store(self) -> ConfigStore:
        return self._store if self._store is not None else get_config_store()

    @property
    def legacy_path(self) -> Path:
        return (self._paths or get_paths()).legacy_config_file

    def needs_migration(self, force: bool = False) -> bool:
        """True iff the legacy file exists and force is set or the new config is absent."""
        if not self.legacy_path.exists():
            return False
        return force or not self.store.exists()

    def load_legacy_config(self) -> dict[str, Any] | None:
        """Parse the legacy file; None if it is missing, unreadable or not an object."""
        path = self.legacy_path
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.debug("Failed to load legacy config %s: %s", path, e)
            return None
        if not isinstance(data, dict):
            logger.debug("Legacy config %s is not a JSON object", path)
            return None
        return data

    def create_backup(self) -> Path:
        """Copy the legacy file beside itself (mode 0600).

        Uses <legacy>.backup, or <legacy>.<timestamp>.backup if that exists.

        Raises:
            OSError: If the copy fails.

        """
        legacy = self.legacy_path
        backup = legacy.with_name(legacy.name + BACKUP_SUFFIX)
        if backup.exists():
            backup = legacy.with_name(f"{legacy.name}.{get_timestamp()}{BACKUP_SUFFIX}")
        shutil.copyfile(legacy, backup)
        os.chmod(backup, PRIVATE_FILE_MODE)
        return backup

    def migrate(
        self,
        *,
        remove_old_config: bool = True,
        force: bool = False,
        dry_run: bool = False,
    ) -> MigrationResult:
        """Run the migration pipeline.

        Args:
            remove_old_config: Delete the legacy file after success.
            force: Migrate even if a new config already exists.
            dry_run: Transform only; no file is written.

        Returns:
            MigrationResult with every step recorded.

        """
        result = MigrationResult(success=False)
        steps = result.steps
        logger.info(
            "Starting config migration (force=%s, dry_run=%s, remove_old_config=%s)",
            force,
            dry_run,
            remove_old_config,
        )

        # 1. check_migration_needed
        if not self.needs_migration(force=force):
            reason = (
                "Old config does not exist"
                if not self.legacy_path.exists()
                else "New config already exists (use force to override)"
            )
            steps.append(MigrationStep("check_migration_needed", StepStatus.SKIPPED, reason))
            result.success = True
            result.error = reason
            return result
        steps.append(MigrationStep("check_migration_needed", StepStatus.COMPLETED))

        # 2. load_old_config
        old = self.load_legacy_config()
        if old is None:
            steps.append(
                MigrationStep("load_old_config", StepStatus.FAILED, "Failed to load old config")
            )
            result.error = "Failed to load old configuration file"
            return result
        steps.append(MigrationStep("load_old_config", StepStatus.COMPLETED))

        # 3. create_backup
        if dry_run:
            steps.append(MigrationStep("create_backup", StepStatus.SKIPPED, "Dry run"))
        else:
            try:
                result.backup_path = self.create_backup()
            except OSError as e:
                steps.append(MigrationStep("create_backup", StepStatus.FAILED, str(e)))
                result.error = f"Failed to create backup: {e}"
                return result
            steps.append(MigrationStep("create_backup", StepStatus.COMPLETED))

        # 4. transform_schema
        try:
            new_config = transform_legacy_config(old)
        except BrainConfigError as e:
            steps.append(MigrationStep("transform_schema", StepStatus.FAILED, e.message))
            result.error = f"Schema transformation failed: {e.message}"
            return result
        steps.append(MigrationStep("transform_schema", StepStatus.COMPLETED))
        result.migrated_config = new_config

        if dry_run:
            for name in (
                "save_new_config",
                "verify_new_config",
                "sync_basic_memory",
                "remove_old_config",
            ):
                steps.append(MigrationStep(name, StepStatus.SKIPPED, "Dry run"))
            result.success = True
            return result

        # 5. save_new_config
        try:
            self.store.save(new_config)
        except BrainConfigError as e:
            steps.append(MigrationStep("save_new_config", StepStatus.FAILED, e.message))
            result.error = f"Failed to save new config: {e.message}"
            return result
        steps.append(MigrationStep("save_new_config", StepStatus.COMPLETED))

        # 6. verify_new_config
        try:
            loaded = self.store.load()
            if loaded.version != new_config.version:
                raise BrainConfigError("Version mismatch after load")
        except BrainConfigError as e:
            steps.append(MigrationStep("verify_new_config", StepStatus.FAILED, e.message))
            result.error = f"Config verification failed: {e.message}"
            return result
        steps.append(MigrationStep("verify_new_config", StepStatus.COMPLETED))

        # 7. sync_basic_memory (non-fatal)
        try:
            self._sync(new_config)
        except BrainConfigError as e:
            logger.warning("Failed to sync upstream config after migration: %s", e)
            steps.append(MigrationStep("sync_basic_memory", StepStatus.FAILED, e.message))
        else:
            steps.append(MigrationStep("sync_basic_memory", StepStatus.COMPLETED))

        # 8. remove_old_config (non-fatal)
        if not remove_old_config:
            steps.append(MigrationStep("remove_old_config", StepStatus.SKIPPED, "Removal disabled"))
        else:
            try:
                self.legacy_path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning("Failed to remove legacy config: %s", e)
                steps.append(MigrationStep("remove_old_config", StepStatus.FAILED, str(e)))
            else:
                result.old_config_removed = True
                steps.append(MigrationStep("remove_old_config", StepStatus.COMPLETED))

        result.success = True
        logger.info(
            "Config migration completed (%d project(s), backup=%s)",
            len(new_config.projects),
            result.backup_path,
        )
        return result

    def rollback_migration(self, backup_path: Path) -> bool:
        """Restore the legacy file from backup_path and delete the new config."""
        backup_path = Path(backup_path)
        if not backup_path.exists():
            logger.error("Backup file %s not found for rollback", backup_path)
            return False
        try:
            shutil.copyfile(backup_path, self.legacy_path)
            self.store.delete()
        except (OSError, BrainConfigError) as e:
            logger.error("Failed to roll back migration from %s: %s", backup_path, e)
            return False
        logger.info("Migration rolled back from %s", backup_path)
        return True

    def migrate_with_rollback(
        self,
        rollback_manager: RollbackManager,
        *,
        watcher: ConfigWatcher | None = None,
        remove_old_config: bool = True,
        force: bool = False,
        dry_run: bool = False,
    ) -> MigrationResult:
        """migrate() bracketed by a pre-migration snapshot and a post-migration anchor.

        While it runs, watcher (if given) defers change processing.
        """
        if watcher is not None:
            watcher.begin_migration()
        try:
            if self.store.exists() and rollback_manager.is_initialized():
                try:
                    rollback_manager.create_snapshot(self.store.load(), "Before migration")
                except BrainConfigError as e:
                    logger.debug("Could not snapshot config before migration: %s", e)

            result = self.migrate(
                remove_old_config=remove_old_config, force=force, dry_run=dry_run
            )

            if (
                result.success
                and not dry_run
                and result.migrated_config is not None
                and rollback_manager.is_initialized()
            ):
                try:
                    rollback_manager.mark_as_good(
                        result.migrated_config, "After successful migration"
                    )
                except BrainConfigError as e:
                    logger.debug("Could not mark migrated config as good: %s", e)
            return result
        finally:
            if watcher is not None:
                watcher.end_migration()
