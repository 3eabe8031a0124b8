"""Config store: atomic, validated persistence of config.json.

Layout:
    <XDG_CONFIG_HOME or ~/.config>/brain/config.json      (mode 0600)
    <XDG_CONFIG_HOME or ~/.config>/brain/config.json.tmp  (transient)

Every operation except load_sync() and read_current() holds the "config"
resource lock for its duration. Writes go through atomic_write_json, so a
crash leaves either the previous or the new file. A missing file loads as
the built-in default. save() does not snapshot; callers that need rollback
snapshot first.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path

from brain_config.core.config.constants import (
    CONFIG_LOCK_NAME,
    CONFIG_LOCK_STALE_MS,
    CONFIG_LOCK_TIMEOUT_MS,
)
from brain_config.core.config.models import UserConfig, default_user_config
from brain_config.core.config.schema import (
    parse_user_config,
    validate_config_paths,
    validate_user_config,
)
from brain_config.core.exceptions import BrainConfigError, ConfigStoreError, ErrorKind, LockError
from brain_config.core.io import atomic_write_json, ensure_private_dir
from brain_config.core.locking import LockManager, get_lock_manager
from brain_config.core.path_validator import expand_tilde
from brain_config.core.paths import BrainPaths, get_paths

logger = logging.getLogger(__name__)

__all__ = ["ConfigStore", "get_config_store", "_reset_config_store"]


class ConfigStore:
    """Owner of config.json.

    Args:
        paths: Location resolver, defaults to the paths singleton.
        lock_manager: Lock manager, defaults to the process-wide one.
        lock_timeout_ms: Timeout for the config-file lock.

    """

    def __init__(
        self,
        paths: BrainPaths | None = None,
        lock_manager: LockManager | None = None,
        lock_timeout_ms: int = CONFIG_LOCK_TIMEOUT_MS,
    ) -> None:
        self._paths = paths
        self._lock_manager = lock_manager
        self.lock_timeout_ms = lock_timeout_ms

    @property
    def paths(self) -> BrainPaths:
        return self._paths if self._paths is not None else get_paths()

    @property
    def lock_manager(self) -> LockManager:
        return self._lock_manager if self._lock_manager is not None else get_lock_manager()

    @property
    def config_path(self) -> Path:
        return self.paths.config_file

    @property
    def temp_path(self) -> Path:
        return self.paths.config_temp_file

    @contextmanager
    def _locked(self) -> Generator[None, None, None]:
        try:
            handle = self.lock_manager.acquire_resource(
                CONFIG_LOCK_NAME, self.lock_timeout_ms, CONFIG_LOCK_STALE_MS
            )
        except LockError as e:
            raise ConfigStoreError(
                f"Failed to acquire config lock: {e.message}", kind=ErrorKind.LOCK_ERROR, cause=e
            ) from e
        try:
            yield
        finally:
            try:
                handle.release()
            except LockError as e:
                logger.warning("Failed to release config lock: %s", e)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def _read(self) -> UserConfig:
        path = self.config_path
        if not path.exists():
            logger.debug("Config file %s not found, using defaults", path)
            return default_user_config()

        try:
            content = path.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigStoreError(
                f"Cannot read config file {path}: {e}", kind=ErrorKind.IO_ERROR, cause=e
            ) from e

        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise ConfigStoreError(
                f"Invalid JSON in {path}: {e}", kind=ErrorKind.PARSE_ERROR, cause=e
            ) from e

        return parse_user_config(data)

    def load(self) -> UserConfig:
        """Load and validate config.json under the config lock.

        Returns:
            The stored config, or the built-in default if the file is absent.

        Raises:
            ConfigStoreError: PARSE_ERROR, VALIDATION_ERROR, IO_ERROR or LOCK_ERROR.

        """
        with self._locked():
            return self._read()

    def read_current(self) -> UserConfig:
        """Strict lock-free read, for the watcher during rapid editor writes.

        Raises:
            ConfigStoreError: PARSE_ERROR, VALIDATION_ERROR or IO_ERROR.

        """
        return self._read()

    def load_sync(self) -> UserConfig:
        """Best-effort load that never raises; returns defaults on any error."""
        try:
            return self._read()
        except BrainConfigError as e:
            logger.warning("Falling back to default config: %s", e)
            return default_user_config()

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def save(self, config: UserConfig) -> None:
        """Validate and atomically persist config.

        Raises:
            ConfigStoreError: VALIDATION_ERROR for schema, invariant or path
                failures; IO_ERROR or PARSE_ERROR for write/verify failures;
                LOCK_ERROR if the config lock is unavailable.

        """
        validate_user_config(config)
        validate_config_paths(config)

        with self._locked():
            self._write(config)
        logger.info("Saved config to %s", self.config_path)

    def _write(self, config: UserConfig) -> None:
        path = self.config_path
        try:
            ensure_private_dir(path.parent)
            atomic_write_json(path, config.to_dict(), temp_path=self.temp_path)
        except ValueError as e:
            raise ConfigStoreError(
                f"Written config failed verification: {e}", kind=ErrorKind.PARSE_ERROR, cause=e
            ) from e
        except OSError as e:
            raise ConfigStoreError(
                f"Cannot write config file {path}: {e}", kind=ErrorKind.IO_ERROR, cause=e
            ) from e

    def init(self) -> UserConfig:
        """Create config.json with defaults if absent and return the current config.

        Also removes a temp file left behind by an interrupted save.
        """
        with self._locked():
            self.cleanup_temp()
            if self.config_path.exists():
                return self._read()
            config = default_user_config()
            self._write(config)
        logger.info("Initialized default config at %s", self.config_path)
        return config

    def exists(self) -> bool:
        return self.config_path.exists()

    def delete(self) -> bool:
        """Delete config.json. Returns True if a file was removed."""
        with self._locked():
            try:
                self.config_path.unlink()
            except FileNotFoundError:
                return False
            except OSError as e:
                raise ConfigStoreError(
                    f"Cannot delete config file {self.config_path}: {e}",
                    kind=ErrorKind.IO_ERROR,
                    cause=e,
                ) from e
        logger.info("Deleted config file %s", self.config_path)
        return True

    def cleanup_temp(self) -> bool:
        """Remove a leftover config.json.tmp. Returns True if one was removed.

        Only safe while holding the config lock (init() does).
        """
        try:
            self.temp_path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.warning("Cannot remove stale temp file %s: %s", self.temp_path, e)
            return False
        logger.info("Removed stale temp file %s", self.temp_path)
        return True

    def get_default_memories_location(self) -> str:
        """Expanded defaults.memories_location of the current config."""
        return expand_tilde(self.load_sync().defaults.memories_location)


# Module-level singleton
_config_store: ConfigStore | None = None


def get_config_store() -> ConfigStore:
    """Get the process-wide ConfigStore."""
    global _config_store
    if _config_store is None:
        _config_store = ConfigStore()
    return _config_store


def _reset_config_store() -> None:
    """Reset store singleton for testing purposes only."""
    global _config_store
    _config_store = None
