"""Translation of the user config into the upstream memory service's config.

Mode-based memory path resolution:

    DEFAULT  →  <expand(defaults.memories_location)>/<project name>
    CODE     →  <expand(code_path)>/docs
    CUSTOM   →  memories_path (required)

Each candidate is normalized and checked by the path validator. Projects
that fail to resolve are dropped from the projection; validate_translation()
and preview_translation() report them.

translate() always starts from a copy of the existing upstream config so
keys the core does not own survive every write.
"""

from __future__ import annotations

import copy
import json
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from brain_config.core.config.constants import (
    CODE_MODE_MEMORIES_DIR,
    UPSTREAM_LOCK_NAME,
    UPSTREAM_LOCK_TIMEOUT_MS,
)
from brain_config.core.config.models import DefaultsConfig, MemoriesMode, ProjectConfig, UserConfig
from brain_config.core.exceptions import BrainConfigError, ErrorKind, LockError, TranslationError
from brain_config.core.io import atomic_write_json, read_json_file
from brain_config.core.locking import LockManager, get_lock_manager
from brain_config.core.path_validator import expand_tilde, validate_path
from brain_config.core.paths import BrainPaths, get_paths
from brain_config.core.upstream import notify_upstream_restart

logger = logging.getLogger(__name__)

__all__ = [
    "UpstreamConfig",
    "MemoriesPathResolution",
    "TranslationPreview",
    "resolve_memories_path",
    "translate",
    "validate_translation",
    "preview_translation",
    "load_upstream_config",
    "sync_to_upstream",
    "try_sync",
]


class UpstreamConfig(BaseModel):
    """Upstream config: three projected fields plus an open residual.

    Unknown keys are kept as pydantic extras and written back verbatim.
    """

    model_config = ConfigDict(extra="allow")

    projects: dict[str, str] = Field(
        default_factory=dict, description="Project name → absolute memory-store path"
    )
    sync_changes: bool | None = None
    sync_delay: int | None = None
    log_level: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize, omitting projected fields that were never set."""
        data = self.model_dump(mode="json")
        for key in ("sync_changes", "sync_delay", "log_level"):
            if data.get(key) is None:
                data.pop(key, None)
        return data


@dataclass(frozen=True)
class MemoriesPathResolution:
    """Outcome of resolving one project's memory-store path."""

    project: str
    mode: MemoriesMode
    path: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.path is not None


@dataclass
class TranslationPreview:
    """Projected upstream config plus every per-project resolution."""

    config: UpstreamConfig
    resolutions: list[MemoriesPathResolution] = field(default_factory=list)

    @property
    def errors(self) -> list[MemoriesPathResolution]:
        return [r for r in self.resolutions if not r.ok]


def resolve_memories_path(
    project_name: str, entry: ProjectConfig, defaults: DefaultsConfig
) -> MemoriesPathResolution:
    """Resolve where a project's memories live.

    Args:
        project_name: Project key in the user config.
        entry: Project entry.
        defaults: Defaults group (memories_location, fallback mode).

    Returns:
        Resolution with either an absolute normalized path or an error.

    """
    mode = entry.memories_mode or defaults.memories_mode

    if mode is MemoriesMode.DEFAULT:
        candidate = os.path.join(expand_tilde(defaults.memories_location), project_name)
    elif mode is MemoriesMode.CODE:
        candidate = os.path.join(expand_tilde(entry.code_path), CODE_MODE_MEMORIES_DIR)
    else:
        if not entry.memories_path:
            return MemoriesPathResolution(
                project_name, mode, error="CUSTOM mode requires memories_path to be set"
            )
        candidate = entry.memories_path

    result = validate_path(candidate)
    if not result.valid:
        return MemoriesPathResolution(project_name, mode, error=result.reason)
    return MemoriesPathResolution(project_name, mode, path=result.normalized)


def _resolve_all(config: UserConfig) -> list[MemoriesPathResolution]:
    return [
        resolve_memories_path(name, entry, config.defaults)
        for name, entry in config.projects.items()
    ]


def _project(
    config: UserConfig,
    resolutions: list[MemoriesPathResolution],
    existing: UpstreamConfig | Mapping[str, Any] | None,
) -> UpstreamConfig:
    if isinstance(existing, UpstreamConfig):
        base = existing.to_dict()
    else:
        base = copy.deepcopy(dict(existing or {}))

    base["projects"] = {r.project: r.path for r in resolutions if r.ok}
    base["sync_changes"] = config.sync.enabled
    base["sync_delay"] = config.sync.delay_ms
    base["log_level"] = config.logging.level
    return UpstreamConfig.model_validate(base)


def translate(
    config: UserConfig,
    existing: UpstreamConfig | Mapping[str, Any] | None = None,
) -> UpstreamConfig:
    """Project a user config onto the upstream config format.

    Args:
        config: User config.
        existing: Current upstream config whose unknown keys must survive.

    Returns:
        New UpstreamConfig; existing is not modified.

    """
    resolutions = _resolve_all(config)
    for resolution in resolutions:
        if not resolution.ok:
            logger.warning(
                "Dropping project '%s' from upstream config: %s",
                resolution.project,
                resolution.error,
            )
    return _project(config, resolutions, existing)


def validate_translation(config: UserConfig) -> list[str]:
    """List the projects that would be dropped by translate(), with reasons."""
    return [f"Project '{r.project}': {r.error}" for r in _resolve_all(config) if not r.ok]


def preview_translation(
    config: UserConfig,
    existing: UpstreamConfig | Mapping[str, Any] | None = None,
) -> TranslationPreview:
    """Translate without writing, returning every resolution."""
    resolutions = _resolve_all(config)
    projected = _project(config, resolutions, existing)
    return TranslationPreview(config=projected, resolutions=resolutions)


def load_upstream_config(paths: BrainPaths | None = None) -> dict[str, Any]:
    """Read the upstream config file as a raw mapping.

    Values are not validated: translate() overwrites the keys it owns and
    every other key is written back as read. A missing file is an empty
    mapping. Unparseable JSON or a non-object document is also treated as
    empty, with a warning, so sync can rewrite it.
    """
    path = (paths or get_paths()).upstream_config_file
    if not path.exists():
        return {}
    try:
        data = read_json_file(path)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Ignoring unreadable upstream config %s: %s", path, e)
        return {}
    if not isinstance(data, dict):
        logger.warning(
            "Ignoring upstream config %s: expected a JSON object, got %s",
            path,
            type(data).__name__,
        )
        return {}
    return data


def sync_to_upstream(
    config: UserConfig,
    *,
    paths: BrainPaths | None = None,
    lock_manager: LockManager | None = None,
    timeout_ms: int = UPSTREAM_LOCK_TIMEOUT_MS,
) -> UpstreamConfig:
    """Write the translated config to the upstream config file, then signal a restart.

    Runs load → translate → atomic write under the upstream-config lock,
    then calls notify_upstream_restart() outside the lock.

    Returns:
        The UpstreamConfig written.

    Raises:
        TranslationError: If the lock, the write, or a restart hook fails.
            Lock failures carry kind LOCK_ERROR.

    """
    paths = paths or get_paths()
    manager = lock_manager or get_lock_manager()
    target = paths.upstream_config_file

    try:
        with manager.with_resource_lock(UPSTREAM_LOCK_NAME, timeout_ms):
            existing = load_upstream_config(paths)
            translated = translate(config, existing)
            target.parent.mkdir(parents=True, exist_ok=True)
            atomic_write_json(target, translated.to_dict())
    except LockError as e:
        raise TranslationError(
            f"Failed to acquire lock for upstream sync: {e.message}",
            kind=ErrorKind.LOCK_ERROR,
            cause=e,
        ) from e
    except (OSError, ValueError) as e:
        raise TranslationError(
            f"Cannot write upstream config {target}: {e}", kind=ErrorKind.IO_ERROR, cause=e
        ) from e

    logger.info("Synced %d project(s) to upstream config %s", len(translated.projects), target)
    notify_upstream_restart(translated)
    return translated


def try_sync(config: UserConfig, **kwargs: Any) -> bool:
    """sync_to_upstream() that logs failures instead of raising."""
    try:
        sync_to_upstream(config, **kwargs)
    except BrainConfigError as e:
        logger.warning("Upstream sync failed: %s", e)
        return False
    return True
