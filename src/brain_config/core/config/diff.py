"""Structured diffing of two user configs.

Global fields are reported as dotted names ("sync.delay_ms"). A diff
requires migration when memory stores may move: projects added or removed,
a project path field or mode changed, or defaults.memories_location changed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from brain_config.core.config.models import MemoriesMode, UserConfig

__all__ = [
    "PROJECT_FIELDS",
    "GLOBAL_FIELDS",
    "ConfigDiff",
    "ProjectFieldChanges",
    "GlobalFieldChange",
    "DetailedConfigDiff",
    "detect_config_diff",
    "detect_detailed_config_diff",
    "get_affected_projects",
    "is_project_affected",
    "get_default_mode_affected_projects",
    "summarize_config_diff",
]

PROJECT_FIELDS: tuple[str, ...] = ("code_path", "memories_path", "memories_mode")

GLOBAL_FIELDS: tuple[str, ...] = (
    "$schema",
    "version",
    "defaults.memories_location",
    "defaults.memories_mode",
    "sync.enabled",
    "sync.delay_ms",
    "logging.level",
    "watcher.enabled",
    "watcher.debounce_ms",
)


@dataclass(frozen=True)
class ConfigDiff:
    """Summary diff between two configs."""

    projects_added: list[str] = field(default_factory=list)
    projects_removed: list[str] = field(default_factory=list)
    projects_modified: list[str] = field(default_factory=list)
    global_fields_changed: list[str] = field(default_factory=list)
    has_changes: bool = False
    requires_migration: bool = False


@dataclass(frozen=True)
class ProjectFieldChanges:
    """Per-field changes of one project present in both configs."""

    fields_added: list[str] = field(default_factory=list)
    fields_removed: list[str] = field(default_factory=list)
    fields_modified: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class GlobalFieldChange:
    field: str
    old_value: Any
    new_value: Any


@dataclass(frozen=True)
class DetailedConfigDiff:
    """ConfigDiff plus per-field detail."""

    diff: ConfigDiff
    project_changes: dict[str, ProjectFieldChanges] = field(default_factory=dict)
    global_changes: list[GlobalFieldChange] = field(default_factory=list)


def _global_values(config: UserConfig) -> dict[str, Any]:
    data = config.model_dump(mode="json", by_alias=True)
    values: dict[str, Any] = {}
    for name in GLOBAL_FIELDS:
        section, _, key = name.partition(".")
        values[name] = data.get(section, {}).get(key) if key else data.get(section)
    return values


def _project_value(config: UserConfig, project: str, name: str) -> Any:
    value = getattr(config.projects[project], name)
    return value.value if isinstance(value, MemoriesMode) else value


def _changed_project_fields(old: UserConfig, new: UserConfig, project: str) -> list[str]:
    return [
        name
        for name in PROJECT_FIELDS
        if _project_value(old, project, name) != _project_value(new, project, name)
    ]


def detect_config_diff(old: UserConfig | None, new: UserConfig) -> ConfigDiff:
    """Diff two configs.

    Args:
        old: Previous config, or None when there is no baseline.
        new: New config.

    Returns:
        ConfigDiff. With no baseline every project counts as added and every
        global field as changed.

    """
    if old is None:
        added = sorted(new.projects)
        return ConfigDiff(
            projects_added=added,
            global_fields_changed=list(GLOBAL_FIELDS),
            has_changes=True,
            requires_migration=len(added) > 0,
        )

    old_names = set(old.projects)
    new_names = set(new.projects)
    added = sorted(new_names - old_names)
    removed = sorted(old_names - new_names)

    # Every project field (paths and mode) decides where the store lives
    modified = [
        name for name in sorted(old_names & new_names) if _changed_project_fields(old, new, name)
    ]

    old_globals = _global_values(old)
    new_globals = _global_values(new)
    globals_changed = [name for name in GLOBAL_FIELDS if old_globals[name] != new_globals[name]]

    requires_migration = (
        bool(added)
        or bool(removed)
        or bool(modified)
        or "defaults.memories_location" in globals_changed
    )
    return ConfigDiff(
        projects_added=added,
        projects_removed=removed,
        projects_modified=modified,
        global_fields_changed=globals_changed,
        has_changes=bool(added or removed or modified or globals_changed),
        requires_migration=requires_migration,
    )


def detect_detailed_config_diff(old: UserConfig | None, new: UserConfig) -> DetailedConfigDiff:
    """Diff with per-project field changes and old/new values of globals."""
    diff = detect_config_diff(old, new)
    new_globals = _global_values(new)
    if old is None:
        return DetailedConfigDiff(
            diff=diff,
            global_changes=[
                GlobalFieldChange(name, None, new_globals[name]) for name in GLOBAL_FIELDS
            ],
        )
    old_globals = _global_values(old)

    project_changes: dict[str, ProjectFieldChanges] = {}
    for name in diff.projects_modified:
        added, removed, modified = [], [], []
        for field_name in PROJECT_FIELDS:
            before = _project_value(old, name, field_name)
            after = _project_value(new, name, field_name)
            if before == after:
                continue
            if before is None:
                added.append(field_name)
            elif after is None:
                removed.append(field_name)
            else:
                modified.append(field_name)
        project_changes[name] = ProjectFieldChanges(added, removed, modified)

    global_changes = [
        GlobalFieldChange(name, old_globals[name], new_globals[name])
        for name in diff.global_fields_changed
    ]
    return DetailedConfigDiff(
        diff=diff, project_changes=project_changes, global_changes=global_changes
    )


def get_affected_projects(diff: ConfigDiff) -> list[str]:
    """Every project added, removed or modified."""
    affected = set(diff.projects_added) | set(diff.projects_removed) | set(diff.projects_modified)
    return sorted(affected)


def is_project_affected(diff: ConfigDiff, project: str) -> bool:
    return project in get_affected_projects(diff)


def get_default_mode_affected_projects(
    diff: ConfigDiff, old: UserConfig | None, new: UserConfig
) -> list[str]:
    """Projects in DEFAULT mode whose store moves because memories_location changed.

    Projects added by this diff are excluded; they have no old store.
    """
    if "defaults.memories_location" not in diff.global_fields_changed or old is None:
        return []
    return sorted(
        name
        for name in new.projects
        if name in old.projects and new.effective_mode(name) is MemoriesMode.DEFAULT
    )


def summarize_config_diff(diff: ConfigDiff) -> str:
    """Human-readable multi-line summary."""
    if not diff.has_changes:
        return "No changes"

    lines = []
    if diff.projects_added:
        lines.append(f"Projects added: {', '.join(diff.projects_added)}")
    if diff.projects_removed:
        lines.append(f"Projects removed: {', '.join(diff.projects_removed)}")
    if diff.projects_modified:
        lines.append(f"Projects modified: {', '.join(diff.projects_modified)}")
    if diff.global_fields_changed:
        lines.append(f"Global fields changed: {', '.join(diff.global_fields_changed)}")
    lines.append(f"Migration required: {'Yes' if diff.requires_migration else 'No'}")
    return "\n".join(lines)
