"""Pydantic models for the user-facing configuration (config.json)."""

from enum import Enum
from typing import Annotated, Any, Literal, get_args

from pydantic import BaseModel, ConfigDict, Field

from brain_config.core.config.constants import (
    CONFIG_SCHEMA_URL,
    CONFIG_VERSION,
    DEFAULT_MEMORIES_LOCATION,
    DEFAULT_SYNC_DELAY_MS,
    DEFAULT_WATCHER_DEBOUNCE_MS,
)

__all__ = [
    "MemoriesMode",
    "LogLevel",
    "LOG_LEVELS",
    "DefaultsConfig",
    "ProjectConfig",
    "SyncConfig",
    "LoggingConfig",
    "WatcherConfig",
    "UserConfig",
    "default_user_config",
]


class MemoriesMode(str, Enum):
    """Policy for resolving a project's memory-store path.

    DEFAULT: <defaults.memories_location>/<project name>
    CODE: <code_path>/docs
    CUSTOM: the project's explicit memories_path
    """

    DEFAULT = "DEFAULT"
    CODE = "CODE"
    CUSTOM = "CUSTOM"


LogLevel = Literal["trace", "debug", "info", "warn", "error"]
LOG_LEVELS: tuple[str, ...] = get_args(LogLevel)

ProjectName = Annotated[str, Field(min_length=1)]


class DefaultsConfig(BaseModel):
    """Defaults applied to projects that do not override them."""

    model_config = ConfigDict(frozen=True)

    memories_location: str = Field(
        default=DEFAULT_MEMORIES_LOCATION,
        min_length=1,
        description="Base directory for DEFAULT-mode memory stores (~ is expanded)",
        json_schema_extra={"security": "dangerous"},
    )
    memories_mode: MemoriesMode = Field(
        default=MemoriesMode.DEFAULT,
        description="Mode used by projects without their own memories_mode",
    )


class ProjectConfig(BaseModel):
    """One project entry.

    Attributes:
        code_path: Project source directory (absolute after ~ expansion).
        memories_path: Explicit memory-store path, required in CUSTOM mode.
        memories_mode: Per-project mode, falls back to defaults.memories_mode.

    """

    model_config = ConfigDict(frozen=True)

    code_path: str = Field(
        min_length=1,
        description="Project source directory",
        json_schema_extra={"security": "dangerous"},
    )
    memories_path: str | None = Field(
        default=None,
        min_length=1,
        description="Explicit memory-store path (CUSTOM mode)",
        json_schema_extra={"security": "dangerous"},
    )
    memories_mode: MemoriesMode | None = Field(
        default=None,
        description="Memory path resolution mode (None = use defaults.memories_mode)",
    )


class SyncConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = Field(default=True, description="Let the upstream sync file changes")
    delay_ms: int = Field(
        default=DEFAULT_SYNC_DELAY_MS,
        ge=0,
        description="Upstream sync delay in milliseconds",
        json_schema_extra={"unit": "ms"},
    )


class LoggingConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    level: LogLevel = Field(default="info", description="Log level for core and upstream")


class WatcherConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = Field(default=True, description="Watch config.json for manual edits")
    debounce_ms: int = Field(
        default=DEFAULT_WATCHER_DEBOUNCE_MS,
        ge=0,
        description="Quiet interval before a burst of edits is processed",
        json_schema_extra={"unit": "ms"},
    )


class UserConfig(BaseModel):
    """Root user configuration model.

    Serialized with by_alias=True so the schema URL is written as "$schema".
    Cross-field invariants (CUSTOM mode needs memories_path) and path safety
    are checked by brain_config.core.config.schema, not here, so that
    translation can still inspect a config that would fail to save.

    Attributes:
        schema_url: Informational JSON Schema URL.
        version: Fixed version tag.
        defaults: Defaults group.
        projects: Project name → entry (names are case-sensitive).
        sync: Upstream sync settings.
        logging: Log level.
        watcher: Config watcher settings.

    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    schema_url: str | None = Field(
        default=CONFIG_SCHEMA_URL,
        alias="$schema",
        description="Informational schema URL",
    )
    version: Literal["2.0.0"] = Field(default=CONFIG_VERSION, description="Config format version")
    defaults: DefaultsConfig = Field(default_factory=DefaultsConfig)
    projects: dict[ProjectName, ProjectConfig] = Field(default_factory=dict)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    watcher: WatcherConfig = Field(default_factory=WatcherConfig)

    def effective_mode(self, project_name: str) -> MemoriesMode:
        """Return the project's mode, falling back to defaults.memories_mode.

        Raises:
            KeyError: If the project does not exist.

        """
        entry = self.projects[project_name]
        return entry.memories_mode or self.defaults.memories_mode

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the on-disk JSON shape.

        Unset optional project fields are omitted. A cleared schema URL is
        written as an explicit null so loading does not restore the default.
        """
        data = self.model_dump(mode="json", by_alias=True, exclude_none=True)
        if self.schema_url is None:
            data = {"$schema": None, **data}
        return data


def default_user_config() -> UserConfig:
    """Return the built-in default config used on first run."""
    return UserConfig()
