"""User configuration: models, validation, persistence, translation and diffing.

Usage:
    from brain_config.core.config import get_config_store, translate

    store = get_config_store()
    config = store.load()                 # defaults if config.json is absent
    upstream = translate(config)          # projected upstream config
"""

from brain_config.core.config.constants import (
    CONFIG_LOCK_TIMEOUT_MS,
    CONFIG_SCHEMA_URL,
    CONFIG_VERSION,
    DEFAULT_MEMORIES_LOCATION,
    GLOBAL_SECTIONS,
)
from brain_config.core.config.diff import (
    ConfigDiff,
    DetailedConfigDiff,
    GlobalFieldChange,
    ProjectFieldChanges,
    detect_config_diff,
    detect_detailed_config_diff,
    get_affected_projects,
    get_default_mode_affected_projects,
    is_project_affected,
    summarize_config_diff,
)
from brain_config.core.config.models import (
    LOG_LEVELS,
    DefaultsConfig,
    LoggingConfig,
    MemoriesMode,
    ProjectConfig,
    SyncConfig,
    UserConfig,
    WatcherConfig,
    default_user_config,
)
from brain_config.core.config.schema import (
    collect_path_errors,
    get_config_schema,
    parse_user_config,
    validate_config_paths,
    validate_user_config,
)
from brain_config.core.config.store import ConfigStore, _reset_config_store, get_config_store
from brain_config.core.config.translation import (
    MemoriesPathResolution,
    TranslationPreview,
    UpstreamConfig,
    load_upstream_config,
    preview_translation,
    resolve_memories_path,
    sync_to_upstream,
    translate,
    try_sync,
    validate_translation,
)

__all__ = [
    # Constants
    "CONFIG_LOCK_TIMEOUT_MS",
    "CONFIG_SCHEMA_URL",
    "CONFIG_VERSION",
    "DEFAULT_MEMORIES_LOCATION",
    "GLOBAL_SECTIONS",
    "LOG_LEVELS",
    # Models
    "DefaultsConfig",
    "LoggingConfig",
    "MemoriesMode",
    "ProjectConfig",
    "SyncConfig",
    "UserConfig",
    "WatcherConfig",
    "default_user_config",
    # Validation
    "collect_path_errors",
    "get_config_schema",
    "parse_user_config",
    "validate_config_paths",
    "validate_user_config",
    # Store
    "ConfigStore",
    "get_config_store",
    "_reset_config_store",
    # Translation
    "MemoriesPathResolution",
    "TranslationPreview",
    "UpstreamConfig",
    "load_upstream_config",
    "preview_translation",
    "resolve_memories_path",
    "sync_to_upstream",
    "translate",
    "try_sync",
    "validate_translation",
    # Diff
    "ConfigDiff",
    "DetailedConfigDiff",
    "GlobalFieldChange",
    "ProjectFieldChanges",
    "detect_config_diff",
    "detect_detailed_config_diff",
    "get_affected_projects",
    "get_default_mode_affected_projects",
    "is_project_affected",
    "summarize_config_diff",
]
