"""Schema validation for the user config.

Validation has three layers:
1. pydantic model validation (required fields, enums, minimums, defaults)
2. cross-field invariants (CUSTOM mode requires memories_path)
3. path safety of every path field (save time and watcher only)

All failures surface as ConfigStoreError with kind VALIDATION_ERROR and a
message naming the offending dotted field.
"""

import logging
from typing import Any

from pydantic import ValidationError

from brain_config.core.config.models import MemoriesMode, UserConfig
from brain_config.core.exceptions import ConfigStoreError, ErrorKind
from brain_config.core.path_validator import validate_path

logger = logging.getLogger(__name__)

__all__ = [
    "format_validation_error",
    "parse_user_config",
    "check_invariants",
    "validate_user_config",
    "collect_path_errors",
    "validate_config_paths",
    "get_config_schema",
]


def format_validation_error(error: ValidationError) -> str:
    """Flatten a pydantic ValidationError into "field.path: message; ..."."""
    parts = []
    for err in error.errors():
        location = ".".join(str(part) for part in err["loc"]) or "<root>"
        parts.append(f"{location}: {err['msg']}")
    return "; ".join(parts)


def check_invariants(config: UserConfig) -> list[str]:
    """Return cross-field invariant violations (empty list if none)."""
    errors = []
    for name, entry in config.projects.items():
        mode = entry.memories_mode or config.defaults.memories_mode
        if mode is MemoriesMode.CUSTOM and not entry.memories_path:
            errors.append(f"projects.{name}.memories_path: required when memories_mode is CUSTOM")
    return errors


def validate_user_config(config: UserConfig) -> None:
    """Check invariants on an already-built config.

    Raises:
        ConfigStoreError: VALIDATION_ERROR listing every violation.

    """
    errors = check_invariants(config)
    if errors:
        raise ConfigStoreError(
            f"Invalid config: {'; '.join(errors)}", kind=ErrorKind.VALIDATION_ERROR
        )


def parse_user_config(data: Any) -> UserConfig:
    """Validate raw JSON data into a UserConfig.

    Args:
        data: Parsed JSON value.

    Returns:
        Validated UserConfig.

    Raises:
        ConfigStoreError: VALIDATION_ERROR if the data violates the schema
            or an invariant.

    """
    if not isinstance(data, dict):
        raise ConfigStoreError(
            f"Config must be a JSON object, got {type(data).__name__}",
            kind=ErrorKind.VALIDATION_ERROR,
        )
    try:
        config = UserConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigStoreError(
            f"Invalid config: {format_validation_error(e)}",
            kind=ErrorKind.VALIDATION_ERROR,
            cause=e,
        ) from e
    validate_user_config(config)
    return config


def collect_path_errors(config: UserConfig) -> list[str]:
    """Run every path field through the path validator."""
    fields: list[tuple[str, str]] = [
        ("defaults.memories_location", config.defaults.memories_location)
    ]
    for name, entry in config.projects.items():
        fields.append((f"projects.{name}.code_path", entry.code_path))
        if entry.memories_path is not None:
            fields.append((f"projects.{name}.memories_path", entry.memories_path))

    errors = []
    for field, value in fields:
        result = validate_path(value)
        if not result.valid:
            errors.append(f"{field}: {result.reason}")
    return errors


def validate_config_paths(config: UserConfig) -> None:
    """Reject configs holding unsafe paths.

    Raises:
        ConfigStoreError: VALIDATION_ERROR listing every unsafe path.

    """
    errors = collect_path_errors(config)
    if errors:
        raise ConfigStoreError(
            f"Unsafe path in config: {'; '.join(errors)}", kind=ErrorKind.VALIDATION_ERROR
        )


def get_config_schema() -> dict[str, Any]:
    """JSON Schema of config.json, with "$schema" as the key name."""
    return UserConfig.model_json_schema(by_alias=True)
