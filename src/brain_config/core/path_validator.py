"""Path safety checks for every path stored in the user config.

Rejection rules run in a fixed order so the reported reason is deterministic:

1. empty or whitespace-only
2. NUL byte, then URL-encoded traversal (%2e%2e)
3. a ".." segment, with either separator
4. after normalization, equal to or below a blocked system root

Normalization expands a leading ~ and makes the path absolute without
touching the filesystem, so symlinks are never followed here.
"""

from __future__ import annotations

import logging
import ntpath
import os
import re
from dataclasses import dataclass
from pathlib import Path

from brain_config.core.exceptions import PathValidationError

logger = logging.getLogger(__name__)

__all__ = [
    "UNIX_BLOCKED_ROOTS",
    "WINDOWS_BLOCKED_ROOTS",
    "PathValidationResult",
    "expand_tilde",
    "normalize_path",
    "validate_path",
    "validate_path_or_raise",
    "is_path_safe",
    "is_path_within",
    "explain_path_validation",
]

UNIX_BLOCKED_ROOTS: tuple[str, ...] = (
    "/etc",
    "/usr",
    "/var",
    "/bin",
    "/sbin",
    "/lib",
    "/lib64",
    "/boot",
    "/dev",
    "/proc",
    "/sys",
    "/run",
    "/tmp",
    "/root",
)

WINDOWS_BLOCKED_ROOTS: tuple[str, ...] = (
    "C:\\Windows",
    "C:\\Program Files",
    "C:\\Program Files (x86)",
    "C:\\ProgramData",
    "C:\\System Volume Information",
)

# Drive-letter paths are checked against the Windows roots on every platform
_DRIVE_PATH_RE = re.compile(r"^[A-Za-z]:([\\/]|$)")
_SEGMENT_SPLIT_RE = re.compile(r"[\\/]")


@dataclass(frozen=True)
class PathValidationResult:
    """Outcome of validate_path().

    Attributes:
        valid: True if the path passed every rule.
        normalized: Absolute normalized path (only when valid).
        reason: Why the path was rejected (only when invalid).

    """

    valid: bool
    normalized: str | None = None
    reason: str | None = None


def expand_tilde(path: str) -> str:
    """Expand a leading ~ (alone, ~/ or ~\\) to the user's home directory.

    ~user forms are left untouched.
    """
    if path == "~":
        return str(Path.home())
    if path.startswith(("~/", "~\\")):
        return os.path.join(str(Path.home()), path[2:])
    return path


def _is_drive_path(path: str) -> bool:
    return bool(_DRIVE_PATH_RE.match(path))


def normalize_path(path: str) -> str:
    """Expand ~, resolve . and .. lexically, and make the path absolute."""
    expanded = expand_tilde(path)
    if _is_drive_path(expanded) and os.name != "nt":
        return ntpath.normpath(expanded)
    return os.path.normpath(os.path.abspath(expanded))


def _is_under_root(normalized: str, root: str, sep: str) -> bool:
    candidate = normalized.lower()
    base = root.lower().rstrip(sep)
    return candidate == base or candidate.startswith(base + sep)


def _blocked_root_for(normalized: str) -> str | None:
    if os.name == "nt" or _is_drive_path(normalized):
        for root in WINDOWS_BLOCKED_ROOTS:
            if _is_under_root(normalized, root, "\\"):
                return root
        return None
    for root in UNIX_BLOCKED_ROOTS:
        if _is_under_root(normalized, root, "/"):
            return root
    return None


def _reject(reason: str) -> PathValidationResult:
    return PathValidationResult(valid=False, reason=reason)


def validate_path(path: str) -> PathValidationResult:
    """Validate and normalize a user-supplied path.

    Args:
        path: Raw path, may start with ~.

    Returns:
        PathValidationResult with normalized path or rejection reason.

    Examples:
        >>> validate_path("/etc/passwd").reason
        'System path not allowed: /etc'
        >>> validate_path("a/../b").reason
        'Path traversal not allowed'

    """
    if not path or not path.strip():
        return _reject("Path cannot be empty")

    if "\0" in path:
        return _reject("Invalid path characters: null byte detected")

    if "%2e%2e" in path.lower():
        return _reject("Encoded path traversal not allowed")

    if any(segment == ".." for segment in _SEGMENT_SPLIT_RE.split(path)):
        return _reject("Path traversal not allowed")

    try:
        normalized = normalize_path(path)
    except (OSError, ValueError) as e:
        return _reject(f"Invalid path: {e}")

    blocked = _blocked_root_for(normalized)
    if blocked is not None:
        return _reject(f"System path not allowed: {blocked}")

    return PathValidationResult(valid=True, normalized=normalized)


def is_path_safe(path: str) -> bool:
    """Return True if path passes validate_path()."""
    return validate_path(path).valid


def validate_path_or_raise(path: str, field: str | None = None) -> str:
    """Validate path and return its normalized form.

    Args:
        path: Raw path.
        field: Config field name used to prefix the error message.

    Returns:
        Normalized absolute path.

    Raises:
        PathValidationError: If the path is rejected.

    """
    result = validate_path(path)
    if not result.valid or result.normalized is None:
        prefix = f"{field}: " if field else ""
        raise PathValidationError(f"{prefix}{result.reason}")
    return result.normalized


def is_path_within(child: str, base: str) -> bool:
    """Check whether child is base itself or lies below it.

    Comparison uses normalized absolute paths with a separator guard, so
    /a/bb is not within /a/b.
    """
    normalized_child = normalize_path(child)
    normalized_base = normalize_path(base)
    sep = "\\" if _is_drive_path(normalized_base) else os.sep
    base_with_sep = normalized_base if normalized_base.endswith(sep) else normalized_base + sep
    return normalized_child == normalized_base or normalized_child.startswith(base_with_sep)


def explain_path_validation(path: str) -> str:
    """Describe the validation outcome for display."""
    result = validate_path(path)
    if result.valid:
        return f"Path is valid: {result.normalized}"
    return f"Path rejected ({path!r}): {result.reason}"
