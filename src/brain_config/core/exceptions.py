"""Exception hierarchy for the configuration lifecycle core.

Every failure carries a kind from ErrorKind so that callers (CLI, enclosing
server) can branch on the category without matching on class names:

- parse-error: file content is not valid JSON
- validation-error: JSON is valid but violates the schema or an invariant
- io-error: filesystem read/write/rename failed
- lock-error: a lock could not be acquired or released
- path-unsafe: a path failed the safety rules
- snapshot-corrupted: a rollback snapshot failed its checksum
- checksum-mismatch: a copied file does not match its source
- translation-error: projecting to the upstream config failed
"""

from enum import Enum

__all__ = [
    "ErrorKind",
    "BrainConfigError",
    "ConfigStoreError",
    "LockError",
    "LockTimeoutError",
    "LockFilesystemError",
    "PathValidationError",
    "TranslationError",
    "SnapshotError",
    "ManifestError",
]


class ErrorKind(str, Enum):
    """Failure categories shared by all components."""

    PARSE_ERROR = "parse-error"
    VALIDATION_ERROR = "validation-error"
    IO_ERROR = "io-error"
    LOCK_ERROR = "lock-error"
    PATH_UNSAFE = "path-unsafe"
    SNAPSHOT_CORRUPTED = "snapshot-corrupted"
    CHECKSUM_MISMATCH = "checksum-mismatch"
    TRANSLATION_ERROR = "translation-error"


class BrainConfigError(Exception):
    """Base exception for all brain-config errors.

    Attributes:
        message: Human-readable description.
        kind: Failure category.
        cause: Underlying exception, if any.

    """

    default_kind: ErrorKind = ErrorKind.IO_ERROR

    def __init__(
        self,
        message: str,
        kind: ErrorKind | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind or self.default_kind
        self.cause = cause

    @property
    def code(self) -> str:
        """Upper-snake name of the kind, e.g. PARSE_ERROR."""
        return self.kind.name


class ConfigStoreError(BrainConfigError):
    """User config could not be loaded or saved.

    Kind is one of PARSE_ERROR, VALIDATION_ERROR, IO_ERROR or LOCK_ERROR.
    """

    default_kind = ErrorKind.IO_ERROR


class LockError(BrainConfigError):
    """Lock acquisition or release failed."""

    default_kind = ErrorKind.LOCK_ERROR
    reason: str = "lock-error"


class LockTimeoutError(LockError):
    """Lock was still held by someone else when the timeout expired."""

    reason = "timeout"


class LockFilesystemError(LockError):
    """Lock file could not be created, read or removed."""

    reason = "filesystem-error"


class PathValidationError(BrainConfigError):
    """Path rejected by the path validator."""

    default_kind = ErrorKind.PATH_UNSAFE


class TranslationError(BrainConfigError):
    """Upstream config projection or write failed."""

    default_kind = ErrorKind.TRANSLATION_ERROR


class SnapshotError(BrainConfigError):
    """Rollback snapshot is missing or corrupted."""

    default_kind = ErrorKind.SNAPSHOT_CORRUPTED


class ManifestError(BrainConfigError):
    """Copy manifest could not be read, written or completed."""

    pass
