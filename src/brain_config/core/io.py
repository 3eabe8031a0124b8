"""Shared I/O utilities for atomic JSON writes and file checksums.

This module provides reusable utilities for:
- Atomic JSON writes (temp file + re-parse verification + os.replace)
- Private directory creation (mode 0700)
- Streaming SHA-256 of files
- Timestamps for filenames and ISO-8601 fields

Every on-disk resource owned by the core (user config, upstream config,
snapshots, manifests) is written through atomic_write_json so a crash at any
moment leaves either the previous file or the new one, never a partial file.
"""

import contextlib
import hashlib
import json
import logging
import os
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

__all__ = [
    "PRIVATE_DIR_MODE",
    "PRIVATE_FILE_MODE",
    "atomic_write_json",
    "compute_file_checksum",
    "ensure_private_dir",
    "get_timestamp",
    "read_json_file",
    "utc_now",
]

logger = logging.getLogger(__name__)

PRIVATE_DIR_MODE: int = 0o700
PRIVATE_FILE_MODE: int = 0o600

# Chunk size for streaming checksums
_CHECKSUM_CHUNK_SIZE: int = 65_536


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(UTC)


def get_timestamp(dt: datetime | None = None) -> str:
    """Generate unified timestamp for filenames.

    Format: YYYYMMDDTHHMMSSZ (e.g., 20250113T154530Z), filesystem-safe and sortable.

    Args:
        dt: Datetime to format. If None, uses current UTC time.

    Returns:
        Timestamp string in ISO 8601 basic format.

    """
    if dt is None:
        dt = utc_now()
    return dt.strftime("%Y%m%dT%H%M%SZ")


def ensure_private_dir(path: Path) -> Path:
    """Create directory (and parents) and restrict it to the owner.

    Args:
        path: Directory to create.

    Returns:
        The same path, for chaining.

    Raises:
        OSError: If the directory cannot be created or chmod fails.

    """
    path.mkdir(parents=True, exist_ok=True, mode=PRIVATE_DIR_MODE)
    os.chmod(path, PRIVATE_DIR_MODE)
    return path


def read_json_file(path: Path) -> Any:
    """Read and parse a UTF-8 JSON file.

    Raises:
        OSError: If the file cannot be read.
        json.JSONDecodeError: If the content is not valid JSON.

    """
    with open(path, encoding="utf-8") as f:
        return json.load(f)


def atomic_write_json(
    path: Path,
    data: Any,
    *,
    temp_path: Path | None = None,
    mode: int = PRIVATE_FILE_MODE,
) -> None:
    """Write data as JSON to path atomically.

    Sequence: write temp file (2-space indent, trailing newline) → fsync →
    read back and re-parse → os.replace onto target → chmod.

    Uses PID in the default temp filename to prevent collisions when multiple
    processes write simultaneously. Callers that serialize writes with a lock
    may pass a fixed temp_path instead.

    Args:
        path: Target file path. Parent directory must exist.
        data: JSON-serializable value.
        temp_path: Temp file location, defaults to .{name}.{pid}.tmp beside path.
        mode: Permission bits for the written file.

    Raises:
        OSError: If write, rename or chmod fails.
        ValueError: If the temp file does not re-parse to valid JSON.

    """
    content = json.dumps(data, indent=2, ensure_ascii=False) + "\n"
    if temp_path is None:
        temp_path = path.parent / f".{path.name}.{os.getpid()}.tmp"

    try:
        fd = os.open(temp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())

        # Verify integrity before the rename makes it visible
        read_json_file(temp_path)

        os.replace(temp_path, path)
        os.chmod(path, mode)
    except (OSError, ValueError):
        # Cleanup temp file if it exists, ignoring errors
        with contextlib.suppress(OSError):
            if temp_path.exists():
                temp_path.unlink()
        raise

    logger.debug("Atomically wrote %s", path)


def compute_file_checksum(path: Path) -> str:
    """Compute hex SHA-256 of a file, streaming in chunks.

    Raises:
        OSError: If the file cannot be read.

    """
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHECKSUM_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()
