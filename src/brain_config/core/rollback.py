"""Rollback manager: snapshot history and the last-known-good anchor.

On disk (directory mode 0700, files 0600):

    rollback/last-known-good.json   the anchor snapshot
    rollback/history.json           {"snapshotIds": [...], "updatedAt": ...}
    rollback/<id>.json              one file per history snapshot

Snapshots are immutable deep copies of a UserConfig plus the SHA-256 of its
canonical JSON (keys sorted at every level). A snapshot whose checksum does
not match is never restored and is skipped when history is loaded.

History is bounded (10 by default), oldest evicted first together with its
file. rollback() never raises: failures come back in RollbackResult.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
import secrets
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from brain_config.core.config.models import UserConfig
from brain_config.core.config.schema import parse_user_config
from brain_config.core.config.store import ConfigStore, get_config_store
from brain_config.core.config.translation import sync_to_upstream
from brain_config.core.exceptions import BrainConfigError, ErrorKind, SnapshotError
from brain_config.core.io import atomic_write_json, ensure_private_dir, read_json_file, utc_now
from brain_config.core.paths import get_paths

logger = logging.getLogger(__name__)

__all__ = [
    "MAX_SNAPSHOTS",
    "INITIAL_BASELINE_REASON",
    "RollbackTarget",
    "RollbackSnapshot",
    "RollbackHistoryIndex",
    "RollbackResult",
    "RollbackManager",
    "canonical_json",
    "compute_config_checksum",
    "compute_json_checksum",
    "generate_snapshot_id",
    "get_rollback_manager",
    "_reset_rollback_manager",
]

MAX_SNAPSHOTS: int = 10
LAST_KNOWN_GOOD_FILE: str = "last-known-good.json"
HISTORY_FILE: str = "history.json"
INITIAL_BASELINE_REASON: str = "Initial baseline on startup"

_SNAPSHOT_ID_RE = re.compile(r"^snap-[0-9a-z]+-[0-9a-f]{8}$")
_BASE36_DIGITS = "0123456789abcdefghijklmnopqrstuvwxyz"


class RollbackTarget(str, Enum):
    LAST_KNOWN_GOOD = "lastKnownGood"
    PREVIOUS = "previous"


class RollbackSnapshot(BaseModel):
    """Immutable, checksummed copy of a config."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    created_at: datetime
    reason: str
    checksum: str
    config: UserConfig

    def to_dict(self) -> dict[str, Any]:
        """On-disk form; the config is embedded exactly as its checksum was computed."""
        data = self.model_dump(mode="json", by_alias=True, exclude={"config"})
        data["config"] = self.config.to_dict()
        return data


class RollbackHistoryIndex(BaseModel):
    """Content of history.json: snapshot IDs oldest first."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    snapshot_ids: list[str]
    updated_at: datetime


@dataclass(frozen=True)
class RollbackResult:
    success: bool
    restored_config: UserConfig | None = None
    snapshot: RollbackSnapshot | None = None
    error: str | None = None


def canonical_json(value: Any) -> str:
    """JSON with object keys sorted at every level and no insignificant whitespace."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def compute_json_checksum(value: Any) -> str:
    """Hex SHA-256 of a JSON value's canonical form."""
    return hashlib.sha256(canonical_json(value).encode("utf-8")).hexdigest()


def compute_config_checksum(config: UserConfig) -> str:
    """Hex SHA-256 of the config's canonical JSON."""
    return compute_json_checksum(config.to_dict())


def _to_base36(value: int) -> str:
    digits = []
    while True:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36_DIGITS[remainder])
        if value == 0:
            return "".join(reversed(digits))


def generate_snapshot_id() -> str:
    """Return "snap-<base36 epoch ms>-<8 hex chars>"."""
    return f"snap-{_to_base36(int(time.time() * 1000))}-{secrets.token_hex(4)}"


class RollbackManager:
    """Keeps the snapshot history and the last-known-good anchor.

    Args:
        store: Config store used for restores and the initial baseline.
        rollback_dir: Snapshot directory, defaults to get_paths().rollback_dir.
        max_snapshots: History cap.
        sync: Called with the restored config after a rollback. Defaults to
            sync_to_upstream.

    """

    def __init__(
        self,
        store: ConfigStore | None = None,
        *,
        rollback_dir: Path | None = None,
        max_snapshots: int = MAX_SNAPSHOTS,
        sync: Callable[[UserConfig], object] | None = None,
    ) -> None:
        if max_snapshots < 1:
            raise ValueError("max_snapshots must be at least 1")
        self._store = store
        self._rollback_dir = rollback_dir
        self.max_snapshots = max_snapshots
        self._sync = sync or sync_to_upstream
        self._last_known_good: RollbackSnapshot | None = None
        self._history: list[RollbackSnapshot] = []
        self._initialized = False
        self._lock = threading.RLock()

    @property
    def store(self) -> ConfigStore:
        return self._store if self._store is not None else get_config_store()

    @property
    def rollback_dir(self) -> Path:
        return self._rollback_dir if self._rollback_dir is not None else get_paths().rollback_dir

    def is_initialized(self) -> bool:
        return self._initialized

    # -------------------------------------------------------------------------
    # Startup
    # -------------------------------------------------------------------------

    def initialize(self) -> None:
        """Load the anchor and history from disk.

        An anchor or history snapshot that fails schema or checksum
        validation is discarded. If no anchor survives and config.json
        exists and loads, it becomes the anchor.

        Raises:
            SnapshotError: IO_ERROR if the rollback directory cannot be created.

        """
        with self._lock:
            self._ensure_dir()
            self._last_known_good = self._load_last_known_good()
            self._history = self._load_history()
            self._initialized = True

            if self._last_known_good is None and self.store.exists():
                try:
                    current = self.store.load()
                except BrainConfigError as e:
                    logger.warning("No baseline anchor: current config does not load: %s", e)
                else:
                    self.mark_as_good(current, INITIAL_BASELINE_REASON)

        logger.debug(
            "Rollback manager initialized (anchor=%s, history=%d)",
            self._last_known_good.id if self._last_known_good else None,
            len(self._history),
        )

    def _ensure_dir(self) -> None:
        try:
            ensure_private_dir(self.rollback_dir)
        except OSError as e:
            raise SnapshotError(
                f"Cannot create rollback directory {self.rollback_dir}: {e}",
                kind=ErrorKind.IO_ERROR,
                cause=e,
            ) from e

    def _read_snapshot(self, path: Path) -> RollbackSnapshot | None:
        """Load a snapshot file, verifying the checksum against the config as stored.

        The raw JSON is hashed as well as the parsed model, so edits that
        pydantic would coerce or ignore still count as corruption.
        """
        try:
            raw = read_json_file(path)
            snapshot = RollbackSnapshot.model_validate(raw)
            parse_user_config(snapshot.config.to_dict())
        except FileNotFoundError:
            return None
        except (OSError, ValueError, ValidationError, BrainConfigError) as e:
            logger.warning("Discarding unreadable snapshot %s: %s", path, e)
            return None

        if (
            not self.verify_snapshot(snapshot)
            or compute_json_checksum(raw["config"]) != snapshot.checksum
        ):
            logger.warning("Discarding snapshot %s: checksum mismatch", path)
            return None
        return snapshot

    def _load_last_known_good(self) -> RollbackSnapshot | None:
        return self._read_snapshot(self.rollback_dir / LAST_KNOWN_GOOD_FILE)

    def _load_history(self) -> list[RollbackSnapshot]:
        index_path = self.rollback_dir / HISTORY_FILE
        if not index_path.exists():
            return []
        try:
            index = RollbackHistoryIndex.model_validate(read_json_file(index_path))
        except (OSError, ValueError, ValidationError) as e:
            logger.warning("Ignoring unreadable rollback history %s: %s", index_path, e)
            return []

        history = []
        for snapshot_id in index.snapshot_ids:
            if not _SNAPSHOT_ID_RE.match(snapshot_id):
                logger.warning("Skipping invalid snapshot id in history: %r", snapshot_id)
                continue
            snapshot = self._read_snapshot(self.rollback_dir / f"{snapshot_id}.json")
            if snapshot is not None:
                history.append(snapshot)
        return history[-self.max_snapshots :]

    # -------------------------------------------------------------------------
    # Snapshots
    # -------------------------------------------------------------------------

    def _build_snapshot(self, config: UserConfig, reason: str) -> RollbackSnapshot:
        config_copy = config.model_copy(deep=True)
        return RollbackSnapshot(
            id=generate_snapshot_id(),
            created_at=utc_now(),
            reason=reason,
            checksum=compute_config_checksum(config_copy),
            config=config_copy,
        )

    def _write(self, path: Path, data: Any) -> None:
        try:
            self._ensure_dir()
            atomic_write_json(path, data)
        except (OSError, ValueError) as e:
            raise SnapshotError(
                f"Cannot write {path}: {e}", kind=ErrorKind.IO_ERROR, cause=e
            ) from e

    def _write_history_index(self) -> None:
        index = RollbackHistoryIndex(
            snapshot_ids=[s.id for s in self._history], updated_at=utc_now()
        )
        self._write(
            self.rollback_dir / HISTORY_FILE, index.model_dump(mode="json", by_alias=True)
        )

    def _delete_snapshot_file(self, snapshot_id: str) -> None:
        try:
            (self.rollback_dir / f"{snapshot_id}.json").unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Cannot delete evicted snapshot %s: %s", snapshot_id, e)

    def create_snapshot(self, config: UserConfig, reason: str) -> RollbackSnapshot:
        """Append a snapshot of config to history, evicting beyond the cap.

        Raises:
            SnapshotError: IO_ERROR if the snapshot cannot be persisted.

        """
        snapshot = self._build_snapshot(config, reason)
        with self._lock:
            self._write(self.rollback_dir / f"{snapshot.id}.json", snapshot.to_dict())
            self._history.append(snapshot)
            evicted = self._history[: -self.max_snapshots]
            self._history = self._history[-self.max_snapshots :]
            for old in evicted:
                self._delete_snapshot_file(old.id)
            self._write_history_index()
        logger.debug("Created snapshot %s (%s)", snapshot.id, reason)
        return snapshot

    def mark_as_good(self, config: UserConfig, reason: str) -> RollbackSnapshot:
        """Validate config and make it the last-known-good anchor.

        Raises:
            ConfigStoreError: VALIDATION_ERROR if config fails the schema.
            SnapshotError: IO_ERROR if the anchor cannot be persisted.

        """
        parse_user_config(config.to_dict())
        snapshot = self._build_snapshot(config, reason)
        with self._lock:
            self._write(self.rollback_dir / LAST_KNOWN_GOOD_FILE, snapshot.to_dict())
            self._last_known_good = snapshot
        logger.info("Marked config as last known good (%s)", reason)
        return snapshot

    @staticmethod
    def verify_snapshot(snapshot: RollbackSnapshot) -> bool:
        """True if the snapshot's embedded config still matches its checksum."""
        return compute_config_checksum(snapshot.config) == snapshot.checksum

    # -------------------------------------------------------------------------
    # Restore
    # -------------------------------------------------------------------------

    def rollback(self, target: RollbackTarget | str) -> RollbackResult:
        """Restore a snapshot: verify checksum → save via the store → sync upstream.

        Args:
            target: "lastKnownGood" or "previous" (most recent history entry).

        Returns:
            RollbackResult; never raises.

        """
        try:
            target = RollbackTarget(target)
        except ValueError:
            return RollbackResult(success=False, error=f"Invalid rollback target: {target}")

        with self._lock:
            if target is RollbackTarget.LAST_KNOWN_GOOD:
                snapshot = self._last_known_good
                if snapshot is None:
                    return RollbackResult(
                        success=False, error="No lastKnownGood snapshot available"
                    )
            else:
                if not self._history:
                    return RollbackResult(success=False, error="No snapshots in rollback history")
                snapshot = self._history[-1]

        if not self.verify_snapshot(snapshot):
            return RollbackResult(
                success=False, error="Snapshot checksum mismatch - data may be corrupted"
            )

        try:
            self.store.save(snapshot.config)
            self._sync(snapshot.config)
        except (BrainConfigError, OSError) as e:
            logger.error("Rollback to %s failed: %s", snapshot.id, e)
            return RollbackResult(success=False, snapshot=snapshot, error=f"Rollback failed: {e}")

        logger.info("Rolled back config to snapshot %s (%s)", snapshot.id, snapshot.reason)
        return RollbackResult(success=True, restored_config=snapshot.config, snapshot=snapshot)

    def revert(self) -> RollbackResult:
        """Roll back to the last-known-good anchor."""
        return self.rollback(RollbackTarget.LAST_KNOWN_GOOD)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_last_known_good(self) -> RollbackSnapshot | None:
        return self._last_known_good

    def get_history(self) -> list[RollbackSnapshot]:
        """Snapshots oldest first."""
        with self._lock:
            return list(self._history)

    def get_last_snapshot(self) -> RollbackSnapshot | None:
        with self._lock:
            return self._history[-1] if self._history else None

    def get_snapshot(self, snapshot_id: str) -> RollbackSnapshot | None:
        with self._lock:
            return next((s for s in self._history if s.id == snapshot_id), None)

    def matches_last_known_good(self, config: UserConfig) -> bool:
        anchor = self._last_known_good
        return anchor is not None and anchor.checksum == compute_config_checksum(config)

    def clear_history(self) -> int:
        """Delete every history snapshot (the anchor is kept). Returns count removed."""
        with self._lock:
            removed = len(self._history)
            for snapshot in self._history:
                self._delete_snapshot_file(snapshot.id)
            self._history = []
            self._write_history_index()
        logger.info("Cleared %d snapshot(s) from rollback history", removed)
        return removed


# Module-level singleton
_rollback_manager: RollbackManager | None = None


def get_rollback_manager() -> RollbackManager:
    """Get the process-wide RollbackManager (not initialized automatically)."""
    global _rollback_manager
    if _rollback_manager is None:
        _rollback_manager = RollbackManager()
    return _rollback_manager


def _reset_rollback_manager() -> None:
    """Reset rollback manager singleton for testing purposes only."""
    global _rollback_manager
    _rollback_manager = None
