"""Copy manifests for project memory migrations.

A manifest records every file copied from a project's old memory store to
its new one, with the SHA-256 of each source file. Entry lifecycle:

    pending → copied → verified
        ↘        ↘
         failed   failed

Manifests are saved atomically after every state change, so after a crash
the file on disk tells exactly which targets were written. On startup
recover_incomplete_migrations() rolls back every manifest that did not
finish: copied and verified targets are deleted, sources are never touched.

Files live in the manifests directory (mode 0700) as
<migration_id>.manifest.json (mode 0600).
"""

from __future__ import annotations

import logging
import os
import re
import secrets
import shutil
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from brain_config.core.exceptions import ErrorKind, ManifestError
from brain_config.core.io import (
    atomic_write_json,
    compute_file_checksum,
    ensure_private_dir,
    read_json_file,
    utc_now,
)
from brain_config.core.path_validator import is_path_within, normalize_path
from brain_config.core.paths import get_paths

logger = logging.getLogger(__name__)

__all__ = [
    "MANIFEST_EXTENSION",
    "CopyStatus",
    "CopyManifestEntry",
    "CopyManifest",
    "PartialCopyRollbackResult",
    "RecoveryResult",
    "ManifestProgress",
    "ManifestManager",
    "collect_files",
    "generate_migration_id",
    "sanitize_migration_id",
    "get_manifest_manager",
    "_reset_manifest_manager",
]

MANIFEST_EXTENSION: str = ".manifest.json"

_UNSAFE_ID_RE = re.compile(r"[^a-zA-Z0-9_-]")
_BASE36_DIGITS = "0123456789abcdefghijklmnopqrstuvwxyz"


class CopyStatus(str, Enum):
    PENDING = "pending"
    COPIED = "copied"
    VERIFIED = "verified"
    FAILED = "failed"


class _ManifestModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, validate_assignment=True
    )


class CopyManifestEntry(_ManifestModel):
    """One file of a migration."""

    source_path: str
    target_path: str
    source_checksum: str
    target_checksum: str | None = None
    status: CopyStatus = CopyStatus.PENDING
    copied_at: datetime | None = None
    error: str | None = None


class CopyManifest(_ManifestModel):
    """Per-file progress of one project migration."""

    migration_id: str
    project: str
    source_root: str
    target_root: str
    started_at: datetime
    completed_at: datetime | None = None
    entries: list[CopyManifestEntry] = []

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


@dataclass
class PartialCopyRollbackResult:
    success: bool
    files_rolled_back: int = 0
    failures: list[tuple[str, str]] = field(default_factory=list)


@dataclass
class RecoveryResult:
    found: int = 0
    recovered: int = 0
    failures: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ManifestProgress:
    total: int
    completed: int
    pending: int
    failed: int
    percent_complete: int


def _to_base36(value: int) -> str:
    digits = []
    while True:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36_DIGITS[remainder])
        if value == 0:
            return "".join(reversed(digits))


def generate_migration_id() -> str:
    """Return "migration-<base36 epoch ms>-<8 hex chars>"."""
    return f"migration-{_to_base36(int(time.time() * 1000))}-{secrets.token_hex(4)}"


def sanitize_migration_id(migration_id: str) -> str:
    """Replace anything outside [a-zA-Z0-9_-] so an ID cannot leave the directory."""
    return _UNSAFE_ID_RE.sub("_", migration_id)


def collect_files(root: Path) -> list[str]:
    """Relative paths (posix separators) of every regular file under root, sorted."""
    if not root.is_dir():
        return []
    return sorted(p.relative_to(root).as_posix() for p in root.rglob("*") if p.is_file())


class ManifestManager:
    """Creates, updates and rolls back copy manifests.

    Args:
        manifests_dir: Storage directory, defaults to get_paths().manifests_dir.

    """

    def __init__(self, manifests_dir: Path | None = None) -> None:
        self._manifests_dir = manifests_dir

    @property
    def manifests_dir(self) -> Path:
        return self._manifests_dir if self._manifests_dir is not None else get_paths().manifests_dir

    def manifest_path(self, migration_id: str) -> Path:
        return self.manifests_dir / f"{sanitize_migration_id(migration_id)}{MANIFEST_EXTENSION}"

    # =========================================================================
    # Persistence
    # =========================================================================

    def save(self, manifest: CopyManifest) -> None:
        """Atomically write the manifest.

        Raises:
            ManifestError: IO_ERROR if the write fails.

        """
        path = self.manifest_path(manifest.migration_id)
        try:
            ensure_private_dir(self.manifests_dir)
            atomic_write_json(path, manifest.to_dict())
        except (OSError, ValueError) as e:
            raise ManifestError(
                f"Failed to save manifest {manifest.migration_id}: {e}",
                kind=ErrorKind.IO_ERROR,
                cause=e,
            ) from e

    def load_manifest(self, migration_id: str) -> CopyManifest | None:
        """Load a manifest by ID. Missing or unreadable manifests return None."""
        path = self.manifest_path(migration_id)
        if not path.exists():
            return None
        try:
            return CopyManifest.model_validate(read_json_file(path))
        except (OSError, ValueError, ValidationError) as e:
            logger.warning("Failed to load manifest %s: %s", migration_id, e)
            return None

    def delete_manifest(self, migration_id: str) -> bool:
        """Delete a manifest file. Returns False if it did not exist or could not be removed."""
        try:
            self.manifest_path(migration_id).unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.warning("Failed to delete manifest %s: %s", migration_id, e)
            return False
        return True

    def list_manifests(self) -> list[str]:
        """Migration IDs of every manifest on disk, sorted."""
        if not self.manifests_dir.is_dir():
            return []
        return sorted(
            p.name[: -len(MANIFEST_EXTENSION)]
            for p in self.manifests_dir.iterdir()
            if p.name.endswith(MANIFEST_EXTENSION)
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def create_manifest(
        self, project: str, source_root: str, target_root: str, files: list[str]
    ) -> CopyManifest:
        """Create and save a manifest with every entry pending.

        Args:
            project: Project being migrated.
            source_root: Old memory store directory.
            target_root: New memory store directory.
            files: Paths relative to both roots.

        Raises:
            ManifestError: If one root lies inside the other.

        """
        if is_path_within(target_root, source_root) or is_path_within(source_root, target_root):
            raise ManifestError(
                f"Target root {target_root} overlaps source root {source_root}",
                kind=ErrorKind.PATH_UNSAFE,
            )

        entries = []
        for relative in files:
            source_path = os.path.join(source_root, relative)
            try:
                checksum = compute_file_checksum(Path(source_path))
            except OSError as e:
                logger.warning("Failed to compute source checksum for %s: %s", source_path, e)
                checksum = ""
            entries.append(
                CopyManifestEntry(
                    source_path=source_path,
                    target_path=os.path.join(target_root, relative),
                    source_checksum=checksum,
                )
            )

        manifest = CopyManifest(
            migration_id=generate_migration_id(),
            project=project,
            source_root=source_root,
            target_root=target_root,
            started_at=utc_now(),
            entries=entries,
        )
        self.save(manifest)
        logger.info(
            "Copy manifest %s created for project '%s' (%d files)",
            manifest.migration_id,
            project,
            len(entries),
        )
        return manifest

    def mark_entry_copied(self, manifest: CopyManifest, entry: CopyManifestEntry) -> bool:
        """Record the target checksum and mark the entry copied.

        Returns:
            False if the target could not be read (entry marked failed).

        """
        try:
            entry.target_checksum = compute_file_checksum(Path(entry.target_path))
        except OSError as e:
            entry.status = CopyStatus.FAILED
            entry.error = str(e)
            self.save(manifest)
            return False

        entry.status = CopyStatus.COPIED
        entry.copied_at = utc_now()
        entry.error = None
        self.save(manifest)
        return True

    def verify_entry(self, manifest: CopyManifest, entry: CopyManifestEntry) -> bool:
        """Recompute the target checksum and compare it with the source's.

        Only copied entries can be verified; others return False unchanged.
        """
        if entry.status is not CopyStatus.COPIED:
            return False

        try:
            current = compute_file_checksum(Path(entry.target_path))
        except OSError as e:
            self.mark_entry_failed(manifest, entry, str(e))
            return False

        if current != entry.source_checksum:
            self.mark_entry_failed(
                manifest,
                entry,
                f"Checksum mismatch: expected {entry.source_checksum}, got {current}",
            )
            return False

        entry.status = CopyStatus.VERIFIED
        self.save(manifest)
        return True

    def mark_entry_failed(
        self, manifest: CopyManifest, entry: CopyManifestEntry, error: str
    ) -> None:
        entry.status = CopyStatus.FAILED
        entry.error = error
        self.save(manifest)

    def mark_manifest_completed(self, manifest: CopyManifest) -> None:
        """Stamp completed_at.

        Raises:
            ManifestError: CHECKSUM_MISMATCH if any entry is not verified.

        """
        unverified = [
            e.source_path for e in manifest.entries if e.status is not CopyStatus.VERIFIED
        ]
        if unverified:
            raise ManifestError(
                f"Cannot complete migration {manifest.migration_id}: "
                f"{len(unverified)} file(s) not verified",
                kind=ErrorKind.CHECKSUM_MISMATCH,
            )
        manifest.completed_at = utc_now()
        self.save(manifest)
        logger.info("Migration %s completed", manifest.migration_id)

    def copy_entries(self, manifest: CopyManifest) -> bool:
        """Copy, record and verify every pending entry.

        Stops at the first failure.

        Returns:
            True if every entry ended verified.

        """
        for entry in manifest.entries:
            if entry.status is not CopyStatus.PENDING:
                continue
            try:
                Path(entry.target_path).parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(entry.source_path, entry.target_path)
            except OSError as e:
                self.mark_entry_failed(manifest, entry, str(e))
                self._discard_failed_target(manifest, entry)
                return False
            if not self.mark_entry_copied(manifest, entry) or not self.verify_entry(
                manifest, entry
            ):
                self._discard_failed_target(manifest, entry)
                return False
        return all(e.status is CopyStatus.VERIFIED for e in manifest.entries)

    # =========================================================================
    # Rollback and recovery
    # =========================================================================

    @staticmethod
    def _refusal_reason(manifest: CopyManifest, entry: CopyManifestEntry) -> str | None:
        """Why the entry's target must not be deleted, or None if it may be."""
        target = normalize_path(entry.target_path)
        if not is_path_within(target, normalize_path(manifest.target_root)):
            return "Refusing to delete outside target root"
        if target == normalize_path(entry.source_path) or is_path_within(
            target, normalize_path(manifest.source_root)
        ):
            return "Refusing to delete inside source root"
        return None

    @classmethod
    def _is_deletable(cls, manifest: CopyManifest, entry: CopyManifestEntry) -> bool:
        return cls._refusal_reason(manifest, entry) is None

    def _discard_failed_target(self, manifest: CopyManifest, entry: CopyManifestEntry) -> None:
        """Remove the partial or corrupt file written for a failed entry."""
        if not self._is_deletable(manifest, entry):
            return
        try:
            os.unlink(entry.target_path)
        except FileNotFoundError:
            return
        except OSError as e:
            logger.warning("Could not remove failed copy %s: %s", entry.target_path, e)
            return
        logger.debug("Removed failed copy %s", entry.target_path)

    @staticmethod
    def _prune_empty_dirs(directories: set[str], root: str, protected: str) -> None:
        """Remove emptied directories from the deepest up, stopping above root.

        Nothing inside protected (the source root) is removed.
        """
        for directory in sorted(directories, key=len, reverse=True):
            current = directory
            while is_path_within(current, root) and not is_path_within(current, protected):
                try:
                    if os.listdir(current):
                        break
                    os.rmdir(current)
                except OSError:
                    break
                logger.debug("Removed empty directory %s", current)
                if current == root:
                    break
                current = os.path.dirname(current)

    def rollback_partial_copy(self, manifest: CopyManifest) -> PartialCopyRollbackResult:
        """Delete the targets of copied and verified entries, then the manifest.

        A target is deleted only if it lies inside target_root and outside
        source_root. Directories emptied inside target_root, and
        target_root itself, are removed.
        """
        result = PartialCopyRollbackResult(success=True)
        target_root = normalize_path(manifest.target_root)
        touched_dirs = {target_root}

        for entry in manifest.entries:
            refusal = self._refusal_reason(manifest, entry)
            target = normalize_path(entry.target_path)
            if refusal is None:
                touched_dirs.add(os.path.dirname(target))
            if entry.status not in (CopyStatus.COPIED, CopyStatus.VERIFIED):
                continue
            if refusal is not None:
                result.failures.append((entry.target_path, refusal))
                continue
            try:
                os.unlink(target)
            except FileNotFoundError:
                continue
            except OSError as e:
                result.failures.append((entry.target_path, str(e)))
                continue
            result.files_rolled_back += 1
            logger.debug("Rolled back %s", target)

        self._prune_empty_dirs(touched_dirs, target_root, normalize_path(manifest.source_root))

        self.delete_manifest(manifest.migration_id)
        result.success = not result.failures
        logger.info(
            "Rolled back migration %s: %d file(s) removed, %d failure(s)",
            manifest.migration_id,
            result.files_rolled_back,
            len(result.failures),
        )
        return result

    @staticmethod
    def is_incomplete(manifest: CopyManifest) -> bool:
        """True if completed_at is unset or any entry is not verified."""
        if manifest.completed_at is None:
            return True
        return any(e.status is not CopyStatus.VERIFIED for e in manifest.entries)

    def recover_incomplete_migrations(self) -> RecoveryResult:
        """Roll back every incomplete manifest on disk."""
        result = RecoveryResult()
        for migration_id in self.list_manifests():
            manifest = self.load_manifest(migration_id)
            if manifest is None or not self.is_incomplete(manifest):
                continue

            result.found += 1
            logger.info(
                "Found incomplete migration %s for project '%s', rolling back",
                migration_id,
                manifest.project,
            )
            if self.rollback_partial_copy(manifest).success:
                result.recovered += 1
            else:
                result.failures.append(migration_id)

        if result.found:
            logger.info(
                "Migration recovery: %d found, %d recovered, %d failed",
                result.found,
                result.recovered,
                len(result.failures),
            )
        return result

    # =========================================================================
    # Queries
    # =========================================================================

    @staticmethod
    def get_status_counts(manifest: CopyManifest) -> dict[CopyStatus, int]:
        counts = dict.fromkeys(CopyStatus, 0)
        for entry in manifest.entries:
            counts[entry.status] += 1
        return counts

    @staticmethod
    def get_failed_entries(manifest: CopyManifest) -> list[CopyManifestEntry]:
        return [e for e in manifest.entries if e.status is CopyStatus.FAILED]

    @staticmethod
    def get_pending_entries(manifest: CopyManifest) -> list[CopyManifestEntry]:
        return [e for e in manifest.entries if e.status is CopyStatus.PENDING]

    def get_progress(self, manifest: CopyManifest) -> ManifestProgress:
        """Copied and verified entries count as completed."""
        counts = self.get_status_counts(manifest)
        total = len(manifest.entries)
        completed = counts[CopyStatus.COPIED] + counts[CopyStatus.VERIFIED]
        return ManifestProgress(
            total=total,
            completed=completed,
            pending=counts[CopyStatus.PENDING],
            failed=counts[CopyStatus.FAILED],
            percent_complete=round(completed / total * 100) if total else 0,
        )


# Module-level singleton
_manifest_manager: ManifestManager | None = None


def get_manifest_manager() -> ManifestManager:
    global _manifest_manager
    if _manifest_manager is None:
        _manifest_manager = ManifestManager()
    return _manifest_manager


def _reset_manifest_manager() -> None:
    """Reset manifest manager singleton for testing purposes only."""
    global _manifest_manager
    _manifest_manager = None
