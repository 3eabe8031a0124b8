"""Hierarchical inter-process file locks.

Lock kinds:
- global: one per user, taken for config-wide mutations. While another
  process holds it, project locks cannot be acquired.
- project: one per (sanitized) project name. Project locks never block
  each other.
- resource: a named single-writer lock for one file (config.json,
  the upstream config) with its own timeout and stale threshold.

Acquisition is create-exclusive on a lock file (mode 0600) in a private
directory (mode 0700). The file carries a JSON record for debugging:
{"pid", "timestamp", "hostname", "lockType", "project"?}. On contention the
caller retries every 100 ms until its timeout. A lock file older than the
stale threshold, or one left by a dead process on this host, is removed
before retrying.

Every acquisition returns a LockHandle whose release() is idempotent; the
with_* context managers pair acquire and release on every exit path.
Process exit and SIGINT/SIGTERM release every lock this process holds.
"""

from __future__ import annotations

import atexit
import contextlib
import logging
import os
import re
import signal
import socket
import threading
import time
from collections.abc import Callable, Generator, Iterable
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import FrameType
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from brain_config.core.exceptions import LockFilesystemError, LockTimeoutError
from brain_config.core.io import PRIVATE_FILE_MODE, ensure_private_dir
from brain_config.core.paths import get_paths

logger = logging.getLogger(__name__)

__all__ = [
    "GLOBAL_LOCK_TIMEOUT_MS",
    "PROJECT_LOCK_TIMEOUT_MS",
    "LOCK_RETRY_INTERVAL_MS",
    "STALE_LOCK_THRESHOLD_MS",
    "LockType",
    "LockRecord",
    "LockHandle",
    "LockManager",
    "sanitize_lock_name",
    "get_lock_manager",
    "register_signal_handlers",
    "unregister_signal_handlers",
    "_is_pid_alive",
    "_reset_lock_manager",
]

T = TypeVar("T")

GLOBAL_LOCK_TIMEOUT_MS: int = 60_000
PROJECT_LOCK_TIMEOUT_MS: int = 30_000
LOCK_RETRY_INTERVAL_MS: int = 100
STALE_LOCK_THRESHOLD_MS: int = 120_000

GLOBAL_LOCK_FILE: str = "global.lock"
_GLOBAL_KEY = "global"

_UNSAFE_NAME_RE = re.compile(r"[^a-zA-Z0-9_-]")


class LockType(str, Enum):
    """Kind recorded in the lock file."""

    GLOBAL = "global"
    PROJECT = "project"
    RESOURCE = "resource"


class LockRecord(BaseModel):
    """JSON content of a lock file."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    pid: int
    timestamp: int = Field(description="Acquisition time in epoch milliseconds")
    hostname: str
    lock_type: LockType
    project: str | None = None
    resource: str | None = None


def sanitize_lock_name(name: str) -> str:
    """Replace every character outside [a-zA-Z0-9_-] with an underscore."""
    return _UNSAFE_NAME_RE.sub("_", name)


def _is_pid_alive(pid: int) -> bool:
    """Check if a process with the given PID is running.

    Uses os.kill(pid, 0), which only checks existence.

    Args:
        pid: Process ID to check.

    Returns:
        True if process is running, False if PID is not found.

    """
    # Negative PIDs have special meaning in os.kill()
    if pid <= 0:
        return False

    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        # Process exists but belongs to another user
        return True
    except OSError:
        return False


def _read_lock_record(lock_path: Path) -> LockRecord | None:
    """Parse a lock file, returning None if it is missing or unreadable."""
    try:
        return LockRecord.model_validate_json(lock_path.read_text(encoding="utf-8"))
    except (OSError, ValueError, ValidationError):
        return None


@dataclass(eq=False)
class LockHandle:
    """In-memory token proving this process holds a lock.

    Attributes:
        key: Registry key inside the owning LockManager.
        path: Lock file path.
        lock_type: Kind of lock.
        name: Project or resource name (None for the global lock).
        acquired_at: Epoch seconds at acquisition.
        released: True once release() ran.

    """

    key: str
    path: Path
    lock_type: LockType
    name: str | None
    acquired_at: float
    _on_release: Callable[[LockHandle], None] = field(repr=False)
    released: bool = False

    def release(self) -> None:
        """Release the lock. Calling it twice is a no-op."""
        if not self.released:
            self._on_release(self)

    def __enter__(self) -> LockHandle:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()


class LockManager:
    """Acquires and tracks the file locks held by this process.

    Thread-safe: the registry of held locks is guarded by an RLock, and
    two threads contending for the same lock file serialize on the file
    itself exactly like two processes would.
    """

    def __init__(
        self,
        locks_dir: Path | None = None,
        *,
        retry_interval_ms: int = LOCK_RETRY_INTERVAL_MS,
        stale_threshold_ms: int = STALE_LOCK_THRESHOLD_MS,
    ) -> None:
        """Initialize LockManager.

        Args:
            locks_dir: Lock directory, defaults to get_paths().locks_dir
                resolved at each use.
            retry_interval_ms: Delay between acquisition attempts.
            stale_threshold_ms: Age after which a lock file is abandoned.

        """
        self._locks_dir = Path(locks_dir) if locks_dir is not None else None
        self.retry_interval_ms = retry_interval_ms
        self.stale_threshold_ms = stale_threshold_ms
        self._held: dict[str, LockHandle] = {}
        self._mutex = threading.RLock()
        self._hostname = socket.gethostname()

    # -------------------------------------------------------------------------
    # Paths
    # -------------------------------------------------------------------------

    @property
    def locks_dir(self) -> Path:
        return self._locks_dir if self._locks_dir is not None else get_paths().locks_dir

    def global_lock_path(self) -> Path:
        return self.locks_dir / GLOBAL_LOCK_FILE

    def project_lock_path(self, project: str) -> Path:
        return self.locks_dir / f"project-{sanitize_lock_name(project)}.lock"

    def resource_lock_path(self, resource: str) -> Path:
        return self.locks_dir / f"{sanitize_lock_name(resource)}.lock"

    # -------------------------------------------------------------------------
    # Acquisition
    # -------------------------------------------------------------------------

    def acquire_global(self, timeout_ms: int = GLOBAL_LOCK_TIMEOUT_MS) -> LockHandle:
        """Acquire the global lock.

        Raises:
            LockTimeoutError: If still held elsewhere after timeout_ms.
            LockFilesystemError: If the lock file cannot be created.

        """
        return self._acquire(
            _GLOBAL_KEY,
            self.global_lock_path(),
            LockType.GLOBAL,
            None,
            timeout_ms=timeout_ms,
            stale_threshold_ms=self.stale_threshold_ms,
            respect_global=False,
        )

    def acquire_project(
        self, project: str, timeout_ms: int = PROJECT_LOCK_TIMEOUT_MS
    ) -> LockHandle:
        """Acquire the lock for one project.

        Waits while another process holds the global lock.

        Raises:
            ValueError: If project is empty.
            LockTimeoutError: If not acquired within timeout_ms.
            LockFilesystemError: If the lock file cannot be created.

        """
        if not project:
            raise ValueError("Project name cannot be empty")
        return self._acquire(
            f"project:{sanitize_lock_name(project)}",
            self.project_lock_path(project),
            LockType.PROJECT,
            project,
            timeout_ms=timeout_ms,
            stale_threshold_ms=self.stale_threshold_ms,
            respect_global=True,
        )

    def acquire_projects(
        self, projects: Iterable[str], timeout_ms: int = PROJECT_LOCK_TIMEOUT_MS
    ) -> list[LockHandle]:
        """Acquire several project locks in sorted order.

        Sorted acquisition prevents deadlock between processes locking
        overlapping sets. If any acquisition fails, the locks already taken
        are released in reverse order and the error is re-raised.

        Returns:
            Handles in acquisition order.

        """
        acquired: list[LockHandle] = []
        try:
            for project in sorted(set(projects)):
                acquired.append(self.acquire_project(project, timeout_ms))
        except Exception:
            for handle in reversed(acquired):
                try:
                    handle.release()
                except LockFilesystemError as e:
                    logger.warning("Failed to release %s during rollback: %s", handle.path, e)
            raise
        return acquired

    def acquire_resource(
        self,
        resource: str,
        timeout_ms: int,
        stale_threshold_ms: int | None = None,
    ) -> LockHandle:
        """Acquire a named single-writer lock (e.g. "config").

        Resource locks ignore the global lock.
        """
        return self._acquire(
            f"resource:{sanitize_lock_name(resource)}",
            self.resource_lock_path(resource),
            LockType.RESOURCE,
            resource,
            timeout_ms=timeout_ms,
            stale_threshold_ms=stale_threshold_ms or self.stale_threshold_ms,
            respect_global=False,
        )

    def _acquire(
        self,
        key: str,
        path: Path,
        lock_type: LockType,
        name: str | None,
        *,
        timeout_ms: int,
        stale_threshold_ms: int,
        respect_global: bool,
    ) -> LockHandle:
        try:
            ensure_private_dir(path.parent)
        except OSError as e:
            raise LockFilesystemError(
                f"Cannot create lock directory {path.parent}: {e}", cause=e
            ) from e

        record = LockRecord(
            pid=os.getpid(),
            timestamp=int(time.time() * 1000),
            hostname=self._hostname,
            lock_type=lock_type,
            project=name if lock_type is LockType.PROJECT else None,
            resource=name if lock_type is LockType.RESOURCE else None,
        )
        deadline = time.monotonic() + timeout_ms / 1000

        while True:
            if respect_global and self._global_held_elsewhere():
                logger.debug("Waiting for global lock before acquiring %s", path.name)
            elif self._try_create(path, record):
                handle = LockHandle(
                    key=key,
                    path=path,
                    lock_type=lock_type,
                    name=name,
                    acquired_at=time.time(),
                    _on_release=self._release_handle,
                )
                with self._mutex:
                    self._held[key] = handle
                logger.debug("Acquired %s lock: %s", lock_type.value, path)
                return handle
            elif self._is_stale(path, stale_threshold_ms):
                self._remove_stale(path)
                continue

            if time.monotonic() >= deadline:
                raise LockTimeoutError(
                    f"Timed out after {timeout_ms}ms waiting for {lock_type.value} lock {path}"
                )
            time.sleep(self.retry_interval_ms / 1000)

    def _try_create(self, path: Path, record: LockRecord) -> bool:
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, PRIVATE_FILE_MODE)
        except FileExistsError:
            return False
        except OSError as e:
            raise LockFilesystemError(f"Cannot create lock file {path}: {e}", cause=e) from e

        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(record.model_dump_json(by_alias=True, exclude_none=True))
        except OSError as e:
            with contextlib.suppress(OSError):
                path.unlink()
            raise LockFilesystemError(f"Cannot write lock file {path}: {e}", cause=e) from e
        return True

    def _is_stale(self, path: Path, stale_threshold_ms: int) -> bool:
        try:
            age_ms = (time.time() - path.stat().st_mtime) * 1000
        except FileNotFoundError:
            return False
        except OSError as e:
            raise LockFilesystemError(f"Cannot stat lock file {path}: {e}", cause=e) from e

        if age_ms > stale_threshold_ms:
            logger.warning("Lock %s is stale (age %.0fms)", path, age_ms)
            return True

        record = _read_lock_record(path)
        if (
            record is not None
            and record.hostname == self._hostname
            and record.pid != os.getpid()
            and not _is_pid_alive(record.pid)
        ):
            logger.warning("Lock %s belongs to dead PID %d", path, record.pid)
            return True
        return False

    def _remove_stale(self, path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise LockFilesystemError(f"Cannot remove stale lock {path}: {e}", cause=e) from e

    def _global_held_elsewhere(self) -> bool:
        with self._mutex:
            if _GLOBAL_KEY in self._held:
                return False

        path = self.global_lock_path()
        if not path.exists():
            return False
        if self._is_stale(path, self.stale_threshold_ms):
            self._remove_stale(path)
            return False

        record = _read_lock_record(path)
        return not (
            record is not None and record.pid == os.getpid() and record.hostname == self._hostname
        )

    # -------------------------------------------------------------------------
    # Release
    # -------------------------------------------------------------------------

    def _release_handle(self, handle: LockHandle) -> None:
        with self._mutex:
            if handle.released:
                return
            handle.released = True
            if self._held.get(handle.key) is handle:
                del self._held[handle.key]

        record = _read_lock_record(handle.path)
        if record is not None and record.pid != os.getpid():
            # Taken over after being judged stale; the file is no longer ours
            logger.warning("Lock %s now owned by PID %d, not removing", handle.path, record.pid)
            return

        try:
            handle.path.unlink()
        except FileNotFoundError:
            logger.debug("Lock file already removed: %s", handle.path)
        except OSError as e:
            raise LockFilesystemError(
                f"Cannot remove lock file {handle.path}: {e}", cause=e
            ) from e
        logger.debug("Released %s lock: %s", handle.lock_type.value, handle.path)

    def release_global(self) -> bool:
        """Release the global lock if held. Returns True if it was held."""
        return self._release_key(_GLOBAL_KEY)

    def release_project(self, project: str) -> bool:
        """Release a project lock if held. Returns True if it was held."""
        return self._release_key(f"project:{sanitize_lock_name(project)}")

    def _release_key(self, key: str) -> bool:
        with self._mutex:
            handle = self._held.get(key)
        if handle is None:
            return False
        handle.release()
        return True

    def release_all(self) -> int:
        """Release every lock held by this manager.

        Filesystem errors are logged so one bad lock file cannot keep the
        others held.

        Returns:
            Number of locks released.

        """
        with self._mutex:
            handles = list(self._held.values())

        released = 0
        for handle in reversed(handles):
            try:
                handle.release()
                released += 1
            except LockFilesystemError as e:
                logger.warning("Failed to release %s: %s", handle.path, e)
        return released

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    def held_locks(self) -> list[LockHandle]:
        with self._mutex:
            return list(self._held.values())

    def is_global_locked(self) -> bool:
        """True if a global lock file exists, whoever holds it."""
        return self.global_lock_path().exists()

    def is_project_locked(self, project: str) -> bool:
        return self.project_lock_path(project).exists()

    # -------------------------------------------------------------------------
    # Scoped helpers
    # -------------------------------------------------------------------------

    @contextmanager
    def with_global_lock(
        self, timeout_ms: int = GLOBAL_LOCK_TIMEOUT_MS
    ) -> Generator[LockHandle, None, None]:
        handle = self.acquire_global(timeout_ms)
        try:
            yield handle
        finally:
            handle.release()

    @contextmanager
    def with_project_lock(
        self, project: str, timeout_ms: int = PROJECT_LOCK_TIMEOUT_MS
    ) -> Generator[LockHandle, None, None]:
        handle = self.acquire_project(project, timeout_ms)
        try:
            yield handle
        finally:
            handle.release()

    @contextmanager
    def with_project_locks(
        self, projects: Iterable[str], timeout_ms: int = PROJECT_LOCK_TIMEOUT_MS
    ) -> Generator[list[LockHandle], None, None]:
        handles = self.acquire_projects(projects, timeout_ms)
        try:
            yield handles
        finally:
            for handle in reversed(handles):
                handle.release()

    @contextmanager
    def with_resource_lock(
        self,
        resource: str,
        timeout_ms: int,
        stale_threshold_ms: int | None = None,
    ) -> Generator[LockHandle, None, None]:
        handle = self.acquire_resource(resource, timeout_ms, stale_threshold_ms)
        try:
            yield handle
        finally:
            handle.release()

    def with_lock(
        self,
        fn: Callable[[], T],
        *,
        project: str | None = None,
        timeout_ms: int | None = None,
    ) -> T:
        """Run fn while holding a project lock, or the global lock if project is None."""
        if project is None:
            scope = self.with_global_lock(timeout_ms or GLOBAL_LOCK_TIMEOUT_MS)
        else:
            scope = self.with_project_lock(project, timeout_ms or PROJECT_LOCK_TIMEOUT_MS)
        with scope:
            return fn()


# =============================================================================
# Process-wide manager and exit handling
# =============================================================================

_lock_manager: LockManager | None = None
_atexit_registered = False

# Previous signal handlers for proper restoration
_previous_handlers: dict[int, Any] = {}


def get_lock_manager() -> LockManager:
    """Get the process-wide LockManager, creating it on first use.

    The first call registers an atexit hook that releases all held locks.
    """
    global _lock_manager, _atexit_registered
    if _lock_manager is None:
        _lock_manager = LockManager()
    if not _atexit_registered:
        atexit.register(_release_all_on_exit)
        _atexit_registered = True
    return _lock_manager


def _release_all_on_exit() -> int:
    if _lock_manager is None:
        return 0
    released = _lock_manager.release_all()
    if released:
        logger.debug("Released %d lock(s) on exit", released)
    return released


def _handle_exit_signal(signum: int, frame: FrameType | None) -> None:
    _release_all_on_exit()
    previous = _previous_handlers.get(signum)
    if callable(previous):
        previous(signum, frame)
        return
    # 130 for SIGINT, 143 for SIGTERM
    raise SystemExit(128 + signum)


def register_signal_handlers() -> None:
    """Install SIGINT/SIGTERM handlers that release held locks.

    The previous handlers are kept and chained to. Must be called from the
    main thread.
    """
    for signum in (signal.SIGINT, signal.SIGTERM):
        _previous_handlers[signum] = signal.signal(signum, _handle_exit_signal)


def unregister_signal_handlers() -> None:
    """Restore the handlers saved by register_signal_handlers()."""
    for signum, previous in list(_previous_handlers.items()):
        with contextlib.suppress(ValueError, TypeError):
            signal.signal(signum, previous if previous is not None else signal.SIG_DFL)
    _previous_handlers.clear()


def _reset_lock_manager() -> None:
    """Release held locks and drop the singleton. Testing only."""
    global _lock_manager
    if _lock_manager is not None:
        _lock_manager.release_all()
    _lock_manager = None
