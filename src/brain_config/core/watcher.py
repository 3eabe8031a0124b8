"""Watcher that applies hand edits of config.json.

State machine: stopped → starting → running → (error | stopped).

Filesystem events from watchdog restart a debounce timer; when it elapses
the change is processed once:

1. If a migration is in progress, remember the change and return. It is
   re-triggered when the migration ends.
2. Wait until the file stops changing, then read it (lock-free).
3. Parse, schema or path failure → handle_invalid_config (validation_error
   event, then rollback to last-known-good if auto_rollback is on).
4. Diff against the in-memory baseline; no changes → return silently.
5. Snapshot the old baseline, sync upstream (failure only emits an error
   event), promote the new config to baseline and last-known-good.
6. Emit a reconfigure event carrying the diff.

Events go to a single callback; exceptions raised by it are logged.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from brain_config.core.config.diff import ConfigDiff, detect_config_diff
from brain_config.core.config.models import UserConfig
from brain_config.core.config.schema import collect_path_errors
from brain_config.core.config.store import ConfigStore, get_config_store
from brain_config.core.config.translation import sync_to_upstream
from brain_config.core.exceptions import BrainConfigError, ConfigStoreError, ErrorKind
from brain_config.core.io import ensure_private_dir, utc_now
from brain_config.core.rollback import (
    RollbackManager,
    RollbackResult,
    RollbackTarget,
    get_rollback_manager,
)

logger = logging.getLogger(__name__)

__all__ = [
    "DEFAULT_STABILITY_THRESHOLD_MS",
    "DEFAULT_POLL_INTERVAL_MS",
    "WatcherState",
    "ConfigEventType",
    "ConfigChangeEvent",
    "ConfigWatcher",
    "get_config_watcher",
    "_reset_config_watcher",
]

DEFAULT_STABILITY_THRESHOLD_MS: int = 1000
DEFAULT_POLL_INTERVAL_MS: int = 100

# Give up waiting for a quiet file after this many stability thresholds
_MAX_STABILITY_WAITS: int = 10


class WatcherState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    ERROR = "error"


class ConfigEventType(str, Enum):
    CHANGE = "change"
    ERROR = "error"
    VALIDATION_ERROR = "validation_error"
    ROLLBACK = "rollback"
    RECONFIGURE = "reconfigure"


@dataclass(frozen=True)
class ConfigChangeEvent:
    """Event delivered to the watcher callback."""

    type: ConfigEventType
    timestamp: datetime = field(default_factory=utc_now)
    error: str | None = None
    diff: ConfigDiff | None = None
    config: UserConfig | None = None
    rollback_result: RollbackResult | None = None


EventCallback = Callable[[ConfigChangeEvent], None]


class _ConfigFileHandler(FileSystemEventHandler):
    """Forwards events that touch config.json to the watcher.

    Atomic saves arrive as a move of the temp file onto config.json, so the
    destination of moved events is checked too.
    """

    def __init__(self, watcher: ConfigWatcher) -> None:
        super().__init__()
        self._watcher = watcher

    def _touches_config(self, event: FileSystemEvent) -> bool:
        if event.is_directory:
            return False
        target = self._watcher.config_path
        candidates = [event.src_path, getattr(event, "dest_path", "")]
        return any(p and Path(os.fsdecode(p)) == target for p in candidates)

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.event_type in ("opened", "closed_no_write"):
            return
        if self._touches_config(event):
            logger.debug("Config file event: %s", event.event_type)
            self._watcher.notify_change()


class ConfigWatcher:
    """Watches config.json and applies valid edits.

    Args:
        callback: Receives every ConfigChangeEvent.
        store: Config store, defaults to the process-wide one.
        rollback_manager: Rollback manager, defaults to the process-wide one.
        sync: Upstream sync callable, defaults to sync_to_upstream.
        debounce_ms: Overrides watcher.debounce_ms from the config.
        auto_rollback: Restore last-known-good on an invalid edit.
        stability_threshold_ms: How long the file must stay unchanged before
            it is read.
        poll_interval_ms: Poll period while waiting for stability.
        observer_factory: Builds the watchdog observer.

    """

    def __init__(
        self,
        callback: EventCallback | None = None,
        *,
        store: ConfigStore | None = None,
        rollback_manager: RollbackManager | None = None,
        sync: Callable[[UserConfig], object] | None = None,
        debounce_ms: int | None = None,
        auto_rollback: bool = True,
        stability_threshold_ms: int = DEFAULT_STABILITY_THRESHOLD_MS,
        poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS,
        observer_factory: Callable[[], Any] = Observer,
    ) -> None:
        self._callback = callback
        self._store = store
        self._rollback_manager = rollback_manager
        self._sync = sync or sync_to_upstream
        self._debounce_override = debounce_ms
        self.auto_rollback = auto_rollback
        self.stability_threshold_ms = stability_threshold_ms
        self.poll_interval_ms = poll_interval_ms
        self._observer_factory = observer_factory

        self._state = WatcherState.STOPPED
        self._baseline: UserConfig | None = None
        self._observer: Any = None
        self._timer: threading.Timer | None = None
        self._migration_in_progress = False
        self._pending_change = False
        self._lock = threading.RLock()
        self._process_lock = threading.Lock()

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def store(self) -> ConfigStore:
        return self._store if self._store is not None else get_config_store()

    @property
    def rollback_manager(self) -> RollbackManager:
        if self._rollback_manager is not None:
            return self._rollback_manager
        return get_rollback_manager()

    @property
    def config_path(self) -> Path:
        return self.store.config_path

    @property
    def state(self) -> WatcherState:
        return self._state

    @property
    def baseline(self) -> UserConfig | None:
        return self._baseline

    @property
    def debounce_ms(self) -> int:
        if self._debounce_override is not None:
            return self._debounce_override
        if self._baseline is not None:
            return self._baseline.watcher.debounce_ms
        return UserConfig().watcher.debounce_ms

    @property
    def migration_in_progress(self) -> bool:
        return self._migration_in_progress

    @property
    def pending_change(self) -> bool:
        return self._pending_change

    def set_callback(self, callback: EventCallback | None) -> None:
        self._callback = callback

    def update_baseline(self, config: UserConfig) -> None:
        """Adopt config as the baseline (after a mutation applied elsewhere)."""
        with self._lock:
            self._baseline = config

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Initialize rollback, load the baseline and subscribe to file events.

        Raises:
            BrainConfigError: If rollback initialization fails (state → error).
            OSError: If the config directory cannot be watched (state → error).

        """
        with self._lock:
            if self._state in (WatcherState.RUNNING, WatcherState.STARTING):
                return
            self._state = WatcherState.STARTING

        try:
            if not self.rollback_manager.is_initialized():
                self.rollback_manager.initialize()
            self._baseline = self.store.load_sync()

            watch_dir = ensure_private_dir(self.config_path.parent)
            observer = self._observer_factory()
            observer.schedule(_ConfigFileHandler(self), str(watch_dir), recursive=False)
            observer.start()
        except (BrainConfigError, OSError) as e:
            self._state = WatcherState.ERROR
            logger.error("Config watcher failed to start: %s", e)
            self._emit(ConfigChangeEvent(ConfigEventType.ERROR, error=str(e)))
            raise

        with self._lock:
            self._observer = observer
            self._state = WatcherState.RUNNING
        logger.info(
            "Watching %s (debounce %d ms)", self.config_path, self.debounce_ms
        )

    def stop(self) -> None:
        """Cancel any pending debounce and stop the observer."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            observer, self._observer = self._observer, None
            self._state = WatcherState.STOPPED

        if observer is not None:
            observer.stop()
            observer.join(timeout=5)
        logger.debug("Config watcher stopped")

    def is_running(self) -> bool:
        return self._state is WatcherState.RUNNING

    # =========================================================================
    # Debounce and migration gating
    # =========================================================================

    def notify_change(self) -> None:
        """Restart the debounce timer; a burst of calls yields one processing run."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            timer = threading.Timer(self.debounce_ms / 1000, self._on_debounce_elapsed)
            timer.daemon = True
            self._timer = timer
            timer.start()

    def _on_debounce_elapsed(self) -> None:
        with self._lock:
            self._timer = None
            if self._migration_in_progress:
                self._pending_change = True
                logger.debug("Config change deferred until migration ends")
                return
        self.process_change()

    def begin_migration(self) -> None:
        with self._lock:
            self._migration_in_progress = True

    def end_migration(self) -> None:
        """Clear the migration flag and re-trigger a deferred change once."""
        with self._lock:
            self._migration_in_progress = False
            pending, self._pending_change = self._pending_change, False
        if pending:
            self.notify_change()

    # =========================================================================
    # Processing
    # =========================================================================

    def _wait_for_stable_write(self) -> None:
        threshold = self.stability_threshold_ms / 1000
        if threshold <= 0:
            return
        poll = max(self.poll_interval_ms, 1) / 1000
        deadline = time.monotonic() + threshold * _MAX_STABILITY_WAITS

        last = self._stat_signature()
        stable_since = time.monotonic()
        while time.monotonic() < deadline:
            time.sleep(poll)
            current = self._stat_signature()
            if current != last:
                last = current
                stable_since = time.monotonic()
            elif time.monotonic() - stable_since >= threshold:
                return
        logger.debug("Config file still changing, processing anyway")

    def _stat_signature(self) -> tuple[int, int] | None:
        try:
            st = self.config_path.stat()
        except OSError:
            return None
        return (st.st_size, st.st_mtime_ns)

    def process_change(self) -> ConfigDiff | None:
        """Run the change pipeline once.

        Returns:
            The applied diff, or None if nothing was applied.

        """
        with self._process_lock:
            self._emit(ConfigChangeEvent(ConfigEventType.CHANGE))
            self._wait_for_stable_write()

            try:
                new_config = self.store.read_current()
            except ConfigStoreError as e:
                if e.kind in (ErrorKind.PARSE_ERROR, ErrorKind.VALIDATION_ERROR):
                    self.handle_invalid_config(e.message)
                else:
                    logger.error("Cannot read config after change: %s", e)
                    self._emit(ConfigChangeEvent(ConfigEventType.ERROR, error=e.message))
                return None

            path_errors = collect_path_errors(new_config)
            if path_errors:
                self.handle_invalid_config(f"Unsafe path in config: {'; '.join(path_errors)}")
                return None

            previous = self._baseline
            diff = detect_config_diff(previous, new_config)
            if not diff.has_changes:
                logger.debug("Config file changed but content is equivalent")
                return None

            return self._apply(previous, new_config, diff)

    def _apply(
        self, previous: UserConfig | None, new_config: UserConfig, diff: ConfigDiff
    ) -> ConfigDiff:
        if previous is not None:
            try:
                self.rollback_manager.create_snapshot(previous, "Before config file change")
            except BrainConfigError as e:
                logger.warning("Could not snapshot previous config: %s", e)
                self._emit(ConfigChangeEvent(ConfigEventType.ERROR, error=e.message))

        try:
            self._sync(new_config)
        except BrainConfigError as e:
            logger.error("Upstream sync failed after config change: %s", e)
            self._emit(ConfigChangeEvent(ConfigEventType.ERROR, error=e.message))

        with self._lock:
            self._baseline = new_config
        try:
            self.rollback_manager.mark_as_good(new_config, "Config file change applied")
        except BrainConfigError as e:
            logger.warning("Could not mark new config as good: %s", e)
            self._emit(ConfigChangeEvent(ConfigEventType.ERROR, error=e.message))

        logger.info(
            "Applied config change (%d added, %d removed, %d modified)",
            len(diff.projects_added),
            len(diff.projects_removed),
            len(diff.projects_modified),
        )
        self._emit(ConfigChangeEvent(ConfigEventType.RECONFIGURE, diff=diff, config=new_config))
        return diff

    def handle_invalid_config(self, error: str) -> RollbackResult | None:
        """Report an invalid edit and, if enabled, restore last-known-good."""
        logger.warning("Invalid config edit: %s", error)
        self._emit(ConfigChangeEvent(ConfigEventType.VALIDATION_ERROR, error=error))
        if not self.auto_rollback:
            return None

        result = self.rollback_manager.rollback(RollbackTarget.LAST_KNOWN_GOOD)
        if result.success and result.restored_config is not None:
            with self._lock:
                self._baseline = result.restored_config
        self._emit(
            ConfigChangeEvent(
                ConfigEventType.ROLLBACK,
                error=result.error,
                config=result.restored_config,
                rollback_result=result,
            )
        )
        return result

    def _emit(self, event: ConfigChangeEvent) -> None:
        if self._callback is None:
            return
        try:
            self._callback(event)
        except Exception:
            logger.exception("Config watcher callback failed on %s event", event.type.value)


# Module-level singleton
_watcher: ConfigWatcher | None = None


def get_config_watcher(callback: EventCallback | None = None) -> ConfigWatcher:
    """Get the process-wide ConfigWatcher, replacing its callback if one is given."""
    global _watcher
    if _watcher is None:
        _watcher = ConfigWatcher(callback)
    elif callback is not None:
        _watcher.set_callback(callback)
    return _watcher


def _reset_config_watcher() -> None:
    """Stop and drop the watcher singleton. Testing only."""
    global _watcher
    if _watcher is not None:
        _watcher.stop()
    _watcher = None
