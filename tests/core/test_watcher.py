"""Tests for brain_config.core.watcher."""

import json
import threading
import time
from pathlib import Path

import pytest
from watchdog.events import FileModifiedEvent, FileMovedEvent, FileOpenedEvent

from brain_config.core.config import ConfigStore, UserConfig
from brain_config.core.config.models import LoggingConfig, SyncConfig, WatcherConfig
from brain_config.core.exceptions import TranslationError
from brain_config.core.locking import LockManager
from brain_config.core.paths import BrainPaths
from brain_config.core.rollback import RollbackManager
from brain_config.core.watcher import (
    ConfigChangeEvent,
    ConfigEventType,
    ConfigWatcher,
    WatcherState,
    _ConfigFileHandler,
    get_config_watcher,
)


class FakeObserver:
    """Stands in for watchdog's Observer; events are injected by hand."""

    def __init__(self) -> None:
        self.scheduled: list[tuple[object, str]] = []
        self.started = False
        self.stopped = False

    def schedule(self, handler, path: str, recursive: bool = False) -> None:
        self.scheduled.append((handler, path))

    def start(self) -> None:
        self.started = True

    def stop(self) -> None:
        self.stopped = True

    def join(self, timeout: float | None = None) -> None:
        pass


class Recorder:
    """Collects events and lets tests wait for one type."""

    def __init__(self) -> None:
        self.events: list[ConfigChangeEvent] = []
        self._cond = threading.Condition()

    def __call__(self, event: ConfigChangeEvent) -> None:
        with self._cond:
            self.events.append(event)
            self._cond.notify_all()

    @property
    def types(self) -> list[ConfigEventType]:
        return [e.type for e in self.events]

    def wait_for(self, event_type: ConfigEventType, timeout: float = 5.0) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: event_type in self.types, timeout=timeout)


@pytest.fixture
def store(paths: BrainPaths) -> ConfigStore:
    return ConfigStore(paths, LockManager(paths.locks_dir, retry_interval_ms=10))


@pytest.fixture
def synced() -> list[UserConfig]:
    return []


@pytest.fixture
def rollback(paths: BrainPaths, store: ConfigStore, synced: list[UserConfig]) -> RollbackManager:
    return RollbackManager(store, rollback_dir=paths.rollback_dir, sync=synced.append)


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture
def watcher(store, rollback, synced, recorder):
    w = ConfigWatcher(
        recorder,
        store=store,
        rollback_manager=rollback,
        sync=synced.append,
        debounce_ms=20,
        stability_threshold_ms=0,
        observer_factory=FakeObserver,
    )
    yield w
    w.stop()


@pytest.fixture
def baseline(store: ConfigStore, sample_config: UserConfig) -> UserConfig:
    store.save(sample_config)
    return sample_config


class TestLifecycle:
    def test_start_loads_baseline_and_schedules(
        self, watcher: ConfigWatcher, baseline: UserConfig, rollback: RollbackManager
    ) -> None:
        watcher.start()

        assert watcher.state is WatcherState.RUNNING
        assert watcher.baseline == baseline
        assert rollback.matches_last_known_good(baseline)
        observer = watcher._observer
        assert observer.started
        assert observer.scheduled[0][1] == str(watcher.config_path.parent)

    def test_stop(self, watcher: ConfigWatcher, baseline: UserConfig) -> None:
        watcher.start()
        observer = watcher._observer
        watcher.stop()
        assert watcher.state is WatcherState.STOPPED
        assert observer.stopped

    def test_start_failure_sets_error_state(self, store, rollback, recorder) -> None:
        def broken_observer():
            raise OSError("inotify limit reached")

        w = ConfigWatcher(
            recorder, store=store, rollback_manager=rollback, observer_factory=broken_observer
        )
        with pytest.raises(OSError):
            w.start()
        assert w.state is WatcherState.ERROR
        assert recorder.types == [ConfigEventType.ERROR]

    def test_debounce_from_config(self, store, rollback, sample_config: UserConfig) -> None:
        store.save(sample_config.model_copy(update={"watcher": WatcherConfig(debounce_ms=250)}))
        w = ConfigWatcher(store=store, rollback_manager=rollback, observer_factory=FakeObserver)
        assert w.debounce_ms == 2000
        w.start()
        try:
            assert w.debounce_ms == 250
        finally:
            w.stop()


class TestFileHandler:
    """Only events touching config.json are forwarded."""

    @pytest.fixture
    def notified(self, watcher: ConfigWatcher, monkeypatch) -> list[bool]:
        calls: list[bool] = []
        monkeypatch.setattr(watcher, "notify_change", lambda: calls.append(True))
        return calls

    def test_modified_config(self, watcher: ConfigWatcher, notified: list[bool]) -> None:
        handler = _ConfigFileHandler(watcher)
        handler.dispatch(FileModifiedEvent(str(watcher.config_path)))
        assert notified == [True]

    def test_atomic_rename_onto_config(self, watcher: ConfigWatcher, notified: list[bool]) -> None:
        handler = _ConfigFileHandler(watcher)
        temp = watcher.config_path.with_name("config.json.tmp")
        handler.dispatch(FileMovedEvent(str(temp), str(watcher.config_path)))
        assert notified == [True]

    def test_other_files_ignored(self, watcher: ConfigWatcher, notified: list[bool]) -> None:
        handler = _ConfigFileHandler(watcher)
        handler.dispatch(FileModifiedEvent(str(watcher.config_path.with_name("other.json"))))
        handler.dispatch(FileOpenedEvent(str(watcher.config_path)))
        assert notified == []


class TestProcessChange:
    """The change pipeline applied to hand edits."""

    def test_valid_edit_applied(
        self,
        watcher: ConfigWatcher,
        store: ConfigStore,
        rollback: RollbackManager,
        baseline: UserConfig,
        recorder: Recorder,
        synced: list[UserConfig],
    ) -> None:
        watcher.start()
        edited = baseline.model_copy(update={"sync": SyncConfig(delay_ms=900)})
        store.save(edited)

        diff = watcher.process_change()

        assert diff.global_fields_changed == ["sync.delay_ms"]
        assert watcher.baseline == edited
        assert synced == [edited]
        assert rollback.matches_last_known_good(edited)
        assert rollback.get_last_snapshot().config == baseline
        assert recorder.types == [ConfigEventType.CHANGE, ConfigEventType.RECONFIGURE]
        assert recorder.events[-1].diff is diff

    def test_equivalent_content_ignored(
        self, watcher: ConfigWatcher, baseline: UserConfig, recorder: Recorder, synced
    ) -> None:
        watcher.start()
        assert watcher.process_change() is None
        assert recorder.types == [ConfigEventType.CHANGE]
        assert synced == []

    def test_invalid_json_rolls_back(
        self,
        watcher: ConfigWatcher,
        store: ConfigStore,
        baseline: UserConfig,
        recorder: Recorder,
    ) -> None:
        watcher.start()
        store.config_path.write_text("{broken", encoding="utf-8")

        assert watcher.process_change() is None

        assert recorder.types == [
            ConfigEventType.CHANGE,
            ConfigEventType.VALIDATION_ERROR,
            ConfigEventType.ROLLBACK,
        ]
        assert recorder.events[-1].rollback_result.success
        assert store.load() == baseline
        assert watcher.baseline == baseline

    def test_unsafe_path_rolls_back(
        self, watcher: ConfigWatcher, store: ConfigStore, baseline: UserConfig, recorder: Recorder
    ) -> None:
        watcher.start()
        data = baseline.to_dict()
        data["projects"]["alpha"]["code_path"] = "/etc/alpha"
        store.config_path.write_text(json.dumps(data), encoding="utf-8")

        watcher.process_change()

        validation = recorder.events[1]
        assert validation.type is ConfigEventType.VALIDATION_ERROR
        assert validation.error.startswith("Unsafe path in config: projects.alpha.code_path")
        assert store.load() == baseline

    def test_auto_rollback_disabled(
        self, watcher: ConfigWatcher, store: ConfigStore, baseline: UserConfig, recorder: Recorder
    ) -> None:
        watcher.auto_rollback = False
        watcher.start()
        store.config_path.write_text("[]", encoding="utf-8")

        watcher.process_change()
        assert recorder.types == [ConfigEventType.CHANGE, ConfigEventType.VALIDATION_ERROR]
        assert store.config_path.read_text() == "[]"

    def test_sync_failure_still_applies(
        self, store, rollback, recorder, baseline: UserConfig
    ) -> None:
        def failing_sync(config: UserConfig) -> None:
            raise TranslationError("upstream down")

        w = ConfigWatcher(
            recorder,
            store=store,
            rollback_manager=rollback,
            sync=failing_sync,
            stability_threshold_ms=0,
            observer_factory=FakeObserver,
        )
        w.start()
        edited = baseline.model_copy(update={"logging": LoggingConfig(level="debug")})
        store.save(edited)

        w.process_change()
        w.stop()

        assert recorder.types == [
            ConfigEventType.CHANGE,
            ConfigEventType.ERROR,
            ConfigEventType.RECONFIGURE,
        ]
        assert w.baseline == edited

    def test_callback_errors_are_logged(
        self, store, rollback, baseline: UserConfig, caplog
    ) -> None:
        def bad_callback(event: ConfigChangeEvent) -> None:
            raise RuntimeError("callback bug")

        w = ConfigWatcher(
            bad_callback,
            store=store,
            rollback_manager=rollback,
            sync=lambda c: None,
            stability_threshold_ms=0,
            observer_factory=FakeObserver,
        )
        w.start()
        store.save(baseline.model_copy(update={"sync": SyncConfig(enabled=False)}))
        assert w.process_change() is not None
        w.stop()
        assert "callback failed" in caplog.text


class TestDebounce:
    """A burst of notifications produces one processing pass."""

    def test_burst_processed_once(
        self, watcher: ConfigWatcher, store: ConfigStore, baseline: UserConfig, recorder: Recorder
    ) -> None:
        watcher.start()
        store.save(baseline.model_copy(update={"sync": SyncConfig(delay_ms=1)}))

        for _ in range(5):
            watcher.notify_change()
        assert recorder.wait_for(ConfigEventType.RECONFIGURE)
        time.sleep(0.1)

        assert recorder.types.count(ConfigEventType.CHANGE) == 1

    def test_change_deferred_during_migration(
        self, watcher: ConfigWatcher, store: ConfigStore, baseline: UserConfig, recorder: Recorder
    ) -> None:
        watcher.start()
        watcher.begin_migration()
        store.save(baseline.model_copy(update={"sync": SyncConfig(delay_ms=2)}))
        watcher.notify_change()
        time.sleep(0.1)

        assert watcher.pending_change
        assert recorder.events == []

        watcher.end_migration()
        assert recorder.wait_for(ConfigEventType.RECONFIGURE)
        assert not watcher.pending_change

    def test_end_migration_without_pending_change(
        self, watcher: ConfigWatcher, baseline: UserConfig, recorder: Recorder
    ) -> None:
        watcher.start()
        watcher.begin_migration()
        watcher.end_migration()
        time.sleep(0.1)
        assert recorder.events == []


class TestStability:
    def test_waits_for_quiet_file(self, watcher: ConfigWatcher, baseline: UserConfig) -> None:
        watcher.stability_threshold_ms = 50
        watcher.poll_interval_ms = 10
        started = time.monotonic()
        watcher._wait_for_stable_write()
        assert time.monotonic() - started >= 0.05


class TestRealObserver:
    """End-to-end with watchdog's own observer."""

    def test_hand_edit_detected(
        self, store, rollback, recorder: Recorder, baseline: UserConfig, synced
    ) -> None:
        w = ConfigWatcher(
            recorder,
            store=store,
            rollback_manager=rollback,
            sync=synced.append,
            debounce_ms=50,
            stability_threshold_ms=0,
        )
        w.start()
        try:
            store.save(baseline.model_copy(update={"sync": SyncConfig(delay_ms=321)}))
            assert recorder.wait_for(ConfigEventType.RECONFIGURE, timeout=10)
            assert w.baseline.sync.delay_ms == 321
        finally:
            w.stop()


def test_get_config_watcher_singleton(paths: BrainPaths) -> None:
    recorder = Recorder()
    watcher = get_config_watcher()
    assert get_config_watcher(recorder) is watcher
    assert watcher.config_path == paths.config_file
    assert isinstance(watcher, ConfigWatcher)
    assert Path(watcher.config_path).name == "config.json"
