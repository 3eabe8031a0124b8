"""Tests for brain_config.core.rollback."""

import json
from pathlib import Path

import pytest

from brain_config.core.config import ConfigStore, UserConfig
from brain_config.core.config.models import LoggingConfig, SyncConfig
from brain_config.core.exceptions import ConfigStoreError, TranslationError
from brain_config.core.locking import LockManager
from brain_config.core.paths import BrainPaths
from brain_config.core.rollback import (
    INITIAL_BASELINE_REASON,
    RollbackManager,
    RollbackSnapshot,
    RollbackTarget,
    canonical_json,
    compute_config_checksum,
    compute_json_checksum,
    generate_snapshot_id,
    get_rollback_manager,
)


@pytest.fixture
def store(paths: BrainPaths) -> ConfigStore:
    return ConfigStore(paths, LockManager(paths.locks_dir, retry_interval_ms=10))


@pytest.fixture
def synced() -> list[UserConfig]:
    return []


@pytest.fixture
def manager(paths: BrainPaths, store: ConfigStore, synced: list[UserConfig]) -> RollbackManager:
    m = RollbackManager(store, rollback_dir=paths.rollback_dir, sync=synced.append)
    m.initialize()
    return m


def _variant(config: UserConfig, delay_ms: int) -> UserConfig:
    return config.model_copy(update={"sync": SyncConfig(delay_ms=delay_ms)})


class TestChecksums:
    def test_canonical_json_sorts_keys(self) -> None:
        assert canonical_json({"b": 1, "a": {"d": 2, "c": 3}}) == '{"a":{"c":3,"d":2},"b":1}'

    def test_checksum_ignores_construction_order(self, sample_config: UserConfig) -> None:
        reordered = UserConfig.model_validate(dict(reversed(list(sample_config.to_dict().items()))))
        assert compute_config_checksum(reordered) == compute_config_checksum(sample_config)

    def test_checksum_differs_for_different_configs(self, sample_config: UserConfig) -> None:
        assert compute_config_checksum(sample_config) != compute_config_checksum(
            _variant(sample_config, 1)
        )

    def test_snapshot_id_format(self) -> None:
        snapshot_id = generate_snapshot_id()
        prefix, stamp, suffix = snapshot_id.split("-")
        assert prefix == "snap"
        assert stamp.isalnum()
        assert len(suffix) == 8


class TestSnapshots:
    """History is append-only with a fixed cap."""

    def test_create_snapshot_persists(
        self, manager: RollbackManager, sample_config: UserConfig
    ) -> None:
        snapshot = manager.create_snapshot(sample_config, "Before test")

        data = json.loads((manager.rollback_dir / f"{snapshot.id}.json").read_text())
        assert data["reason"] == "Before test"
        assert "createdAt" in data
        assert data["checksum"] == compute_config_checksum(sample_config)

        index = json.loads((manager.rollback_dir / "history.json").read_text())
        assert index["snapshotIds"] == [snapshot.id]

    def test_eviction_keeps_most_recent(
        self, paths: BrainPaths, store: ConfigStore, sample_config: UserConfig
    ) -> None:
        manager = RollbackManager(store, rollback_dir=paths.rollback_dir, max_snapshots=3)
        manager.initialize()
        snapshots = [manager.create_snapshot(_variant(sample_config, i), f"s{i}") for i in range(4)]

        history = manager.get_history()
        assert [s.id for s in history] == [s.id for s in snapshots[1:]]
        assert not (manager.rollback_dir / f"{snapshots[0].id}.json").exists()

    def test_history_reloaded_after_restart(
        self, paths: BrainPaths, store: ConfigStore, manager: RollbackManager, sample_config
    ) -> None:
        first = manager.create_snapshot(sample_config, "one")
        second = manager.create_snapshot(_variant(sample_config, 1), "two")

        reloaded = RollbackManager(store, rollback_dir=paths.rollback_dir)
        reloaded.initialize()
        assert [s.id for s in reloaded.get_history()] == [first.id, second.id]
        assert reloaded.get_snapshot(first.id).config == sample_config
        assert reloaded.get_last_snapshot().id == second.id

    def test_corrupted_snapshot_discarded_on_load(
        self, paths: BrainPaths, store: ConfigStore, manager: RollbackManager, sample_config
    ) -> None:
        snapshot = manager.create_snapshot(sample_config, "one")
        path = manager.rollback_dir / f"{snapshot.id}.json"
        data = json.loads(path.read_text())
        data["config"]["sync"]["delay_ms"] = 12345
        path.write_text(json.dumps(data))

        reloaded = RollbackManager(store, rollback_dir=paths.rollback_dir)
        reloaded.initialize()
        assert reloaded.get_history() == []

    @pytest.mark.parametrize(
        "tamper",
        [
            lambda config: config["sync"].update(delay_ms="500"),
            lambda config: config.update(unexpected="value"),
            lambda config: config["logging"].update(level="info", extra=True),
        ],
    )
    def test_coercible_edit_discarded_on_load(
        self, paths: BrainPaths, store: ConfigStore, manager: RollbackManager, sample_config, tamper
    ) -> None:
        snapshot = manager.create_snapshot(sample_config, "one")
        path = manager.rollback_dir / f"{snapshot.id}.json"
        data = json.loads(path.read_text())
        tamper(data["config"])
        path.write_text(json.dumps(data))

        reloaded = RollbackManager(store, rollback_dir=paths.rollback_dir)
        reloaded.initialize()
        assert reloaded.get_history() == []

    def test_snapshot_file_embeds_serialized_config(
        self, paths: BrainPaths, store: ConfigStore, manager: RollbackManager
    ) -> None:
        config = UserConfig(schema_url=None)
        snapshot = manager.create_snapshot(config, "no schema url")
        data = json.loads((manager.rollback_dir / f"{snapshot.id}.json").read_text())

        assert data["config"] == config.to_dict()
        assert compute_json_checksum(data["config"]) == data["checksum"]

        reloaded = RollbackManager(store, rollback_dir=paths.rollback_dir)
        reloaded.initialize()
        assert reloaded.get_snapshot(snapshot.id).config == config

    def test_clear_history_keeps_anchor(
        self, manager: RollbackManager, sample_config: UserConfig
    ) -> None:
        manager.mark_as_good(sample_config, "good")
        manager.create_snapshot(sample_config, "a")
        manager.create_snapshot(sample_config, "b")

        assert manager.clear_history() == 2
        assert manager.get_history() == []
        assert manager.get_last_known_good() is not None

    def test_verify_snapshot(self, manager: RollbackManager, sample_config: UserConfig) -> None:
        snapshot = manager.create_snapshot(sample_config, "x")
        assert RollbackManager.verify_snapshot(snapshot)

        tampered = RollbackSnapshot(
            id=snapshot.id,
            created_at=snapshot.created_at,
            reason=snapshot.reason,
            checksum=snapshot.checksum,
            config=_variant(sample_config, 1),
        )
        assert not RollbackManager.verify_snapshot(tampered)


class TestLastKnownGood:
    def test_initialize_seeds_anchor_from_existing_config(
        self, paths: BrainPaths, store: ConfigStore, sample_config: UserConfig
    ) -> None:
        store.save(sample_config)
        manager = RollbackManager(store, rollback_dir=paths.rollback_dir)
        manager.initialize()

        anchor = manager.get_last_known_good()
        assert anchor is not None
        assert anchor.reason == INITIAL_BASELINE_REASON
        assert manager.matches_last_known_good(sample_config)

    def test_no_anchor_without_config(self, manager: RollbackManager) -> None:
        assert manager.is_initialized()
        assert manager.get_last_known_good() is None

    def test_mark_as_good_rejects_invalid(self, manager: RollbackManager) -> None:
        # Constructed directly, so the CUSTOM invariant was never checked
        bad = UserConfig.model_validate(
            {"projects": {"a": {"code_path": "/x", "memories_mode": "CUSTOM"}}}
        )
        with pytest.raises(ConfigStoreError):
            manager.mark_as_good(bad, "bad")
        assert manager.get_last_known_good() is None


class TestRollback:
    """rollback() reports failures in its result instead of raising."""

    def test_rollback_to_last_known_good(
        self,
        manager: RollbackManager,
        store: ConfigStore,
        sample_config: UserConfig,
        synced: list[UserConfig],
    ) -> None:
        manager.mark_as_good(sample_config, "good")
        store.save(_variant(sample_config, 9))

        result = manager.rollback("lastKnownGood")

        assert result.success
        assert result.restored_config == sample_config
        assert store.load() == sample_config
        assert synced == [sample_config]

    def test_rollback_previous(
        self, manager: RollbackManager, store: ConfigStore, sample_config: UserConfig
    ) -> None:
        manager.create_snapshot(sample_config, "older")
        newest = _variant(sample_config, 42)
        manager.create_snapshot(newest, "newer")

        result = manager.rollback(RollbackTarget.PREVIOUS)
        assert result.success
        assert store.load() == newest

    def test_revert(self, manager: RollbackManager, store: ConfigStore, sample_config) -> None:
        manager.mark_as_good(sample_config, "good")
        assert manager.revert().success
        assert store.load() == sample_config

    @pytest.mark.parametrize(
        ("target", "error"),
        [
            ("sideways", "Invalid rollback target: sideways"),
            ("lastKnownGood", "No lastKnownGood snapshot available"),
            ("previous", "No snapshots in rollback history"),
        ],
    )
    def test_rollback_errors(self, manager: RollbackManager, target: str, error: str) -> None:
        result = manager.rollback(target)
        assert not result.success
        assert result.error == error

    def test_corrupted_anchor_rejected(
        self, manager: RollbackManager, store: ConfigStore, sample_config: UserConfig
    ) -> None:
        anchor = manager.mark_as_good(sample_config, "good")
        manager._last_known_good = anchor.model_copy(update={"checksum": "0" * 64})

        result = manager.rollback("lastKnownGood")
        assert result.error == "Snapshot checksum mismatch - data may be corrupted"
        assert not store.exists()

    def test_sync_failure_reported(
        self, paths: BrainPaths, store: ConfigStore, sample_config: UserConfig
    ) -> None:
        def failing_sync(config: UserConfig) -> None:
            raise TranslationError("upstream down")

        manager = RollbackManager(store, rollback_dir=paths.rollback_dir, sync=failing_sync)
        manager.initialize()
        manager.mark_as_good(sample_config, "good")

        result = manager.rollback("lastKnownGood")
        assert not result.success
        assert result.error == "Rollback failed: upstream down"

    def test_restores_logging_change(
        self, manager: RollbackManager, store: ConfigStore, sample_config: UserConfig
    ) -> None:
        manager.mark_as_good(sample_config, "good")
        store.save(sample_config.model_copy(update={"logging": LoggingConfig(level="error")}))
        manager.revert()
        assert store.load().logging.level == "info"


class TestSingleton:
    def test_get_rollback_manager_uses_environment_paths(self, paths: BrainPaths) -> None:
        manager = get_rollback_manager()
        assert manager is get_rollback_manager()
        assert manager.rollback_dir == paths.rollback_dir
        assert not manager.is_initialized()

    def test_invalid_cap(self) -> None:
        with pytest.raises(ValueError):
            RollbackManager(max_snapshots=0)


def test_anchor_file_layout(manager: RollbackManager, sample_config: UserConfig) -> None:
    manager.mark_as_good(sample_config, "good")
    data = json.loads((Path(manager.rollback_dir) / "last-known-good.json").read_text())
    assert set(data) == {"id", "createdAt", "reason", "checksum", "config"}
