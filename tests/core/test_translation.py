"""Tests for brain_config.core.config.translation."""

import json
from pathlib import Path

import pytest

from brain_config.core import path_validator
from brain_config.core.config import (
    UpstreamConfig,
    UserConfig,
    load_upstream_config,
    parse_user_config,
    preview_translation,
    resolve_memories_path,
    sync_to_upstream,
    translate,
    try_sync,
    validate_translation,
)
from brain_config.core.config.models import DefaultsConfig, ProjectConfig
from brain_config.core.exceptions import ErrorKind, TranslationError
from brain_config.core.locking import LockManager
from brain_config.core.paths import BrainPaths
from brain_config.core.upstream import register_restart_hook


def _alpha_config(**project: str) -> UserConfig:
    return parse_user_config(
        {
            "version": "2.0.0",
            "defaults": {"memories_location": "~/memories", "memories_mode": "DEFAULT"},
            "projects": {"alpha": {"code_path": "/dev/alpha", **project}},
            "sync": {"enabled": True, "delay_ms": 500},
            "logging": {"level": "info"},
            "watcher": {"enabled": True, "debounce_ms": 2000},
        }
    )


@pytest.fixture
def allow_dev(monkeypatch) -> None:
    """Let /dev/alpha pass the validator so CODE mode can be exercised literally."""
    roots = tuple(r for r in path_validator.UNIX_BLOCKED_ROOTS if r != "/dev")
    monkeypatch.setattr(path_validator, "UNIX_BLOCKED_ROOTS", roots)


class TestModeResolution:
    """Each mode maps to its own memory-store location."""

    def test_default_mode_projection(self, isolated_home: Path) -> None:
        upstream = translate(_alpha_config())

        assert upstream.projects == {"alpha": str(isolated_home / "memories" / "alpha")}
        assert upstream.sync_changes is True
        assert upstream.sync_delay == 500
        assert upstream.log_level == "info"

    def test_code_mode_projection(self, allow_dev: None) -> None:
        upstream = translate(_alpha_config(memories_mode="CODE"))
        assert upstream.projects == {"alpha": "/dev/alpha/docs"}

    def test_custom_mode_rejects_traversal(self, tmp_path: Path) -> None:
        entry = ProjectConfig(
            code_path="/x", memories_path=str(tmp_path / "m/../m2"), memories_mode="CUSTOM"
        )
        resolution = resolve_memories_path("alpha", entry, DefaultsConfig())
        assert resolution.error == "Path traversal not allowed"

    def test_custom_mode_normalizes(self, tmp_path: Path) -> None:
        entry = ProjectConfig(
            code_path="/x", memories_path=str(tmp_path) + "//m/./", memories_mode="CUSTOM"
        )
        resolution = resolve_memories_path("alpha", entry, DefaultsConfig())
        assert resolution.ok
        assert resolution.path == str(tmp_path / "m")

    def test_default_mode_inherited_from_defaults(self, tmp_path: Path) -> None:
        defaults = DefaultsConfig(memories_location=str(tmp_path), memories_mode="CODE")
        entry = ProjectConfig(code_path=str(tmp_path / "src"))
        resolution = resolve_memories_path("p", entry, defaults)
        assert resolution.path == str(tmp_path / "src" / "docs")

    def test_unsafe_default_location_drops_project(self) -> None:
        config = UserConfig(
            defaults=DefaultsConfig(memories_location="/etc/memories"),
            projects={"alpha": ProjectConfig(code_path="/x")},
        )
        assert translate(config).projects == {}


class TestCustomMissingPath:
    """CUSTOM without memories_path is reported and dropped, never raised."""

    @pytest.fixture
    def config(self) -> UserConfig:
        # Bypasses the schema invariant to model a config that never saved
        return UserConfig(
            projects={"alpha": ProjectConfig(code_path="/dev/alpha", memories_mode="CUSTOM")}
        )

    def test_validate_translation_names_project(self, config: UserConfig) -> None:
        errors = validate_translation(config)
        assert len(errors) == 1
        assert "alpha" in errors[0]
        assert "memories_path" in errors[0]

    def test_translate_drops_project(self, config: UserConfig) -> None:
        assert "alpha" not in translate(config).projects

    def test_preview_reports_resolution(self, config: UserConfig) -> None:
        preview = preview_translation(config)
        assert [r.project for r in preview.errors] == ["alpha"]
        assert preview.config.projects == {}


class TestFieldFidelity:
    """Keys the core does not own survive translation."""

    def test_unknown_keys_preserved(self, isolated_home: Path) -> None:
        existing = {
            "projects": {"stale": "/old"},
            "default_project": "alpha",
            "cloud": {"enabled": False, "nested": [1, 2]},
        }
        upstream = translate(_alpha_config(), existing)
        data = upstream.to_dict()

        assert data["default_project"] == "alpha"
        assert data["cloud"] == {"enabled": False, "nested": [1, 2]}
        assert "stale" not in data["projects"]
        assert existing["projects"] == {"stale": "/old"}

    def test_translate_of_own_output_is_stable(self, isolated_home: Path) -> None:
        config = _alpha_config()
        first = translate(config, {"extra": True})
        second = translate(config, first)
        assert second.to_dict() == first.to_dict()

    def test_unset_projected_fields_omitted(self) -> None:
        assert UpstreamConfig().to_dict() == {"projects": {}}


class TestSync:
    """sync_to_upstream writes the file then signals a restart."""

    @pytest.fixture
    def lock_manager(self, paths: BrainPaths) -> LockManager:
        return LockManager(paths.locks_dir, retry_interval_ms=10)

    def test_writes_upstream_file(
        self, paths: BrainPaths, lock_manager: LockManager, sample_config: UserConfig
    ) -> None:
        paths.upstream_dir.mkdir()
        paths.upstream_config_file.write_text(json.dumps({"keep": "me"}), encoding="utf-8")

        written = sync_to_upstream(sample_config, paths=paths, lock_manager=lock_manager)

        data = json.loads(paths.upstream_config_file.read_text())
        assert data["keep"] == "me"
        assert set(data["projects"]) == {"alpha", "beta"}
        assert data["projects"]["beta"].endswith("/beta/docs")
        assert written.projects == data["projects"]
        assert lock_manager.held_locks() == []

    def test_unknown_keys_survive_mistyped_known_keys(
        self, paths: BrainPaths, lock_manager: LockManager
    ) -> None:
        paths.upstream_dir.mkdir()
        paths.upstream_config_file.write_text(
            json.dumps(
                {
                    "projects": {"main": {"path": "/home/x/main"}},
                    "sync_changes": "sometimes",
                    "default_project": "main",
                    "env": "prod",
                }
            ),
            encoding="utf-8",
        )

        sync_to_upstream(UserConfig(), paths=paths, lock_manager=lock_manager)

        data = json.loads(paths.upstream_config_file.read_text())
        assert data == {
            "projects": {},
            "sync_changes": True,
            "sync_delay": 500,
            "log_level": "info",
            "default_project": "main",
            "env": "prod",
        }

    def test_restart_hook_called_with_written_config(
        self, paths: BrainPaths, lock_manager: LockManager, sample_config: UserConfig
    ) -> None:
        seen: list[UpstreamConfig] = []
        register_restart_hook(seen.append)

        sync_to_upstream(sample_config, paths=paths, lock_manager=lock_manager)
        assert len(seen) == 1
        assert set(seen[0].projects) == {"alpha", "beta"}

    def test_hook_failure_raises_translation_error(
        self, paths: BrainPaths, lock_manager: LockManager, sample_config: UserConfig
    ) -> None:
        def broken(config: UpstreamConfig) -> None:
            raise RuntimeError("cannot restart")

        register_restart_hook(broken)
        with pytest.raises(TranslationError, match="cannot restart"):
            sync_to_upstream(sample_config, paths=paths, lock_manager=lock_manager)
        # The file is already written when hooks run
        assert paths.upstream_config_file.exists()

    def test_lock_timeout_is_lock_error(
        self,
        paths: BrainPaths,
        lock_manager: LockManager,
        sample_config: UserConfig,
        other_pid: int,
    ) -> None:
        lock_path = lock_manager.resource_lock_path("upstream-config")
        lock_path.parent.mkdir(parents=True)
        lock_path.write_text(
            json.dumps({"pid": other_pid, "timestamp": 0, "hostname": "h", "lockType": "resource"})
        )
        with pytest.raises(TranslationError) as exc_info:
            sync_to_upstream(sample_config, paths=paths, lock_manager=lock_manager, timeout_ms=50)
        assert exc_info.value.kind is ErrorKind.LOCK_ERROR

    def test_try_sync_reports_failure(self, sample_config: UserConfig, paths: BrainPaths) -> None:
        def broken(config: UpstreamConfig) -> None:
            raise RuntimeError("x")

        register_restart_hook(broken)
        assert try_sync(sample_config, paths=paths) is False

    def test_try_sync_success(self, sample_config: UserConfig, paths: BrainPaths) -> None:
        assert try_sync(sample_config, paths=paths) is True


class TestLoadUpstream:
    """The upstream file is read raw; only unparseable documents are dropped."""

    def test_missing_file(self, paths: BrainPaths) -> None:
        assert load_upstream_config(paths) == {}

    @pytest.mark.parametrize("content", ["{oops", "[1, 2]", "\"text\""])
    def test_unusable_document_treated_as_empty(self, paths: BrainPaths, content: str) -> None:
        paths.upstream_dir.mkdir()
        paths.upstream_config_file.write_text(content, encoding="utf-8")
        assert load_upstream_config(paths) == {}

    def test_extras_loaded(self, paths: BrainPaths) -> None:
        paths.upstream_dir.mkdir()
        paths.upstream_config_file.write_text(
            json.dumps({"projects": {"a": "/a"}, "env": "dev"}), encoding="utf-8"
        )
        assert load_upstream_config(paths) == {"projects": {"a": "/a"}, "env": "dev"}

    def test_mistyped_known_keys_kept_raw(self, paths: BrainPaths) -> None:
        raw = {
            "projects": {"main": {"path": "/home/x/main"}},
            "sync_delay": "soon",
            "env": "prod",
        }
        paths.upstream_dir.mkdir()
        paths.upstream_config_file.write_text(json.dumps(raw), encoding="utf-8")
        assert load_upstream_config(paths) == raw
