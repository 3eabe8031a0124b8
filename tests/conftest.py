"""Pytest configuration and fixtures for brain-config tests."""

import os
from pathlib import Path

import pytest

from brain_config.core import path_validator
from brain_config.core.config import _reset_config_store
from brain_config.core.config.models import ProjectConfig, UserConfig
from brain_config.core.locking import _reset_lock_manager
from brain_config.core.manifest import _reset_manifest_manager
from brain_config.core.paths import BrainPaths, _reset_paths, init_paths
from brain_config.core.rollback import _reset_rollback_manager
from brain_config.core.upstream import _reset_restart_hooks
from brain_config.core.watcher import _reset_config_watcher


def _reset_singletons() -> None:
    _reset_config_watcher()
    _reset_rollback_manager()
    _reset_manifest_manager()
    _reset_config_store()
    _reset_lock_manager()
    _reset_restart_hooks()
    _reset_paths()


@pytest.fixture(autouse=True)
def isolated_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    """Point HOME and XDG_CONFIG_HOME into tmp_path and reset every singleton.

    Tests never touch the real ~/.config/brain or ~/.basic-memory.
    """
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(home / ".config"))

    _reset_singletons()
    yield home
    _reset_singletons()


@pytest.fixture(autouse=True)
def allow_tmp_path_roots(request: pytest.FixtureRequest, tmp_path: Path, monkeypatch) -> None:
    """Drop blocked roots that contain tmp_path (e.g. /tmp) so test paths validate.

    Tests marked with @pytest.mark.strict_system_paths keep the full list.
    """
    if request.node.get_closest_marker("strict_system_paths"):
        return

    candidates = {str(tmp_path), str(tmp_path.resolve())}

    def contains_tmp(root: str) -> bool:
        return any(c == root or c.startswith(root.rstrip("/") + "/") for c in candidates)

    relaxed = tuple(r for r in path_validator.UNIX_BLOCKED_ROOTS if not contains_tmp(r))
    monkeypatch.setattr(path_validator, "UNIX_BLOCKED_ROOTS", relaxed)


@pytest.fixture
def paths(isolated_home: Path) -> BrainPaths:
    """BrainPaths singleton rooted at the isolated home."""
    return init_paths(home=isolated_home)


@pytest.fixture
def sample_config(tmp_path: Path) -> UserConfig:
    """Valid config with one DEFAULT-mode and one CODE-mode project."""
    code_root = tmp_path / "code"
    (code_root / "alpha").mkdir(parents=True)
    (code_root / "beta").mkdir(parents=True)
    return UserConfig(
        projects={
            "alpha": ProjectConfig(code_path=str(code_root / "alpha")),
            "beta": ProjectConfig(code_path=str(code_root / "beta"), memories_mode="CODE"),
        }
    )


@pytest.fixture
def other_pid() -> int:
    """PID of a live process that is not this one (the pytest parent)."""
    return os.getppid()
