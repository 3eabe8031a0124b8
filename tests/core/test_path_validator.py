"""Tests for brain_config.core.path_validator."""

import os
from pathlib import Path

import pytest

from brain_config.core import path_validator
from brain_config.core.exceptions import ErrorKind, PathValidationError
from brain_config.core.path_validator import (
    expand_tilde,
    explain_path_validation,
    is_path_safe,
    is_path_within,
    normalize_path,
    validate_path,
    validate_path_or_raise,
)


class TestRejectionRules:
    """Rules apply in a fixed order with fixed messages."""

    @pytest.mark.parametrize("raw", ["", "   ", "\t"])
    def test_empty_path(self, raw: str) -> None:
        assert validate_path(raw).reason == "Path cannot be empty"

    def test_null_byte(self) -> None:
        result = validate_path("/home/u/a\0b")
        assert not result.valid
        assert result.reason == "Invalid path characters: null byte detected"

    @pytest.mark.parametrize("raw", ["/home/u/%2e%2e/x", "/home/u/%2E%2e/x"])
    def test_encoded_traversal(self, raw: str) -> None:
        assert validate_path(raw).reason == "Encoded path traversal not allowed"

    @pytest.mark.parametrize("raw", ["../x", "a/../b", "a\\..\\b", "~/notes/.."])
    def test_traversal_segment(self, raw: str) -> None:
        assert validate_path(raw).reason == "Path traversal not allowed"

    def test_dotdot_inside_name_is_allowed(self, tmp_path: Path) -> None:
        result = validate_path(str(tmp_path / "a..b"))
        assert result.valid

    def test_null_byte_checked_before_traversal(self) -> None:
        assert validate_path("../\0").reason == "Invalid path characters: null byte detected"

    @pytest.mark.parametrize(
        ("raw", "root"),
        [("/etc", "/etc"), ("/etc/passwd", "/etc"), ("/USR/local", "/usr"), ("/proc/1", "/proc")],
    )
    def test_system_roots(self, raw: str, root: str) -> None:
        assert validate_path(raw).reason == f"System path not allowed: {root}"

    def test_prefix_without_separator_not_blocked(self, tmp_path: Path, monkeypatch) -> None:
        """/etcetera is not below /etc."""
        monkeypatch.setattr(path_validator, "UNIX_BLOCKED_ROOTS", ("/etc",))
        assert validate_path("/etcetera/x").valid

    @pytest.mark.parametrize(
        "raw", ["C:\\Windows\\System32", "c:\\windows", "C:/Program Files/App"]
    )
    def test_windows_roots_checked_for_drive_paths(self, raw: str) -> None:
        result = validate_path(raw)
        assert not result.valid
        assert result.reason.startswith("System path not allowed: C:\\")

    def test_other_drive_paths_allowed(self) -> None:
        assert validate_path("D:\\memories").valid

    @pytest.mark.strict_system_paths
    def test_tmp_is_blocked_by_default(self) -> None:
        assert validate_path("/tmp/x").reason == "System path not allowed: /tmp"


class TestNormalization:
    """Accepted paths are normalized without touching the filesystem."""

    def test_tilde_expands_to_home(self, isolated_home: Path) -> None:
        assert expand_tilde("~") == str(isolated_home)
        assert expand_tilde("~/memories") == str(isolated_home / "memories")

    def test_tilde_user_form_untouched(self) -> None:
        assert expand_tilde("~other/x") == "~other/x"

    def test_valid_path_is_absolute_and_normalized(self, isolated_home: Path) -> None:
        result = validate_path("~/a/./b//c")
        assert result.valid
        assert result.normalized == str(isolated_home / "a" / "b" / "c")

    def test_relative_path_made_absolute(self, tmp_path: Path, monkeypatch) -> None:
        monkeypatch.chdir(tmp_path)
        assert normalize_path("rel") == os.path.join(str(tmp_path), "rel")


class TestHelpers:
    """Tests for the convenience wrappers."""

    def test_is_path_safe(self, tmp_path: Path) -> None:
        assert is_path_safe(str(tmp_path))
        assert not is_path_safe("")

    def test_validate_or_raise_returns_normalized(self, isolated_home: Path) -> None:
        assert validate_path_or_raise("~/x") == str(isolated_home / "x")

    def test_validate_or_raise_prefixes_field(self) -> None:
        with pytest.raises(PathValidationError) as exc_info:
            validate_path_or_raise("../x", "projects.alpha.code_path")
        assert exc_info.value.message == "projects.alpha.code_path: Path traversal not allowed"
        assert exc_info.value.kind is ErrorKind.PATH_UNSAFE

    def test_explain(self, tmp_path: Path) -> None:
        assert explain_path_validation(str(tmp_path)).startswith("Path is valid:")
        assert "Path traversal not allowed" in explain_path_validation("../x")


class TestIsPathWithin:
    """Containment uses a separator guard."""

    def test_equal_paths(self, tmp_path: Path) -> None:
        assert is_path_within(str(tmp_path), str(tmp_path))

    def test_child(self, tmp_path: Path) -> None:
        assert is_path_within(str(tmp_path / "a" / "b"), str(tmp_path / "a"))

    def test_sibling_with_common_prefix(self, tmp_path: Path) -> None:
        assert not is_path_within(str(tmp_path / "bb"), str(tmp_path / "b"))

    def test_parent_is_not_within_child(self, tmp_path: Path) -> None:
        assert not is_path_within(str(tmp_path), str(tmp_path / "a"))
