"""Tests for workspace path containment."""

import os

import pytest

from agentrelay.utils.error_handler import PathEscape
from agentrelay.utils.path_guard import PathGuard, sanitize_path


@pytest.fixture
def workspace(tmp_path):
    root = tmp_path / "workspace"
    (root / "project" / "src").mkdir(parents=True)
    return root


def test_relative_path_resolves_inside_root(workspace):
    guard = PathGuard(workspace)
    assert guard.resolve("project/src") == (workspace / "project" / "src").resolve()
    assert guard.resolve(".") == workspace.resolve()


def test_absolute_path_inside_root_is_allowed(workspace):
    guard = PathGuard(workspace)
    inside = workspace / "project"
    assert guard.resolve(str(inside)) == inside.resolve()


@pytest.mark.parametrize("path", ["../outside", "project/../../outside", "/etc/passwd"])
def test_escape_is_rejected(workspace, path):
    guard = PathGuard(workspace)
    with pytest.raises(PathEscape) as exc_info:
        guard.resolve(path)
    assert exc_info.value.kind == "path-escape"
    assert not guard.contains(path)


def test_sibling_with_common_prefix_is_rejected(tmp_path, workspace):
    (tmp_path / "workspace-evil").mkdir()
    guard = PathGuard(workspace)
    with pytest.raises(PathEscape):
        guard.resolve(str(tmp_path / "workspace-evil"))


def test_symlink_pointing_outside_is_rejected(tmp_path, workspace):
    target = tmp_path / "secrets"
    target.mkdir()
    os.symlink(target, workspace / "project" / "link")

    guard = PathGuard(workspace)
    with pytest.raises(PathEscape):
        guard.resolve("project/link")


def test_sanitize_path_strips_control_characters():
    assert sanitize_path("  pro\x00ject/\x1bsrc \n") == "project/src"


def test_validate_many_does_not_raise(workspace):
    guard = PathGuard(workspace)
    checks = guard.validate_many(["project", "../nope"])

    assert checks[0].valid and checks[0].resolved == (workspace / "project").resolve()
    assert not checks[1].valid
    assert "outside workspace" in checks[1].error
