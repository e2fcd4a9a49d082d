"""Tests for the conversation → workspace mapping."""

import os

import pytest
import yaml

from agentrelay.persistence.workspace_map import WorkspaceMap
from agentrelay.utils.error_handler import PathEscape
from agentrelay.utils.path_guard import PathGuard


@pytest.fixture
def root(tmp_path):
    root = tmp_path / "root"
    (root / "project-a").mkdir(parents=True)
    (root / "shared").mkdir()
    return root


def write_mapping(path, data, mtime=None):
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    if mtime is not None:
        os.utime(path, (mtime, mtime))


def test_without_mapping_file_uses_root(root):
    workspaces = WorkspaceMap(PathGuard(root))
    assert workspaces.resolve("anything") == root.resolve()


def test_mapping_and_default(root, tmp_path):
    mapping = tmp_path / "workspaces.yaml"
    write_mapping(mapping, {"default": "shared", "conversations": {"c1": "project-a"}})
    workspaces = WorkspaceMap(PathGuard(root), mapping)

    assert workspaces.resolve("c1") == (root / "project-a").resolve()
    assert workspaces.resolve("c2") == (root / "shared").resolve()


def test_mapping_reloads_when_file_changes(root, tmp_path):
    mapping = tmp_path / "workspaces.yaml"
    write_mapping(mapping, {"conversations": {"c1": "project-a"}}, mtime=1_000_000)
    workspaces = WorkspaceMap(PathGuard(root), mapping)
    assert workspaces.resolve("c1") == (root / "project-a").resolve()

    write_mapping(mapping, {"conversations": {"c1": "shared"}}, mtime=2_000_000)
    assert workspaces.resolve("c1") == (root / "shared").resolve()


def test_escaping_mapping_is_rejected(root, tmp_path):
    mapping = tmp_path / "workspaces.yaml"
    write_mapping(mapping, {"conversations": {"evil": "../../etc"}})
    workspaces = WorkspaceMap(PathGuard(root), mapping)

    with pytest.raises(PathEscape):
        workspaces.resolve("evil")


def test_set_validates_and_persists(root, tmp_path):
    mapping = tmp_path / "conf" / "workspaces.yaml"
    workspaces = WorkspaceMap(PathGuard(root), mapping)

    assert workspaces.set("c9", "project-a") == (root / "project-a").resolve()
    assert yaml.safe_load(mapping.read_text(encoding="utf-8")) == {"conversations": {"c9": "project-a"}}
    assert workspaces.mappings() == {"c9": "project-a"}

    with pytest.raises(PathEscape):
        workspaces.set("c9", "../outside")
    assert workspaces.mappings() == {"c9": "project-a"}
