"""Boundary files read at task start."""

from .workspace_map import WorkspaceMap

__all__ = ["WorkspaceMap"]
