"""Conversation → workspace mapping.

The mapping lives in a small YAML file maintained outside the router::

    default: shared            # optional, relative to the workspace root
    conversations:
      "channel-123": project-a
      "channel-456": /srv/workspaces/project-b

It is re-read whenever its modification time changes, so edits take effect
on the next task without a restart. Every resolved path goes through the
PathGuard.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Optional

import yaml

from ..utils.path_guard import PathGuard

LOGGER = logging.getLogger(__name__)


class WorkspaceMap:
    """Resolve the working directory of a conversation."""

    def __init__(self, guard: PathGuard, mapping_file: Optional[Path | str] = None):
        """Initialize the mapping.

        Args:
            guard: PathGuard rooted at the workspace root
            mapping_file: YAML mapping file (optional; absent means every
                conversation uses the root)
        """
        self.guard = guard
        self.mapping_file = Path(mapping_file) if mapping_file else None
        self._mtime: Optional[float] = None
        self._default: Optional[str] = None
        self._conversations: Dict[str, str] = {}

    @property
    def root(self) -> Path:
        return self.guard.root

    def _reload_if_changed(self) -> None:
        if self.mapping_file is None:
            return
        try:
            mtime = self.mapping_file.stat().st_mtime
        except FileNotFoundError:
            if self._mtime is not None:
                LOGGER.warning(f"Workspace mapping file disappeared: {self.mapping_file}")
            self._mtime, self._default, self._conversations = None, None, {}
            return

        if mtime == self._mtime:
            return

        try:
            with open(self.mapping_file, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            LOGGER.error(f"Failed to load workspace mapping {self.mapping_file}: {e}, keeping previous mapping")
            return

        conversations = data.get("conversations") or {}
        self._conversations = {str(k): str(v) for k, v in conversations.items()}
        default = data.get("default")
        self._default = str(default) if default else None
        self._mtime = mtime
        LOGGER.info(f"Loaded workspace mapping: {len(self._conversations)} conversation(s)")

    def resolve(self, conversation_id: str) -> Path:
        """Validated workspace for ``conversation_id``.

        Raises:
            PathEscape: The mapped path lies outside the workspace root
        """
        self._reload_if_changed()
        target = self._conversations.get(conversation_id) or self._default
        if target is None:
            return self.guard.root
        return self.guard.resolve(target)

    def set(self, conversation_id: str, path: str) -> Path:
        """Map a conversation to a path (validated, then written back to the file)."""
        resolved = self.guard.resolve(path)
        self._reload_if_changed()
        self._conversations[conversation_id] = str(path)
        if self.mapping_file is not None:
            self.mapping_file.parent.mkdir(parents=True, exist_ok=True)
            data = {"conversations": dict(self._conversations)}
            if self._default:
                data["default"] = self._default
            with open(self.mapping_file, "w", encoding="utf-8") as f:
                yaml.safe_dump(data, f, allow_unicode=True, sort_keys=True)
            self._mtime = self.mapping_file.stat().st_mtime
        return resolved

    def mappings(self) -> Dict[str, str]:
        self._reload_if_changed()
        return dict(self._conversations)
