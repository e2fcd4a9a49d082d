"""Workspace path containment.

Every path handed to a provider (working directory, file arguments) is
resolved against the workspace root and rejected when it lands outside it.
Symlinks are resolved before the containment check, so a link pointing out
of the workspace is rejected as well.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional

from .error_handler import PathEscape

LOGGER = logging.getLogger(__name__)

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


@dataclass(frozen=True, slots=True)
class PathCheck:
    """Non-raising result of a path validation."""

    path: str
    valid: bool
    resolved: Optional[Path] = None
    error: Optional[str] = None


def sanitize_path(path: str) -> str:
    """Strip null bytes and control characters, then surrounding whitespace."""
    return _CONTROL_CHARS.sub("", path).strip()


class PathGuard:
    """Resolve paths inside a fixed workspace root.

    Example:
        guard = PathGuard("/srv/workspaces")
        guard.resolve("project-a/src")      # -> /srv/workspaces/project-a/src
        guard.resolve("../../etc/passwd")   # raises PathEscape
    """

    def __init__(self, root: str | Path):
        self.root = Path(root).expanduser().resolve()

    def resolve(self, path: str | Path) -> Path:
        """Resolve ``path`` (relative to the root, or absolute) inside the root.

        Args:
            path: Candidate path

        Returns:
            Absolute, symlink-resolved path inside the root

        Raises:
            PathEscape: The resolved path is outside the root
        """
        raw = sanitize_path(str(path))
        candidate = Path(raw).expanduser()
        if not candidate.is_absolute():
            candidate = self.root / candidate

        resolved = candidate.resolve()
        if not resolved.is_relative_to(self.root):
            LOGGER.warning(f"Path escape rejected: {path!r} -> {resolved}")
            raise PathEscape(
                str(path),
                str(self.root),
                f"Path traversal detected: {str(path)!r} resolves outside workspace directory",
            )
        return resolved

    def contains(self, path: str | Path) -> bool:
        try:
            self.resolve(path)
        except PathEscape:
            return False
        return True

    def validate(self, path: str | Path) -> PathCheck:
        """Validate without raising."""
        try:
            resolved = self.resolve(path)
        except PathEscape as e:
            return PathCheck(str(path), False, error=str(e))
        return PathCheck(str(path), True, resolved=resolved)

    def validate_many(self, paths: Iterable[str | Path]) -> List[PathCheck]:
        return [self.validate(p) for p in paths]
