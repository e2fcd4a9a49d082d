"""Role registry - the table of AgentConfigs the router can execute."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from ..utils.error_handler import UnknownRole
from .schema import AgentConfig, RiskTier

LOGGER = logging.getLogger(__name__)


class RoleRegistry:
    """Registry of AgentConfigs keyed by role name.

    Query modes:
    - get(name) / require(name): by role name
    - by_capability(tag): roles carrying a capability tag
    - by_provider(provider_id): roles preferring a provider
    """

    def __init__(self, configs: Iterable[AgentConfig] = ()):
        self._roles: Dict[str, AgentConfig] = {}
        for config in configs:
            self.register(config)

    # ========== Registration ==========

    def register(self, config: AgentConfig) -> None:
        if config.name in self._roles:
            LOGGER.warning(f"Role '{config.name}' re-registered, replacing previous definition")
        self._roles[config.name] = config
        LOGGER.debug(f"Registered role: {config.name} ({config.provider}/{config.model})")

    # ========== Queries ==========

    def get(self, name: str) -> Optional[AgentConfig]:
        return self._roles.get(name)

    def require(self, name: str) -> AgentConfig:
        """Return the role or raise UnknownRole."""
        config = self._roles.get(name)
        if config is None:
            raise UnknownRole(name, list(self._roles))
        return config

    def __contains__(self, name: object) -> bool:
        return name in self._roles

    def __len__(self) -> int:
        return len(self._roles)

    def names(self) -> List[str]:
        return list(self._roles)

    def list_all(self) -> List[AgentConfig]:
        return list(self._roles.values())

    def by_capability(self, capability: str) -> List[AgentConfig]:
        return [c for c in self._roles.values() if capability in c.capabilities]

    def by_provider(self, provider_id: str) -> List[AgentConfig]:
        return [c for c in self._roles.values() if c.provider == provider_id]

    def by_risk(self, risk: RiskTier) -> List[AgentConfig]:
        return [c for c in self._roles.values() if c.risk == risk]

    def catalog(self) -> str:
        """One line per role, used in manager prompts and status output."""
        lines = []
        for config in self._roles.values():
            tags = ", ".join(config.capabilities)
            lines.append(f"- {config.name}: {config.description}" + (f" [{tags}]" if tags else ""))
        return "\n".join(lines)


def build_system_prompt(config: AgentConfig, workspace: Optional[Path] = None) -> str:
    """System prompt for a role, with its role document appended when present.

    The role document path is relative to the task workspace. A missing or
    unreadable document is skipped.
    """
    if not config.role_document or workspace is None:
        return config.system_prompt

    doc_path = (workspace / config.role_document).resolve()
    if not doc_path.is_relative_to(workspace.resolve()):
        LOGGER.warning(f"Role document for {config.name} is outside the workspace, ignored")
        return config.system_prompt
    if not doc_path.is_file():
        LOGGER.debug(f"Role document not found for {config.name}: {doc_path}")
        return config.system_prompt

    try:
        document = doc_path.read_text(encoding="utf-8")
    except OSError as e:
        LOGGER.warning(f"Failed to read role document {doc_path}: {e}")
        return config.system_prompt

    return f"{config.system_prompt}\n\n<role-document>\n{document.strip()}\n</role-document>"
