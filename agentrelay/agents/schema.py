"""Role and provider descriptors.

Both types are immutable: they are built once from the static configuration
and shared by every session that uses them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Tuple


class RiskTier(str, Enum):
    """How much damage a role can do to the workspace."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ProviderKind(str, Enum):
    """Execution backend variants."""
    SUBPROCESS = "subprocess"  # Local agent CLI streaming JSON lines
    HTTP_STREAM = "http-stream"  # Remote API streaming server-sent events
    LOCAL_REST = "local-rest"  # Same-host REST server (Ollama style)


@dataclass(frozen=True, slots=True)
class AgentConfig:
    """A behavioural role the router can execute.

    Attributes:
        name: Role name (unique key)
        description: What the role is for
        model: Preferred model id
        system_prompt: Instructions prepended to every task
        capabilities: Capability tags
        risk: Risk tier
        provider: Preferred provider id
        sandbox: Run the backend in sandbox mode
        auto_approve: Let the backend apply edits without confirmation
        display_name: Human readable name
        temperature: Sampling temperature passed to HTTP backends
        max_tokens: Output token cap passed to HTTP backends
        is_manager: The role's prompt teaches the delegation directive
        role_document: Workspace-relative file appended to the system prompt
    """

    name: str
    description: str
    model: str
    system_prompt: str
    provider: str
    capabilities: Tuple[str, ...] = ()
    risk: RiskTier = RiskTier.LOW
    sandbox: bool = True
    auto_approve: bool = False
    display_name: str = ""
    temperature: float = 0.3
    max_tokens: int = 8000
    is_manager: bool = False
    role_document: Optional[str] = None

    @property
    def label(self) -> str:
        return self.display_name or self.name


@dataclass(frozen=True, slots=True)
class ProviderDescriptor:
    """Static description of one provider.

    Attributes:
        provider_id: Unique id
        kind: Backend variant
        models: Supported model ids, in preference order
        ranks: Generation rank per model (1 = newest generation)
        settings: Variant-specific options from the configuration file
    """

    provider_id: str
    kind: ProviderKind
    models: Tuple[str, ...]
    ranks: Dict[str, int] = field(default_factory=dict)
    settings: Dict[str, object] = field(default_factory=dict)

    def rank_of(self, model: str) -> int:
        """Generation rank of ``model``; unranked models count as rank 1."""
        return self.ranks.get(model, 1)

    def supports(self, model: str) -> bool:
        return not self.models or model in self.models
