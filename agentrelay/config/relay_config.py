"""Static role / provider / fallback configuration loader.

The YAML file has three sections::

    providers:
      cursor:
        kind: subprocess
        command: cursor-agent
        models: {sonnet-4.5: 1, gpt-5: 1, sonnet-4: 2}
    roles:
      builder:
        description: Implements features
        provider: cursor
        model: sonnet-4.5
        system_prompt: You are a builder...
        capabilities: [file-editing]
        risk: high
        fallback:
          - {provider: gemini, model: gemini-2.5-pro}

``models`` maps each model to its generation rank (1 = newest). Fallback
entries may pin ``rank`` explicitly; otherwise it is looked up from the
provider. The role's own (provider, model) is always the first candidate.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from ..agents.registry import RoleRegistry
from ..agents.schema import AgentConfig, ProviderDescriptor, ProviderKind, RiskTier
from ..providers.fallback import Candidate, FallbackChain, FallbackTable
from ..utils.error_handler import ChainConfigurationError

LOGGER = logging.getLogger(__name__)


class ProviderEntry(BaseModel):
    kind: ProviderKind
    models: Dict[str, int] = Field(default_factory=dict)
    enabled: bool = True

    model_config = {"extra": "allow"}

    @field_validator("models", mode="before")
    @classmethod
    def _models_as_mapping(cls, value: Any) -> Any:
        # A plain list means every model is rank 1.
        if isinstance(value, list):
            return {str(m): 1 for m in value}
        return value


class FallbackEntry(BaseModel):
    provider: str
    model: str
    rank: Optional[int] = Field(default=None, ge=1)


class RoleEntry(BaseModel):
    description: str = ""
    display_name: str = ""
    provider: str
    model: str
    system_prompt: str = ""
    capabilities: List[str] = Field(default_factory=list)
    risk: RiskTier = RiskTier.LOW
    sandbox: bool = True
    auto_approve: bool = False
    temperature: float = Field(default=0.3, ge=0.0, le=2.0)
    max_tokens: int = Field(default=8000, ge=1)
    is_manager: bool = False
    role_document: Optional[str] = None
    fallback: List[FallbackEntry] = Field(default_factory=list)


class RelayFile(BaseModel):
    providers: Dict[str, ProviderEntry] = Field(default_factory=dict)
    roles: Dict[str, RoleEntry] = Field(default_factory=dict)


class RelayConfig:
    """Loaded and validated static configuration."""

    def __init__(self, config_path: Optional[Path | str] = None, data: Optional[Dict[str, Any]] = None):
        """Load configuration from ``data`` or from the YAML file.

        Args:
            config_path: YAML file; missing file falls back to defaults
            data: Already-parsed mapping (takes precedence over the file)

        Raises:
            ValueError: The configuration does not validate
            ChainConfigurationError: A fallback chain violates rank order
        """
        self.config_path = Path(config_path) if config_path else None
        raw = data if data is not None else self._load_config()
        try:
            self.file = RelayFile.model_validate(raw)
        except ValidationError as e:
            raise ValueError(f"Invalid relay configuration: {e}") from e

        self.descriptors: Dict[str, ProviderDescriptor] = self._build_descriptors()
        self.roles = RoleRegistry(self._build_roles())
        self.fallbacks = FallbackTable(self._build_chains(), self.descriptors)

    def _load_config(self) -> dict:
        if self.config_path is None or not self.config_path.exists():
            LOGGER.warning(f"Relay config not found: {self.config_path}, using defaults")
            return default_config()

        try:
            with open(self.config_path, "r", encoding="utf-8") as f:
                config = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            LOGGER.error(f"Failed to load relay config: {e}, using defaults")
            return default_config()

        LOGGER.info(f"Loaded relay configuration from {self.config_path}")
        return config or {}

    def _build_descriptors(self) -> Dict[str, ProviderDescriptor]:
        descriptors = {}
        for provider_id, entry in self.file.providers.items():
            if not entry.enabled:
                LOGGER.info(f"Provider {provider_id} disabled in config")
                continue
            descriptors[provider_id] = ProviderDescriptor(
                provider_id=provider_id,
                kind=entry.kind,
                models=tuple(entry.models),
                ranks=dict(entry.models),
                settings=dict(entry.model_extra or {}),
            )
        return descriptors

    def _build_roles(self) -> List[AgentConfig]:
        configs = []
        for name, entry in self.file.roles.items():
            if entry.provider not in self.descriptors:
                LOGGER.warning(f"Role {name} prefers unknown or disabled provider '{entry.provider}'")
            configs.append(AgentConfig(
                name=name,
                description=entry.description,
                display_name=entry.display_name,
                model=entry.model,
                system_prompt=entry.system_prompt,
                provider=entry.provider,
                capabilities=tuple(entry.capabilities),
                risk=entry.risk,
                sandbox=entry.sandbox,
                auto_approve=entry.auto_approve,
                temperature=entry.temperature,
                max_tokens=entry.max_tokens,
                is_manager=entry.is_manager,
                role_document=entry.role_document,
            ))
        return configs

    def _rank(self, provider_id: str, model: str, pinned: Optional[int]) -> int:
        if pinned is not None:
            return pinned
        descriptor = self.descriptors.get(provider_id)
        return descriptor.rank_of(model) if descriptor else 1

    def _build_chains(self) -> List[FallbackChain]:
        chains = []
        for name, entry in self.file.roles.items():
            candidates = [Candidate(entry.provider, entry.model, self._rank(entry.provider, entry.model, None))]
            for fb in entry.fallback:
                if fb.provider not in self.descriptors:
                    LOGGER.warning(f"Skipping fallback {fb.provider}/{fb.model} for {name}: provider unknown or disabled")
                    continue
                candidate = Candidate(fb.provider, fb.model, self._rank(fb.provider, fb.model, fb.rank))
                if candidate.key in {c.key for c in candidates}:
                    continue
                candidates.append(candidate)
            try:
                chains.append(FallbackChain(name, candidates))
            except ChainConfigurationError:
                LOGGER.error(f"Invalid fallback chain for role {name}")
                raise
        return chains


def default_config() -> dict:
    """Built-in configuration used when no file is present."""
    return {
        "providers": {
            "cursor": {
                "kind": "subprocess",
                "command": "cursor-agent",
                "models": {"sonnet-4.5": 1, "gpt-5": 1, "sonnet-4": 2},
            },
            "ollama": {
                "kind": "local-rest",
                "base_url": "http://localhost:11434",
                "models": {"qwen2.5-coder:14b": 2},
            },
        },
        "roles": {
            "general": {
                "description": "General assistant for questions and small tasks",
                "provider": "cursor",
                "model": "sonnet-4.5",
                "system_prompt": "You are a helpful software engineering assistant.",
                "capabilities": ["general"],
                "risk": "low",
                "fallback": [{"provider": "ollama", "model": "qwen2.5-coder:14b", "rank": 1}],
            },
        },
    }
