"""Role definitions and registry."""

from .schema import AgentConfig, ProviderDescriptor, ProviderKind, RiskTier
from .registry import RoleRegistry, build_system_prompt

__all__ = [
    "AgentConfig",
    "ProviderDescriptor",
    "ProviderKind",
    "RiskTier",
    "RoleRegistry",
    "build_system_prompt",
]
