"""Ordered fallback chains of (provider, model) candidates.

Generation ranks are ordinals where 1 is the newest model generation. Along
a chain the numeric rank never increases, so walking the chain forward never
lands on an older generation than one already tried.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import AbstractSet, Dict, Iterable, List, Optional, Sequence, Tuple

from ..agents.schema import AgentConfig, ProviderDescriptor
from ..utils.error_handler import ChainConfigurationError

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Candidate:
    provider_id: str
    model: str
    rank: int = 1

    @property
    def key(self) -> Tuple[str, str]:
        return (self.provider_id, self.model)

    @property
    def label(self) -> str:
        return f"{self.provider_id}/{self.model}"


class ExhaustedError(LookupError):
    """No untried candidate remains."""


class FallbackChain:
    """Immutable candidate list for one role.

    Raises:
        ChainConfigurationError: Empty chain, duplicate candidate, or a rank
            that increases along the chain
    """

    def __init__(self, role_name: str, candidates: Sequence[Candidate]):
        if not candidates:
            raise ChainConfigurationError(f"Fallback chain for '{role_name}' is empty")

        seen = set()
        for previous, current in zip(candidates, candidates[1:]):
            if current.rank > previous.rank:
                raise ChainConfigurationError(
                    f"Fallback chain for '{role_name}' downgrades from {previous.label} "
                    f"(rank {previous.rank}) to {current.label} (rank {current.rank})"
                )
        for candidate in candidates:
            if candidate.key in seen:
                raise ChainConfigurationError(f"Fallback chain for '{role_name}' repeats {candidate.label}")
            seen.add(candidate.key)

        self.role_name = role_name
        self._candidates: Tuple[Candidate, ...] = tuple(candidates)

    @property
    def candidates(self) -> Tuple[Candidate, ...]:
        return self._candidates

    def __len__(self) -> int:
        return len(self._candidates)

    def select(self, attempted: AbstractSet[Tuple[str, str]] = frozenset()) -> Candidate:
        """First candidate whose (provider, model) is not in ``attempted``.

        Raises:
            ExhaustedError: Every candidate was attempted
        """
        for candidate in self._candidates:
            if candidate.key not in attempted:
                return candidate
        raise ExhaustedError(f"No untried candidate left for role '{self.role_name}'")

    def describe(self) -> str:
        return " → ".join(f"{c.label}(r{c.rank})" for c in self._candidates)


class FallbackTable:
    """Role name → FallbackChain lookup, with single-candidate defaults."""

    def __init__(self, chains: Iterable[FallbackChain] = (), descriptors: Dict[str, ProviderDescriptor] = None):
        self._chains: Dict[str, FallbackChain] = {c.role_name: c for c in chains}
        self._descriptors = descriptors or {}

    def add(self, chain: FallbackChain) -> None:
        self._chains[chain.role_name] = chain

    def get(self, role_name: str) -> Optional[FallbackChain]:
        return self._chains.get(role_name)

    def for_role(self, config: AgentConfig) -> FallbackChain:
        """The role's chain, or a chain holding only its preferred provider."""
        chain = self._chains.get(config.name)
        if chain is None:
            chain = FallbackChain(config.name, [self.candidate(config.provider, config.model)])
            self._chains[config.name] = chain
        return chain

    def candidate(self, provider_id: str, model: str, rank: Optional[int] = None) -> Candidate:
        if rank is None:
            descriptor = self._descriptors.get(provider_id)
            rank = descriptor.rank_of(model) if descriptor else 1
        return Candidate(provider_id, model, rank)

    def roles(self) -> List[str]:
        return list(self._chains)
