"""Provider registry and factory."""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional

from ..agents.schema import ProviderDescriptor, ProviderKind
from ..utils.path_guard import PathGuard
from .base import Provider, ProviderStatus
from .http_stream import HttpStreamProvider
from .local_rest import LocalRestProvider
from .subprocess_cli import SubprocessCliProvider
from .token_cache import TokenCache, command_token_source

LOGGER = logging.getLogger(__name__)


class ProviderRegistry:
    """Owns provider instances keyed by provider id."""

    def __init__(self, providers: Iterable[Provider] = ()):
        self._providers: Dict[str, Provider] = {}
        for provider in providers:
            self.register(provider)

    def register(self, provider: Provider) -> None:
        self._providers[provider.provider_id] = provider
        LOGGER.debug(f"Registered provider: {provider.provider_id} ({provider.kind.value})")

    def get(self, provider_id: str) -> Optional[Provider]:
        return self._providers.get(provider_id)

    def __contains__(self, provider_id: object) -> bool:
        return provider_id in self._providers

    def ids(self) -> List[str]:
        return list(self._providers)

    async def available_providers(self) -> List[str]:
        available = []
        for provider_id, provider in self._providers.items():
            if await provider.is_available():
                available.append(provider_id)
        return available

    async def statuses(self) -> Dict[str, ProviderStatus]:
        return {pid: await p.get_status() for pid, p in self._providers.items()}

    async def status_report(self) -> str:
        """Human readable availability summary."""
        lines = ["Provider status:"]
        for provider_id, status in (await self.statuses()).items():
            mark = "✓" if status.available else "✗"
            kind = self._providers[provider_id].kind.value
            lines.append(f"  {mark} {provider_id} ({kind}) - {status.message}")
        return "\n".join(lines)

    async def close(self) -> None:
        for provider in self._providers.values():
            await provider.close()


def create_provider(
    descriptor: ProviderDescriptor,
    path_guard: Optional[PathGuard] = None,
    token_safety_margin: float = 300.0,
) -> Provider:
    """Instantiate the provider variant named by ``descriptor.kind``."""
    if descriptor.kind == ProviderKind.SUBPROCESS:
        return SubprocessCliProvider(descriptor, path_guard=path_guard)

    if descriptor.kind == ProviderKind.HTTP_STREAM:
        token_cache = None
        token_command = descriptor.settings.get("token_command")
        if token_command:
            token_cache = TokenCache(
                command_token_source(list(token_command)),
                safety_margin=token_safety_margin,
            )
        return HttpStreamProvider(descriptor, token_cache=token_cache)

    if descriptor.kind == ProviderKind.LOCAL_REST:
        return LocalRestProvider(descriptor)

    raise ValueError(f"Unsupported provider kind: {descriptor.kind}")
