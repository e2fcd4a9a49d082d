"""Execution backends and fallback chains."""

from .base import ExecuteOptions, FinalResult, Provider, ProviderStatus
from .fallback import Candidate, ExhaustedError, FallbackChain, FallbackTable
from .http_stream import HttpStreamProvider
from .local_rest import LocalRestProvider
from .registry import ProviderRegistry, create_provider
from .subprocess_cli import SubprocessCliProvider
from .token_cache import TokenCache, TokenEntry

__all__ = [
    "ExecuteOptions",
    "FinalResult",
    "Provider",
    "ProviderStatus",
    "Candidate",
    "ExhaustedError",
    "FallbackChain",
    "FallbackTable",
    "HttpStreamProvider",
    "LocalRestProvider",
    "ProviderRegistry",
    "create_provider",
    "SubprocessCliProvider",
    "TokenCache",
    "TokenEntry",
]
