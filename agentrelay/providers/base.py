"""Provider interface shared by every execution backend."""

from __future__ import annotations

import logging
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from langchain_core.messages import BaseMessage, get_buffer_string

from ..agents.schema import ProviderDescriptor, ProviderKind
from ..utils.cancel import CancelToken
from ..utils.error_handler import ProviderFailure, ProviderUnavailable

LOGGER = logging.getLogger(__name__)

ChunkCallback = Callable[[str], None]


@dataclass(slots=True)
class ExecuteOptions:
    """Per-call options assembled by the orchestrator.

    Attributes:
        model: Model id to run
        system_prompt: Role instructions
        history: Prior turns of the session (oldest first)
        workspace: Validated working directory
        sandbox: Ask the backend to sandbox tool execution
        auto_approve: Let the backend apply changes without confirmation
        resume_handle: Backend session handle from a previous call
        temperature: Sampling temperature (HTTP backends)
        max_tokens: Output token cap (HTTP backends)
    """

    model: str
    system_prompt: str = ""
    history: Sequence[BaseMessage] = ()
    workspace: Optional[Path] = None
    sandbox: bool = True
    auto_approve: bool = False
    resume_handle: Optional[str] = None
    temperature: float = 0.3
    max_tokens: int = 8000


@dataclass(frozen=True, slots=True)
class FinalResult:
    """Outcome of a successful execute() call."""

    text: str
    model: str
    duration: float
    resume_handle: Optional[str] = None
    run_id: Optional[str] = None


@dataclass(frozen=True, slots=True)
class ProviderStatus:
    available: bool
    message: str = ""
    version: Optional[str] = None
    last_checked: datetime = field(default_factory=datetime.now)


def compose_prompt(prompt: str, options: ExecuteOptions) -> str:
    """Fold system prompt and history into a single prompt string.

    Backends that keep their own conversation (a resume handle is present)
    only receive the new task text.
    """
    if options.resume_handle:
        return prompt

    parts: List[str] = []
    if options.system_prompt:
        parts.append(options.system_prompt.strip())
    if options.history:
        parts.append("Conversation so far:\n" + get_buffer_string(list(options.history)))
    if not parts:
        return prompt
    parts.append(f"Task: {prompt}")
    return "\n\n".join(parts)


def resolve_env(env: Dict[str, str]) -> Dict[str, str]:
    """Merge ``env`` over os.environ, expanding ``${VAR}`` references."""
    full_env = os.environ.copy()
    for key, value in env.items():
        if value.startswith("${") and value.endswith("}"):
            full_env[key] = os.environ.get(value[2:-1], "")
        else:
            full_env[key] = value
    return full_env


class Provider(ABC):
    """Abstract execution backend.

    Implementations stream text fragments through ``on_chunk`` in order,
    honour ``cancel_token`` promptly, and raise only ProviderFailure
    subclasses (``ProviderUnavailable``, ``QuotaExceeded``, ``AuthFailure``)
    or ``TaskCancelled``.
    """

    def __init__(self, descriptor: ProviderDescriptor):
        self._descriptor = descriptor
        self._last_status: Optional[ProviderStatus] = None

    @property
    def descriptor(self) -> ProviderDescriptor:
        return self._descriptor

    @property
    def provider_id(self) -> str:
        return self._descriptor.provider_id

    @property
    def kind(self) -> ProviderKind:
        return self._descriptor.kind

    @abstractmethod
    async def execute(
        self,
        prompt: str,
        options: ExecuteOptions,
        on_chunk: Optional[ChunkCallback],
        cancel_token: CancelToken,
    ) -> FinalResult:
        """Run one task and return its final result."""

    @abstractmethod
    async def is_available(self) -> bool:
        """Cheap readiness probe."""

    async def list_models(self) -> List[str]:
        return list(self._descriptor.models)

    def validate_options(self, options: ExecuteOptions) -> None:
        """Raise ProviderUnavailable when the model is not served here."""
        if not self._descriptor.supports(options.model):
            raise ProviderUnavailable(
                self.provider_id,
                f"Model '{options.model}' is not supported by {self.provider_id}",
                reason="unsupported-model",
            )

    async def get_status(self) -> ProviderStatus:
        try:
            available = await self.is_available()
        except ProviderFailure as e:
            status = ProviderStatus(False, str(e))
        else:
            status = ProviderStatus(available, "ready" if available else "not available")
        self._last_status = status
        return status

    async def close(self) -> None:
        """Release long-lived resources (HTTP clients)."""

    @staticmethod
    def _elapsed(started: float) -> float:
        return time.monotonic() - started

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.provider_id!r})"
