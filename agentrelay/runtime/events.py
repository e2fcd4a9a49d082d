"""Events delivered to the caller's sink, keyed by task id."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Union

from ..utils.error_handler import AttemptRecord

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class TextFragment:
    """Coalesced streaming output, attributed to the backend that produced it."""

    task_id: str
    text: str
    provider_id: str
    model: str


@dataclass(frozen=True, slots=True)
class ProviderSwitchNotice:
    task_id: str
    from_label: str
    to_label: str
    reason: str


@dataclass(frozen=True, slots=True)
class FinalResultEvent:
    task_id: str
    role_name: str
    text: str
    provider_id: str
    model: str
    duration: float
    delegated_task_id: Optional[str] = None


@dataclass(frozen=True, slots=True)
class ErrorSummary:
    task_id: str
    kind: str
    message: str
    attempts: List[AttemptRecord] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class CancelledNotice:
    task_id: str
    role_name: str
    reason: str


TaskEvent = Union[TextFragment, ProviderSwitchNotice, FinalResultEvent, ErrorSummary, CancelledNotice]

EventSink = Callable[[TaskEvent], Awaitable[None]]


class HealthReporter(Protocol):
    def report(self, component: str, error: BaseException, context: Dict[str, Any]) -> None:
        ...


class LoggingHealthReporter:
    """Default health reporter: writes unrecoverable failures to the log."""

    def report(self, component: str, error: BaseException, context: Dict[str, Any]) -> None:
        LOGGER.error(f"[{component}] {type(error).__name__}: {error} | context={context}", exc_info=error)


async def null_sink(event: TaskEvent) -> None:
    """Sink that discards every event."""
