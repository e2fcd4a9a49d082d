"""Unified error taxonomy for agentrelay.

Three families of errors exist:

- Provider-level failures (``ProviderUnavailable``, ``QuotaExceeded``,
  ``AuthFailure``) are raised by providers and absorbed by the fallback chain.
- Task-level errors (``AllProvidersExhausted``, ``RateLimited``,
  ``PathEscape``, ``InvalidInput``/``EmptyInput``, ``UnknownRole``) abort a
  task and are reported to the caller, never retried.
- ``MalformedDirective`` is internal to the directive parser and always
  recovered.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

LOGGER = logging.getLogger(__name__)


class RelayError(Exception):
    """Base exception for agentrelay errors."""

    def __init__(self, message: str, user_message: str = None):
        super().__init__(message)
        self.user_message = user_message or message


# ========== Provider-level failures ==========


class ProviderFailure(RelayError):
    """A single provider call failed; the next candidate may be tried."""

    failure_class = "unavailable"

    def __init__(
        self,
        provider_id: str,
        message: str,
        *,
        reason: str = None,
        cause: Optional[BaseException] = None,
        user_message: str = None,
    ):
        super().__init__(message, user_message)
        self.provider_id = provider_id
        self.reason = reason or self.failure_class
        self.cause = cause


class ProviderUnavailable(ProviderFailure):
    """Backend unreachable, crashed, or exited abnormally."""

    failure_class = "unavailable"


class QuotaExceeded(ProviderFailure):
    """Backend refused the request because of rate limits or exhausted quota."""

    failure_class = "quota-exceeded"


class AuthFailure(ProviderFailure):
    """Backend rejected our credentials."""

    failure_class = "auth-failure"


# ========== Task-level errors ==========


class TaskError(RelayError):
    """A task was aborted; surfaced to the caller and never retried."""

    kind = "task-error"


@dataclass(frozen=True, slots=True)
class AttemptRecord:
    """One failed attempt inside a task's fallback walk."""

    provider_id: str
    model: str
    failure_class: str
    message: str

    def describe(self) -> str:
        return f"{self.provider_id}/{self.model}: {self.failure_class} ({self.message})"


class AllProvidersExhausted(TaskError):
    """Every candidate of the role's fallback chain failed."""

    kind = "all-providers-exhausted"

    def __init__(self, role_name: str, attempts: Sequence[AttemptRecord]):
        self.role_name = role_name
        self.attempts: List[AttemptRecord] = list(attempts)
        detail = "; ".join(a.describe() for a in self.attempts) or "no candidates configured"
        super().__init__(
            f"All providers exhausted for role '{role_name}': {detail}",
            user_message=f"No provider could handle the request for '{role_name}'. Tried: {detail}",
        )


class RateLimited(TaskError):
    """The actor exceeded the sliding-window limit for an action class."""

    kind = "rate-limited"

    def __init__(self, actor_id: str, action_class: str, retry_after: float):
        self.actor_id = actor_id
        self.action_class = action_class
        self.retry_after = retry_after
        super().__init__(
            f"Rate limit exceeded for {actor_id} ({action_class}); retry in {retry_after:.0f}s",
            user_message=f"Too many requests. Please wait {max(1, round(retry_after))} seconds.",
        )


class PathEscape(TaskError):
    """A path resolved outside the workspace root."""

    kind = "path-escape"

    def __init__(self, path: str, root: str, detail: str = None):
        self.path = path
        self.root = root
        super().__init__(
            detail or f"Path '{path}' escapes workspace root '{root}'",
            user_message="Access denied: path is outside the allowed workspace.",
        )


class InvalidInput(TaskError):
    """The task prompt was rejected before routing."""

    kind = "invalid-input"


class EmptyInput(InvalidInput):
    """The task prompt was empty after trimming."""

    kind = "empty-input"

    def __init__(self, message: str = "Prompt cannot be empty"):
        super().__init__(message, user_message="Please provide a task description.")


class UnknownRole(TaskError):
    """No AgentConfig is registered under the requested role name."""

    kind = "unknown-role"

    def __init__(self, role_name: str, known: Sequence[str] = ()):
        self.role_name = role_name
        known_text = ", ".join(sorted(known)) or "none"
        super().__init__(
            f"Unknown role '{role_name}'",
            user_message=f"Unknown agent '{role_name}'. Available: {known_text}",
        )


# ========== Internal ==========


class MalformedDirective(RelayError):
    """A response looked like a directive but could not be decoded."""


class TaskCancelled(RelayError):
    """Raised by providers when the task's cancellation token fires."""

    def __init__(self, message: str = "Task was cancelled"):
        super().__init__(message)


class ChainConfigurationError(RelayError):
    """A fallback chain violates generation-rank monotonicity."""


# ========== Helpers ==========


def classify_provider_error(provider_id: str, error: BaseException | str) -> ProviderFailure:
    """Map a free-form backend error onto a provider failure class.

    Args:
        provider_id: Provider that produced the error
        error: Exception or raw error text (e.g. a CLI's stderr)

    Returns:
        QuotaExceeded, AuthFailure or ProviderUnavailable wrapping the error
    """
    if isinstance(error, ProviderFailure):
        return error

    text = str(error)
    lowered = text.lower()
    cause = error if isinstance(error, BaseException) else None

    if (
        "rate limit" in lowered
        or "rate_limit" in lowered
        or "429" in lowered
        or "quota" in lowered
        or "resource_exhausted" in lowered
        or "usage limit" in lowered
    ):
        return QuotaExceeded(provider_id, text, cause=cause)

    if (
        "401" in lowered
        or "403" in lowered
        or "unauthorized" in lowered
        or "authentication" in lowered
        or "invalid_api_key" in lowered
        or "not logged in" in lowered
        or "login" in lowered
    ):
        return AuthFailure(provider_id, text, cause=cause)

    return ProviderUnavailable(provider_id, text, cause=cause)


@dataclass
class ErrorContext:
    """Context attached to an error report, keyed by a correlation id."""

    command: str
    actor_id: Optional[str] = None
    conversation_id: Optional[str] = None
    correlation_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    timestamp: datetime = field(default_factory=datetime.now)
    extra: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "command": self.command,
            "actor_id": self.actor_id,
            "conversation_id": self.conversation_id,
            "correlation_id": self.correlation_id,
            "timestamp": self.timestamp.isoformat(),
            **self.extra,
        }


def create_error_context(
    command: str,
    actor_id: str = None,
    conversation_id: str = None,
    **extra: Any,
) -> ErrorContext:
    """Build an ErrorContext with a fresh correlation id."""
    return ErrorContext(
        command=command,
        actor_id=actor_id,
        conversation_id=conversation_id,
        extra=dict(extra),
    )


def user_friendly_error(error: BaseException, context: ErrorContext = None) -> str:
    """Convert an error into a message suitable for end users.

    Args:
        error: The error to render
        context: Optional context whose correlation id is appended

    Returns:
        User-facing message; internal details are not exposed for
        unexpected exceptions.
    """
    if isinstance(error, TaskCancelled):
        message = "Task cancelled."
    elif isinstance(error, RelayError):
        message = error.user_message
    elif isinstance(error, TimeoutError):
        message = "The operation timed out. Please try again."
    else:
        message = "Something went wrong. Please try again."

    if context is not None:
        message = f"{message} (ref: {context.correlation_id})"
    return message
