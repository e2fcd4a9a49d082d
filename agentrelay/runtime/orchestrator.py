"""Task orchestration: admission, routing, fallback, streaming and delegation.

Task lifecycle::

    Admitted ──► Routed ──► Streaming ──► Completed
        │           │           │  ▲
        │           │           └──┘ provider failure: next candidate
        │           │           ├──► Cancelled
        └───────────┴───────────┴──► Failed

Pre-flight checks (prompt, role, rate limit, workspace) run inside ``run()``;
a task rejected there never reaches a provider and never touches a session.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

from langchain_core.messages import get_buffer_string

from ..agents.registry import RoleRegistry, build_system_prompt
from ..config.settings import Settings, get_settings
from ..persistence.workspace_map import WorkspaceMap
from ..providers.base import ExecuteOptions, FinalResult
from ..providers.fallback import Candidate, ExhaustedError, FallbackTable
from ..providers.registry import ProviderRegistry
from ..session.models import Session
from ..session.registry import SessionRegistry
from ..utils.error_handler import (
    AllProvidersExhausted,
    AttemptRecord,
    ProviderFailure,
    ProviderUnavailable,
    RateLimited,
    RelayError,
    TaskCancelled,
    TaskError,
)
from ..utils.cancel import CancelToken
from ..utils.input_validator import estimate_tokens, validate_prompt
from ..utils.logging_utils import log_provider_result, log_provider_switch, log_task_transition
from ..utils.rate_limiter import RateLimiter
from .coalescer import StreamCoalescer
from .directive import Directive, DirectiveParser
from .events import (
    CancelledNotice,
    ErrorSummary,
    EventSink,
    FinalResultEvent,
    HealthReporter,
    LoggingHealthReporter,
    ProviderSwitchNotice,
    TaskEvent,
    TextFragment,
    null_sink,
)

LOGGER = logging.getLogger(__name__)


class TaskState(str, Enum):
    ADMITTED = "admitted"
    ROUTED = "routed"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (TaskState.COMPLETED, TaskState.FAILED, TaskState.CANCELLED)


@dataclass
class TaskResult:
    """Terminal outcome of a task."""

    task_id: str
    role_name: str
    state: TaskState
    text: str = ""
    provider_id: Optional[str] = None
    model: Optional[str] = None
    duration: float = 0.0
    attempts: List[AttemptRecord] = field(default_factory=list)
    error: Optional[RelayError] = None
    delegated_task_id: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.state == TaskState.COMPLETED


@dataclass(eq=False)
class TaskHandle:
    task_id: str
    actor_id: str
    conversation_id: str
    role_name: str
    prompt: str
    depth: int = 0
    parent_task_id: Optional[str] = None
    state: TaskState = TaskState.ADMITTED
    created_at: float = field(default_factory=time.time)
    session: Optional[Session] = None
    workspace: Optional[Path] = None
    cancel_token: Optional[CancelToken] = None
    runner: Optional[asyncio.Task] = None
    future: Optional[asyncio.Future] = None


class Orchestrator:
    """Route tasks to providers and stream their output to the event sink.

    Args:
        roles: Registered AgentConfigs
        providers: Provider instances
        fallbacks: Per-role fallback chains
        sessions: Session registry
        rate_limiter: Admission limiter
        workspaces: Conversation → workspace resolver
        sink: Coroutine receiving every TaskEvent
        health_reporter: Receives unrecoverable provider failures
        settings: Application settings (defaults to get_settings())
    """

    def __init__(
        self,
        roles: RoleRegistry,
        providers: ProviderRegistry,
        fallbacks: FallbackTable,
        sessions: SessionRegistry,
        rate_limiter: RateLimiter,
        workspaces: WorkspaceMap,
        sink: EventSink = null_sink,
        health_reporter: Optional[HealthReporter] = None,
        settings: Optional[Settings] = None,
    ):
        self.roles = roles
        self.providers = providers
        self.fallbacks = fallbacks
        self.sessions = sessions
        self.rate_limiter = rate_limiter
        self.workspaces = workspaces
        self.sink = sink
        self.health_reporter = health_reporter or LoggingHealthReporter()
        self.settings = settings or get_settings()
        self.directive_parser = DirectiveParser(roles)
        self._tasks: Dict[str, TaskHandle] = {}

    # ========== Public API ==========

    async def run(
        self,
        actor_id: str,
        conversation_id: str,
        role_name: str,
        prompt: str,
        *,
        action_class: Optional[str] = None,
        depth: int = 0,
        parent_task_id: Optional[str] = None,
    ) -> str:
        """Admit a task and start it in the background.

        Returns:
            Task id; the outcome arrives through the sink and ``wait()``
        """
        task_id = uuid.uuid4().hex[:12]
        handle = TaskHandle(
            task_id=task_id,
            actor_id=actor_id,
            conversation_id=conversation_id,
            role_name=role_name,
            prompt=prompt,
            depth=depth,
            parent_task_id=parent_task_id,
        )
        handle.future = asyncio.get_running_loop().create_future()
        self._tasks[task_id] = handle
        log_task_transition(LOGGER, task_id, None, TaskState.ADMITTED.value, f"{actor_id}/{conversation_id}/{role_name}")

        try:
            self._preflight(handle, action_class or self.settings.orchestrator.default_action_class)
        except TaskError as e:
            await self._fail(handle, e)
            return task_id

        handle.runner = asyncio.create_task(self._drive(handle), name=f"relay-task-{task_id}")
        return task_id

    async def wait(self, task_id: str) -> TaskResult:
        """Wait for a task's terminal result."""
        handle = self._tasks[task_id]
        return await asyncio.shield(handle.future)

    async def run_and_wait(self, actor_id: str, conversation_id: str, role_name: str, prompt: str, **kwargs) -> TaskResult:
        task_id = await self.run(actor_id, conversation_id, role_name, prompt, **kwargs)
        return await self.wait(task_id)

    def cancel(self, actor_id: str, conversation_id: str, role_name: str) -> bool:
        """Cancel the in-flight work of one session. Idempotent."""
        return self.sessions.cancel(actor_id, conversation_id, role_name)

    def cancel_task(self, task_id: str) -> bool:
        handle = self._tasks.get(task_id)
        if handle is None or handle.state.terminal:
            return False
        return self.sessions.cancel(handle.actor_id, handle.conversation_id, handle.role_name)

    def get_task(self, task_id: str) -> Optional[TaskHandle]:
        return self._tasks.get(task_id)

    def active_tasks(self, actor_id: Optional[str] = None) -> List[TaskHandle]:
        return [
            h for h in self._tasks.values()
            if not h.state.terminal and (actor_id is None or h.actor_id == actor_id)
        ]

    def forget_finished(self) -> int:
        """Drop terminal task handles; returns how many were removed."""
        finished = [tid for tid, h in self._tasks.items() if h.state.terminal]
        for task_id in finished:
            del self._tasks[task_id]
        return len(finished)

    async def status_report(self) -> str:
        provider_report = await self.providers.status_report()
        return (
            f"{provider_report}\n"
            f"Sessions: {len(self.sessions)} | Running tasks: {len(self.active_tasks())}"
        )

    def start(self) -> None:
        """Start background housekeeping (session reaper, rate-limit sweep)."""
        self.sessions.start()
        self.rate_limiter.start(self.settings.rate_limits.sweep_interval_seconds)

    async def shutdown(self) -> None:
        """Cancel running tasks and stop background work."""
        running = self.active_tasks()
        for handle in running:
            if handle.cancel_token is not None:
                handle.cancel_token.cancel("shutdown")
            elif handle.session is not None:
                handle.session.cancel_token.cancel("shutdown")
        runners = [h.runner for h in running if h.runner is not None]
        if runners:
            await asyncio.gather(*runners, return_exceptions=True)
        await self.sessions.stop()
        await self.rate_limiter.stop()
        await self.providers.close()
        LOGGER.info("Orchestrator shut down")

    # ========== Admission ==========

    def _preflight(self, handle: TaskHandle, action_class: str) -> None:
        handle.prompt = validate_prompt(handle.prompt, self.settings.orchestrator.max_prompt_chars)
        config = self.roles.require(handle.role_name)

        decision = self.rate_limiter.admit(handle.actor_id, action_class)
        if not decision.allowed:
            raise RateLimited(handle.actor_id, decision.scope or action_class, decision.retry_after)

        handle.workspace = self.workspaces.resolve(handle.conversation_id)
        handle.session = self.sessions.get_or_create(handle.actor_id, handle.conversation_id, config)

    # ========== Execution ==========

    async def _drive(self, handle: TaskHandle) -> None:
        session = handle.session
        # Per-task token: a timeout stops this task only, a session cancel stops all of them.
        token = handle.cancel_token = CancelToken()
        unlink = token.link(session.cancel_token)
        timer = None
        timeout = self.settings.orchestrator.task_timeout_seconds
        if timeout:
            timer = asyncio.get_running_loop().call_later(timeout, token.cancel, "task timed out")

        try:
            with self.sessions.track(session):
                result = await self._route(handle, session)
            await self._complete(handle, session, result)
        except TaskCancelled as e:
            await self._cancelled(handle, str(e))
        except TaskError as e:
            await self._fail(handle, e)
        except Exception as e:
            self.health_reporter.report("orchestrator", e, {"task_id": handle.task_id, "role": handle.role_name})
            await self._fail(handle, TaskError(f"Internal error: {e}", user_message="Something went wrong. Please try again."))
        finally:
            unlink()
            if timer is not None:
                timer.cancel()

    async def _route(self, handle: TaskHandle, session: Session) -> Tuple[Candidate, FinalResult, List[AttemptRecord]]:
        config = session.config
        chain = self.fallbacks.for_role(config)
        token = handle.cancel_token
        attempted: Set[Tuple[str, str]] = set()
        attempts: List[AttemptRecord] = []

        try:
            candidate = chain.select(attempted)
        except ExhaustedError:
            raise AllProvidersExhausted(config.name, attempts)
        self._transition(handle, TaskState.ROUTED, candidate.label)
        LOGGER.debug(f"Task {handle.task_id}: chain {chain.describe()}, ~{estimate_tokens(handle.prompt)} prompt tokens")

        while True:
            token.raise_if_cancelled()
            attempted.add(candidate.key)
            try:
                result = await self._attempt(handle, session, candidate)
            except ProviderFailure as failure:
                token.raise_if_cancelled()
                attempts.append(AttemptRecord(candidate.provider_id, candidate.model, failure.failure_class, str(failure)))
                try:
                    next_candidate = chain.select(attempted)
                except ExhaustedError:
                    raise AllProvidersExhausted(config.name, attempts)

                log_provider_switch(LOGGER, handle.task_id, candidate.label, next_candidate.label, failure.reason)
                await self._emit(ProviderSwitchNotice(handle.task_id, candidate.label, next_candidate.label, failure.reason))
                candidate = next_candidate
            else:
                return candidate, result, attempts

    async def _attempt(self, handle: TaskHandle, session: Session, candidate: Candidate) -> FinalResult:
        """Run one candidate.

        Raises:
            ProviderFailure: The candidate failed; unexpected exceptions are
                reported and wrapped as ProviderUnavailable
            TaskCancelled: The task's token fired
        """
        provider = self.providers.get(candidate.provider_id)
        if provider is None:
            raise ProviderUnavailable(candidate.provider_id, "Provider is not registered", reason="not-registered")

        try:
            available = await provider.is_available()
        except Exception as e:
            self.health_reporter.report(f"provider:{candidate.provider_id}", e, {"phase": "is_available"})
            available = False
        if not available:
            raise ProviderUnavailable(candidate.provider_id, "Provider is not available", reason="not-available")

        options = self._options(session, candidate, handle.workspace)
        self._transition(handle, TaskState.STREAMING, candidate.label)

        async def emit_fragment(text: str) -> None:
            await self._emit(TextFragment(handle.task_id, text, candidate.provider_id, candidate.model))

        try:
            async with StreamCoalescer(
                emit_fragment,
                interval=self.settings.streaming.flush_interval_seconds,
                max_buffer=self.settings.streaming.max_buffer_chars,
            ) as coalescer:
                def on_chunk(text: str) -> None:
                    self.sessions.touch(session)
                    coalescer.push(text)

                result = await provider.execute(handle.prompt, options, on_chunk, handle.cancel_token)
        except (TaskCancelled, TaskError):
            raise
        except ProviderFailure as e:
            log_provider_result(LOGGER, candidate.provider_id, candidate.model, str(e), 0.0, success=False)
            raise
        except Exception as e:
            self.health_reporter.report(
                f"provider:{candidate.provider_id}",
                e,
                {"task_id": handle.task_id, "model": candidate.model},
            )
            raise ProviderUnavailable(candidate.provider_id, f"Unexpected provider error: {e}", cause=e) from e

        log_provider_result(LOGGER, candidate.provider_id, result.model, result.text, result.duration)
        return result

    def _options(self, session: Session, candidate: Candidate, workspace: Optional[Path]) -> ExecuteOptions:
        config = session.config
        resume = session.resume_handle if session.last_provider == candidate.provider_id else None
        return ExecuteOptions(
            model=candidate.model,
            system_prompt=build_system_prompt(config, workspace),
            history=session.history_snapshot(),
            workspace=workspace,
            sandbox=config.sandbox,
            auto_approve=config.auto_approve,
            resume_handle=resume,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
        )

    # ========== Terminal states ==========

    async def _complete(
        self,
        handle: TaskHandle,
        session: Session,
        routed: Tuple[Candidate, FinalResult, List[AttemptRecord]],
    ) -> None:
        candidate, result, attempts = routed
        self.sessions.record_exchange(
            session,
            handle.prompt,
            result.text,
            provider_id=candidate.provider_id,
            model=result.model,
            resume_handle=result.resume_handle,
        )

        delegated_task_id = None
        if self.settings.delegation.enabled:
            parsed = self.directive_parser.parse(result.text)
            if parsed.directive is not None:
                delegated_task_id = await self._delegate(handle, session, parsed.directive)

        self._transition(handle, TaskState.COMPLETED, f"{candidate.label} in {result.duration:.1f}s")
        await self._emit(FinalResultEvent(
            task_id=handle.task_id,
            role_name=handle.role_name,
            text=result.text,
            provider_id=candidate.provider_id,
            model=result.model,
            duration=result.duration,
            delegated_task_id=delegated_task_id,
        ))
        self._resolve(handle, TaskResult(
            task_id=handle.task_id,
            role_name=handle.role_name,
            state=TaskState.COMPLETED,
            text=result.text,
            provider_id=candidate.provider_id,
            model=result.model,
            duration=result.duration,
            attempts=attempts,
            delegated_task_id=delegated_task_id,
        ))

    async def _delegate(self, handle: TaskHandle, session: Session, directive: Directive) -> Optional[str]:
        max_depth = self.settings.delegation.max_depth
        if handle.depth >= max_depth:
            LOGGER.warning(
                f"Task {handle.task_id}: delegation to {directive.role_name} dropped, depth limit {max_depth} reached"
            )
            return None

        prompt = self._delegation_prompt(handle, session, directive)
        LOGGER.info(f"Task {handle.task_id}: delegating to {directive.role_name} (depth {handle.depth + 1})")
        return await self.run(
            handle.actor_id,
            handle.conversation_id,
            directive.role_name,
            prompt,
            depth=handle.depth + 1,
            parent_task_id=handle.task_id,
        )

    def _delegation_prompt(self, handle: TaskHandle, session: Session, directive: Directive) -> str:
        lines = [f"[Delegated by {session.config.label} (task {handle.task_id})]"]
        if directive.reason:
            lines.append(f"Reason: {directive.reason}")
        keep = self.settings.delegation.summary_messages
        recent = session.history_snapshot()[-keep:] if keep else []
        if recent:
            lines.append("Context from the delegating session:")
            lines.append(get_buffer_string(recent))
        lines.append("")
        lines.append(f"Task: {directive.prompt}")
        return "\n".join(lines)

    async def _fail(self, handle: TaskHandle, error: TaskError) -> None:
        attempts = list(getattr(error, "attempts", []))
        self._transition(handle, TaskState.FAILED, error.kind)
        await self._emit(ErrorSummary(handle.task_id, error.kind, error.user_message, attempts))
        self._resolve(handle, TaskResult(
            task_id=handle.task_id,
            role_name=handle.role_name,
            state=TaskState.FAILED,
            attempts=attempts,
            error=error,
        ))

    async def _cancelled(self, handle: TaskHandle, reason: str) -> None:
        self._transition(handle, TaskState.CANCELLED, reason)
        await self._emit(CancelledNotice(handle.task_id, handle.role_name, reason))
        self._resolve(handle, TaskResult(
            task_id=handle.task_id,
            role_name=handle.role_name,
            state=TaskState.CANCELLED,
            error=TaskCancelled(reason),
        ))

    # ========== Helpers ==========

    def _transition(self, handle: TaskHandle, state: TaskState, detail: str = "") -> None:
        log_task_transition(LOGGER, handle.task_id, handle.state.value, state.value, detail)
        handle.state = state

    @staticmethod
    def _resolve(handle: TaskHandle, result: TaskResult) -> None:
        if not handle.future.done():
            handle.future.set_result(result)

    async def _emit(self, event: TaskEvent) -> None:
        try:
            await self.sink(event)
        except Exception as e:
            LOGGER.warning(f"Event sink failed on {type(event).__name__}: {e}")
