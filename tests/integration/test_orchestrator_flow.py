"""End-to-end task flows through the Orchestrator with scripted providers."""

import asyncio
import json
from unittest.mock import MagicMock

import pytest
import yaml

from agentrelay import build_orchestrator
from agentrelay.agents.registry import RoleRegistry
from agentrelay.config.relay_config import RelayConfig
from agentrelay.persistence.workspace_map import WorkspaceMap
from agentrelay.providers.base import FinalResult
from agentrelay.providers.fallback import Candidate, FallbackChain, FallbackTable
from agentrelay.providers.registry import ProviderRegistry
from agentrelay.runtime.events import (
    CancelledNotice,
    ErrorSummary,
    FinalResultEvent,
    ProviderSwitchNotice,
    TextFragment,
)
from agentrelay.runtime.orchestrator import Orchestrator, TaskState
from agentrelay.session.registry import SessionRegistry
from agentrelay.utils.error_handler import ProviderUnavailable, QuotaExceeded
from agentrelay.utils.path_guard import PathGuard
from agentrelay.utils.rate_limiter import RateLimiter
from tests.helpers import FakeClock, ScriptedProvider, make_role

pytestmark = pytest.mark.integration

ACTOR = "alice"
CONV = "conv-1"


@pytest.fixture
def make_orchestrator(test_settings, recorder, tmp_path):
    """Factory wiring an Orchestrator around scripted providers."""

    def factory(roles, providers, chains=(), rate_limiter=None, mapping_file=None, health_reporter=None):
        return Orchestrator(
            roles=RoleRegistry(roles),
            providers=ProviderRegistry(providers),
            fallbacks=FallbackTable(chains),
            sessions=SessionRegistry(),
            rate_limiter=rate_limiter or RateLimiter(),
            workspaces=WorkspaceMap(PathGuard(tmp_path), mapping_file),
            sink=recorder,
            health_reporter=health_reporter,
            settings=test_settings,
        )

    return factory


def two_candidate_chain(role="builder"):
    return FallbackChain(role, [Candidate("p1", "m1", 1), Candidate("p2", "m2", 1)])


async def wait_for_call(provider, timeout=5.0):
    for _ in range(int(timeout / 0.01)):
        if provider.calls:
            return
        await asyncio.sleep(0.01)
    raise AssertionError(f"{provider.provider_id} was never called")


# ========== Routing and fallback ==========


@pytest.mark.asyncio
async def test_single_provider_success(make_orchestrator, recorder, tmp_path):
    p1 = ScriptedProvider("p1", chunks=["Hel", "lo"])
    orchestrator = make_orchestrator([make_role()], [p1])

    result = await orchestrator.run_and_wait(ACTOR, CONV, "builder", "  say hello  ")

    assert result.ok
    assert result.text == "Hello"
    assert (result.provider_id, result.model) == ("p1", "m1")
    assert "".join(f.text for f in recorder.of_type(TextFragment)) == "Hello"
    assert all(f.provider_id == "p1" for f in recorder.of_type(TextFragment))
    assert len(recorder.of_type(FinalResultEvent)) == 1

    call = p1.calls[0]
    assert call["prompt"] == "say hello"
    assert call["options"].workspace == tmp_path.resolve()
    assert call["options"].system_prompt == "You are the builder."


@pytest.mark.asyncio
async def test_failover_emits_exactly_one_switch_notice(make_orchestrator, recorder):
    p1 = ScriptedProvider("p1", chunks=[], error=ProviderUnavailable("p1", "backend crashed", reason="backend-exit"))
    p2 = ScriptedProvider("p2", chunks=["from ", "p2"])
    orchestrator = make_orchestrator([make_role()], [p1, p2], [two_candidate_chain()])

    result = await orchestrator.run_and_wait(ACTOR, CONV, "builder", "build it")

    assert result.ok
    assert result.text == "from p2"
    assert result.provider_id == "p2"
    assert [a.provider_id for a in result.attempts] == ["p1"]

    switches = recorder.of_type(ProviderSwitchNotice)
    assert len(switches) == 1
    assert (switches[0].from_label, switches[0].to_label, switches[0].reason) == ("p1/m1", "p2/m2", "backend-exit")

    final = recorder.of_type(FinalResultEvent)
    assert len(final) == 1 and final[0].provider_id == "p2" and final[0].model == "m2"
    assert {f.provider_id for f in recorder.of_type(TextFragment)} == {"p2"}
    # The notice precedes the fallback's output
    assert recorder.events.index(switches[0]) < recorder.events.index(recorder.of_type(TextFragment)[0])


@pytest.mark.asyncio
async def test_unavailable_provider_is_skipped_without_executing(make_orchestrator, recorder):
    p1 = ScriptedProvider("p1", available=False)
    p2 = ScriptedProvider("p2", chunks=["ok"])
    orchestrator = make_orchestrator([make_role()], [p1, p2], [two_candidate_chain()])

    result = await orchestrator.run_and_wait(ACTOR, CONV, "builder", "go")

    assert result.ok and result.provider_id == "p2"
    assert p1.calls == []
    assert recorder.of_type(ProviderSwitchNotice)[0].reason == "not-available"


@pytest.mark.asyncio
async def test_all_providers_exhausted(make_orchestrator, recorder):
    p1 = ScriptedProvider("p1", chunks=[], error=ProviderUnavailable("p1", "crashed"))
    p2 = ScriptedProvider("p2", chunks=[], error=QuotaExceeded("p2", "429 quota"))
    orchestrator = make_orchestrator([make_role()], [p1, p2], [two_candidate_chain()])

    result = await orchestrator.run_and_wait(ACTOR, CONV, "builder", "go")

    assert result.state == TaskState.FAILED
    assert result.error.kind == "all-providers-exhausted"
    assert [(a.provider_id, a.failure_class) for a in result.attempts] == [
        ("p1", "unavailable"),
        ("p2", "quota-exceeded"),
    ]

    summary = recorder.of_type(ErrorSummary)
    assert len(summary) == 1
    assert "p1/m1" in summary[0].message and "p2/m2" in summary[0].message
    assert len(summary[0].attempts) == 2
    assert len(recorder.of_type(ProviderSwitchNotice)) == 1
    assert recorder.of_type(FinalResultEvent) == []


@pytest.mark.asyncio
async def test_unregistered_provider_falls_through(make_orchestrator):
    p2 = ScriptedProvider("p2", chunks=["ok"])
    orchestrator = make_orchestrator([make_role()], [p2], [two_candidate_chain()])

    result = await orchestrator.run_and_wait(ACTOR, CONV, "builder", "go")

    assert result.ok
    assert result.attempts[0].provider_id == "p1"


@pytest.mark.asyncio
async def test_unexpected_provider_exception_is_reported_and_wrapped(make_orchestrator):
    reporter = MagicMock()
    p1 = ScriptedProvider("p1", chunks=[], error=RuntimeError("boom"))
    p2 = ScriptedProvider("p2", chunks=["ok"])
    orchestrator = make_orchestrator([make_role()], [p1, p2], [two_candidate_chain()], health_reporter=reporter)

    result = await orchestrator.run_and_wait(ACTOR, CONV, "builder", "go")

    assert result.ok
    reporter.report.assert_called_once()
    component, error, context = reporter.report.call_args.args
    assert component == "provider:p1"
    assert isinstance(error, RuntimeError)
    assert context["model"] == "m1"


@pytest.mark.asyncio
async def test_sink_failure_does_not_break_task(test_settings, tmp_path):
    async def broken_sink(event):
        raise RuntimeError("chat API down")

    orchestrator = Orchestrator(
        roles=RoleRegistry([make_role()]),
        providers=ProviderRegistry([ScriptedProvider("p1")]),
        fallbacks=FallbackTable(),
        sessions=SessionRegistry(),
        rate_limiter=RateLimiter(),
        workspaces=WorkspaceMap(PathGuard(tmp_path)),
        sink=broken_sink,
        settings=test_settings,
    )

    result = await orchestrator.run_and_wait(ACTOR, CONV, "builder", "go")
    assert result.ok


# ========== Sessions ==========


@pytest.mark.asyncio
async def test_session_history_and_resume_handle(make_orchestrator):
    p1 = ScriptedProvider("p1", chunks=["first answer"])
    orchestrator = make_orchestrator([make_role()], [p1])

    await orchestrator.run_and_wait(ACTOR, CONV, "builder", "first question")
    await orchestrator.run_and_wait(ACTOR, CONV, "builder", "second question")

    first, second = p1.calls[0]["options"], p1.calls[1]["options"]
    assert first.resume_handle is None
    assert list(first.history) == []
    assert second.resume_handle == "p1-handle"
    assert [m.content for m in second.history] == ["first question", "first answer"]

    session = orchestrator.sessions.get(ACTOR, CONV, "builder")
    assert session.message_count == 4
    assert session.last_provider == "p1"


class ClockedProvider(ScriptedProvider):
    """Advances a fake clock before each chunk and samples the session summary."""

    def __init__(self, clock, sessions):
        super().__init__("p1", chunks=["a", "b"])
        self.clock = clock
        self.sessions = sessions
        self.seen = []

    async def execute(self, prompt, options, on_chunk, cancel_token):
        for chunk in self.chunks:
            self.clock.advance(10)
            on_chunk(chunk)
            self.seen.append(self.sessions.summaries(ACTOR, CONV)[0].last_activity_at)
        return FinalResult(text="ab", model=options.model, duration=0.01)


@pytest.mark.asyncio
async def test_streamed_chunks_refresh_session_activity(make_orchestrator):
    clock = FakeClock()
    sessions = SessionRegistry(clock=clock)
    provider = ClockedProvider(clock, sessions)
    orchestrator = make_orchestrator([make_role()], [provider])
    orchestrator.sessions = sessions

    assert (await orchestrator.run_and_wait(ACTOR, CONV, "builder", "go")).ok
    assert provider.seen == [1010.0, 1020.0]


@pytest.mark.asyncio
async def test_resume_handle_not_sent_to_other_provider(make_orchestrator):
    p1 = ScriptedProvider("p1", chunks=["ok"])
    p2 = ScriptedProvider("p2", chunks=["ok"])
    orchestrator = make_orchestrator([make_role()], [p1, p2], [two_candidate_chain()])

    await orchestrator.run_and_wait(ACTOR, CONV, "builder", "one")
    p1.available = False
    await orchestrator.run_and_wait(ACTOR, CONV, "builder", "two")

    assert p2.calls[0]["options"].resume_handle is None
    assert len(p2.calls[0]["options"].history) == 2


@pytest.mark.asyncio
async def test_roles_in_one_conversation_are_independent(make_orchestrator):
    builder = ScriptedProvider("p1", chunks=["built"])
    tester = ScriptedProvider("p2", chunks=["tested"])
    orchestrator = make_orchestrator(
        [make_role("builder", provider="p1"), make_role("tester", provider="p2", model="m2")],
        [builder, tester],
    )

    ids = [
        await orchestrator.run(ACTOR, CONV, "builder", "build"),
        await orchestrator.run(ACTOR, CONV, "tester", "test"),
    ]
    results = await asyncio.gather(*(orchestrator.wait(i) for i in ids))

    assert [r.text for r in results] == ["built", "tested"]
    assert {s.role_name for s in orchestrator.sessions.list_active(ACTOR, CONV)} == {"builder", "tester"}


# ========== Pre-flight rejections ==========


@pytest.mark.asyncio
async def test_rate_limited_task_never_reaches_provider(make_orchestrator, recorder):
    p1 = ScriptedProvider("p1")
    orchestrator = make_orchestrator([make_role()], [p1], rate_limiter=RateLimiter(class_limits={"agent": 1}))

    assert (await orchestrator.run_and_wait(ACTOR, CONV, "builder", "one")).ok
    sessions_before = len(orchestrator.sessions)

    result = await orchestrator.run_and_wait(ACTOR, "conv-2", "builder", "two")

    assert result.state == TaskState.FAILED
    assert result.error.kind == "rate-limited"
    assert len(p1.calls) == 1
    assert len(orchestrator.sessions) == sessions_before
    assert recorder.of_type(ErrorSummary)[0].message.startswith("Too many requests")


@pytest.mark.asyncio
async def test_unknown_role_rejected(make_orchestrator, recorder):
    orchestrator = make_orchestrator([make_role()], [ScriptedProvider("p1")])

    result = await orchestrator.run_and_wait(ACTOR, CONV, "poet", "write a sonnet")

    assert result.error.kind == "unknown-role"
    assert "builder" in recorder.of_type(ErrorSummary)[0].message
    assert len(orchestrator.sessions) == 0


@pytest.mark.asyncio
async def test_empty_prompt_rejected(make_orchestrator):
    p1 = ScriptedProvider("p1")
    orchestrator = make_orchestrator([make_role()], [p1])

    result = await orchestrator.run_and_wait(ACTOR, CONV, "builder", "   \n")

    assert result.error.kind == "empty-input"
    assert p1.calls == []


@pytest.mark.asyncio
async def test_workspace_escape_rejected(make_orchestrator, tmp_path):
    mapping = tmp_path / "workspaces.yaml"
    mapping.write_text(yaml.safe_dump({"conversations": {CONV: "../../etc"}}), encoding="utf-8")
    p1 = ScriptedProvider("p1")
    orchestrator = make_orchestrator([make_role()], [p1], mapping_file=mapping)

    result = await orchestrator.run_and_wait(ACTOR, CONV, "builder", "go")

    assert result.error.kind == "path-escape"
    assert p1.calls == []


# ========== Cancellation ==========


@pytest.mark.asyncio
async def test_cancel_in_flight_task(make_orchestrator, recorder):
    p1 = ScriptedProvider("p1", chunks=["partial"], block=True)
    orchestrator = make_orchestrator([make_role()], [p1])

    task_id = await orchestrator.run(ACTOR, CONV, "builder", "long job")
    await wait_for_call(p1)
    assert orchestrator.get_task(task_id).state == TaskState.STREAMING

    assert orchestrator.cancel(ACTOR, CONV, "builder") is True
    assert orchestrator.cancel(ACTOR, CONV, "builder") is False

    result = await asyncio.wait_for(orchestrator.wait(task_id), timeout=2)
    assert result.state == TaskState.CANCELLED
    assert recorder.of_type(FinalResultEvent) == []
    assert len(recorder.of_type(CancelledNotice)) == 1
    # Output produced before the cancel is still delivered
    assert "".join(f.text for f in recorder.of_type(TextFragment)) == "partial"
    assert orchestrator.active_tasks() == []

    # The next task gets a fresh session
    p1.block = False
    assert (await orchestrator.run_and_wait(ACTOR, CONV, "builder", "again")).ok


@pytest.mark.asyncio
async def test_cancel_task_by_id(make_orchestrator):
    p1 = ScriptedProvider("p1", block=True)
    orchestrator = make_orchestrator([make_role()], [p1])

    task_id = await orchestrator.run(ACTOR, CONV, "builder", "long job")
    await wait_for_call(p1)

    assert orchestrator.cancel_task(task_id) is True
    result = await asyncio.wait_for(orchestrator.wait(task_id), timeout=2)
    assert result.state == TaskState.CANCELLED
    assert orchestrator.cancel_task(task_id) is False
    assert orchestrator.forget_finished() == 1


@pytest.mark.asyncio
async def test_task_timeout_cancels(make_orchestrator, test_settings):
    test_settings.orchestrator.task_timeout_seconds = 0.05
    p1 = ScriptedProvider("p1", block=True)
    orchestrator = make_orchestrator([make_role()], [p1])

    result = await asyncio.wait_for(orchestrator.run_and_wait(ACTOR, CONV, "builder", "slow"), timeout=2)

    assert result.state == TaskState.CANCELLED
    assert "timed out" in str(result.error)

    # Only the task was cancelled; the session keeps serving the same triple
    session = orchestrator.sessions.get(ACTOR, CONV, "builder")
    assert session.is_live
    p1.block = False
    second = await asyncio.wait_for(orchestrator.run_and_wait(ACTOR, CONV, "builder", "fast"), timeout=2)
    assert second.ok
    assert len(p1.calls) == 2
    assert orchestrator.sessions.get(ACTOR, CONV, "builder") is session


@pytest.mark.asyncio
async def test_shutdown_cancels_running_tasks(make_orchestrator):
    p1 = ScriptedProvider("p1", block=True)
    orchestrator = make_orchestrator([make_role()], [p1])
    orchestrator.start()

    task_id = await orchestrator.run(ACTOR, CONV, "builder", "long job")
    await wait_for_call(p1)
    await asyncio.wait_for(orchestrator.shutdown(), timeout=2)

    assert (await orchestrator.wait(task_id)).state == TaskState.CANCELLED


# ========== Delegation ==========


def directive(role, prompt):
    return json.dumps({"action": "spawn_agent", "agent": role, "prompt": prompt, "reason": "needs code"})


@pytest.mark.asyncio
async def test_manager_delegates_to_builder(make_orchestrator, recorder):
    manager = ScriptedProvider("mgr", chunks=[directive("builder", "Add a /health route")])
    builder = ScriptedProvider("p1", chunks=["route added"])
    orchestrator = make_orchestrator(
        [make_role("manager", provider="mgr", is_manager=True), make_role("builder")],
        [manager, builder],
    )

    result = await orchestrator.run_and_wait(ACTOR, CONV, "manager", "we need a health check")

    assert result.ok
    assert result.delegated_task_id is not None
    child = await orchestrator.wait(result.delegated_task_id)
    assert child.ok and child.text == "route added"
    assert orchestrator.get_task(result.delegated_task_id).depth == 1
    assert orchestrator.get_task(result.delegated_task_id).parent_task_id == result.task_id

    prompt = builder.calls[0]["prompt"]
    assert prompt.startswith("[Delegated by manager")
    assert "Reason: needs code" in prompt
    assert "Human: we need a health check" in prompt
    assert prompt.endswith("Task: Add a /health route")

    finals = recorder.of_type(FinalResultEvent)
    assert [f.role_name for f in finals] == ["manager", "builder"]
    assert finals[0].delegated_task_id == result.delegated_task_id


@pytest.mark.asyncio
async def test_delegation_depth_is_bounded(make_orchestrator, test_settings):
    test_settings.delegation.max_depth = 1
    manager = ScriptedProvider("mgr", chunks=[directive("manager", "keep going")])
    orchestrator = make_orchestrator([make_role("manager", provider="mgr")], [manager])

    root = await orchestrator.run_and_wait(ACTOR, CONV, "manager", "start")
    child = await orchestrator.wait(root.delegated_task_id)

    assert child.ok
    assert child.delegated_task_id is None
    assert len(manager.calls) == 2


@pytest.mark.asyncio
async def test_directive_to_unknown_role_is_plain_text(make_orchestrator):
    manager = ScriptedProvider("mgr", chunks=[directive("poet", "write")])
    orchestrator = make_orchestrator([make_role("manager", provider="mgr")], [manager])

    result = await orchestrator.run_and_wait(ACTOR, CONV, "manager", "start")

    assert result.ok
    assert result.delegated_task_id is None
    assert len(manager.calls) == 1


# ========== Assembly ==========


@pytest.mark.asyncio
async def test_build_orchestrator_from_defaults(test_settings, recorder):
    orchestrator = build_orchestrator(test_settings, sink=recorder)

    assert "general" in orchestrator.roles
    assert set(orchestrator.providers.ids()) == {"cursor", "ollama"}
    assert [c.provider_id for c in orchestrator.fallbacks.for_role(orchestrator.roles.require("general")).candidates] == [
        "cursor",
        "ollama",
    ]
    await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_build_orchestrator_with_relay_config(test_settings):
    config = RelayConfig(data={
        "providers": {"local": {"kind": "local-rest", "models": ["m"]}},
        "roles": {"solo": {"provider": "local", "model": "m"}},
    })
    orchestrator = build_orchestrator(test_settings, relay_config=config)

    assert orchestrator.roles.names() == ["solo"]
    assert orchestrator.providers.ids() == ["local"]
    await orchestrator.shutdown()
