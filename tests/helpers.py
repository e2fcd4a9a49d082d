"""Shared test doubles for agentrelay tests."""

from pathlib import Path
from typing import Dict, List, Optional

from agentrelay.agents.schema import AgentConfig, ProviderDescriptor, ProviderKind
from agentrelay.providers.base import ExecuteOptions, FinalResult, Provider
from agentrelay.utils.cancel import CancelToken

FAKE_CLI = Path(__file__).parent / "fixtures" / "fake_agent_cli.py"


class FakeClock:
    """Manually advanced clock for time-dependent components."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ScriptedProvider(Provider):
    """In-memory provider replaying a scripted outcome.

    Args:
        provider_id: Provider id
        chunks: Fragments streamed before returning
        error: Exception raised after streaming (instead of returning)
        available: Value returned by is_available()
        block: Wait on the cancel token instead of returning
    """

    def __init__(
        self,
        provider_id: str,
        chunks: Optional[List[str]] = None,
        error: Optional[BaseException] = None,
        available: bool = True,
        block: bool = False,
        models: tuple = (),
    ):
        super().__init__(ProviderDescriptor(provider_id, ProviderKind.LOCAL_REST, models))
        self.chunks = chunks if chunks is not None else ["ok"]
        self.error = error
        self.available = available
        self.block = block
        self.calls: List[Dict] = []

    async def is_available(self) -> bool:
        return self.available

    async def execute(self, prompt: str, options: ExecuteOptions, on_chunk, cancel_token: CancelToken) -> FinalResult:
        self.calls.append({"prompt": prompt, "options": options})
        for chunk in self.chunks:
            cancel_token.raise_if_cancelled()
            if on_chunk is not None:
                on_chunk(chunk)
        if self.block:
            await cancel_token.wait()
            cancel_token.raise_if_cancelled()
        if self.error is not None:
            raise self.error
        return FinalResult(
            text="".join(self.chunks),
            model=options.model,
            duration=0.01,
            resume_handle=f"{self.provider_id}-handle",
        )


class EventRecorder:
    """Async sink collecting every emitted event."""

    def __init__(self):
        self.events: List = []

    async def __call__(self, event) -> None:
        self.events.append(event)

    def of_type(self, cls) -> List:
        return [e for e in self.events if isinstance(e, cls)]


def make_role(name: str = "builder", provider: str = "p1", model: str = "m1", **kwargs) -> AgentConfig:
    return AgentConfig(
        name=name,
        description=f"{name} role",
        model=model,
        system_prompt=f"You are the {name}.",
        provider=provider,
        **kwargs,
    )
