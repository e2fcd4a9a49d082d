"""Session state held by the registry."""

from __future__ import annotations

import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Deque, List, NamedTuple, Optional

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage

from ..agents.schema import AgentConfig
from ..utils.cancel import CancelToken

HISTORY_CAP = 50


class SessionStatus(str, Enum):
    ACTIVE = "active"  # A task is in flight
    IDLE = "idle"  # Waiting for the next task
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class ConversationKey(NamedTuple):
    actor_id: str
    conversation_id: str


class SessionKey(NamedTuple):
    actor_id: str
    conversation_id: str
    role_name: str

    @property
    def conversation(self) -> ConversationKey:
        return ConversationKey(self.actor_id, self.conversation_id)


def make_message(kind: str, text: str, timestamp: Optional[float] = None) -> BaseMessage:
    """Build a history record; ``kind`` is ``user`` or ``assistant``."""
    stamp = {"timestamp": timestamp if timestamp is not None else time.time()}
    if kind == "user":
        return HumanMessage(content=text, additional_kwargs=stamp)
    return AIMessage(content=text, additional_kwargs=stamp)


@dataclass(eq=False)
class Session:
    """One role's conversation with one actor.

    Sessions are mutated only through SessionRegistry methods.
    """

    key: SessionKey
    config: AgentConfig
    history_cap: int = HISTORY_CAP
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: SessionStatus = SessionStatus.IDLE
    created_at: float = field(default_factory=time.time)
    last_activity_at: float = 0.0
    message_count: int = 0
    in_flight: int = 0
    resume_handle: Optional[str] = None
    last_provider: Optional[str] = None
    last_model: Optional[str] = None
    cancel_token: CancelToken = field(default_factory=CancelToken)
    history: Deque[BaseMessage] = field(init=False)

    def __post_init__(self) -> None:
        self.history = deque(maxlen=self.history_cap)
        if not self.last_activity_at:
            self.last_activity_at = self.created_at

    @property
    def role_name(self) -> str:
        return self.key.role_name

    @property
    def is_live(self) -> bool:
        return self.status in (SessionStatus.ACTIVE, SessionStatus.IDLE)

    def history_snapshot(self) -> List[BaseMessage]:
        return list(self.history)


@dataclass(frozen=True, slots=True)
class SessionSummary:
    """Read-only view returned by listing operations."""

    session_id: str
    actor_id: str
    conversation_id: str
    role_name: str
    status: SessionStatus
    message_count: int
    in_flight: int
    created_at: float
    last_activity_at: float
    last_provider: Optional[str]
    last_model: Optional[str]

    @classmethod
    def of(cls, session: Session) -> "SessionSummary":
        return cls(
            session_id=session.session_id,
            actor_id=session.key.actor_id,
            conversation_id=session.key.conversation_id,
            role_name=session.key.role_name,
            status=session.status,
            message_count=session.message_count,
            in_flight=session.in_flight,
            created_at=session.created_at,
            last_activity_at=session.last_activity_at,
            last_provider=session.last_provider,
            last_model=session.last_model,
        )
