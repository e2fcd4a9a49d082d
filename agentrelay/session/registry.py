"""Session registry - owns every live Session, keyed by (actor, conversation).

Each (actor, conversation) pair holds at most one session per role. All
state changes go through the registry under one lock, so the orchestrator,
the cancel path and the periodic reaper never observe a half-updated entry.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List, Optional

from ..agents.schema import AgentConfig
from .models import (
    HISTORY_CAP,
    ConversationKey,
    Session,
    SessionKey,
    SessionStatus,
    SessionSummary,
    make_message,
)

LOGGER = logging.getLogger(__name__)

DEFAULT_TTL = 3600.0
DEFAULT_REAP_INTERVAL = 300.0


class SessionRegistry:
    """Manage session lifecycle.

    Responsibilities:
    - Create or reuse the session for an (actor, conversation, role) triple
    - Track in-flight tasks and move sessions between Active and Idle
    - Record prompt/response exchanges into capped history
    - Cancel, end and expire sessions
    """

    def __init__(
        self,
        ttl: float = DEFAULT_TTL,
        reap_interval: float = DEFAULT_REAP_INTERVAL,
        history_cap: int = HISTORY_CAP,
        clock: Callable[[], float] = time.time,
    ):
        self.ttl = ttl
        self.reap_interval = reap_interval
        self.history_cap = history_cap
        self._clock = clock
        self._sessions: Dict[ConversationKey, Dict[str, Session]] = {}
        self._lock = threading.RLock()
        self._reaper: Optional[asyncio.Task] = None

    # ========== Lookup / creation ==========

    def get_or_create(self, actor_id: str, conversation_id: str, config: AgentConfig) -> Session:
        """Return the live session for the triple, creating one if needed.

        A cancelled or expired session under the same triple is replaced.
        """
        key = SessionKey(actor_id, conversation_id, config.name)
        with self._lock:
            roles = self._sessions.setdefault(key.conversation, {})
            session = roles.get(config.name)
            now = self._clock()
            if session is not None and session.is_live:
                # Reuse counts as activity so the reaper cannot take it before track().
                session.last_activity_at = now
                return session

            session = Session(
                key=key,
                config=config,
                history_cap=self.history_cap,
                status=SessionStatus.ACTIVE,
                created_at=now,
                last_activity_at=now,
            )
            roles[config.name] = session
            LOGGER.info(f"Created session {session.session_id[:8]} for {actor_id}/{conversation_id}/{config.name}")
            return session

    def get(self, actor_id: str, conversation_id: str, role_name: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(ConversationKey(actor_id, conversation_id), {}).get(role_name)

    def list_active(self, actor_id: str, conversation_id: str) -> List[Session]:
        """Live (Active or Idle) sessions of one conversation."""
        with self._lock:
            roles = self._sessions.get(ConversationKey(actor_id, conversation_id), {})
            return [s for s in roles.values() if s.is_live]

    def summaries(self, actor_id: Optional[str] = None, conversation_id: Optional[str] = None) -> List[SessionSummary]:
        """Snapshots of every registered session, optionally filtered."""
        with self._lock:
            result = []
            for conv_key, roles in self._sessions.items():
                if actor_id is not None and conv_key.actor_id != actor_id:
                    continue
                if conversation_id is not None and conv_key.conversation_id != conversation_id:
                    continue
                result.extend(SessionSummary.of(s) for s in roles.values())
            return result

    def __len__(self) -> int:
        with self._lock:
            return sum(len(roles) for roles in self._sessions.values())

    # ========== Task bookkeeping ==========

    @contextmanager
    def track(self, session: Session) -> Iterator[Session]:
        """Mark one task in flight on ``session`` for the duration of the block."""
        with self._lock:
            session.in_flight += 1
            if session.status == SessionStatus.IDLE:
                session.status = SessionStatus.ACTIVE
            session.last_activity_at = self._clock()
        try:
            yield session
        finally:
            with self._lock:
                session.in_flight -= 1
                session.last_activity_at = self._clock()
                if session.in_flight == 0 and session.status == SessionStatus.ACTIVE:
                    session.status = SessionStatus.IDLE

    def record_exchange(
        self,
        session: Session,
        prompt: str,
        response: str,
        *,
        provider_id: Optional[str] = None,
        model: Optional[str] = None,
        resume_handle: Optional[str] = None,
    ) -> None:
        """Append a prompt/response pair; the oldest records fall off at the cap."""
        with self._lock:
            now = self._clock()
            session.history.append(make_message("user", prompt, now))
            session.history.append(make_message("assistant", response, now))
            session.message_count += 2
            session.last_activity_at = now
            if provider_id is not None:
                session.last_provider = provider_id
            if model is not None:
                session.last_model = model
            # A handle is only valid for the backend that issued it.
            if resume_handle is not None:
                session.resume_handle = resume_handle
            elif provider_id is not None:
                session.resume_handle = None

    def touch(self, session: Session) -> None:
        with self._lock:
            session.last_activity_at = self._clock()

    # ========== Termination ==========

    def cancel(self, actor_id: str, conversation_id: str, role_name: str) -> bool:
        """Cancel the session's in-flight work. Idempotent.

        Returns:
            True if this call moved the session to Cancelled
        """
        with self._lock:
            session = self.get(actor_id, conversation_id, role_name)
            if session is None or session.status in (SessionStatus.CANCELLED, SessionStatus.EXPIRED):
                return False
            session.status = SessionStatus.CANCELLED
            session.last_activity_at = self._clock()
        session.cancel_token.cancel("cancelled by caller")
        LOGGER.info(f"Cancelled session {session.session_id[:8]} ({actor_id}/{conversation_id}/{role_name})")
        return True

    def cancel_all(self, actor_id: str, conversation_id: str) -> int:
        """Cancel every live session of a conversation; returns the count."""
        return sum(
            1 for s in self.list_active(actor_id, conversation_id)
            if self.cancel(actor_id, conversation_id, s.role_name)
        )

    def end(self, actor_id: str, conversation_id: str, role_name: Optional[str] = None) -> int:
        """Remove sessions outright (one role, or the whole conversation).

        In-flight work is cancelled first. Returns the number removed.
        """
        conv_key = ConversationKey(actor_id, conversation_id)
        with self._lock:
            roles = self._sessions.get(conv_key, {})
            names = [role_name] if role_name is not None else list(roles)
            removed = [roles.pop(name) for name in names if name in roles]
            if not roles:
                self._sessions.pop(conv_key, None)
        for session in removed:
            session.status = SessionStatus.CANCELLED if session.in_flight else SessionStatus.EXPIRED
            session.cancel_token.cancel("session ended")
        if removed:
            LOGGER.info(f"Ended {len(removed)} session(s) for {actor_id}/{conversation_id}")
        return len(removed)

    def reap(self) -> int:
        """Expire sessions idle longer than the TTL.

        Sessions with tasks in flight are never reaped.

        Returns:
            Number of sessions removed
        """
        now = self._clock()
        expired: List[Session] = []
        with self._lock:
            for conv_key in list(self._sessions):
                roles = self._sessions[conv_key]
                for name in list(roles):
                    session = roles[name]
                    if session.in_flight > 0:
                        continue
                    if now - session.last_activity_at > self.ttl:
                        session.status = SessionStatus.EXPIRED
                        expired.append(roles.pop(name))
                if not roles:
                    del self._sessions[conv_key]
        if expired:
            LOGGER.info(f"Reaped {len(expired)} expired session(s)")
        return len(expired)

    # ========== Background reaper ==========

    def start(self) -> None:
        """Start the periodic reaper on the running event loop."""
        if self._reaper is None or self._reaper.done():
            self._reaper = asyncio.create_task(self._reap_loop())

    async def stop(self) -> None:
        if self._reaper is not None:
            self._reaper.cancel()
            try:
                await self._reaper
            except asyncio.CancelledError:
                pass
            self._reaper = None

    async def _reap_loop(self) -> None:
        while True:
            await asyncio.sleep(self.reap_interval)
            self.reap()
