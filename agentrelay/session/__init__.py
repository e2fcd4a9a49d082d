"""Session state and registry."""

from .models import ConversationKey, Session, SessionKey, SessionStatus, SessionSummary
from .registry import SessionRegistry

__all__ = [
    "ConversationKey",
    "Session",
    "SessionKey",
    "SessionStatus",
    "SessionSummary",
    "SessionRegistry",
]
