"""Delegation directives embedded in provider responses.

A manager-style role may answer with a JSON object such as::

    {"action": "spawn_agent", "agent": "builder", "prompt": "Add a /health route"}

either as the whole response or somewhere inside prose (including a fenced
code block). Anything that does not decode to a known action naming a known
role is plain text.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Container, Dict, Iterator, Optional

from ..utils.error_handler import MalformedDirective

LOGGER = logging.getLogger(__name__)

SPAWN_ACTIONS = frozenset({"spawn_agent", "delegate"})
ROLE_KEYS = ("agent", "agent_name", "role")
PROMPT_KEYS = ("prompt", "task")


@dataclass(frozen=True, slots=True)
class Directive:
    action: str
    role_name: str
    prompt: str
    reason: str = ""


@dataclass(frozen=True, slots=True)
class ParsedResponse:
    """Response text plus the directive it carried, if any."""

    text: str
    directive: Optional[Directive] = None

    @property
    def is_plain(self) -> bool:
        return self.directive is None


def iter_json_objects(text: str) -> Iterator[str]:
    """Yield balanced ``{...}`` substrings, skipping braces inside strings."""
    start = -1
    depth = 0
    in_string = False
    escaped = False

    for index, char in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue

        if char == '"':
            if depth > 0:
                in_string = True
        elif char == "{":
            if depth == 0:
                start = index
            depth += 1
        elif char == "}" and depth > 0:
            depth -= 1
            if depth == 0:
                yield text[start:index + 1]


class DirectiveParser:
    """Two-pass directive decoder.

    Args:
        known_roles: Container (or predicate) deciding which role names may
            be delegated to
    """

    def __init__(self, known_roles: Container[str] | Callable[[str], bool]):
        if callable(known_roles):
            self._is_known = known_roles
        else:
            self._is_known = known_roles.__contains__

    def parse(self, text: str) -> ParsedResponse:
        """Return the directive carried by ``text`` or a plain-text result."""
        try:
            directive = self._decode(text)
        except MalformedDirective as e:
            LOGGER.debug(f"Ignoring malformed directive: {e}")
            return ParsedResponse(text)
        return ParsedResponse(text, directive)

    def _decode(self, text: str) -> Optional[Directive]:
        payload = self._strict(text)
        if payload is None:
            payload = self._embedded(text)
        if payload is None:
            return None
        return self._to_directive(payload)

    @staticmethod
    def _strict(text: str) -> Optional[Dict[str, Any]]:
        try:
            data = json.loads(text.strip())
        except (json.JSONDecodeError, ValueError):
            return None
        return data if isinstance(data, dict) else None

    @staticmethod
    def _embedded(text: str) -> Optional[Dict[str, Any]]:
        for candidate in iter_json_objects(text):
            try:
                data = json.loads(candidate)
            except json.JSONDecodeError:
                continue
            if isinstance(data, dict) and "action" in data:
                return data
        return None

    def _to_directive(self, payload: Dict[str, Any]) -> Optional[Directive]:
        action = payload.get("action")
        if action not in SPAWN_ACTIONS:
            if action is not None:
                LOGGER.debug(f"Unknown directive action {action!r}, treating as text")
            return None

        role_name = next((payload[k] for k in ROLE_KEYS if isinstance(payload.get(k), str)), None)
        prompt = next((payload[k] for k in PROMPT_KEYS if isinstance(payload.get(k), str)), None)
        if not role_name or not prompt or not prompt.strip():
            raise MalformedDirective(f"Directive {action!r} is missing a role or prompt")

        if not self._is_known(role_name):
            LOGGER.info(f"Directive names unknown role {role_name!r}, treating as text")
            return None

        return Directive(
            action=action,
            role_name=role_name,
            prompt=prompt.strip(),
            reason=str(payload.get("reason", "")),
        )
