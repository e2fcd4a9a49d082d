"""Validation of task prompts before they are routed."""

from __future__ import annotations

from .error_handler import EmptyInput, InvalidInput

MAX_PROMPT_LENGTH = 100_000


def validate_prompt(prompt: str, max_length: int = MAX_PROMPT_LENGTH) -> str:
    """Return the trimmed prompt or raise.

    Raises:
        EmptyInput: Prompt is empty or whitespace only
        InvalidInput: Prompt is longer than ``max_length`` characters
    """
    if prompt is None or not prompt.strip():
        raise EmptyInput()

    if len(prompt) > max_length:
        raise InvalidInput(
            f"Prompt too long ({len(prompt)} characters, max {max_length})",
            user_message=f"Your request is too long (max {max_length} characters).",
        )
    return prompt.strip()


def estimate_tokens(text: str) -> int:
    """Rough token estimate (four characters per token)."""
    return (len(text) + 3) // 4
