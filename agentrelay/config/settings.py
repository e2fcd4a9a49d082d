"""Environment-bound configuration objects.

Pydantic BaseSettings groups loaded from environment variables and ``.env``.
Most fields accept more than one variable name (e.g. ``RELAY_SESSION_TTL``
and ``SESSION_TTL_SECONDS`` both work).

Example:
    from agentrelay.config.settings import get_settings

    settings = get_settings()  # Cached singleton
    ttl = settings.sessions.ttl_seconds
    limit = settings.rate_limits.class_limits["shell"]
"""

from __future__ import annotations

from functools import lru_cache
from typing import Dict, Optional

from dotenv import load_dotenv
from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..utils.rate_limiter import DEFAULT_CLASS_LIMITS


load_dotenv()

_ENV_CONFIG = SettingsConfigDict(
    env_file=".env",
    env_file_encoding="utf-8",
    extra="ignore",
    populate_by_name=True,
)


class SessionSettings(BaseSettings):
    """Session lifecycle controls.

    - ttl_seconds: Idle time before a session is reaped (default: 1h)
    - reap_interval_seconds: Reaper period (default: 5min)
    - history_cap: Message records kept per session (default: 50)
    """

    ttl_seconds: float = Field(
        default=3600.0,
        gt=0,
        validation_alias=AliasChoices("RELAY_SESSION_TTL", "SESSION_TTL_SECONDS"),
    )
    reap_interval_seconds: float = Field(
        default=300.0,
        gt=0,
        validation_alias=AliasChoices("RELAY_REAP_INTERVAL", "SESSION_REAP_INTERVAL_SECONDS"),
    )
    history_cap: int = Field(default=50, ge=2, le=1000, alias="RELAY_HISTORY_CAP")

    model_config = _ENV_CONFIG


class StreamingSettings(BaseSettings):
    """Update throttling for streamed output."""

    flush_interval_seconds: float = Field(
        default=2.0,
        gt=0,
        validation_alias=AliasChoices("RELAY_FLUSH_INTERVAL", "STREAM_UPDATE_INTERVAL"),
    )
    max_buffer_chars: int = Field(default=1800, ge=1, alias="RELAY_MAX_BUFFER_CHARS")

    model_config = _ENV_CONFIG


class RateLimitSettings(BaseSettings):
    """Sliding-window limits per actor.

    ``class_limits`` can be overridden with JSON, e.g.
    ``RELAY_CLASS_LIMITS='{"shell": 20}'``; missing classes keep defaults.
    """

    window_seconds: float = Field(default=60.0, gt=0, alias="RELAY_RATE_WINDOW")
    global_limit: Optional[int] = Field(default=30, ge=1, alias="RELAY_GLOBAL_RATE_LIMIT")
    class_limits: Dict[str, int] = Field(
        default_factory=lambda: dict(DEFAULT_CLASS_LIMITS),
        alias="RELAY_CLASS_LIMITS",
    )
    sweep_interval_seconds: float = Field(default=300.0, gt=0, alias="RELAY_RATE_SWEEP_INTERVAL")

    model_config = _ENV_CONFIG


class AuthSettings(BaseSettings):
    """Bearer token caching for HTTP providers."""

    token_safety_margin_seconds: float = Field(
        default=300.0,
        ge=60.0,
        validation_alias=AliasChoices("RELAY_TOKEN_SAFETY_MARGIN", "TOKEN_SAFETY_MARGIN_SECONDS"),
    )

    model_config = _ENV_CONFIG


class DelegationSettings(BaseSettings):
    """Manager directives spawning sub-tasks."""

    enabled: bool = Field(default=True, alias="RELAY_DELEGATION_ENABLED")
    max_depth: int = Field(default=3, ge=0, le=10, alias="RELAY_DELEGATION_MAX_DEPTH")
    summary_messages: int = Field(default=6, ge=0, le=50, alias="RELAY_DELEGATION_SUMMARY_MESSAGES")

    model_config = _ENV_CONFIG


class OrchestratorSettings(BaseSettings):
    """Task execution controls.

    - task_timeout_seconds: Cancel a task running longer than this (None = no limit)
    - max_prompt_chars: Reject longer prompts
    - default_action_class: Rate-limit class charged for a task
    """

    task_timeout_seconds: Optional[float] = Field(default=None, gt=0, alias="RELAY_TASK_TIMEOUT")
    max_prompt_chars: int = Field(default=100_000, ge=1, alias="RELAY_MAX_PROMPT_CHARS")
    default_action_class: str = Field(default="agent", alias="RELAY_ACTION_CLASS")

    model_config = _ENV_CONFIG


class WorkspaceSettings(BaseSettings):
    """Workspace root and conversation mapping file."""

    root: str = Field(
        default=".",
        validation_alias=AliasChoices("RELAY_WORKSPACE_ROOT", "WORKSPACE_ROOT"),
    )
    mapping_file: Optional[str] = Field(default=None, alias="RELAY_WORKSPACE_MAP")

    model_config = _ENV_CONFIG


class ObservabilitySettings(BaseSettings):
    """Logging configuration."""

    log_dir: str = Field(default="logs", alias="RELAY_LOG_DIR")
    log_level: str = Field(default="INFO", alias="RELAY_LOG_LEVEL")
    log_prompt_max_length: int = Field(default=500, ge=100, le=5000, alias="LOG_PROMPT_MAX_LENGTH")

    model_config = _ENV_CONFIG


class Settings(BaseSettings):
    """Root application settings.

    Nested groups:
    - sessions, streaming, rate_limits, auth, delegation, orchestrator,
      workspace, observability

    Use get_settings() to obtain a cached singleton instance.
    """

    environment: str = Field(default="dev", alias="APP_ENV")
    config_path: str = Field(
        default="config/relay.yaml",
        validation_alias=AliasChoices("RELAY_CONFIG", "RELAY_CONFIG_PATH"),
    )
    sessions: SessionSettings = Field(default_factory=SessionSettings)
    streaming: StreamingSettings = Field(default_factory=StreamingSettings)
    rate_limits: RateLimitSettings = Field(default_factory=RateLimitSettings)
    auth: AuthSettings = Field(default_factory=AuthSettings)
    delegation: DelegationSettings = Field(default_factory=DelegationSettings)
    orchestrator: OrchestratorSettings = Field(default_factory=OrchestratorSettings)
    workspace: WorkspaceSettings = Field(default_factory=WorkspaceSettings)
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        validate_assignment=True,
        case_sensitive=False,
        populate_by_name=True,
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached singleton Settings instance."""
    return Settings()
