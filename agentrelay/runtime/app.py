"""Application assembly - builds an Orchestrator from settings and config."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from ..config.relay_config import RelayConfig
from ..config.settings import Settings, get_settings
from ..persistence.workspace_map import WorkspaceMap
from ..providers.registry import ProviderRegistry, create_provider
from ..session.registry import SessionRegistry
from ..utils.path_guard import PathGuard
from ..utils.rate_limiter import RateLimiter
from .events import EventSink, HealthReporter, null_sink
from .orchestrator import Orchestrator

LOGGER = logging.getLogger(__name__)


def build_orchestrator(
    settings: Optional[Settings] = None,
    sink: EventSink = null_sink,
    health_reporter: Optional[HealthReporter] = None,
    relay_config: Optional[RelayConfig] = None,
) -> Orchestrator:
    """Wire every component from settings.

    Args:
        settings: Application settings (default: cached singleton)
        sink: Event sink for task output
        health_reporter: Crash/health reporter (default: logging)
        relay_config: Pre-loaded static config (default: ``settings.config_path``)

    Returns:
        Orchestrator ready to ``start()``
    """
    settings = settings or get_settings()
    relay_config = relay_config or RelayConfig(Path(settings.config_path))

    guard = PathGuard(settings.workspace.root)
    workspaces = WorkspaceMap(guard, settings.workspace.mapping_file)

    providers = ProviderRegistry(
        create_provider(descriptor, path_guard=guard, token_safety_margin=settings.auth.token_safety_margin_seconds)
        for descriptor in relay_config.descriptors.values()
    )

    sessions = SessionRegistry(
        ttl=settings.sessions.ttl_seconds,
        reap_interval=settings.sessions.reap_interval_seconds,
        history_cap=settings.sessions.history_cap,
    )
    rate_limiter = RateLimiter(
        class_limits=settings.rate_limits.class_limits,
        global_limit=settings.rate_limits.global_limit,
        window_seconds=settings.rate_limits.window_seconds,
    )

    LOGGER.info(
        f"Orchestrator assembled: {len(relay_config.roles)} role(s), "
        f"{len(providers.ids())} provider(s), workspace root {guard.root}"
    )
    return Orchestrator(
        roles=relay_config.roles,
        providers=providers,
        fallbacks=relay_config.fallbacks,
        sessions=sessions,
        rate_limiter=rate_limiter,
        workspaces=workspaces,
        sink=sink,
        health_reporter=health_reporter,
        settings=settings,
    )
