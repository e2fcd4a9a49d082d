"""Top-level package exports for agentrelay."""

from .runtime.app import build_orchestrator
from .runtime.orchestrator import Orchestrator, TaskResult, TaskState

__all__ = ["build_orchestrator", "Orchestrator", "TaskResult", "TaskState"]
