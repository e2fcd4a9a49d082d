"""Interactive terminal harness for the agent relay.

Usage:
    python main.py [--role general] [--actor local] [--conversation cli]

Input lines:
    @builder add a /health endpoint   route to a specific role
    plain text                        route to the current default role
    /cancel [role]                    cancel a role's in-flight task
    /status                           sessions and provider availability
    /providers                        provider availability only
    /end [role]                       end a role's session (all roles when omitted)
    /roles                            configured roles
    /quit                             exit
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Optional, Tuple

from agentrelay import build_orchestrator
from agentrelay.config.settings import get_settings
from agentrelay.runtime.events import (
    CancelledNotice,
    ErrorSummary,
    FinalResultEvent,
    ProviderSwitchNotice,
    TaskEvent,
    TextFragment,
)
from agentrelay.utils.error_handler import create_error_context, user_friendly_error
from agentrelay.utils.logging_utils import log_error, setup_logging

LOGGER = logging.getLogger("agentrelay.cli")


async def print_event(event: TaskEvent) -> None:
    """Console event sink."""
    if isinstance(event, TextFragment):
        print(event.text, end="", flush=True)
    elif isinstance(event, ProviderSwitchNotice):
        print(f"\n[switch] {event.from_label} → {event.to_label} ({event.reason})")
    elif isinstance(event, FinalResultEvent):
        print(f"\n[done] {event.role_name} via {event.provider_id}/{event.model} in {event.duration:.1f}s")
        if event.delegated_task_id:
            print(f"[delegated] task {event.delegated_task_id}")
    elif isinstance(event, ErrorSummary):
        print(f"\n[error] {event.message}")
        for attempt in event.attempts:
            print(f"  - {attempt.describe()}")
    elif isinstance(event, CancelledNotice):
        print(f"\n[cancelled] {event.role_name}: {event.reason}")


def parse_line(line: str, default_role: str) -> Tuple[str, str]:
    """Split ``@role text`` into (role, text); other lines go to ``default_role``."""
    if line.startswith("@"):
        head, _, rest = line[1:].partition(" ")
        if head:
            return head, rest.strip()
    return default_role, line


async def handle_line(orchestrator, line: str, role: str, actor: str, conversation: str) -> bool:
    """Run one input line. Returns False when the harness should exit.

    Task lines start the task and return at once; output arrives through
    the sink, so ``/cancel`` can be typed while a task is still streaming.
    """
    if line in ("/quit", "/exit"):
        return False
    if line == "/roles":
        print(orchestrator.roles.catalog() or "(no roles configured)")
    elif line == "/status":
        print(await orchestrator.status_report())
        for summary in orchestrator.sessions.summaries(actor, conversation):
            print(f"  {summary.role_name}: {summary.status.value}, {summary.message_count} msgs")
    elif line == "/providers":
        print(await orchestrator.providers.status_report())
    elif line.startswith("/end"):
        target = line[len("/end"):].strip() or None
        removed = orchestrator.sessions.end(actor, conversation, target)
        print(f"[end] removed {removed} session(s)")
    elif line.startswith("/cancel"):
        target = line[len("/cancel"):].strip() or role
        done = orchestrator.cancel(actor, conversation, target)
        print(f"[cancel] {target}: {'cancelled' if done else 'nothing to cancel'}")
    else:
        target, text = parse_line(line, role)
        orchestrator.forget_finished()
        try:
            await orchestrator.run(actor, conversation, target, text)
        except Exception as e:
            context = create_error_context("run", actor_id=actor, conversation_id=conversation, role=target)
            log_error(LOGGER, f"cli run ({context.correlation_id})", e)
            print(f"[error] {user_friendly_error(e, context)}")
    return True


async def async_main(role: str, actor: str, conversation: str) -> None:
    settings = get_settings()
    setup_logging(
        level=getattr(logging, settings.observability.log_level.upper(), logging.INFO),
        log_dir=settings.observability.log_dir,
    )
    orchestrator = build_orchestrator(settings, sink=print_event)
    orchestrator.start()

    print("agentrelay ready. Type /quit to exit, /roles to list roles.")
    loop = asyncio.get_running_loop()
    try:
        while True:
            try:
                # Use run_in_executor to avoid blocking the async loop
                line = await loop.run_in_executor(None, lambda: input("You> ").strip())
            except (EOFError, KeyboardInterrupt):
                break
            if line and not await handle_line(orchestrator, line, role, actor, conversation):
                break
    finally:
        await orchestrator.shutdown()


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(description="Interactive agent relay")
    parser.add_argument("--role", default="general", help="Default role for lines without @role")
    parser.add_argument("--actor", default="local", help="Actor id used for sessions and rate limits")
    parser.add_argument("--conversation", default="cli", help="Conversation id")
    args = parser.parse_args(argv)

    asyncio.run(async_main(args.role, args.actor, args.conversation))
    return 0


if __name__ == "__main__":
    sys.exit(main())
