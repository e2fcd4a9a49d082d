"""Sliding-window rate limiting per (actor, action class).

Every admitted request is recorded in two windows: the one for its action
class and a per-actor global window shared by all classes. A request is
rejected when either window is full.

Example:
    limiter = RateLimiter()
    decision = limiter.admit("user-1", "shell")
    if not decision.allowed:
        raise RateLimited("user-1", "shell", decision.retry_after)
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Mapping, Optional, Tuple

LOGGER = logging.getLogger(__name__)

GLOBAL_CLASS = "__global__"

DEFAULT_CLASS_LIMITS: Dict[str, int] = {
    "agent": 10,
    "shell": 15,
    "git": 20,
    "worktree": 5,
    "status": 30,
    "help": 30,
    "default": 30,
}


@dataclass(frozen=True, slots=True)
class RateLimitDecision:
    """Outcome of an admit() call."""

    allowed: bool
    limit: int
    remaining: int
    retry_after: float = 0.0
    scope: str = ""


@dataclass(frozen=True, slots=True)
class RateLimitStatus:
    """Snapshot of one (actor, action class) window."""

    actor_id: str
    action_class: str
    limit: int
    used: int
    remaining: int
    reset_in: float


class RateLimiter:
    """Thread-safe sliding-window limiter.

    Args:
        class_limits: Requests allowed per window, keyed by action class.
            Classes missing from the mapping use the ``default`` entry.
        global_limit: Requests allowed per actor per window across all
            classes. ``None`` disables the global window.
        window_seconds: Window length
        clock: Monotonic time source (injectable for tests)
    """

    def __init__(
        self,
        class_limits: Optional[Mapping[str, int]] = None,
        global_limit: Optional[int] = 30,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.class_limits: Dict[str, int] = dict(DEFAULT_CLASS_LIMITS)
        if class_limits:
            self.class_limits.update(class_limits)
        self.global_limit = global_limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: Dict[Tuple[str, str], Deque[float]] = {}
        self._lock = threading.Lock()
        self._sweeper: Optional[asyncio.Task] = None

    def limit_for(self, action_class: str) -> int:
        return self.class_limits.get(action_class, self.class_limits.get("default", 30))

    # ========== Admission ==========

    def admit(self, actor_id: str, action_class: str = "default") -> RateLimitDecision:
        """Record a request if both windows have room.

        Rejected requests are not recorded, so a rejected burst does not
        extend the lockout.
        """
        now = self._clock()
        limit = self.limit_for(action_class)

        with self._lock:
            window = self._prune(actor_id, action_class, now)
            if len(window) >= limit:
                retry_after = window[0] + self.window_seconds - now
                LOGGER.warning(f"Rate limit hit: {actor_id} [{action_class}] {len(window)}/{limit}")
                return RateLimitDecision(False, limit, 0, max(retry_after, 0.0), action_class)

            global_window = None
            if self.global_limit is not None:
                global_window = self._prune(actor_id, GLOBAL_CLASS, now)
                if len(global_window) >= self.global_limit:
                    retry_after = global_window[0] + self.window_seconds - now
                    LOGGER.warning(f"Global rate limit hit: {actor_id} {len(global_window)}/{self.global_limit}")
                    return RateLimitDecision(False, self.global_limit, 0, max(retry_after, 0.0), GLOBAL_CLASS)
                global_window.append(now)

            window.append(now)
            remaining = limit - len(window)
            if global_window is not None:
                remaining = min(remaining, self.global_limit - len(global_window))
            return RateLimitDecision(True, limit, remaining, 0.0, action_class)

    def status(self, actor_id: str, action_class: str = "default") -> RateLimitStatus:
        """Report usage of one window without recording a request."""
        now = self._clock()
        limit = self.limit_for(action_class)
        with self._lock:
            window = self._prune(actor_id, action_class, now)
            used = len(window)
            reset_in = (window[0] + self.window_seconds - now) if window else 0.0
        return RateLimitStatus(
            actor_id=actor_id,
            action_class=action_class,
            limit=limit,
            used=used,
            remaining=max(limit - used, 0),
            reset_in=max(reset_in, 0.0),
        )

    def reset(self, actor_id: str, action_class: Optional[str] = None) -> None:
        """Forget recorded requests for an actor (one class, or all of them)."""
        with self._lock:
            if action_class is not None:
                self._windows.pop((actor_id, action_class), None)
                return
            for key in [k for k in self._windows if k[0] == actor_id]:
                del self._windows[key]

    # ========== Housekeeping ==========

    def sweep(self) -> int:
        """Drop windows with no entry newer than twice the window length.

        Returns:
            Number of windows removed
        """
        cutoff = self._clock() - 2 * self.window_seconds
        with self._lock:
            stale = [key for key, window in self._windows.items() if not window or window[-1] <= cutoff]
            for key in stale:
                del self._windows[key]
        if stale:
            LOGGER.debug(f"Rate limiter swept {len(stale)} idle windows")
        return len(stale)

    def start(self, interval: float = 300.0) -> None:
        """Start the periodic sweep on the running event loop."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop(interval))

    async def stop(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None

    async def _sweep_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self.sweep()

    def _prune(self, actor_id: str, action_class: str, now: float) -> Deque[float]:
        window = self._windows.setdefault((actor_id, action_class), deque())
        boundary = now - self.window_seconds
        while window and window[0] <= boundary:
            window.popleft()
        return window
