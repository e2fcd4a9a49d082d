"""Cooperative cancellation shared by a task and the provider executing it."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, List, Optional, TypeVar

from .error_handler import TaskCancelled

T = TypeVar("T")


def _noop() -> None:
    pass


class CancelToken:
    """One-shot cancellation signal.

    ``cancel()`` is idempotent. Providers either poll ``cancelled`` on each
    loop iteration or await ``wait()`` to abort a blocked read.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: Optional[str] = None
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str = "cancelled by caller") -> bool:
        """Fire the token. Returns False if it had already fired."""
        if self._event.is_set():
            return False
        self._reason = reason
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()
        return True

    def add_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Run ``callback`` on cancel (immediately if already cancelled).

        Returns:
            A function that unregisters ``callback``; calling it after the
            token fired is a no-op
        """
        if self._event.is_set():
            callback()
            return _noop
        self._callbacks.append(callback)

        def remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return remove

    @property
    def pending_callbacks(self) -> int:
        return len(self._callbacks)

    def link(self, parent: "CancelToken") -> Callable[[], None]:
        """Fire this token whenever ``parent`` fires, with the parent's reason.

        Returns:
            The unlink function; call it once this token's work is done so
            the parent does not keep a reference to it
        """
        return parent.add_callback(lambda: self.cancel(parent.reason or "cancelled by caller"))

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise TaskCancelled(self._reason or "Task was cancelled")


async def run_cancellable(awaitable: Awaitable[T], token: CancelToken) -> T:
    """Await ``awaitable`` unless ``token`` fires first.

    When the token wins, the pending work is cancelled and awaited so any
    ``async with`` blocks inside it (HTTP streams, readers) are released
    before ``TaskCancelled`` is raised.
    """
    token.raise_if_cancelled()

    work = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(token.wait())
    try:
        await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        work.cancel()
        waiter.cancel()
        raise

    if work.done():
        waiter.cancel()
        return work.result()

    work.cancel()
    try:
        await work
    except asyncio.CancelledError:
        pass
    raise TaskCancelled(token.reason or "Task was cancelled")
