"""Throttle streaming fragments into periodic update events.

Chat-style presentation layers cannot absorb one update per token. The
coalescer buffers fragments and emits them at most once per interval, or
sooner once the buffer grows past a size threshold. ``flush()`` emits
whatever is pending right away and is used on completion, provider switch
and cancellation. Fragments may be merged but are always emitted in order.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, List, Optional

LOGGER = logging.getLogger(__name__)

DEFAULT_INTERVAL = 2.0
DEFAULT_MAX_BUFFER = 1800

Emitter = Callable[[str], Awaitable[None]]


class StreamCoalescer:
    """Buffer fragments and hand them to ``emit`` in order.

    Example:
        async with StreamCoalescer(send_update) as coalescer:
            await provider.execute(prompt, options, coalescer.push, token)
        # leaving the block flushes the tail
    """

    def __init__(
        self,
        emit: Emitter,
        interval: float = DEFAULT_INTERVAL,
        max_buffer: int = DEFAULT_MAX_BUFFER,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._emit = emit
        self.interval = interval
        self.max_buffer = max_buffer
        self._clock = clock
        self._buffer: List[str] = []
        self._size = 0
        self._last_flush = clock()
        self._lock = asyncio.Lock()
        self._pending: List[asyncio.Task] = []
        self._ticker: Optional[asyncio.Task] = None
        self.emitted = 0

    async def __aenter__(self) -> "StreamCoalescer":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def start(self) -> None:
        if self._ticker is None:
            self._ticker = asyncio.create_task(self._tick())

    def push(self, text: str) -> None:
        """Accept a fragment; safe to call from a provider's read loop."""
        if not text:
            return
        self._buffer.append(text)
        self._size += len(text)
        if self._size >= self.max_buffer or self._clock() - self._last_flush >= self.interval:
            self._pending.append(asyncio.create_task(self.flush()))

    @property
    def buffered(self) -> str:
        return "".join(self._buffer)

    async def flush(self) -> None:
        """Emit everything buffered so far."""
        async with self._lock:
            if not self._buffer:
                return
            text = "".join(self._buffer)
            self._buffer.clear()
            self._size = 0
            self._last_flush = self._clock()
            self.emitted += 1
            await self._emit(text)

    async def close(self) -> None:
        """Stop the timer and flush the tail."""
        if self._ticker is not None:
            self._ticker.cancel()
            try:
                await self._ticker
            except asyncio.CancelledError:
                pass
            self._ticker = None
        if self._pending:
            await asyncio.gather(*self._pending)
            self._pending.clear()
        await self.flush()

    async def _tick(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            if self._buffer and self._clock() - self._last_flush >= self.interval:
                # Shielded so close() cannot interrupt an emit half way.
                await asyncio.shield(self.flush())
            self._pending = [t for t in self._pending if not t.done()]
