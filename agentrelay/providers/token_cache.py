"""Short-lived bearer token cache for HTTP providers.

Tokens are kept in memory only. A cached token is handed out while
``now < expires_at - safety_margin``; otherwise a refresh runs. Concurrent
callers that arrive during a refresh share the same in-flight request.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, FrozenSet, Iterable, Optional, Sequence

from ..utils.error_handler import AuthFailure

LOGGER = logging.getLogger(__name__)

MIN_SAFETY_MARGIN = 60.0
DEFAULT_SAFETY_MARGIN = 300.0
DEFAULT_TOKEN_LIFETIME = 3600.0

_WHITESPACE = re.compile(r"\s")


@dataclass(frozen=True, slots=True)
class TokenEntry:
    token: str
    expires_at: float
    scopes: FrozenSet[str] = frozenset()


# A token source returns a fresh entry for the requested scopes.
TokenSource = Callable[[FrozenSet[str]], Awaitable[TokenEntry]]


def is_valid_token_format(token: str) -> bool:
    """Basic sanity check: plausible length and no whitespace."""
    return 20 < len(token) < 5000 and not _WHITESPACE.search(token)


class TokenCache:
    """Cache one bearer token and refresh it ahead of expiry.

    Args:
        source: Coroutine function producing a new TokenEntry
        safety_margin: Seconds before expiry at which a token stops being
            served (at least 60)
        clock: Wall-clock time source (injectable for tests)

    Raises:
        ValueError: ``safety_margin`` below 60 seconds
    """

    def __init__(
        self,
        source: TokenSource,
        safety_margin: float = DEFAULT_SAFETY_MARGIN,
        clock: Callable[[], float] = time.time,
    ):
        if safety_margin < MIN_SAFETY_MARGIN:
            raise ValueError(f"safety_margin must be at least {MIN_SAFETY_MARGIN:.0f}s, got {safety_margin}")
        self._source = source
        self.safety_margin = safety_margin
        self._clock = clock
        self._entry: Optional[TokenEntry] = None
        self._refresh: Optional[asyncio.Future] = None

    def _usable(self, entry: Optional[TokenEntry], scopes: FrozenSet[str]) -> bool:
        if entry is None:
            return False
        if not scopes.issubset(entry.scopes):
            return False
        return self._clock() < entry.expires_at - self.safety_margin

    async def get_token(self, scopes: Iterable[str] = ()) -> str:
        """Return a token valid for at least ``safety_margin`` more seconds.

        Raises:
            AuthFailure: The token source failed or returned a malformed token
        """
        wanted = frozenset(scopes)
        if self._usable(self._entry, wanted):
            return self._entry.token

        if self._refresh is None:
            self._refresh = asyncio.ensure_future(self._do_refresh(wanted))
        refresh = self._refresh
        try:
            entry = await asyncio.shield(refresh)
        finally:
            if refresh.done() and self._refresh is refresh:
                self._refresh = None

        if not wanted.issubset(entry.scopes):
            # The shared refresh was started for narrower scopes; fetch ours.
            return await self.get_token(wanted)
        return entry.token

    async def _do_refresh(self, scopes: FrozenSet[str]) -> TokenEntry:
        if self._entry is not None:
            scopes = scopes | self._entry.scopes
        try:
            entry = await self._source(scopes)
        except AuthFailure:
            raise
        except Exception as e:
            raise AuthFailure("token-cache", f"Token refresh failed: {e}", cause=e) from e

        if not is_valid_token_format(entry.token):
            raise AuthFailure("token-cache", "Token refresh returned a malformed token")
        if not scopes.issubset(entry.scopes):
            entry = TokenEntry(entry.token, entry.expires_at, entry.scopes | scopes)

        self._entry = entry
        LOGGER.debug(f"Token refreshed, valid for {entry.expires_at - self._clock():.0f}s")
        return entry

    def invalidate(self) -> None:
        """Drop the cached token (e.g. after the backend answered 401)."""
        self._entry = None

    @property
    def expires_at(self) -> Optional[float]:
        return self._entry.expires_at if self._entry else None


def command_token_source(
    command: Sequence[str],
    lifetime: float = DEFAULT_TOKEN_LIFETIME,
    timeout: float = 30.0,
    clock: Callable[[], float] = time.time,
) -> TokenSource:
    """Build a source that runs a CLI printing an access token on stdout.

    The default deployment uses
    ``gcloud auth application-default print-access-token``; such tokens carry
    no expiry of their own, so ``lifetime`` is assumed.
    """

    async def fetch(scopes: FrozenSet[str]) -> TokenEntry:
        proc = await asyncio.create_subprocess_exec(
            *command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise AuthFailure("token-cache", f"Token command timed out after {timeout:.0f}s")

        if proc.returncode != 0:
            message = stderr.decode(errors="replace").strip()
            raise AuthFailure("token-cache", f"Token command failed ({proc.returncode}): {message}")

        return TokenEntry(stdout.decode().strip(), clock() + lifetime, scopes)

    return fetch
