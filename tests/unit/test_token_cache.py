"""Tests for TokenCache refresh behaviour."""

import asyncio

import pytest

from agentrelay.providers.token_cache import (
    TokenCache,
    TokenEntry,
    command_token_source,
    is_valid_token_format,
)
from agentrelay.utils.error_handler import AuthFailure
from tests.helpers import FakeClock

TOKEN_A = "ya29.token-aaaaaaaaaaaaaaaaaaaa"
TOKEN_B = "ya29.token-bbbbbbbbbbbbbbbbbbbb"


class CountingSource:
    def __init__(self, clock, tokens, lifetime=3600.0, delay=0.0):
        self.clock = clock
        self.tokens = list(tokens)
        self.lifetime = lifetime
        self.delay = delay
        self.calls = 0

    async def __call__(self, scopes):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        token = self.tokens[min(self.calls, len(self.tokens)) - 1]
        return TokenEntry(token, self.clock() + self.lifetime, scopes)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.mark.asyncio
async def test_cached_token_is_reused(clock):
    source = CountingSource(clock, [TOKEN_A, TOKEN_B])
    cache = TokenCache(source, safety_margin=300, clock=clock)

    assert await cache.get_token() == TOKEN_A
    clock.advance(1000)
    assert await cache.get_token() == TOKEN_A
    assert source.calls == 1
    assert cache.expires_at == pytest.approx(1000.0 + 3600.0)


@pytest.mark.asyncio
async def test_token_inside_safety_margin_is_never_served(clock):
    source = CountingSource(clock, [TOKEN_A, TOKEN_B])
    cache = TokenCache(source, safety_margin=300, clock=clock)

    await cache.get_token()
    # 3600 - 300 = 3300s of usable life
    clock.advance(3300)
    assert await cache.get_token() == TOKEN_B
    assert source.calls == 2


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_refresh(clock):
    source = CountingSource(clock, [TOKEN_A], delay=0.05)
    cache = TokenCache(source, clock=clock)

    tokens = await asyncio.gather(*(cache.get_token() for _ in range(5)))

    assert tokens == [TOKEN_A] * 5
    assert source.calls == 1


@pytest.mark.asyncio
async def test_wider_scopes_trigger_refresh(clock):
    source = CountingSource(clock, [TOKEN_A, TOKEN_B])
    cache = TokenCache(source, clock=clock)

    await cache.get_token(["read"])
    assert await cache.get_token(["read"]) == TOKEN_A
    assert await cache.get_token(["read", "write"]) == TOKEN_B
    assert source.calls == 2


def test_safety_margin_below_minimum_rejected():
    async def source(scopes):
        return TokenEntry(TOKEN_A, 0)

    with pytest.raises(ValueError):
        TokenCache(source, safety_margin=30)


@pytest.mark.asyncio
async def test_malformed_token_raises_auth_failure(clock):
    async def source(scopes):
        return TokenEntry("has whitespace in it somewhere", clock() + 3600, scopes)

    cache = TokenCache(source, clock=clock)
    with pytest.raises(AuthFailure):
        await cache.get_token()


@pytest.mark.asyncio
async def test_source_error_wrapped_and_retried(clock):
    calls = []

    async def source(scopes):
        calls.append(scopes)
        if len(calls) == 1:
            raise RuntimeError("metadata server down")
        return TokenEntry(TOKEN_A, clock() + 3600, scopes)

    cache = TokenCache(source, clock=clock)
    with pytest.raises(AuthFailure, match="metadata server down"):
        await cache.get_token()
    assert await cache.get_token() == TOKEN_A


@pytest.mark.asyncio
async def test_invalidate_forces_refresh(clock):
    source = CountingSource(clock, [TOKEN_A, TOKEN_B])
    cache = TokenCache(source, clock=clock)

    await cache.get_token()
    cache.invalidate()
    assert cache.expires_at is None
    assert await cache.get_token() == TOKEN_B


def test_token_format():
    assert is_valid_token_format(TOKEN_A)
    assert not is_valid_token_format("short")
    assert not is_valid_token_format("x" * 5000)
    assert not is_valid_token_format("abc def ghi jkl mno pqr stu")


@pytest.mark.asyncio
async def test_command_token_source(clock):
    import sys

    source = command_token_source([sys.executable, "-c", f"print('{TOKEN_A}')"], lifetime=600, clock=clock)
    entry = await source(frozenset({"cloud"}))

    assert entry.token == TOKEN_A
    assert entry.expires_at == clock.now + 600
    assert entry.scopes == frozenset({"cloud"})


@pytest.mark.asyncio
async def test_command_token_source_failure():
    import sys

    source = command_token_source([sys.executable, "-c", "import sys; sys.stderr.write('not logged in'); sys.exit(1)"])
    with pytest.raises(AuthFailure, match="not logged in"):
        await source(frozenset())
