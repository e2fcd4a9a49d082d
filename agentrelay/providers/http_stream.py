"""HTTP-streaming provider: remote model APIs answering with server-sent events.

Two payload dialects are supported:

- ``gemini``: ``POST {base_url}/models/{model}:streamGenerateContent?alt=sse``
  with ``contents``/``parts``; text at ``candidates[0].content.parts[0].text``
- ``openai``: ``POST {base_url}/chat/completions`` with ``stream: true``;
  text at ``choices[0].delta.content``

Credentials come from an API key (environment variable named in the
descriptor) or from a TokenCache bearer token.
"""

from __future__ import annotations

import json
import logging
import os
import time
import uuid
from typing import Any, Dict, List, Optional

import httpx
from langchain_core.messages import BaseMessage

from ..agents.schema import ProviderDescriptor
from ..utils.cancel import CancelToken, run_cancellable
from ..utils.error_handler import (
    AuthFailure,
    ProviderFailure,
    ProviderUnavailable,
    QuotaExceeded,
    TaskCancelled,
)
from .base import ChunkCallback, ExecuteOptions, FinalResult, Provider
from .token_cache import TokenCache

LOGGER = logging.getLogger(__name__)

DIALECT_GEMINI = "gemini"
DIALECT_OPENAI = "openai"


def parse_sse_line(line: str) -> Optional[Dict[str, Any]]:
    """Decode one SSE line; None for comments, blanks, [DONE] or bad JSON."""
    if not line.startswith("data:"):
        return None
    payload = line[5:].strip()
    if not payload or payload == "[DONE]":
        return None
    try:
        data = json.loads(payload)
    except json.JSONDecodeError:
        LOGGER.debug(f"Dropping malformed SSE payload: {payload[:200]}")
        return None
    return data if isinstance(data, dict) else None


def _role_of(message: BaseMessage) -> str:
    return "assistant" if message.type == "ai" else "user"


class HttpStreamProvider(Provider):
    """Stream completions from a remote HTTP API.

    Descriptor settings:
        base_url: API root (required)
        dialect: ``gemini`` (default) or ``openai``
        api_key_env: Environment variable holding a static API key
        api_key_header: Header for the static key (default ``Authorization``
            with a ``Bearer`` prefix; e.g. ``x-goog-api-key`` sends it raw)
        scopes: OAuth scopes requested from the token cache
        timeout: Request timeout in seconds
    """

    def __init__(
        self,
        descriptor: ProviderDescriptor,
        token_cache: Optional[TokenCache] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(descriptor)
        settings = descriptor.settings
        self.base_url: str = os.path.expandvars(str(settings.get("base_url", ""))).rstrip("/")
        self.dialect: str = str(settings.get("dialect", DIALECT_GEMINI))
        if self.dialect not in (DIALECT_GEMINI, DIALECT_OPENAI):
            raise ValueError(f"Unknown HTTP dialect for {descriptor.provider_id}: {self.dialect}")
        self.api_key_env: Optional[str] = settings.get("api_key_env")
        self.api_key_header: str = str(settings.get("api_key_header", "Authorization"))
        self.scopes: List[str] = list(settings.get("scopes", []))
        self.timeout: float = float(settings.get("timeout", 300.0))
        self.token_cache = token_cache
        self._client = client
        self._owns_client = client is None

    # ========== Setup ==========

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout, connect=10.0))
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _api_key(self) -> Optional[str]:
        if not self.api_key_env:
            return None
        return os.environ.get(self.api_key_env) or None

    async def is_available(self) -> bool:
        if not self.base_url:
            return False
        return self._api_key() is not None or self.token_cache is not None

    async def _auth_headers(self) -> Dict[str, str]:
        api_key = self._api_key()
        if api_key:
            if self.api_key_header.lower() == "authorization":
                return {"Authorization": f"Bearer {api_key}"}
            return {self.api_key_header: api_key}
        if self.token_cache is not None:
            token = await self.token_cache.get_token(self.scopes)
            return {"Authorization": f"Bearer {token}"}
        raise AuthFailure(self.provider_id, "No API key or token source configured")

    # ========== Payloads ==========

    def build_request(self, prompt: str, options: ExecuteOptions) -> tuple[str, Dict[str, Any]]:
        """Return (url, json body) for the configured dialect."""
        if self.dialect == DIALECT_OPENAI:
            messages: List[Dict[str, str]] = []
            if options.system_prompt:
                messages.append({"role": "system", "content": options.system_prompt})
            for message in options.history:
                messages.append({"role": _role_of(message), "content": str(message.content)})
            messages.append({"role": "user", "content": prompt})
            body = {
                "model": options.model,
                "messages": messages,
                "stream": True,
                "temperature": options.temperature,
                "max_tokens": options.max_tokens,
            }
            return f"{self.base_url}/chat/completions", body

        contents = [
            {"role": "model" if m.type == "ai" else "user", "parts": [{"text": str(m.content)}]}
            for m in options.history
        ]
        contents.append({"role": "user", "parts": [{"text": prompt}]})
        body = {
            "contents": contents,
            "generationConfig": {
                "temperature": options.temperature,
                "maxOutputTokens": options.max_tokens,
            },
        }
        if options.system_prompt:
            body["systemInstruction"] = {"parts": [{"text": options.system_prompt}]}
        return f"{self.base_url}/models/{options.model}:streamGenerateContent?alt=sse", body

    def extract_text(self, event: Dict[str, Any]) -> str:
        try:
            if self.dialect == DIALECT_OPENAI:
                return event["choices"][0]["delta"].get("content") or ""
            parts = event["candidates"][0]["content"]["parts"]
            return "".join(p.get("text", "") for p in parts)
        except (KeyError, IndexError, TypeError, AttributeError):
            return ""

    # ========== Execution ==========

    async def execute(
        self,
        prompt: str,
        options: ExecuteOptions,
        on_chunk: Optional[ChunkCallback],
        cancel_token: CancelToken,
    ) -> FinalResult:
        cancel_token.raise_if_cancelled()
        self.validate_options(options)
        started = time.monotonic()
        run_id = uuid.uuid4().hex[:12]

        try:
            text, model = await run_cancellable(
                self._stream(prompt, options, on_chunk, cancel_token), cancel_token
            )
        except (ProviderFailure, TaskCancelled):
            raise
        except httpx.TimeoutException as e:
            raise ProviderUnavailable(self.provider_id, f"Request timed out: {e}", reason="timeout", cause=e) from e
        except httpx.HTTPError as e:
            raise ProviderUnavailable(self.provider_id, f"HTTP error: {e}", cause=e) from e
        except Exception as e:
            raise ProviderUnavailable(self.provider_id, f"Unexpected error: {e}", cause=e) from e

        return FinalResult(
            text=text,
            model=model,
            duration=self._elapsed(started),
            run_id=run_id,
        )

    async def _stream(
        self,
        prompt: str,
        options: ExecuteOptions,
        on_chunk: Optional[ChunkCallback],
        cancel_token: CancelToken,
    ) -> tuple[str, str]:
        url, body = self.build_request(prompt, options)
        headers = await self._auth_headers()
        headers["Accept"] = "text/event-stream"
        chunks: List[str] = []
        model = options.model

        LOGGER.info(f"[{self.provider_id}] POST {url.split('?')[0]} (model={options.model})")
        async with self.client.stream("POST", url, json=body, headers=headers) as response:
            if response.status_code >= 400:
                detail = (await response.aread()).decode("utf-8", errors="replace")
                raise self._status_failure(response.status_code, detail)

            async for line in response.aiter_lines():
                if cancel_token.cancelled:
                    break
                event = parse_sse_line(line)
                if event is None:
                    continue
                if "error" in event:
                    raise self._status_failure(int(event["error"].get("code", 500)), json.dumps(event["error"]))
                model = event.get("model") or event.get("modelVersion") or model
                text = self.extract_text(event)
                if text:
                    chunks.append(text)
                    if on_chunk is not None:
                        on_chunk(text)

        cancel_token.raise_if_cancelled()
        return "".join(chunks), model

    def _status_failure(self, status: int, detail: str) -> ProviderFailure:
        message = f"HTTP {status}: {detail[:500]}"
        if status in (401, 403):
            if self.token_cache is not None:
                self.token_cache.invalidate()
            return AuthFailure(self.provider_id, message)
        if status == 429:
            return QuotaExceeded(self.provider_id, message)
        return ProviderUnavailable(self.provider_id, message, reason=f"http-{status}")
