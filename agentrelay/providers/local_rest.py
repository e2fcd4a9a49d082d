"""Local-REST provider for same-host model servers (Ollama-compatible API).

- ``GET  {base_url}/api/tags``: installed models (availability probe)
- ``POST {base_url}/api/chat``: chat completion, either one JSON response or,
  with ``stream: true``, one JSON object per line
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from typing import Any, Dict, List, Optional

import httpx

from ..agents.schema import ProviderDescriptor
from ..utils.cancel import CancelToken, run_cancellable
from ..utils.error_handler import ProviderFailure, ProviderUnavailable, TaskCancelled
from .base import ChunkCallback, ExecuteOptions, FinalResult, Provider

LOGGER = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:11434"
MODEL_CACHE_TTL = 300.0


class LocalRestProvider(Provider):
    """Run tasks against a local REST model server.

    Descriptor settings:
        base_url: Server root (default ``http://localhost:11434``)
        streaming: Use the line-streaming endpoint (default True)
        probe_timeout: Seconds allowed for the availability probe
        timeout: Request timeout in seconds
    """

    def __init__(self, descriptor: ProviderDescriptor, client: Optional[httpx.AsyncClient] = None):
        super().__init__(descriptor)
        settings = descriptor.settings
        self.base_url: str = str(settings.get("base_url", DEFAULT_BASE_URL)).rstrip("/")
        self.streaming: bool = bool(settings.get("streaming", True))
        self.probe_timeout: float = float(settings.get("probe_timeout", 3.0))
        self.timeout: float = float(settings.get("timeout", 600.0))
        self._client = client
        self._owns_client = client is None
        self._cached_models: List[str] = []
        self._cache_time: float = 0.0

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout, connect=5.0))
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    # ========== Models ==========

    async def _fetch_models(self) -> List[str]:
        response = await self.client.get(f"{self.base_url}/api/tags", timeout=self.probe_timeout)
        response.raise_for_status()
        data = response.json()
        self._cached_models = [m["name"] for m in data.get("models", []) if "name" in m]
        self._cache_time = time.monotonic()
        return self._cached_models

    async def list_models(self) -> List[str]:
        """Installed models, cached for five minutes."""
        if self._cached_models and time.monotonic() - self._cache_time < MODEL_CACHE_TTL:
            return list(self._cached_models)
        try:
            return list(await self._fetch_models())
        except (httpx.HTTPError, ValueError) as e:
            LOGGER.warning(f"[{self.provider_id}] failed to list models: {e}")
            return list(self._cached_models)

    async def is_available(self) -> bool:
        try:
            await self._fetch_models()
        except (httpx.HTTPError, ValueError) as e:
            LOGGER.debug(f"[{self.provider_id}] not reachable: {e}")
            return False
        return True

    def validate_options(self, options: ExecuteOptions) -> None:
        # The server decides which models exist; only check when we have a list.
        if self._cached_models and options.model not in self._cached_models:
            if not any(m.split(":")[0] == options.model for m in self._cached_models):
                raise ProviderUnavailable(
                    self.provider_id,
                    f"Model '{options.model}' is not installed on {self.base_url}",
                    reason="unsupported-model",
                )

    # ========== Execution ==========

    def build_body(self, prompt: str, options: ExecuteOptions) -> Dict[str, Any]:
        messages: List[Dict[str, str]] = []
        if options.system_prompt:
            messages.append({"role": "system", "content": options.system_prompt})
        for message in options.history:
            messages.append({
                "role": "assistant" if message.type == "ai" else "user",
                "content": str(message.content),
            })
        messages.append({"role": "user", "content": prompt})
        return {
            "model": options.model,
            "messages": messages,
            "stream": self.streaming,
            "options": {"temperature": options.temperature, "num_predict": options.max_tokens},
        }

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
        body = self.build_body(prompt, options)

        LOGGER.info(f"[{self.provider_id}] POST /api/chat (model={options.model}, stream={self.streaming})")
        try:
            if self.streaming:
                text = await run_cancellable(self._stream(body, on_chunk, cancel_token), cancel_token)
            else:
                text = await run_cancellable(self._complete(body), cancel_token)
                if text and on_chunk is not None:
                    on_chunk(text)
        except (ProviderFailure, TaskCancelled):
            raise
        except httpx.HTTPStatusError as e:
            raise ProviderUnavailable(
                self.provider_id, f"HTTP {e.response.status_code}: {e}", reason=f"http-{e.response.status_code}", cause=e
            ) from e
        except httpx.HTTPError as e:
            raise ProviderUnavailable(self.provider_id, f"Local server error: {e}", cause=e) from e
        except Exception as e:
            raise ProviderUnavailable(self.provider_id, f"Unexpected error: {e}", cause=e) from e

        return FinalResult(
            text=text,
            model=options.model,
            duration=self._elapsed(started),
            run_id=uuid.uuid4().hex[:12],
        )

    async def _complete(self, body: Dict[str, Any]) -> str:
        response = await self.client.post(f"{self.base_url}/api/chat", json={**body, "stream": False})
        response.raise_for_status()
        return response.json().get("message", {}).get("content", "")

    async def _stream(
        self,
        body: Dict[str, Any],
        on_chunk: Optional[ChunkCallback],
        cancel_token: CancelToken,
    ) -> str:
        chunks: List[str] = []
        async with self.client.stream("POST", f"{self.base_url}/api/chat", json=body) as response:
            response.raise_for_status()
            async for line in response.aiter_lines():
                if cancel_token.cancelled:
                    break
                if not line.strip():
                    continue
                try:
                    data = json.loads(line)
                except json.JSONDecodeError:
                    LOGGER.debug(f"[{self.provider_id}] dropping malformed line: {line[:200]}")
                    continue
                if data.get("error"):
                    raise ProviderUnavailable(self.provider_id, str(data["error"]))
                text = data.get("message", {}).get("content", "")
                if text:
                    chunks.append(text)
                    if on_chunk is not None:
                        on_chunk(text)
                if data.get("done"):
                    break
        cancel_token.raise_if_cancelled()
        return "".join(chunks)
