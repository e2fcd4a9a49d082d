"""Subprocess-CLI provider: drives a local agent binary that streams JSON lines.

Each stdout line is one JSON record with a ``type`` discriminator:

- ``system-init``: session metadata (``session_id``, ``model``)
- ``partial-delta``: a text fragment in ``text``
- ``tool-invocation``: the backend ran a tool (logged only)
- ``final-result``: the complete answer in ``result``, plus ``session_id``

Lines that are not valid JSON are dropped. A non-zero exit before a
``final-result`` record is a hard failure.
"""

from __future__ import annotations

import asyncio
import json
import logging
import shutil
import time
import uuid
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

from ..agents.schema import ProviderDescriptor
from ..utils.cancel import CancelToken, run_cancellable
from ..utils.error_handler import ProviderUnavailable, TaskCancelled, classify_provider_error
from ..utils.path_guard import PathGuard
from .base import ChunkCallback, ExecuteOptions, FinalResult, Provider, compose_prompt, resolve_env

LOGGER = logging.getLogger(__name__)

RECORD_SYSTEM_INIT = "system-init"
RECORD_PARTIAL_DELTA = "partial-delta"
RECORD_TOOL_INVOCATION = "tool-invocation"
RECORD_FINAL_RESULT = "final-result"

DEFAULT_BASE_ARGS = ["--print", "--output-format", "stream-json", "--stream-partial-output"]


_STREAM_LIMIT = 16 * 1024 * 1024


def parse_record(line: str) -> Optional[Dict[str, Any]]:
    """Decode one stdout line; None for blank or malformed lines."""
    line = line.strip()
    if not line:
        return None
    try:
        record = json.loads(line)
    except json.JSONDecodeError:
        LOGGER.debug(f"Dropping malformed stream line: {line[:200]}")
        return None
    if not isinstance(record, dict):
        LOGGER.debug(f"Dropping non-object stream line: {line[:200]}")
        return None
    return record


class SubprocessCliProvider(Provider):
    """Run tasks through an external agent CLI.

    Descriptor settings:
        command: Binary to spawn (required)
        base_args: Arguments placed before the per-call flags
        env: Extra environment, ``${VAR}`` references are expanded
        terminate_grace: Seconds to wait after SIGTERM before SIGKILL
    """

    def __init__(self, descriptor: ProviderDescriptor, path_guard: Optional[PathGuard] = None):
        super().__init__(descriptor)
        settings = descriptor.settings
        self.command: str = str(settings.get("command") or descriptor.provider_id)
        self.base_args: List[str] = [str(a) for a in settings.get("base_args", DEFAULT_BASE_ARGS)]
        self.env: Dict[str, str] = {str(k): str(v) for k, v in dict(settings.get("env", {})).items()}
        self.terminate_grace: float = float(settings.get("terminate_grace", 2.0))
        self.path_guard = path_guard

    async def is_available(self) -> bool:
        return shutil.which(self.command) is not None

    def build_args(self, prompt: str, options: ExecuteOptions, workspace: Optional[Path]) -> List[str]:
        args = list(self.base_args)
        if options.model:
            args += ["--model", options.model]
        if workspace is not None:
            args += ["--workspace", str(workspace)]
        if options.auto_approve:
            args.append("--force")
        args += ["--sandbox", "enabled" if options.sandbox else "disabled"]
        if options.resume_handle:
            args += ["--resume", options.resume_handle]
        args.append(compose_prompt(prompt, options))
        return args

    async def execute(
        self,
        prompt: str,
        options: ExecuteOptions,
        on_chunk: Optional[ChunkCallback],
        cancel_token: CancelToken,
    ) -> FinalResult:
        cancel_token.raise_if_cancelled()
        self.validate_options(options)

        workspace = options.workspace
        if workspace is not None and self.path_guard is not None:
            workspace = self.path_guard.resolve(workspace)

        args = self.build_args(prompt, options, workspace)
        run_id = uuid.uuid4().hex[:12]
        started = time.monotonic()

        LOGGER.info(f"[{self.provider_id}] spawning {self.command} (model={options.model}, run={run_id})")
        try:
            proc = await asyncio.create_subprocess_exec(
                self.command,
                *args,
                cwd=str(workspace) if workspace is not None else None,
                env=resolve_env(self.env),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=_STREAM_LIMIT,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise ProviderUnavailable(
                self.provider_id, f"Cannot start {self.command}: {e}", reason="spawn-failed", cause=e
            ) from e

        stderr_task = asyncio.create_task(self._drain(proc.stderr))
        remove_callback = cancel_token.add_callback(lambda: self._terminate(proc))

        chunks: List[str] = []
        final: Optional[Dict[str, Any]] = None
        resume_handle = options.resume_handle
        model = options.model

        try:
            async for record in self._read_records(proc.stdout, cancel_token):
                kind = record.get("type")
                if kind == RECORD_PARTIAL_DELTA:
                    text = record.get("text") or record.get("delta") or ""
                    if text:
                        chunks.append(text)
                        if on_chunk is not None:
                            on_chunk(text)
                elif kind == RECORD_FINAL_RESULT:
                    final = record
                elif kind == RECORD_SYSTEM_INIT:
                    resume_handle = record.get("session_id") or resume_handle
                    model = record.get("model") or model
                    LOGGER.debug(f"[{self.provider_id}] init: session={resume_handle} model={model}")
                elif kind == RECORD_TOOL_INVOCATION:
                    LOGGER.debug(f"[{self.provider_id}] tool: {record.get('name', '?')}")
                else:
                    LOGGER.debug(f"[{self.provider_id}] ignoring record type {kind!r}")
            returncode = None if cancel_token.cancelled else await run_cancellable(proc.wait(), cancel_token)
        finally:
            remove_callback()
            await self._reap(proc)
            stderr_text = await stderr_task

        if cancel_token.cancelled:
            LOGGER.info(f"[{self.provider_id}] run {run_id} cancelled (exit {proc.returncode})")
            raise TaskCancelled(cancel_token.reason or "Task was cancelled")

        if final is not None:
            if final.get("is_error"):
                raise classify_provider_error(self.provider_id, str(final.get("result") or stderr_text))
            text = final.get("result")
            if not isinstance(text, str):
                text = "".join(chunks)
            return FinalResult(
                text=text,
                model=final.get("model") or model,
                duration=self._elapsed(started),
                resume_handle=final.get("session_id") or resume_handle,
                run_id=run_id,
            )

        if returncode != 0:
            detail = stderr_text.strip() or f"exit code {returncode}"
            failure = classify_provider_error(self.provider_id, detail)
            if isinstance(failure, ProviderUnavailable):
                failure.reason = "backend-exit"
            LOGGER.warning(f"[{self.provider_id}] exited {returncode} before final result: {detail[:200]}")
            raise failure

        LOGGER.debug(f"[{self.provider_id}] exited cleanly without final-result, using streamed text")
        return FinalResult(
            text="".join(chunks),
            model=model,
            duration=self._elapsed(started),
            resume_handle=resume_handle,
            run_id=run_id,
        )

    async def _read_records(
        self, stream: asyncio.StreamReader, cancel_token: CancelToken
    ) -> AsyncIterator[Dict[str, Any]]:
        while not cancel_token.cancelled:
            try:
                raw = await run_cancellable(stream.readline(), cancel_token)
            except TaskCancelled:
                # A child that ignores SIGTERM keeps stdout open; _reap escalates.
                break
            except ValueError:
                # Line above the stream limit; drop it and keep reading.
                LOGGER.warning(f"[{self.provider_id}] dropping oversized stream line")
                continue
            if not raw:
                break
            record = parse_record(raw.decode("utf-8", errors="replace"))
            if record is not None:
                yield record

    @staticmethod
    async def _drain(stream: asyncio.StreamReader) -> str:
        data = await stream.read()
        return data.decode("utf-8", errors="replace")

    def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is None:
            LOGGER.info(f"[{self.provider_id}] terminating pid {proc.pid}")
            try:
                proc.terminate()
            except ProcessLookupError:
                pass

    async def _reap(self, proc: asyncio.subprocess.Process) -> None:
        """Make sure the child has exited and been waited for."""
        if proc.returncode is None:
            self._terminate(proc)
            try:
                await asyncio.wait_for(proc.wait(), self.terminate_grace)
            except asyncio.TimeoutError:
                LOGGER.warning(f"[{self.provider_id}] pid {proc.pid} ignored SIGTERM, killing")
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
                await proc.wait()
