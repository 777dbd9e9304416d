from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import Mapping, Sequence
from typing import Any, Optional

from turnflow.core.errors import ToolExecutionError
from turnflow.tools.base import JsonRpcToolProvider, parse_jsonrpc_line

logger = logging.getLogger(__name__)


class StdioToolProvider(JsonRpcToolProvider):
    """Tool server launched as a subprocess, one JSON-RPC message per line."""

    name = "stdio"

    def __init__(
        self,
        command: Sequence[str],
        env: Optional[Mapping[str, str]] = None,
        timeout_sec: float = 60.0,
        log_events: bool = False,
    ) -> None:
        super().__init__()
        if not command:
            raise ValueError("command must not be empty")
        self._command = list(command)
        self._env = dict(env or {})
        self._timeout = timeout_sec
        self._log_events = log_events
        self._process: Optional[asyncio.subprocess.Process] = None
        self._lock = asyncio.Lock()

    async def _start(self) -> asyncio.subprocess.Process:
        if self._process is not None:
            return self._process
        try:
            self._process = await asyncio.create_subprocess_exec(
                *self._command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
                env={**os.environ, **self._env},
            )
        except OSError as exc:
            raise ToolExecutionError(
                "TOOL_START_FAILED", f"Failed to start tool server: {self._command[0]}"
            ) from exc
        logger.debug("Started tool server %s (pid %d)", self._command[0], self._process.pid)
        return self._process

    async def _write(self, message: dict[str, Any]) -> asyncio.subprocess.Process:
        process = await self._start()
        if process.stdin is None or process.returncode is not None:
            raise ToolExecutionError("TOOL_SERVER_EXITED", "Tool server is not running.")
        if self._log_events:
            logger.debug("stdio tool -> %s", message)
        try:
            process.stdin.write((json.dumps(message) + "\n").encode("utf-8"))
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            raise ToolExecutionError("TOOL_SERVER_EXITED", "Tool server closed its input.") from exc
        return process

    async def _notify(self, message: dict[str, Any]) -> None:
        async with self._lock:
            await self._write(message)

    async def _send(self, message: dict[str, Any]) -> dict[str, Any]:
        async with self._lock:
            process = await self._write(message)
            try:
                return await asyncio.wait_for(
                    self._read_response(process, message["id"]), timeout=self._timeout
                )
            except asyncio.TimeoutError as exc:
                raise ToolExecutionError(
                    "TOOL_TIMEOUT",
                    f"Tool server did not answer {message['method']} in time.",
                    retryable=True,
                ) from exc

    async def _read_response(
        self, process: asyncio.subprocess.Process, request_id: int
    ) -> dict[str, Any]:
        assert process.stdout is not None
        while True:
            raw = await process.stdout.readline()
            if not raw:
                raise ToolExecutionError("TOOL_SERVER_EXITED", "Tool server closed its output.")
            response = parse_jsonrpc_line(raw.decode("utf-8", errors="replace"))
            if response is None:
                continue
            if self._log_events:
                logger.debug("stdio tool <- %s", response)
            # Server notifications and requests carry no matching id.
            if response.get("id") == request_id:
                return response

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        process, self._process = self._process, None
        if process is None or process.returncode is not None:
            return
        if process.stdin is not None:
            process.stdin.close()
        try:
            await asyncio.wait_for(process.wait(), timeout=2)
        except asyncio.TimeoutError:
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()
