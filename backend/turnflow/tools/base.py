from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable
from typing import Any, Optional

from turnflow.core.errors import ToolDispatchError, ToolExecutionError
from turnflow.domain.types import ToolSpecification

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
CLIENT_INFO = {"name": "turnflow", "version": "0.1.0"}


class ToolProvider(ABC):
    """Source of tools the model may call during a turn."""

    name: str = "tools"

    @abstractmethod
    async def describe(self) -> list[ToolSpecification]:
        """Return tool specifications with bound executors."""

    async def close(self) -> None:
        """Release resources; calling it twice is a no-op."""

        return None


class ToolRegistry:
    """Name to specification map built from several providers."""

    def __init__(self) -> None:
        self._tools: dict[str, ToolSpecification] = {}

    def register(self, spec: ToolSpecification, source: str = "") -> None:
        if spec.name in self._tools:
            logger.info("Tool %s from %s replaces an earlier registration", spec.name, source or "?")
        self._tools[spec.name] = spec

    def get(self, name: str) -> ToolSpecification:
        spec = self._tools.get(name)
        if spec is None:
            raise ToolDispatchError("TOOL_NOT_FOUND", f"Model requested unknown tool: {name}")
        return spec

    def specifications(self) -> tuple[ToolSpecification, ...]:
        return tuple(self._tools.values())

    def __len__(self) -> int:
        return len(self._tools)

    @classmethod
    async def from_providers(cls, providers: Iterable[ToolProvider]) -> "ToolRegistry":
        registry = cls()
        for provider in providers:
            for spec in await provider.describe():
                registry.register(spec, provider.name)
        return registry


class JsonRpcToolProvider(ToolProvider):
    """Tool server speaking JSON-RPC 2.0 with the MCP tool methods.

    Subclasses provide the transport through ``_send`` and ``_notify``.
    """

    def __init__(self) -> None:
        self._next_id = 0
        self._initialized = False
        self._closed = False

    @abstractmethod
    async def _send(self, message: dict[str, Any]) -> dict[str, Any]:
        """Send a request and return the matching response message."""

    @abstractmethod
    async def _notify(self, message: dict[str, Any]) -> None:
        """Send a notification (no response expected)."""

    async def describe(self) -> list[ToolSpecification]:
        await self._ensure_initialized()
        result = await self._call("tools/list", {})
        tools = result.get("tools")
        if not isinstance(tools, list):
            raise ToolExecutionError("TOOL_PROTOCOL_ERROR", f"{self.name} returned no tool list.")
        specs: list[ToolSpecification] = []
        for tool in tools:
            if not isinstance(tool, dict) or not tool.get("name"):
                continue
            specs.append(
                ToolSpecification(
                    name=str(tool["name"]),
                    description=str(tool.get("description") or ""),
                    parameters=tool.get("inputSchema") or {"type": "object", "properties": {}},
                    executor=_RemoteToolExecutor(self, str(tool["name"])),
                )
            )
        return specs

    async def call_tool(self, name: str, arguments: str) -> str:
        """Invoke a tool; server-side tool errors come back as text."""

        try:
            parsed = json.loads(arguments) if arguments.strip() else {}
        except ValueError as exc:
            raise ToolExecutionError(
                "TOOL_ARGUMENTS_INVALID", f"Arguments for {name} are not valid JSON."
            ) from exc
        await self._ensure_initialized()
        result = await self._call("tools/call", {"name": name, "arguments": parsed})
        text = _content_text(result.get("content"))
        if result.get("isError"):
            logger.info("Tool %s reported an error: %s", name, text)
        return text

    async def _ensure_initialized(self) -> None:
        if self._closed:
            raise ToolExecutionError("TOOL_CLOSED", f"{self.name} tool provider is closed.")
        if self._initialized:
            return
        await self._call(
            "initialize",
            {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": CLIENT_INFO,
            },
        )
        await self._notify({"jsonrpc": "2.0", "method": "notifications/initialized"})
        self._initialized = True

    async def _call(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        self._next_id += 1
        request_id = self._next_id
        response = await self._send(
            {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params}
        )
        error = response.get("error")
        if error:
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise ToolExecutionError("TOOL_SERVER_ERROR", f"{method} failed: {message}")
        result = response.get("result")
        if not isinstance(result, dict):
            raise ToolExecutionError(
                "TOOL_PROTOCOL_ERROR", f"{method} returned an invalid result."
            )
        return result


class _RemoteToolExecutor:
    def __init__(self, provider: JsonRpcToolProvider, tool_name: str) -> None:
        self._provider = provider
        self._tool_name = tool_name

    async def execute(self, arguments: str) -> str:
        return await self._provider.call_tool(self._tool_name, arguments)


def _content_text(content: Optional[Any]) -> str:
    if not isinstance(content, list):
        return ""
    parts: list[str] = []
    for item in content:
        if not isinstance(item, dict):
            continue
        if item.get("type") == "text":
            parts.append(str(item.get("text", "")))
        else:
            parts.append(json.dumps(item, ensure_ascii=False))
    return "\n".join(parts)


def parse_jsonrpc_line(line: str) -> Optional[dict[str, Any]]:
    """Parse one JSON-RPC message; blank or non-object lines yield ``None``."""

    line = line.strip()
    if not line:
        return None
    try:
        message = json.loads(line)
    except ValueError:
        return None
    return message if isinstance(message, dict) else None
