from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Optional

import httpx

from turnflow.core.errors import ToolExecutionError
from turnflow.tools.base import JsonRpcToolProvider, parse_jsonrpc_line

logger = logging.getLogger(__name__)

SESSION_HEADER = "Mcp-Session-Id"


class HttpToolProvider(JsonRpcToolProvider):
    """Tool server reached over HTTP POST.

    The server may answer with a JSON body or a ``text/event-stream`` body
    whose ``data:`` lines carry JSON-RPC messages.
    """

    name = "http"

    def __init__(
        self,
        url: str,
        headers: Optional[Mapping[str, str]] = None,
        timeout_sec: float = 60.0,
        http_client: Optional[httpx.AsyncClient] = None,
        log_events: bool = False,
    ) -> None:
        super().__init__()
        self._url = url
        self._headers = dict(headers or {})
        self._timeout = timeout_sec
        self._client = http_client
        self._owns_client = http_client is None
        self._log_events = log_events
        self._session_id: Optional[str] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    def _request_headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
            **self._headers,
        }
        if self._session_id:
            headers[SESSION_HEADER] = self._session_id
        return headers

    async def _post(self, message: dict[str, Any]) -> httpx.Response:
        if self._log_events:
            logger.debug("http tool -> %s", message)
        try:
            response = await self._get_client().post(
                self._url, json=message, headers=self._request_headers(), timeout=self._timeout
            )
        except httpx.TimeoutException as exc:
            raise ToolExecutionError(
                "TOOL_TIMEOUT", "Tool server request timed out.", retryable=True
            ) from exc
        except httpx.RequestError as exc:
            raise ToolExecutionError(
                "TOOL_CONNECTION_ERROR", "Tool server connection failed.", retryable=True
            ) from exc
        if response.status_code >= 400:
            raise ToolExecutionError(
                "TOOL_BAD_STATUS",
                f"Tool server returned {response.status_code}.",
                status_code=response.status_code,
            )
        session_id = response.headers.get(SESSION_HEADER)
        if session_id:
            self._session_id = session_id
        return response

    async def _notify(self, message: dict[str, Any]) -> None:
        await self._post(message)

    async def _send(self, message: dict[str, Any]) -> dict[str, Any]:
        response = await self._post(message)
        content_type = response.headers.get("content-type", "")
        if content_type.startswith("text/event-stream"):
            found = self._from_event_stream(response.text, message["id"])
        else:
            found = parse_jsonrpc_line(response.text)
        if found is None:
            raise ToolExecutionError(
                "TOOL_PROTOCOL_ERROR", f"No response to {message['method']} from tool server."
            )
        if self._log_events:
            logger.debug("http tool <- %s", found)
        return found

    @staticmethod
    def _from_event_stream(body: str, request_id: int) -> Optional[dict[str, Any]]:
        data_lines: list[str] = []
        for line in body.splitlines() + [""]:
            if line.startswith("data:"):
                data_lines.append(line[len("data:") :].strip())
                continue
            if line.strip() or not data_lines:
                continue
            # Blank line ends one event.
            event = parse_jsonrpc_line("\n".join(data_lines))
            data_lines = []
            if event is not None and event.get("id") == request_id:
                return event
        return None

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
