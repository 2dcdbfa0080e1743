from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
import json
import logging
import threading
import time
from typing import Any, Iterator
from urllib.parse import urljoin

import httpx

from runtime.errors import UpstreamError

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
CLIENT_INFO = {"name": "concierge", "version": "1.0.0"}


class McpTimeout(UpstreamError):
    pass


class McpCancelled(McpTimeout):
    pass


@dataclass(slots=True)
class SseEvent:
    event: str
    data: str


def guard_lines(
    lines: Iterator[str],
    deadline: float,
    cancel: threading.Event | None = None,
) -> Iterator[str]:
    """Stop a stream at the deadline or on cancel, checked on every raw line including keep-alives."""
    for line in lines:
        if cancel is not None and cancel.is_set():
            raise McpCancelled("MCP call cancelled", provider="mcp")
        if time.monotonic() >= deadline:
            raise McpTimeout("MCP deadline exceeded", provider="mcp")
        yield line


def iter_sse_events(lines: Iterator[str]) -> Iterator[SseEvent]:
    event = "message"
    data: list[str] = []
    for line in lines:
        line = line.rstrip("\r")
        if not line:
            if data:
                yield SseEvent(event=event, data="\n".join(data))
            event, data = "message", []
            continue
        if line.startswith(":"):
            continue
        if line.startswith("event:"):
            event = line[6:].strip() or "message"
        elif line.startswith("data:"):
            data.append(line[5:].lstrip())
    if data:
        yield SseEvent(event=event, data="\n".join(data))


def _safe_json(text: str) -> dict[str, Any] | None:
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


@dataclass
class McpSession:
    client: httpx.Client
    events: Iterator[SseEvent]
    endpoint: str
    deadline: float
    cancel: threading.Event | None = None
    _next_id: int = field(default=1)

    def remaining(self) -> float:
        return self.deadline - time.monotonic()

    def request(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        rpc_id = self._next_id
        self._next_id += 1
        payload: dict[str, Any] = {"jsonrpc": "2.0", "id": rpc_id, "method": method, "params": params or {}}
        self._post(payload)
        return self._wait_for(rpc_id, method)

    def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        self._post({"jsonrpc": "2.0", "method": method, "params": params or {}})

    def initialize(self) -> dict[str, Any]:
        response = self.request(
            "initialize",
            {"protocolVersion": PROTOCOL_VERSION, "capabilities": {}, "clientInfo": CLIENT_INFO},
        )
        result = response.get("result")
        if not isinstance(result, dict):
            raise UpstreamError("MCP initialize returned no result", provider="mcp")
        self.notify("notifications/initialized")
        return result

    def list_tools(self) -> list[dict[str, Any]]:
        result = self.request("tools/list").get("result") or {}
        tools = result.get("tools") if isinstance(result, dict) else None
        return [tool for tool in tools if isinstance(tool, dict)] if isinstance(tools, list) else []

    def call_tool(self, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        response = self.request("tools/call", {"name": name, "arguments": arguments})
        if "error" in response:
            raise UpstreamError(f"MCP tool {name} failed: {response['error']}", provider="mcp")
        result = response.get("result")
        return result if isinstance(result, dict) else {"content": result}

    def _post(self, payload: dict[str, Any]) -> None:
        if self.cancel is not None and self.cancel.is_set():
            raise McpCancelled("MCP call cancelled", provider="mcp")
        if self.remaining() <= 0:
            raise McpTimeout("MCP deadline exceeded", provider="mcp")
        try:
            response = self.client.post(self.endpoint, json=payload, timeout=self.remaining())
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise UpstreamError(f"MCP post failed: {exc}", provider="mcp") from exc

    def _wait_for(self, rpc_id: int, method: str) -> dict[str, Any]:
        while self.remaining() > 0:
            event = next(self.events, None)
            if event is None:
                break
            if event.event != "message":
                continue
            message = _safe_json(event.data)
            if message and message.get("id") == rpc_id:
                return message
        raise McpTimeout(f"No MCP response for {method} (id={rpc_id})", provider="mcp")


class McpSseClient:
    """JSON-RPC over an SSE stream: GET the stream, POST requests to the announced endpoint."""

    def __init__(
        self,
        sse_url: str,
        *,
        timeout: float = 8.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.sse_url = sse_url
        self.timeout = timeout
        self.transport = transport

    @contextmanager
    def connect(self, cancel: threading.Event | None = None) -> Iterator[McpSession]:
        deadline = time.monotonic() + self.timeout
        with httpx.Client(transport=self.transport, timeout=self.timeout) as client:
            try:
                with client.stream("GET", self.sse_url, headers={"Accept": "text/event-stream"}) as response:
                    if response.status_code >= 400:
                        raise UpstreamError(f"MCP SSE connect failed: {response.status_code}", provider="mcp")
                    events = iter_sse_events(guard_lines(response.iter_lines(), deadline, cancel))
                    endpoint = self._wait_for_endpoint(events, deadline)
                    logger.debug("MCP endpoint for %s: %s", self.sse_url, endpoint)
                    yield McpSession(
                        client=client,
                        events=events,
                        endpoint=endpoint,
                        deadline=deadline,
                        cancel=cancel,
                    )
            except httpx.HTTPError as exc:
                raise UpstreamError(f"MCP stream failed: {exc}", provider="mcp") from exc

    def _wait_for_endpoint(self, events: Iterator[SseEvent], deadline: float) -> str:
        while time.monotonic() < deadline:
            event = next(events, None)
            if event is None:
                break
            if event.event == "endpoint":
                return urljoin(self.sse_url, event.data.strip())
            message = _safe_json(event.data)
            if message and message.get("endpoint"):
                return urljoin(self.sse_url, str(message["endpoint"]))
        raise McpTimeout("MCP stream did not announce an endpoint", provider="mcp")
