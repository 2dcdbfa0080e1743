from __future__ import annotations

from collections import deque
import json
import threading
import time
from typing import Any, Iterator

import httpx
import pytest

from connectors.accounting import AccountingAuthority, extract_balance, format_tool_answer
from connectors.authority import McpReferenceAuthority
from connectors.mcp_client import McpCancelled, McpSseClient, McpTimeout, guard_lines, iter_sse_events
from knowledge.models import ToolCallResult

SSE_URL = "http://mcp.test/sse"

LEDGER_TOOLS = [
    {
        "name": "add_transaction",
        "description": "Add a ledger transaction",
        "inputSchema": {"properties": {"amount": {}, "category": {}, "description": {}, "date": {}}},
    },
    {"name": "get_balance", "description": "Get current balance", "inputSchema": {"properties": {"detailed": {}}}},
]


class FakeMcpServer:
    """SSE stream fed by the POST handler so responses arrive on the open GET."""

    def __init__(self, tools: list[dict[str, Any]], results: dict[str, Any], *, answer_calls: bool = True) -> None:
        self.tools = tools
        self.results = results
        self.answer_calls = answer_calls
        self.outbox: deque[str] = deque()
        self.received: list[dict[str, Any]] = []
        self.post_paths: list[str] = []

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            self.outbox.append("event: endpoint\ndata: /messages?session_id=abc\n\n")
            return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=self._stream())

        self.post_paths.append(request.url.path)
        payload = json.loads(request.content)
        self.received.append(payload)
        if "id" in payload:
            result = self._result_for(payload)
            if result is not None:
                message = {"jsonrpc": "2.0", "id": payload["id"], "result": result}
                self.outbox.append(f"event: message\ndata: {json.dumps(message, ensure_ascii=False)}\n\n")
        return httpx.Response(202)

    def _result_for(self, payload: dict[str, Any]) -> dict[str, Any] | None:
        method = payload["method"]
        if method == "initialize":
            return {"protocolVersion": "2024-11-05", "capabilities": {}, "serverInfo": {"name": "fake"}}
        if method == "tools/list":
            return {"tools": self.tools}
        if method == "tools/call" and self.answer_calls:
            name = payload["params"]["name"]
            return {"content": [{"type": "text", "text": json.dumps(self.results[name], ensure_ascii=False)}]}
        return None

    def _stream(self) -> Iterator[bytes]:
        while self.outbox:
            yield self.outbox.popleft().encode("utf-8")

    def calls(self) -> list[dict[str, Any]]:
        return [item["params"] for item in self.received if item["method"] == "tools/call"]


def test_iter_sse_events_groups_lines() -> None:
    lines = iter([": keepalive", "event: endpoint", "data: /messages", "", "data: {\"a\": 1}", "data: more", ""])
    events = list(iter_sse_events(lines))
    assert [(event.event, event.data) for event in events] == [
        ("endpoint", "/messages"),
        ("message", "{\"a\": 1}\nmore"),
    ]


def test_handshake_and_tool_call() -> None:
    server = FakeMcpServer(LEDGER_TOOLS, {"get_balance": {"balance": 1200}})
    client = McpSseClient(SSE_URL, timeout=2.0, transport=server.transport())

    with client.connect() as session:
        assert session.endpoint == "http://mcp.test/messages?session_id=abc"
        session.initialize()
        tools = session.list_tools()
        result = session.call_tool("get_balance", {})

    assert [tool["name"] for tool in tools] == ["add_transaction", "get_balance"]
    assert json.loads(result["content"][0]["text"]) == {"balance": 1200}
    assert [item["method"] for item in server.received] == [
        "initialize",
        "notifications/initialized",
        "tools/list",
        "tools/call",
    ]
    assert set(server.post_paths) == {"/messages"}


def test_missing_response_times_out() -> None:
    server = FakeMcpServer(LEDGER_TOOLS, {}, answer_calls=False)
    client = McpSseClient(SSE_URL, timeout=2.0, transport=server.transport())

    with pytest.raises(McpTimeout):
        with client.connect() as session:
            session.initialize()
            session.list_tools()
            session.call_tool("get_balance", {})


def _keepalive_transport() -> httpx.MockTransport:
    """Announces the endpoint, then only sends comment pings and never answers."""

    def stream() -> Iterator[bytes]:
        yield b"event: endpoint\ndata: /messages?session_id=abc\n\n"
        for _ in range(100):
            time.sleep(0.05)
            yield b": ping\n\n"

    def handle(request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=stream())
        return httpx.Response(202)

    return httpx.MockTransport(handle)


def test_keepalive_pings_do_not_outlive_deadline() -> None:
    client = McpSseClient(SSE_URL, timeout=0.4, transport=_keepalive_transport())
    started = time.monotonic()

    with pytest.raises(McpTimeout):
        with client.connect() as session:
            session.initialize()

    assert time.monotonic() - started < 2.0


def test_cancel_event_aborts_open_stream() -> None:
    client = McpSseClient(SSE_URL, timeout=30.0, transport=_keepalive_transport())
    cancel = threading.Event()
    timer = threading.Timer(0.2, cancel.set)
    timer.start()
    started = time.monotonic()

    try:
        with pytest.raises(McpCancelled):
            with client.connect(cancel) as session:
                session.initialize()
    finally:
        timer.cancel()

    assert time.monotonic() - started < 2.0


def test_guard_lines_checks_every_line() -> None:
    expired = guard_lines(iter([": ping", ": ping"]), deadline=time.monotonic() - 1)
    with pytest.raises(McpTimeout):
        next(expired)


def test_accounting_authority_books_expense() -> None:
    server = FakeMcpServer(LEDGER_TOOLS, {"add_transaction": {"success": True, "message": "已新增：午餐 -50"}})
    authority = AccountingAuthority.from_url(SSE_URL, timeout=2.0, transport=server.transport())

    result = authority.consult("花了50塊吃午餐")

    assert result is not None
    assert result.tool_name == "add_transaction"
    assert server.calls() == [
        {"name": "add_transaction", "arguments": {"amount": -50, "category": "food", "description": "午餐"}}
    ]
    assert authority.answer(result) == "已新增：午餐 -50"


def test_accounting_authority_skips_add_without_amount() -> None:
    server = FakeMcpServer(LEDGER_TOOLS, {})
    authority = AccountingAuthority.from_url(SSE_URL, timeout=2.0, transport=server.transport())

    assert authority.consult("記一筆午餐") is None
    assert server.calls() == []


def test_multi_line_message_runs_as_batch() -> None:
    server = FakeMcpServer(
        LEDGER_TOOLS,
        {
            "add_transaction": {"success": True, "message": "已新增交易"},
            "get_balance": {"balance": 950, "total_transactions": 3},
        },
    )
    authority = AccountingAuthority.from_url(SSE_URL, timeout=2.0, transport=server.transport())

    result = authority.consult("花了50塊吃午餐\n查一下餘額")

    assert result is not None
    assert result.tool_name == "batch"
    answer = authority.answer(result)
    assert "【花了50塊吃午餐】\n已新增交易" in answer
    assert "目前餘額 NTD 950（共 3 筆交易）" in answer


def test_reference_authority_answers_from_answer_field() -> None:
    tools = [{"name": "lookup", "description": "Reference lookup", "inputSchema": {"properties": {"question": {}}}}]
    server = FakeMcpServer(tools, {"lookup": {"answer": "今日美元匯率約 31.5"}})
    authority = McpReferenceAuthority("reference", McpSseClient(SSE_URL, timeout=2.0, transport=server.transport()))

    result = authority.consult("美元匯率怎麼算")

    assert result is not None
    assert server.calls() == [{"name": "lookup", "arguments": {"question": "美元匯率怎麼算"}}]
    assert authority.answer(result) == "今日美元匯率約 31.5"


def test_format_tool_answer_variants() -> None:
    failed = ToolCallResult("add_transaction", "{}", {"success": False, "error": "金額錯誤"})
    assert format_tool_answer(failed) == "操作失敗：金額錯誤"

    listing = ToolCallResult(
        "list_transactions",
        "{}",
        {
            "transactions": [
                {"date": "2025-03-01", "category": "food", "amount": -120, "description": "午餐"},
                {"date": "2025-03-02", "category": "transport", "amount": -30},
            ],
            "pagination": {"total_count": 12},
        },
    )
    assert format_tool_answer(listing) == (
        "交易筆數 12，顯示 2 筆：\n- 2025-03-01 food NTD -120 午餐\n- 2025-03-02 transport NTD -30"
    )

    unparsed = ToolCallResult("get_balance", "餘額：300", None)
    assert format_tool_answer(unparsed) == "餘額：300"


def test_extract_balance_from_nested_shapes() -> None:
    assert extract_balance({"summary": {"balance": 88}}) == 88
    assert extract_balance({"result": "{\"balance\": 42}"}) == 42
    assert extract_balance({"content": "目前餘額: 77"}) == 77.0
    assert extract_balance("nope") is None
