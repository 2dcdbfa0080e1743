from __future__ import annotations

import json
import logging
import re
import threading
from typing import Any, Mapping

import httpx

from connectors.mcp_client import McpSession, McpSseClient
from intents.accounting import (
    detect_accounting_labels,
    extract_args,
    pick_tool_intent,
    resolve_tool_name,
    tool_name_of,
)
from knowledge.models import ToolCallResult
from runtime.backends import try_parse_json

logger = logging.getLogger(__name__)

MODEL_INFO = {"model": "Accounting MCP", "api": "MCP over SSE", "provider": "MCP"}
_BALANCE_TEXT_RE = re.compile(r"(?:balance|餘額|剩餘)\s*[:：]?\s*(-?\d+(?:\.\d+)?)", re.IGNORECASE)


class AccountingAuthority:
    """Ledger tools reached through an MCP server; each message line is one operation."""

    name = "accounting"

    def __init__(self, client: McpSseClient) -> None:
        self.client = client

    @classmethod
    def from_url(
        cls,
        sse_url: str,
        *,
        timeout: float,
        transport: httpx.BaseTransport | None = None,
    ) -> AccountingAuthority:
        return cls(McpSseClient(sse_url, timeout=timeout, transport=transport))

    def consult(self, text: str, cancel: threading.Event | None = None) -> ToolCallResult | None:
        question = str(text or "").strip()
        if not question:
            return None

        segments = [segment.strip() for segment in question.splitlines() if segment.strip()]
        labels = detect_accounting_labels(question)
        logger.info("Accounting operations requested: %s", ", ".join(labels) or "unknown")
        with self.client.connect(cancel) as session:
            session.initialize()
            tools = session.list_tools()
            if not tools:
                logger.warning("Accounting MCP exposes no tools")
                return None

            if len(segments) <= 1:
                return self._run_tool(session, tools, question)

            results = [result for result in (self._run_tool(session, tools, seg) for seg in segments) if result]
            if not results:
                return None
            return ToolCallResult(
                tool_name="batch",
                raw_content="\n".join(result.raw_content for result in results),
                parsed_fields={"results": results},
                input_text=question,
            )

    def answer(self, result: ToolCallResult) -> str | None:
        return format_tool_answer(result)

    def _run_tool(
        self,
        session: McpSession,
        tools: list[dict[str, Any]],
        segment: str,
    ) -> ToolCallResult | None:
        intent = pick_tool_intent(segment)
        tool_name = resolve_tool_name(intent, tools)
        if not tool_name:
            logger.warning("Accounting MCP could not resolve a tool for %r", segment)
            return None
        schema = next((tool for tool in tools if tool_name_of(tool) == tool_name), None)
        args = extract_args(intent or tool_name, segment, schema=schema)
        if args is None:
            logger.info("Accounting MCP skipped %s: no arguments derivable", tool_name)
            return None

        result = session.call_tool(tool_name, args)
        raw_content = content_text(result)
        return ToolCallResult(
            tool_name=tool_name,
            raw_content=raw_content,
            parsed_fields=parse_tool_content(raw_content, result),
            input_text=segment,
        )


def content_text(result: Mapping[str, Any]) -> str:
    content = result.get("content")
    if isinstance(content, list):
        return "\n".join(
            str(item.get("text", "")) for item in content if isinstance(item, Mapping) and item.get("text")
        )
    if isinstance(content, str):
        return content
    if content is None:
        return ""
    return json.dumps(content, ensure_ascii=False)


def parse_tool_content(content: str, raw: Mapping[str, Any] | None = None) -> dict[str, Any] | None:
    """Best-effort structured view of a tool result; None leaves only the raw text."""
    parsed = try_parse_json(content)
    if parsed is not None:
        return parsed
    if raw:
        structured = raw.get("structuredContent")
        if isinstance(structured, dict):
            return structured
        nested = raw.get("result")
        if isinstance(nested, str):
            return try_parse_json(nested)
        if isinstance(nested, dict):
            return nested
    return None


def extract_balance(obj: object) -> float | None:
    if not isinstance(obj, Mapping):
        return None
    for key in ("balance", "available_balance", "total_balance", "cash_balance"):
        if obj.get(key) is not None:
            return obj[key]
    for key in ("summary", "result", "data", "account_summary"):
        nested = obj.get(key)
        if isinstance(nested, Mapping) and nested.get("balance") is not None:
            return nested["balance"]
    nested_result = obj.get("result")
    if isinstance(nested_result, str):
        value = extract_balance(try_parse_json(nested_result))
        if value is not None:
            return value
    content = obj.get("content")
    if isinstance(content, str):
        match = _BALANCE_TEXT_RE.search(content)
        if match:
            return float(match.group(1))
        return extract_balance(try_parse_json(content))
    return None


def _first_present(*values: Any) -> Any:
    for value in values:
        if value is not None:
            return value
    return None


def _dig(obj: Mapping[str, Any], *path: str) -> Any:
    current: Any = obj
    for key in path:
        if not isinstance(current, Mapping):
            return None
        current = current.get(key)
    return current


def _format_parsed(tool_name: str, parsed: Mapping[str, Any]) -> str | None:
    if parsed.get("success") is False:
        error = parsed.get("error")
        return f"操作失敗：{error}" if error else "操作失敗，請稍後再試。"

    if tool_name == "add_transaction":
        return str(parsed.get("message") or "已新增交易。")

    if tool_name == "get_balance":
        balance = extract_balance(parsed)
        text = f"目前餘額 NTD {balance}" if balance is not None else "已取得餘額資訊，但尚未回傳餘額數字。"
        total = parsed.get("total_transactions")
        return f"{text}（共 {total} 筆交易）" if total is not None else text

    if tool_name == "list_transactions":
        transactions = _first_present(
            parsed.get("transactions"),
            parsed.get("items"),
            parsed.get("records"),
            _dig(parsed, "data", "transactions"),
            _dig(parsed, "data", "items"),
            _dig(parsed, "result", "transactions"),
            _dig(parsed, "result", "items"),
        )
        transactions = transactions if isinstance(transactions, list) else []
        total = _first_present(
            _dig(parsed, "pagination", "total_count"),
            _dig(parsed, "data", "pagination", "total_count"),
            _dig(parsed, "result", "pagination", "total_count"),
            parsed.get("total_count"),
            parsed.get("total"),
            len(transactions),
        )
        shown = [item for item in transactions[:5] if isinstance(item, Mapping)]
        lines = [f"交易筆數 {total}，顯示 {len(shown)} 筆："]
        for item in shown:
            line = f"- {item.get('date', '')} {item.get('category', '')} NTD {item.get('amount', '')} {item.get('description') or ''}"
            lines.append(line.strip())
        return "\n".join(lines)

    if tool_name == "get_monthly_summary":
        income = _first_present(_dig(parsed, "summary", "totals", "income"), _dig(parsed, "data", "summary", "totals", "income"), parsed.get("total_income"))
        expense = _first_present(_dig(parsed, "summary", "totals", "expense"), _dig(parsed, "data", "summary", "totals", "expense"), parsed.get("total_expense"))
        net = _first_present(_dig(parsed, "summary", "totals", "net_flow"), _dig(parsed, "data", "summary", "totals", "net_flow"), parsed.get("net_flow"))
        return f"本月收入 NTD {income}，支出 NTD {expense}，淨流 NTD {net}。"

    if tool_name == "get_categories":
        categories = _first_present(
            _dig(parsed, "categories", "all"),
            _dig(parsed, "data", "categories", "all"),
            parsed.get("categories"),
            _dig(parsed, "data", "categories"),
        )
        if isinstance(categories, list):
            names = [
                str(item.get("name") or item.get("id"))
                for item in categories
                if isinstance(item, Mapping) and (item.get("name") or item.get("id"))
            ]
            if names:
                return f"分類清單：{'、'.join(names)}"
    return None


def format_tool_answer(result: ToolCallResult) -> str | None:
    if result.tool_name == "batch":
        results = (result.parsed_fields or {}).get("results") or []
        lines: list[str] = []
        for item in results:
            summary = None
            if item.parsed_fields is not None:
                summary = _format_parsed(item.tool_name, item.parsed_fields)
            lines.append(f"【{item.input_text or item.tool_name or '記帳操作'}】")
            lines.append(summary or "已完成。")
            lines.append("")
        return "\n".join(lines).strip() or "已完成多筆記帳操作。"

    if result.parsed_fields is not None:
        summary = _format_parsed(result.tool_name, result.parsed_fields)
        if summary:
            return summary
    return result.raw_content.strip() or None

