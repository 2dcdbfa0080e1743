from __future__ import annotations

import logging
import threading
from typing import Protocol

from config.settings import Settings
from connectors.accounting import AccountingAuthority, content_text, parse_tool_content
from connectors.mcp_client import McpSseClient
from intents.accounting import extract_args, resolve_tool_name, tool_name_of
from knowledge.models import ToolCallResult

logger = logging.getLogger(__name__)


class AuthorityService(Protocol):
    name: str

    def consult(self, text: str, cancel: threading.Event | None = None) -> ToolCallResult | None: ...

    def answer(self, result: ToolCallResult) -> str | None: ...


class McpReferenceAuthority:
    """Generic MCP tool server; its output is used as model context unless it carries an answer field."""

    def __init__(self, name: str, client: McpSseClient) -> None:
        self.name = name
        self.client = client

    def consult(self, text: str, cancel: threading.Event | None = None) -> ToolCallResult | None:
        with self.client.connect(cancel) as session:
            session.initialize()
            tools = session.list_tools()
            tool_name = resolve_tool_name(None, tools)
            if not tool_name:
                logger.warning("%s MCP exposes no tools", self.name)
                return None
            schema = next((tool for tool in tools if tool_name_of(tool) == tool_name), None)
            args = extract_args(tool_name, text, schema=schema) or {"question": text}
            result = session.call_tool(tool_name, args)

        raw_content = content_text(result)
        if not raw_content.strip():
            return None
        return ToolCallResult(
            tool_name=tool_name,
            raw_content=raw_content,
            parsed_fields=parse_tool_content(raw_content, result),
            input_text=text,
        )

    def answer(self, result: ToolCallResult) -> str | None:
        answer = (result.parsed_fields or {}).get("answer")
        if not answer:
            return None
        return str(answer).strip() or None


def build_authorities(settings: Settings) -> dict[str, AuthorityService]:
    services: dict[str, AuthorityService] = {}
    if settings.mcp_accounting_sse_url:
        services["accounting"] = AccountingAuthority.from_url(
            settings.mcp_accounting_sse_url,
            timeout=settings.mcp_timeout_seconds,
        )
    for domain, url in (
        ("medical", settings.mcp_medical_sse_url),
        ("reference", settings.mcp_reference_sse_url),
    ):
        if url:
            services[domain] = McpReferenceAuthority(
                domain,
                McpSseClient(url, timeout=settings.mcp_timeout_seconds),
            )
    return services
