from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
import re
from typing import Any, Iterable, Mapping

import httpx
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI
from openai import OpenAIError

from config.settings import Settings
from knowledge.models import Turn
from runtime.errors import ConfigurationError, UpstreamError

logger = logging.getLogger(__name__)

_JSON_BLOCK_RE = re.compile(r"\{.*\}", re.DOTALL)

_STRICT_INSTRUCTIONS = (
    "You must answer ONLY in Traditional Chinese (Taiwan).",
    "DO NOT output any English words.",
    "If the content is originally English, translate it to Traditional Chinese.",
    "Do not add citations, authors, years, or notes.",
    "Answer directly.",
)


@dataclass(slots=True)
class ModelReply:
    text: str
    meta: dict[str, Any] = field(default_factory=dict)


class ChatBackend:
    """OpenAI-compatible chat completion backend normalized to ModelReply."""

    def __init__(
        self,
        *,
        name: str,
        model: str,
        api_key: str,
        base_url: str,
        provider: str,
        api_label: str,
        temperature: float = 0.3,
        max_tokens: int | None = None,
        timeout: float = 60.0,
        key_env: str = "",
    ) -> None:
        self.name = name
        self.model_name = model
        self.provider = provider
        self.api_label = api_label
        self.key_env = key_env
        self.enabled = bool(api_key)
        self.model: ChatOpenAI | None = None
        if self.enabled:
            self.model = ChatOpenAI(
                model=model,
                api_key=api_key,
                base_url=base_url,
                temperature=temperature,
                max_tokens=max_tokens,
                timeout=timeout,
                max_retries=0,
            )

    @property
    def model_info(self) -> dict[str, str]:
        return {"model": self.model_name, "api": self.api_label, "provider": self.provider}

    def complete(
        self,
        system_prompt: str,
        messages: Iterable[Turn | Mapping[str, str]],
        *,
        strictness: int = 0,
    ) -> ModelReply:
        if self.model is None:
            raise ConfigurationError(f"{self.key_env or self.name} is missing. Cannot call {self.name} model.")

        prompt = system_prompt
        if strictness > 0:
            prompt = "\n".join(_STRICT_INSTRUCTIONS) + "\n\n" + system_prompt

        logger.debug("Calling %s model=%s strictness=%s", self.name, self.model_name, strictness)
        payload = [SystemMessage(content=prompt)] + [_to_message(item) for item in messages]
        try:
            response = self.model.invoke(payload)
        except (OpenAIError, httpx.HTTPError) as exc:
            raise UpstreamError(f"{self.name} request failed: {exc}", provider=self.provider) from exc

        text = _coerce_content(response.content).strip()
        if not text:
            raise UpstreamError(f"{self.name} returned an empty completion", provider=self.provider)
        return ModelReply(text=text, meta={**self.model_info, "strictness": strictness})


def build_primary_backend(settings: Settings) -> ChatBackend:
    return ChatBackend(
        name="primary",
        model=settings.hf_model,
        api_key=settings.hf_api_token,
        base_url=settings.hf_base_url,
        provider="Hugging Face",
        api_label="Hugging Face Router",
        temperature=settings.hf_temperature,
        max_tokens=settings.hf_max_tokens,
        timeout=settings.primary_timeout_seconds,
        key_env="HF_API_TOKEN",
    )


def build_escalation_backend(settings: Settings) -> ChatBackend:
    return ChatBackend(
        name="escalation",
        model=settings.openai_chat_model,
        api_key=settings.openai_api_key,
        base_url=settings.openai_base_url,
        provider="OpenAI",
        api_label="OpenAI API",
        temperature=0.3,
        timeout=settings.escalation_timeout_seconds,
        key_env="OPENAI_API_KEY",
    )


def _to_message(item: Turn | Mapping[str, str]) -> BaseMessage:
    if isinstance(item, Turn):
        role, content = item.role, item.content
    else:
        role, content = str(item.get("role", "user")), str(item.get("content", ""))
    if role == "assistant":
        return AIMessage(content=content)
    if role == "system":
        return SystemMessage(content=content)
    return HumanMessage(content=content)


def _coerce_content(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, str):
                parts.append(item)
            elif isinstance(item, dict) and "text" in item:
                parts.append(str(item["text"]))
            else:
                parts.append(str(item))
        return "".join(parts)
    return str(content)


def try_parse_json(text: str) -> dict[str, Any] | None:
    stripped = str(text or "").strip()
    if not stripped:
        return None

    try:
        parsed = json.loads(stripped)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass

    match = _JSON_BLOCK_RE.search(stripped)
    if not match:
        return None

    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None
