from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
import logging
import re
import threading
from typing import Any, Mapping, Sequence, TypedDict

from langgraph.graph import END, START, StateGraph

from config.settings import Settings, get_settings
from connectors.authority import AuthorityService
from intents.authority import AuthorityIntent, classify_authority
from knowledge.learning import extract_answer
from knowledge.models import RetrievalHit, ToolCallResult, Turn
from knowledge.retrieval import KeywordRetriever
from runtime.backends import ChatBackend
from runtime.errors import ConfigurationError, UpstreamError
from runtime.policy import QualityGate, RetryPolicy, escalation_reasons
from runtime.quality import SanitizedText, sanitize

logger = logging.getLogger(__name__)

ENGINE_RETRIEVAL = "retrieval"
ENGINE_PRIMARY = "primary"
ENGINE_ESCALATION = "escalation"
ENGINE_TOOL_AUTHORITY = "tool_authority"
ENGINE_ERROR = "error"

HISTORY_WINDOW = 6

APOLOGY_REPLY = "抱歉，我現在無法完成這個回答，請稍後再試一次。"
RETRIEVAL_MODEL_INFO = {"model": "keyword-retrieval", "api": "local knowledge store", "provider": "local"}

SYSTEM_PROMPT = "\n".join(
    [
        "你是一位溫暖、親切、博學的聊天夥伴，請一律使用繁體中文（台灣用語）回答。",
        "1. 仔細閱讀對話歷史，延續使用者正在談的話題，不要重新開始對話。",
        "2. 直接回答問題，先給答案，再視需要問一個問題。",
        "3. 系統會提供最多 4 段知識庫片段，若有相關內容請優先引用。",
        "4. 遇到需要即時資訊的問題，若不知道最新資訊請誠實說明，不要編造。",
        "5. 不要加入引用、作者、年份或參考資料。",
    ]
)

ESCALATION_SYSTEM_PROMPT = "\n".join(
    [
        "你是專業助理。請用繁體中文（台灣用語）回答，專有名詞以外避免英文。",
        "請不要加入引用、作者、年份、註解或參考資料。",
        "優先使用提供的知識庫與外部權威資料；若內容不足，請明確說明缺少哪些資訊。",
        "如果問題需要即時資訊但你不知道最新資訊，誠實說明並建議查詢最新來源。",
    ]
)

_REALTIME_RE = re.compile(r"最近|最新|現在|今年|這個月|這個星期|當下|目前")
_HELP_REQUEST_RE = re.compile(r"可以|幫我|幫你看|幫我查|幫我找")
_SUGGESTED_LOOKUP_RE = re.compile(r"建議|查詢|網站|搜尋")
SHORT_QUESTION_CHARS = 15


@dataclass(slots=True)
class AuthorityJob:
    future: Future[ToolCallResult | None]
    cancel: threading.Event = field(default_factory=threading.Event)

    def abort(self) -> None:
        self.cancel.set()
        self.future.cancel()


class ResponderState(TypedDict, total=False):
    message: str
    history: list[Turn]
    correction_count: int
    hints: list[str]
    authority_intent: AuthorityIntent | None
    authority_job: AuthorityJob | None
    hits: list[RetrievalHit]
    authority_context: str
    authority_tool: str
    reply: str
    engine: str
    model_info: dict[str, Any]
    primary_reply: str
    primary_usable: bool
    primary_meta: dict[str, Any]
    escalation_reasons: list[str]
    trace: list[dict[str, Any]]


@dataclass(slots=True)
class ResponderResult:
    reply: str
    engine: str
    hits: list[RetrievalHit] = field(default_factory=list)
    model_info: dict[str, Any] = field(default_factory=dict)
    trace: list[dict[str, Any]] = field(default_factory=list)
    escalated: bool = False
    primary_meta: dict[str, Any] = field(default_factory=dict)
    authority_tool: str = ""


class TieredResponder:
    """Retrieval -> tool authority -> primary model with quality gate -> escalation model."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        retriever: KeywordRetriever,
        primary: ChatBackend,
        escalation: ChatBackend,
        authorities: Mapping[str, AuthorityService] | None = None,
        executor: ThreadPoolExecutor | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.retriever = retriever
        self.primary = primary
        self.escalation = escalation
        self.authorities = dict(authorities or {})
        self.executor = executor or ThreadPoolExecutor(max_workers=2, thread_name_prefix="tool-authority")
        self.retry_policy = retry_policy or RetryPolicy(max_retries=1)
        self.gate = QualityGate(
            en_ratio_threshold=self.settings.en_ratio_threshold,
            min_reply_chars=self.settings.min_reply_chars,
        )
        self.graph = self._build_graph()

    def _build_graph(self):
        builder = StateGraph(ResponderState)
        builder.add_node("retrieve", self._node_retrieve)
        builder.add_node("authority", self._node_authority)
        builder.add_node("retrieval_answer", self._node_retrieval_answer)
        builder.add_node("primary", self._node_primary)
        builder.add_node("escalate", self._node_escalate)

        builder.add_edge(START, "retrieve")
        builder.add_edge("retrieve", "authority")
        builder.add_conditional_edges(
            "authority",
            self._route_after_authority,
            {
                "done": END,
                "retrieval_answer": "retrieval_answer",
                "primary": "primary",
            },
        )
        builder.add_edge("retrieval_answer", END)
        builder.add_conditional_edges(
            "primary",
            self._route_after_primary,
            {
                "done": END,
                "escalate": "escalate",
            },
        )
        builder.add_edge("escalate", END)
        return builder.compile()

    def respond(
        self,
        message: str,
        *,
        history: Sequence[Turn] | None = None,
        correction_count: int = 0,
    ) -> ResponderResult:
        history_list = list(history or [])
        intent = classify_authority(message)
        initial_state: ResponderState = {
            "message": message,
            "history": history_list,
            "correction_count": int(correction_count),
            "hints": context_hints(message, history_list),
            "authority_intent": intent,
            "authority_job": self._submit_authority(intent, message),
            "trace": [],
        }
        final_state = self.graph.invoke(initial_state)

        engine = final_state.get("engine", ENGINE_ERROR)
        return ResponderResult(
            reply=final_state.get("reply") or APOLOGY_REPLY,
            engine=engine,
            hits=list(final_state.get("hits", [])),
            model_info=dict(final_state.get("model_info", {})),
            trace=list(final_state.get("trace", [])),
            escalated=engine == ENGINE_ESCALATION,
            primary_meta=dict(final_state.get("primary_meta", {})),
            authority_tool=final_state.get("authority_tool", ""),
        )

    def _submit_authority(
        self,
        intent: AuthorityIntent | None,
        message: str,
    ) -> AuthorityJob | None:
        if intent is None:
            return None
        service = self.authorities.get(intent.domain)
        if service is None:
            logger.debug("No authority service configured for %s", intent.domain)
            return None
        cancel = threading.Event()
        return AuthorityJob(self.executor.submit(service.consult, message, cancel), cancel)

    def _node_retrieve(self, state: ResponderState) -> ResponderState:
        hits = self.retriever.search(state["message"], top_k=self.settings.rag_top_k)
        event = {
            "source": "retrieval",
            "hits": len(hits),
            "top_score": round(hits[0].score, 4) if hits else 0.0,
        }
        return {"hits": hits, "trace": list(state.get("trace", [])) + [event]}

    def _node_authority(self, state: ResponderState) -> ResponderState:
        job = state.get("authority_job")
        intent = state.get("authority_intent")
        if job is None or intent is None:
            return {}

        trace = list(state.get("trace", []))
        service = self.authorities[intent.domain]
        try:
            result = job.future.result(timeout=self.settings.mcp_timeout_seconds)
        except FuturesTimeout:
            job.abort()
            logger.warning("Tool authority %s timed out; continuing without it", service.name)
            return {"trace": trace + [{"source": "tool_authority", "status": "timeout"}]}
        except (UpstreamError, ConfigurationError) as exc:
            logger.warning("Tool authority %s failed: %s", service.name, exc)
            return {"trace": trace + [{"source": "tool_authority", "status": "error"}]}
        except Exception:
            logger.exception("Tool authority %s raised unexpectedly", service.name)
            return {"trace": trace + [{"source": "tool_authority", "status": "error"}]}

        if result is None:
            return {"trace": trace + [{"source": "tool_authority", "status": "empty"}]}

        event = {"source": "tool_authority", "status": "ok", "tool": result.tool_name}
        answer = service.answer(result)
        if answer:
            return {
                "reply": answer,
                "engine": ENGINE_TOOL_AUTHORITY,
                "model_info": {
                    "model": f"{service.name} MCP",
                    "api": "MCP over SSE",
                    "provider": "MCP",
                    "tool": result.tool_name,
                },
                "authority_tool": result.tool_name,
                "trace": trace + [event],
            }
        # Not directly answerable: hand the raw text to the models as context.
        return {
            "authority_context": result.raw_content,
            "authority_tool": result.tool_name,
            "trace": trace + [event],
        }

    def _route_after_authority(self, state: ResponderState) -> str:
        if state.get("reply"):
            return "done"
        hits = state.get("hits", [])
        if hits and hits[0].is_learned and hits[0].score >= self.settings.direct_answer_score:
            return "retrieval_answer"
        return "primary"

    def _node_retrieval_answer(self, state: ResponderState) -> ResponderState:
        best = state["hits"][0]
        answer = extract_answer(best.text) or best.text
        return {
            "reply": answer,
            "engine": ENGINE_RETRIEVAL,
            "model_info": dict(RETRIEVAL_MODEL_INFO),
            "trace": list(state.get("trace", []))
            + [{"source": "retrieval_answer", "chunk_id": best.chunk_id, "score": round(best.score, 4)}],
        }

    def _node_primary(self, state: ResponderState) -> ResponderState:
        trace = list(state.get("trace", []))
        hits = state.get("hits", [])
        correction_count = state.get("correction_count", 0)

        forced = escalation_reasons(correction_count=correction_count, hits=hits, reply=None)
        if forced and self.escalation.enabled:
            return {
                "escalation_reasons": forced,
                "trace": trace + [{"source": "escalation_check", "reasons": forced}],
            }

        system_prompt, messages = build_primary_prompt(
            state["message"],
            hits=hits,
            history=state.get("history", []),
            hints=state.get("hints", []),
        )

        attempts: list[tuple[SanitizedText, dict[str, Any], list[str]]] = []
        for attempt in range(self.retry_policy.attempts):
            strictness = self.retry_policy.strictness_for(attempt)
            try:
                reply = self.primary.complete(system_prompt, messages, strictness=strictness)
            except (ConfigurationError, UpstreamError) as exc:
                logger.warning("Primary model failed, escalating: %s", exc)
                reasons = forced + ["primary_failed"]
                return {
                    "escalation_reasons": reasons,
                    "trace": trace + [{"source": "primary", "status": "error", "reasons": reasons}],
                }
            cleaned = sanitize(reply.text, keep_chinese_only=self.settings.keep_chinese_only)
            failures = self.gate.failure_reasons(cleaned.text, cleaned.report)
            attempts.append((cleaned, reply.meta, failures))
            trace.append(
                {
                    "source": "quality_gate",
                    "attempt": attempt,
                    "strictness": strictness,
                    "passed": not failures,
                    "failures": failures,
                    **cleaned.report.to_dict(),
                }
            )
            if not failures:
                break

        cleaned, meta, failures = attempts[-1]
        gate_ok = not failures
        primary_meta = {**meta, "quality": cleaned.report.to_dict(), "used_retry": len(attempts) > 1}
        reasons = escalation_reasons(correction_count=correction_count, hits=hits, reply=cleaned.text)
        if not gate_ok:
            reasons = ["quality_gate"] + reasons
        if not reasons:
            return {
                "reply": cleaned.text,
                "engine": ENGINE_PRIMARY,
                "model_info": self.primary.model_info,
                "primary_meta": primary_meta,
                "trace": trace,
            }
        return {
            "primary_reply": cleaned.text,
            "primary_usable": bool(cleaned.text) and not cleaned.report.garbled,
            "primary_meta": primary_meta,
            "escalation_reasons": reasons,
            "trace": trace + [{"source": "escalation_check", "reasons": reasons}],
        }

    @staticmethod
    def _route_after_primary(state: ResponderState) -> str:
        return "done" if state.get("reply") else "escalate"

    def _node_escalate(self, state: ResponderState) -> ResponderState:
        trace = list(state.get("trace", []))
        if not self.escalation.enabled:
            primary_reply = state.get("primary_reply", "")
            if primary_reply and state.get("primary_usable"):
                logger.warning("Escalation model not configured; keeping primary reply")
                return {
                    "reply": primary_reply,
                    "engine": ENGINE_PRIMARY,
                    "model_info": self.primary.model_info,
                    "trace": trace + [{"source": "escalation", "status": "disabled"}],
                }
            logger.warning("Escalation model not configured and no usable primary reply")
            return {
                "reply": APOLOGY_REPLY,
                "engine": ENGINE_ERROR,
                "trace": trace + [{"source": "escalation", "status": "disabled"}],
            }

        system_prompt, messages = build_escalation_prompt(
            state["message"],
            hits=state.get("hits", []),
            history=state.get("history", []),
            authority_context=state.get("authority_context", ""),
        )
        try:
            reply = self.escalation.complete(system_prompt, messages)
        except (ConfigurationError, UpstreamError) as exc:
            logger.warning("Escalation model failed: %s", exc)
            return {
                "reply": APOLOGY_REPLY,
                "engine": ENGINE_ERROR,
                "model_info": self.escalation.model_info,
                "trace": trace + [{"source": "escalation", "status": "error"}],
            }

        cleaned = sanitize(reply.text, keep_chinese_only=False)
        return {
            "reply": cleaned.text or reply.text,
            "engine": ENGINE_ESCALATION,
            "model_info": self.escalation.model_info,
            "trace": trace
            + [
                {
                    "source": "escalation",
                    "status": "ok",
                    "reasons": state.get("escalation_reasons", []),
                    **cleaned.report.to_dict(),
                }
            ],
        }


def context_hints(message: str, history: Sequence[Turn]) -> list[str]:
    hints: list[str] = []
    if len(message) < SHORT_QUESTION_CHARS:
        hints.append(
            "注意：這是一個簡短的問句，可能是對之前對話的回應。請根據對話歷史理解用戶意圖，延續之前的話題。"
        )
    if _REALTIME_RE.search(message):
        hints.append(
            "重要提示：用戶問的是需要即時資訊的問題。若不知道最新資訊請誠實說明，不要編造，並可建議查詢最新資訊來源。"
        )
    answered_with_lookup = any(
        turn.role == "assistant" and _SUGGESTED_LOOKUP_RE.search(turn.content) for turn in history
    )
    if _HELP_REQUEST_RE.search(message) and answered_with_lookup:
        hints.append(
            "重要：用戶在回應你剛才的建議，是在問你能不能幫忙查詢。請說明能力限制並提供其他幫助方式，不要重新開始對話。"
        )
    return hints


def retrieval_block(hits: Sequence[RetrievalHit]) -> str:
    if not hits:
        return "【知識庫檢索】\n(目前沒有可用知識片段)"
    lines = [
        f"({idx}) source={hit.source}, score={hit.score:.3f}\n{hit.text}"
        for idx, hit in enumerate(hits, start=1)
    ]
    return "【知識庫檢索】\n" + "\n\n".join(lines)


def recent_history(history: Sequence[Turn], window: int = HISTORY_WINDOW) -> list[Turn]:
    return [turn for turn in list(history)[-window:] if turn.role in {"user", "assistant"}]


def build_primary_prompt(
    message: str,
    *,
    hits: Sequence[RetrievalHit],
    history: Sequence[Turn],
    hints: Sequence[str] = (),
) -> tuple[str, list[Turn]]:
    parts = [retrieval_block(hits)]
    parts.extend(hints)
    parts.append(f"【使用者問題】\n{message}")
    return SYSTEM_PROMPT, recent_history(history) + [Turn(role="user", content="\n\n".join(parts))]


def build_escalation_prompt(
    message: str,
    *,
    hits: Sequence[RetrievalHit],
    history: Sequence[Turn],
    authority_context: str = "",
) -> tuple[str, list[Turn]]:
    parts = [retrieval_block(hits).replace("【知識庫檢索】", "【知識庫】")]
    if authority_context.strip():
        parts.append(f"【外部權威資料】\n{authority_context.strip()}")
    parts.append(f"【使用者問題】\n{message}")
    return ESCALATION_SYSTEM_PROMPT, recent_history(history) + [Turn(role="user", content="\n\n".join(parts))]
