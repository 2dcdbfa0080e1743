from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any, Mapping

from config.settings import Settings, ensure_directories, get_settings
from connectors import weather_api
from connectors.authority import AuthorityService, build_authorities
from connectors.weather_api import WeatherApi, build_weather_reply
from intents import accounting, weather
from knowledge.learning import LearningLoop
from knowledge.models import IntentState, Turn
from knowledge.retrieval import KeywordRetriever
from knowledge.storage.note_store import NoteStore
from runtime.backends import build_escalation_backend, build_primary_backend
from runtime.errors import ConfigurationError, UpstreamError
from runtime.policy import is_correction
from runtime.responder import (
    APOLOGY_REPLY,
    ENGINE_ERROR,
    ENGINE_TOOL_AUTHORITY,
    TieredResponder,
)
from runtime.session import SessionStore
from runtime.suggestions import WEATHER_REPLY_SUGGESTIONS, build_suggestions

logger = logging.getLogger(__name__)

ENGINE_WEATHER = "weather"

WEATHER_CLARIFY_PROMPT = "請問您想查詢哪個城市或地區的天氣呢？（例如：台北、台中、高雄，或北部、中部、南部、東部、全台）"
WEATHER_CANCEL_REPLY = "好的，有需要再告訴我想查哪裡的天氣。"
WEATHER_RETRY_LATER_REPLY = "抱歉，天氣資料暫時無法解析，請稍後再試。"
AMOUNT_PROMPT = "請問這筆金額是多少呢？（例如：150元）"
ACCOUNTING_CANCEL_REPLY = "好的，這筆先不記。"
EMPTY_MESSAGE_REPLY = "請輸入想聊的內容。"


@dataclass(slots=True)
class ChatReply:
    reply: str
    session_id: str
    engine: str
    suggestions: list[str] | None = None
    model_info: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "reply": self.reply,
            "sessionId": self.session_id,
            "engine": self.engine,
            "suggestions": self.suggestions,
            "modelInfo": self.model_info,
        }


class ChatService:
    """One conversational turn: slot filling, weather, then the tiered responder."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        sessions: SessionStore | None = None,
        responder: TieredResponder | None = None,
        weather_client: WeatherApi | None = None,
        authorities: Mapping[str, AuthorityService] | None = None,
        learning: LearningLoop | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        ensure_directories(self.settings)
        self.sessions = sessions or SessionStore(
            self.settings.sessions_dir,
            max_turns=self.settings.max_session_turns,
        )
        self.authorities = dict(authorities) if authorities is not None else build_authorities(self.settings)
        self.notes = learning.notes if learning else NoteStore(self.settings.learned_dir)
        self.learning = learning or LearningLoop(self.notes, enabled=self.settings.learning_enabled)
        self.responder = responder or TieredResponder(
            self.settings,
            retriever=KeywordRetriever(self.settings, notes=self.notes),
            primary=build_primary_backend(self.settings),
            escalation=build_escalation_backend(self.settings),
            authorities=self.authorities,
        )
        self.weather = weather_client or WeatherApi(self.settings)

    def handle(self, message: str, session_id: str | None = None) -> ChatReply:
        text = str(message or "").strip()
        sid = self.sessions.get_or_create(session_id)
        if not text:
            return ChatReply(reply=EMPTY_MESSAGE_REPLY, session_id=sid, engine=ENGINE_ERROR)
        try:
            reply = self._handle_turn(text, sid)
        except Exception:
            logger.exception("Chat turn failed session=%s", sid)
            return ChatReply(reply=APOLOGY_REPLY, session_id=sid, engine=ENGINE_ERROR)

        self.sessions.append_turns(
            sid,
            [Turn(role="user", content=text), Turn(role="assistant", content=reply.reply)],
        )
        return reply

    def _handle_turn(self, text: str, sid: str) -> ChatReply:
        state = self.sessions.get_intent_state(sid)
        if state is not None and state.is_open:
            resolved = self._resolve_open_slot(text, sid, state)
            if resolved is not None:
                return resolved

        found = weather.classify(text)
        if found is not None:
            self.sessions.bump_correction(sid, False)
            return self._answer_weather(text, sid, found)

        correction_count = self.sessions.bump_correction(sid, is_correction(text))

        booking = accounting.classify(text)
        if (
            booking is not None
            and booking.tool_intent == "add_transaction"
            and booking.amount is None
            and "accounting" in self.authorities
        ):
            self.sessions.set_intent_state(
                sid,
                IntentState(intent="accounting", done=False, slots={"pending_text": text}),
            )
            return ChatReply(reply=AMOUNT_PROMPT, session_id=sid, engine=ENGINE_TOOL_AUTHORITY)

        history = self.sessions.get_history(sid)
        result = self.responder.respond(text, history=history, correction_count=correction_count)
        logger.info(
            "Turn answered session=%s engine=%s hits=%d escalated=%s",
            sid,
            result.engine,
            len(result.hits),
            result.escalated,
        )

        self.learning.consider(text, result.reply, result.engine)

        return ChatReply(
            reply=result.reply,
            session_id=sid,
            engine=result.engine,
            suggestions=build_suggestions(text, result.reply),
            model_info=result.model_info,
        )

    def _resolve_open_slot(self, text: str, sid: str, state: IntentState) -> ChatReply | None:
        if state.intent == "weather":
            return self._resolve_weather_slot(text, sid, state)
        if state.intent == "accounting":
            return self._resolve_accounting_slot(text, sid, state)
        logger.warning("Dropping unknown open intent %r for session %s", state.intent, sid)
        self.sessions.set_intent_state(sid, None)
        return None

    def _resolve_weather_slot(self, text: str, sid: str, state: IntentState) -> ChatReply:
        found = weather.resolve_location(text)
        if found.resolved:
            if not found.day or found.day == "today":
                found.day = str(state.slots.get("day") or "today")
            return self._answer_weather(text, sid, found)
        if weather.is_cancellation(text):
            self.sessions.set_intent_state(sid, IntentState(intent=None, done=True))
            return ChatReply(reply=WEATHER_CANCEL_REPLY, session_id=sid, engine=ENGINE_WEATHER)
        return ChatReply(reply=WEATHER_CLARIFY_PROMPT, session_id=sid, engine=ENGINE_WEATHER)

    def _resolve_accounting_slot(self, text: str, sid: str, state: IntentState) -> ChatReply | None:
        pending = str(state.slots.get("pending_text") or "")
        if accounting.detect_amount(text) is None:
            self.sessions.set_intent_state(sid, IntentState(intent=None, done=True))
            if weather.is_cancellation(text):
                return ChatReply(reply=ACCOUNTING_CANCEL_REPLY, session_id=sid, engine=ENGINE_TOOL_AUTHORITY)
            # Not an amount: treat it as a fresh message.
            return None

        self.sessions.set_intent_state(sid, IntentState(intent="accounting", done=True))
        service = self.authorities.get("accounting")
        if service is None:
            return None
        merged = f"{pending} {text}".strip()
        try:
            result = service.consult(merged)
        except (ConfigurationError, UpstreamError) as exc:
            logger.warning("Accounting tool failed for pending entry: %s", exc)
            return ChatReply(reply=APOLOGY_REPLY, session_id=sid, engine=ENGINE_ERROR)
        answer = service.answer(result) if result is not None else None
        if not answer:
            return ChatReply(reply=APOLOGY_REPLY, session_id=sid, engine=ENGINE_ERROR)
        return ChatReply(
            reply=answer,
            session_id=sid,
            engine=ENGINE_TOOL_AUTHORITY,
            suggestions=build_suggestions(merged, answer),
            model_info={"model": f"{service.name} MCP", "api": "MCP over SSE", "provider": "MCP", "tool": result.tool_name},
        )

    def _answer_weather(self, text: str, sid: str, found: weather.WeatherIntent) -> ChatReply:
        if not found.resolved:
            self.sessions.set_intent_state(
                sid,
                IntentState(intent="weather", done=False, slots={"day": found.day}),
            )
            return ChatReply(reply=WEATHER_CLARIFY_PROMPT, session_id=sid, engine=ENGINE_WEATHER)

        slots: dict[str, Any] = {"day": found.day}
        if found.canonical_city:
            label = weather.display_city(found.canonical_city, found.city)
            slots["city"] = found.canonical_city
            reply = self._city_weather_reply(found.canonical_city, label, found.day)
        else:
            label = str(found.region)
            slots["region"] = found.region
            reply = self._region_weather_reply(label, found.day)

        self.sessions.set_intent_state(sid, IntentState(intent="weather", done=True, slots=slots))
        return ChatReply(
            reply=reply,
            session_id=sid,
            engine=ENGINE_WEATHER,
            suggestions=list(WEATHER_REPLY_SUGGESTIONS),
            model_info=dict(weather_api.MODEL_INFO),
        )

    def _city_weather_reply(self, canonical: str, label: str, day: str) -> str:
        try:
            current = self.weather.city_weather(canonical, label, day)
        except (ConfigurationError, UpstreamError) as exc:
            logger.warning("Weather lookup failed for %s: %s", canonical, exc)
            return f"無法取得【{label}】的天氣資料，請稍後再試。"
        if current is None:
            return WEATHER_RETRY_LATER_REPLY
        return build_weather_reply(label, current, day)

    def _region_weather_reply(self, region: str, day: str) -> str:
        try:
            summary = self.weather.region_summary(region, day)
        except (ConfigurationError, UpstreamError) as exc:
            logger.warning("Weather lookup failed for %s: %s", region, exc)
            return f"無法取得【{region}】的天氣資料，請稍後再試。"
        if not summary:
            return WEATHER_RETRY_LATER_REPLY
        return f"這是{weather_api.DAY_LABELS.get(day, '目前')}【{region}】的天氣概況：\n\n{summary}"
