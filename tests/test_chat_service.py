from __future__ import annotations

from dataclasses import replace
from pathlib import Path
from typing import Any

from config.settings import Settings, build_settings
from connectors.weather_api import CityWeather
from knowledge.learning import LearningLoop
from knowledge.models import ToolCallResult, Turn
from knowledge.retrieval import KeywordRetriever
from knowledge.storage.note_store import NoteStore
from runtime.backends import ModelReply
from runtime.chat import AMOUNT_PROMPT, WEATHER_CANCEL_REPLY, WEATHER_CLARIFY_PROMPT, ChatService
from runtime.errors import UpstreamError
from runtime.responder import APOLOGY_REPLY, ResponderResult, TieredResponder
from runtime.session import SessionStore

LONG_ANSWER = (
    "香水的前調是噴上後最先聞到的氣味，通常持續十五分鐘左右。"
    "中調是香水的主體，大約在三十分鐘後出現並持續數小時。"
)


class FakeBackend:
    def __init__(self, replies: list[str], *, enabled: bool = True) -> None:
        self.replies = list(replies)
        self.enabled = enabled
        self.calls = 0
        self.model_info = {"model": "fake", "api": "fake", "provider": "test"}

    def complete(self, system_prompt: str, messages: list[Turn], *, strictness: int = 0) -> ModelReply:
        self.calls += 1
        return ModelReply(text=self.replies.pop(0))


class FakeWeather:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.city_calls: list[tuple[str, str | None]] = []
        self.region_calls: list[str] = []
        self.days: list[str] = []

    def city_weather(self, canonical_city: str, display: str | None = None, day: str = "today") -> CityWeather | None:
        self.city_calls.append((canonical_city, display))
        self.days.append(day)
        if self.error is not None:
            raise self.error
        return CityWeather(city=display or canonical_city, weather="多雲", min_temp=18, max_temp=24, rain_probability=20)

    def region_summary(self, region: str, day: str = "today") -> str | None:
        self.region_calls.append(region)
        self.days.append(day)
        return "臺北市：多雲，18～24°C，降雨 20%"


class FakeLedger:
    name = "accounting"

    def __init__(self) -> None:
        self.consulted: list[str] = []

    def consult(self, text: str) -> ToolCallResult | None:
        self.consulted.append(text)
        return ToolCallResult("add_transaction", "{}", {"success": True, "message": "已新增交易。"})

    def answer(self, result: ToolCallResult) -> str | None:
        return "已新增交易。"


class RecordingResponder:
    def __init__(self, reply: str = "好的。", engine: str = "primary", error: Exception | None = None) -> None:
        self.reply = reply
        self.engine = engine
        self.error = error
        self.calls: list[dict[str, Any]] = []

    def respond(self, message: str, *, history: list[Turn] | None = None, correction_count: int = 0) -> ResponderResult:
        self.calls.append({"message": message, "history": list(history or []), "correction_count": correction_count})
        if self.error is not None:
            raise self.error
        return ResponderResult(reply=self.reply, engine=self.engine, model_info={"model": "stub"})


def _settings(tmp_path: Path) -> Settings:
    return replace(build_settings(tmp_path), learning_enabled=True)


def _service(
    tmp_path: Path,
    *,
    responder: Any = None,
    weather_client: Any = None,
    authorities: dict[str, Any] | None = None,
) -> ChatService:
    settings = _settings(tmp_path)
    return ChatService(
        settings,
        sessions=SessionStore(settings.sessions_dir),
        responder=responder or RecordingResponder(),
        weather_client=weather_client or FakeWeather(),
        authorities=authorities or {},
        learning=LearningLoop(NoteStore(settings.learned_dir)),
    )


def test_city_weather_answered_directly(tmp_path: Path) -> None:
    weather = FakeWeather()
    responder = RecordingResponder()
    service = _service(tmp_path, responder=responder, weather_client=weather)

    reply = service.handle("台北天氣如何")

    assert reply.engine == "weather"
    assert "【台北】" in reply.reply
    assert "18～24°C" in reply.reply
    assert reply.suggestions
    assert weather.city_calls == [("臺北市", "台北")]
    assert responder.calls == []
    state = service.sessions.get_intent_state(reply.session_id)
    assert state is not None and state.done and state.slots["city"] == "臺北市"


def test_weather_slot_filled_on_next_turn(tmp_path: Path) -> None:
    weather = FakeWeather()
    service = _service(tmp_path, weather_client=weather)

    first = service.handle("今天天氣如何")
    assert first.reply == WEATHER_CLARIFY_PROMPT
    assert first.suggestions is None
    assert service.sessions.get_intent_state(first.session_id).is_open  # type: ignore[union-attr]

    second = service.handle("臺北市", session_id=first.session_id)
    assert second.engine == "weather"
    assert "【台北】" in second.reply
    state = service.sessions.get_intent_state(first.session_id)
    assert state is not None
    assert state.intent == "weather"
    assert state.done is True
    assert state.slots["city"] == "臺北市"


def test_open_slot_takes_precedence_over_new_intents(tmp_path: Path) -> None:
    responder = RecordingResponder()
    service = _service(tmp_path, responder=responder)
    sid = service.handle("今天天氣如何").session_id

    again = service.handle("嗯", session_id=sid)
    assert again.reply == WEATHER_CLARIFY_PROMPT
    assert responder.calls == []
    assert service.sessions.get_intent_state(sid).is_open  # type: ignore[union-attr]


def test_region_answer_and_cancellation(tmp_path: Path) -> None:
    weather = FakeWeather()
    service = _service(tmp_path, weather_client=weather)

    sid = service.handle("天氣怎樣").session_id
    region = service.handle("北部", session_id=sid)
    assert weather.region_calls == ["北部"]
    assert "【北部】" in region.reply

    service.handle("今天天氣如何", session_id=sid)
    cancelled = service.handle("算了", session_id=sid)
    assert cancelled.reply == WEATHER_CANCEL_REPLY
    state = service.sessions.get_intent_state(sid)
    assert state is not None and state.intent is None and state.done


def test_weather_provider_failure_is_reported(tmp_path: Path) -> None:
    service = _service(tmp_path, weather_client=FakeWeather(error=UpstreamError("down", provider="CWA")))
    reply = service.handle("台中天氣如何")
    assert reply.engine == "weather"
    assert "無法取得【台中】的天氣資料" in reply.reply


def test_general_message_goes_through_responder(tmp_path: Path) -> None:
    responder = RecordingResponder(reply="前調大約十五分鐘。")
    service = _service(tmp_path, responder=responder)

    first = service.handle("香水前調多久")
    second = service.handle("那中調呢", session_id=first.session_id)

    assert first.engine == "primary"
    assert first.suggestions and len(first.suggestions) <= 4
    assert first.to_dict()["sessionId"] == first.session_id
    assert first.to_dict()["modelInfo"] == {"model": "stub"}
    assert [turn.content for turn in responder.calls[1]["history"]] == ["香水前調多久", "前調大約十五分鐘。"]
    history = service.sessions.get_history(second.session_id)
    assert len(history) == 4


def test_corrections_are_counted(tmp_path: Path) -> None:
    responder = RecordingResponder()
    service = _service(tmp_path, responder=responder)
    sid = service.handle("香水前調多久").session_id
    service.handle("不對", session_id=sid)
    service.handle("你答錯了", session_id=sid)
    service.handle("謝謝", session_id=sid)

    assert [call["correction_count"] for call in responder.calls] == [0, 1, 2, 0]


def test_unexpected_failure_becomes_apology(tmp_path: Path) -> None:
    service = _service(tmp_path, responder=RecordingResponder(error=RuntimeError("kaboom")))
    reply = service.handle("香水前調多久")
    assert reply.engine == "error"
    assert reply.reply == APOLOGY_REPLY
    assert reply.suggestions is None


def test_empty_message(tmp_path: Path) -> None:
    reply = _service(tmp_path).handle("   ")
    assert reply.engine == "error"
    assert reply.session_id


def test_accounting_amount_slot(tmp_path: Path) -> None:
    ledger = FakeLedger()
    responder = RecordingResponder()
    service = _service(tmp_path, responder=responder, authorities={"accounting": ledger})

    first = service.handle("幫我記一筆午餐")
    assert first.reply == AMOUNT_PROMPT
    assert service.sessions.get_intent_state(first.session_id).slots["pending_text"] == "幫我記一筆午餐"  # type: ignore[union-attr]

    second = service.handle("120元", session_id=first.session_id)
    assert second.engine == "tool_authority"
    assert second.reply == "已新增交易。"
    assert ledger.consulted == ["幫我記一筆午餐 120元"]
    assert responder.calls == []
    assert not service.sessions.get_intent_state(first.session_id).is_open  # type: ignore[union-attr]


def test_escalation_answer_is_learned_then_ingested_explicitly(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    notes = NoteStore(settings.learned_dir)
    retriever = KeywordRetriever(settings, notes=notes)
    responder = TieredResponder(
        settings,
        retriever=retriever,
        primary=FakeBackend([]),  # type: ignore[arg-type]
        escalation=FakeBackend([LONG_ANSWER]),  # type: ignore[arg-type]
        authorities={},
    )
    service = ChatService(
        settings,
        sessions=SessionStore(settings.sessions_dir),
        responder=responder,
        weather_client=FakeWeather(),  # type: ignore[arg-type]
        authorities={},
        learning=LearningLoop(notes),
    )

    reply = service.handle("香水前調和中調有什麼差別")

    assert reply.engine == "escalation"
    assert len(notes.list_notes()) == 1
    assert retriever.stats()["learned"] == 0

    stats = retriever.ingest_learned()
    assert (stats.scanned, stats.added) == (1, 1)
    assert retriever.stats()["learned"] == 1


def test_requested_day_reaches_weather_lookup(tmp_path: Path) -> None:
    weather = FakeWeather()
    service = _service(tmp_path, weather_client=weather)

    reply = service.handle("明天台北天氣如何")
    assert weather.days == ["tomorrow"]
    assert reply.reply.startswith("這是明天【台北】的天氣")

    sid = service.handle("後天天氣怎樣").session_id
    service.handle("北部", session_id=sid)
    assert weather.days[-1] == "day_after"


def test_outlying_island_is_a_weather_query(tmp_path: Path) -> None:
    weather = FakeWeather()
    reply = _service(tmp_path, weather_client=weather).handle("澎湖天氣")
    assert reply.engine == "weather"
    assert weather.city_calls == [("澎湖縣", "澎湖")]
