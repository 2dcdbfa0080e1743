from __future__ import annotations

from pathlib import Path

from knowledge.learning import (
    ESCALATION_SOURCE_TAG,
    LearningLoop,
    build_note,
    extract_answer,
    note_id_for,
    should_persist,
    validate,
)
from knowledge.storage.note_store import NoteStore

GOOD_ANSWER = (
    "香水的前調是噴上後最先聞到的氣味，通常持續十五分鐘左右。"
    "中調是香水的主體，大約在三十分鐘後出現並持續數小時。"
)


def test_should_persist_only_escalation_answers() -> None:
    assert should_persist("香水前調和中調有什麼差別", "escalation")
    assert not should_persist("香水前調和中調有什麼差別", "primary")
    assert not should_persist("香水前調和中調有什麼差別", "escalation", intent="weather")


def test_should_persist_rejects_realtime_short_and_pii() -> None:
    assert not should_persist("明天台北會不會下雨呢", "escalation")
    assert not should_persist("香水", "escalation")
    assert not should_persist("我的信用卡號碼要怎麼改", "escalation")
    assert not should_persist("幫我記住 0912-345-678 這支號碼", "escalation")


def test_validate_collects_all_reasons() -> None:
    result = validate("問", "可能也許大概", "l1:primary")
    assert not result.ok
    assert "source is not the escalation tier" in result.reasons
    assert "question too short" in result.reasons
    assert "answer too short" in result.reasons
    assert any(reason.startswith("too many hedging markers") for reason in result.reasons)
    assert "answer lacks structure" in result.reasons

    assert validate("香水前調", GOOD_ANSWER, ESCALATION_SOURCE_TAG).ok


def test_note_framing_round_trip() -> None:
    note = build_note("  香水前調多久？ ", GOOD_ANSWER, tags=["perfume"])
    assert note.note_id == note_id_for("香水前調多久")
    assert note.question == "香水前調多久"
    assert extract_answer(note.content) == GOOD_ANSWER
    assert extract_answer("沒有框架的文字") == ""


def test_learning_loop_is_write_once(tmp_path: Path) -> None:
    notes = NoteStore(tmp_path)
    loop = LearningLoop(notes)

    first = loop.consider("香水前調和中調有什麼差別", GOOD_ANSWER, "escalation")
    assert first.persisted
    assert notes.exists(first.note_id)

    second = loop.consider("香水前調和中調有什麼差別", GOOD_ANSWER + "補充。", "escalation")
    assert not second.persisted
    assert second.skipped
    assert [note.answer for note in notes.list_notes()] == [GOOD_ANSWER]


def test_learning_loop_rejections(tmp_path: Path) -> None:
    notes = NoteStore(tmp_path)
    assert LearningLoop(notes, enabled=False).consider("香水前調和中調有什麼差別", GOOD_ANSWER, "escalation").reasons == [
        "learning disabled"
    ]

    outcome = LearningLoop(notes).consider("香水前調和中調有什麼差別", "太短了。", "escalation")
    assert not outcome.persisted
    assert "answer too short" in outcome.reasons
    assert notes.list_notes() == []
