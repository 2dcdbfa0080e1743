from __future__ import annotations

import json
from pathlib import Path

from knowledge.models import IntentState, Turn
from runtime.session import SessionStore


def test_get_or_create_keeps_given_id(tmp_path: Path) -> None:
    store = SessionStore(tmp_path)
    generated = store.get_or_create()
    assert generated
    assert store.path_for(generated).exists()
    assert store.get_or_create("abc") == "abc"
    assert store.get_history("abc") == []


def test_append_turns_trims_oldest(tmp_path: Path) -> None:
    store = SessionStore(tmp_path, max_turns=4)
    sid = store.get_or_create("trim")
    store.append_turns(sid, [Turn(role="user", content=f"u{idx}") for idx in range(3)])
    kept = store.append_turns(sid, [Turn(role="assistant", content=f"a{idx}") for idx in range(3)])

    assert [turn.content for turn in kept] == ["u2", "a0", "a1", "a2"]
    assert [turn.content for turn in store.get_history(sid)] == ["u2", "a0", "a1", "a2"]


def test_intent_state_round_trip(tmp_path: Path) -> None:
    store = SessionStore(tmp_path)
    sid = store.get_or_create("slots")
    store.set_intent_state(sid, IntentState(intent="weather", done=False, slots={"day": "tomorrow"}))

    state = store.get_intent_state(sid)
    assert state is not None
    assert state.is_open
    assert state.slots == {"day": "tomorrow"}

    raw = json.loads(store.path_for(sid).read_text(encoding="utf-8"))
    assert raw["intentState"] == {"day": "tomorrow", "intent": "weather", "done": False}

    store.set_intent_state(sid, None)
    assert store.get_intent_state(sid) is None


def test_correction_counter_resets(tmp_path: Path) -> None:
    store = SessionStore(tmp_path)
    sid = store.get_or_create("fix")
    assert store.bump_correction(sid, True) == 1
    assert store.bump_correction(sid, True) == 2
    assert store.bump_correction(sid, False) == 0


def test_unsafe_ids_stay_inside_directory(tmp_path: Path) -> None:
    store = SessionStore(tmp_path / "sessions")
    path = store.path_for("../../etc/passwd")
    assert path.parent == tmp_path / "sessions"


def test_corrupt_record_loads_as_fresh_session(tmp_path: Path) -> None:
    store = SessionStore(tmp_path)
    store.path_for("broken").write_text("{oops", encoding="utf-8")
    session = store.load("broken")
    assert session.messages == []
    assert session.intent_state is None
    assert session.correction_count == 0


def test_reset_removes_record(tmp_path: Path) -> None:
    store = SessionStore(tmp_path)
    sid = store.get_or_create("gone")
    store.append_turns(sid, [Turn(role="user", content="hi")])
    store.reset(sid)
    assert not store.path_for(sid).exists()
    assert store.get_history(sid) == []
