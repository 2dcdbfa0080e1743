from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(slots=True)
class Turn:
    role: str
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}

    @classmethod
    def from_dict(cls, raw: object) -> Turn | None:
        if not isinstance(raw, dict):
            return None
        role = str(raw.get("role", "")).strip()
        if not role:
            return None
        return cls(role=role, content=str(raw.get("content", "")))


@dataclass(slots=True)
class IntentState:
    intent: str | None
    done: bool
    slots: dict[str, Any] = field(default_factory=dict)

    @property
    def is_open(self) -> bool:
        return bool(self.intent) and not self.done

    def to_dict(self) -> dict[str, Any]:
        return {**self.slots, "intent": self.intent, "done": self.done}

    @classmethod
    def from_dict(cls, raw: object) -> IntentState | None:
        if not isinstance(raw, dict):
            return None
        intent = raw.get("intent")
        slots = {key: value for key, value in raw.items() if key not in {"intent", "done"}}
        return cls(
            intent=str(intent) if intent else None,
            done=bool(raw.get("done", True)),
            slots=slots,
        )


@dataclass(slots=True)
class Session:
    session_id: str
    messages: list[Turn] = field(default_factory=list)
    intent_state: IntentState | None = None
    correction_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "messages": [turn.to_dict() for turn in self.messages],
            "intentState": self.intent_state.to_dict() if self.intent_state else None,
            "correctionCount": int(self.correction_count),
        }

    @classmethod
    def from_dict(cls, raw: object, session_id: str) -> Session:
        if not isinstance(raw, dict):
            return cls(session_id=session_id)
        messages_raw = raw.get("messages")
        messages = []
        if isinstance(messages_raw, list):
            messages = [turn for turn in (Turn.from_dict(item) for item in messages_raw) if turn]
        try:
            corrections = max(0, int(raw.get("correctionCount", 0)))
        except (TypeError, ValueError):
            corrections = 0
        return cls(
            session_id=str(raw.get("sessionId") or session_id),
            messages=messages,
            intent_state=IntentState.from_dict(raw.get("intentState")),
            correction_count=corrections,
        )


@dataclass(slots=True)
class RetrievalChunk:
    chunk_id: str
    source: str
    origin: str
    text: str
    created_at: str
    question: str | None = None
    tags: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.chunk_id,
            "source": self.source,
            "origin": self.origin,
            "text": self.text,
            "tags": list(self.tags),
            "createdAt": self.created_at,
        }
        if self.question is not None:
            payload["question"] = self.question
        return payload

    @classmethod
    def from_dict(cls, raw: object) -> RetrievalChunk | None:
        if not isinstance(raw, dict):
            return None
        chunk_id = str(raw.get("id", "")).strip()
        text = str(raw.get("text", ""))
        if not chunk_id or not text:
            return None
        tags = raw.get("tags")
        question = raw.get("question")
        return cls(
            chunk_id=chunk_id,
            source=str(raw.get("source", "runtime")),
            origin=str(raw.get("origin", "runtime")),
            text=text,
            created_at=str(raw.get("createdAt", "")),
            question=str(question) if question is not None else None,
            tags=[str(tag) for tag in tags] if isinstance(tags, list) else [],
        )


@dataclass(slots=True)
class RetrievalHit:
    chunk_id: str
    text: str
    source: str
    origin: str
    score: float
    raw_score: float

    @property
    def is_learned(self) -> bool:
        return self.source == "learned" or self.origin == "learned"


@dataclass(slots=True)
class LearnedNote:
    note_id: str
    question: str
    answer: str
    content: str
    created_at: str
    tags: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.note_id,
            "createdAt": self.created_at,
            "q": self.question,
            "a": self.answer,
            "tags": list(self.tags),
            "content": self.content,
        }

    @classmethod
    def from_dict(cls, raw: object) -> LearnedNote | None:
        if not isinstance(raw, dict):
            return None
        note_id = str(raw.get("id", "")).strip()
        if not note_id:
            return None
        tags = raw.get("tags")
        return cls(
            note_id=note_id,
            question=str(raw.get("q", "")),
            answer=str(raw.get("a", "")),
            content=str(raw.get("content", "")),
            created_at=str(raw.get("createdAt", "")),
            tags=[str(tag) for tag in tags] if isinstance(tags, list) else [],
        )


@dataclass(slots=True)
class ToolCallResult:
    tool_name: str
    raw_content: str
    parsed_fields: dict[str, Any] | None = None
    input_text: str = ""
