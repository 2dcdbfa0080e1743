from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
import re

from knowledge.models import LearnedNote
from knowledge.normalize import normalize_text, sha1_hex
from knowledge.pii import is_pii_risk, redact_sensitive_text
from knowledge.storage.note_store import NoteStore

logger = logging.getLogger(__name__)

ESCALATION_ENGINE = "escalation"
ESCALATION_SOURCE_TAG = "l2:escalation"

MIN_QUESTION_CHARS = 6
MIN_VALIDATED_QUESTION_CHARS = 2
MIN_ANSWER_CHARS = 40
MAX_HEDGE_MARKERS = 3

REALTIME_KEYWORDS = ("天氣", "下雨", "降雨", "溫度", "氣象", "今天", "明天", "後天", "現在")
HEDGE_MARKERS = ("可能", "也許", "不一定", "未必", "我猜", "推測", "大概", "應該")
_STRUCTURE_RE = re.compile(r"\n|\d+\.|-|•|：|。")


@dataclass(slots=True)
class ValidationResult:
    ok: bool
    reasons: list[str] = field(default_factory=list)


@dataclass(slots=True)
class LearnOutcome:
    persisted: bool
    skipped: bool = False
    note_id: str = ""
    reasons: list[str] = field(default_factory=list)


def should_persist(question: str, engine: str, intent: str | None = None) -> bool:
    if engine != ESCALATION_ENGINE:
        return False
    text = str(question or "")
    if any(keyword in text for keyword in REALTIME_KEYWORDS):
        return False
    if intent == "weather":
        return False
    if len(normalize_text(text)) < MIN_QUESTION_CHARS:
        return False
    if is_pii_risk(text):
        return False
    return True


def validate(question: str, answer: str, source_tag: str) -> ValidationResult:
    reasons: list[str] = []
    q = str(question or "").strip()
    a = str(answer or "").strip()

    if not str(source_tag or "").startswith("l2:"):
        reasons.append("source is not the escalation tier")
    if len(q) < MIN_VALIDATED_QUESTION_CHARS:
        reasons.append("question too short")
    if len(a) < MIN_ANSWER_CHARS:
        reasons.append("answer too short")

    hedges = [marker for marker in HEDGE_MARKERS if marker in a]
    if len(hedges) >= MAX_HEDGE_MARKERS:
        reasons.append(f"too many hedging markers ({', '.join(hedges)})")

    if not _STRUCTURE_RE.search(a):
        reasons.append("answer lacks structure")

    return ValidationResult(ok=not reasons, reasons=reasons)


def note_id_for(question: str) -> str:
    return sha1_hex(normalize_text(question))


def build_note(question: str, answer: str, tags: list[str] | None = None) -> LearnedNote:
    q = normalize_text(question)
    a = str(answer or "").strip()
    content = "\n".join(
        [
            f"【使用者問題】{q}",
            f"【最佳回答】{a}",
            "【可重用結論】請把上面的回答視為可重用的知識規則/指南，下次遇到同類問題優先引用。",
        ]
    )
    return LearnedNote(
        note_id=note_id_for(q),
        question=q,
        answer=a,
        content=content,
        created_at=datetime.now(timezone.utc).isoformat(),
        tags=list(tags or []),
    )


def extract_answer(note_text: str) -> str:
    """Pull the stored answer back out of a learned chunk's framing."""
    match = re.search(r"【最佳回答】(.*?)(?:【可重用結論】|$)", note_text, re.DOTALL)
    if not match:
        return ""
    return match.group(1).strip()


class LearningLoop:
    def __init__(self, notes: NoteStore, *, enabled: bool = True) -> None:
        self.notes = notes
        self.enabled = enabled

    def consider(
        self,
        question: str,
        answer: str,
        engine: str,
        *,
        intent: str | None = None,
        tags: list[str] | None = None,
    ) -> LearnOutcome:
        if not self.enabled:
            return LearnOutcome(persisted=False, reasons=["learning disabled"])
        if not should_persist(question, engine, intent):
            return LearnOutcome(persisted=False, reasons=["not eligible"])

        result = validate(question, answer, ESCALATION_SOURCE_TAG)
        if not result.ok:
            logger.info("Learned note rejected: %s", "; ".join(result.reasons))
            return LearnOutcome(persisted=False, reasons=result.reasons)

        note = build_note(question, redact_sensitive_text(answer), tags)
        if not self.notes.put_if_absent(note):
            return LearnOutcome(persisted=False, skipped=True, note_id=note.note_id)

        logger.info("Learned note stored id=%s", note.note_id)
        return LearnOutcome(persisted=True, note_id=note.note_id)
