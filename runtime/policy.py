from __future__ import annotations

from dataclasses import dataclass
import re
from typing import Sequence

from runtime.quality import QualityReport

HEDGING_MARKERS = (
    "可能是",
    "如果你指的是",
    "也許",
    "未必",
    "不一定",
    "我猜",
)

_CORRECTION_RE = re.compile(r"不對|錯了|不是這樣|你答錯|答錯了|\bwrong\b", re.IGNORECASE)

CORRECTION_ESCALATION_THRESHOLD = 2


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """One strict retry per tier; attempt 0 is the normal prompt."""

    max_retries: int = 1

    @property
    def attempts(self) -> int:
        return 1 + max(0, self.max_retries)

    def strictness_for(self, attempt: int) -> int:
        return 0 if attempt <= 0 else min(attempt, self.max_retries)


@dataclass(frozen=True, slots=True)
class QualityGate:
    en_ratio_threshold: float
    min_reply_chars: int

    def failure_reasons(self, text: str, report: QualityReport) -> list[str]:
        reasons: list[str] = []
        if report.garbled:
            reasons.append("garbled")
        if report.english_ratio > self.en_ratio_threshold:
            reasons.append("english_ratio")
        if len(text) < self.min_reply_chars:
            reasons.append("too_short")
        return reasons


def is_correction(text: str) -> bool:
    return bool(_CORRECTION_RE.search(str(text or "")))


def has_hedging(text: str) -> bool:
    return any(marker in str(text or "") for marker in HEDGING_MARKERS)


def escalation_reasons(
    *,
    correction_count: int,
    hits: Sequence[object],
    reply: str | None,
) -> list[str]:
    reasons: list[str] = []
    if correction_count >= CORRECTION_ESCALATION_THRESHOLD:
        reasons.append("repeated_corrections")
    if len(hits) == 0:
        reasons.append("no_retrieval_hits")
    if reply and has_hedging(reply):
        reasons.append("hedging_language")
    return reasons


def should_escalate(*, correction_count: int, hits: Sequence[object], reply: str | None = None) -> bool:
    return bool(escalation_reasons(correction_count=correction_count, hits=hits, reply=reply))
