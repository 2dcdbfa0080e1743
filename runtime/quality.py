from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache
import logging
import re
from typing import Any, Callable

import opencc

logger = logging.getLogger(__name__)

_ASCII_LETTER_RE = re.compile(r"[A-Za-z]")
_WHITESPACE_RE = re.compile(r"\s+")
_MOJIBAKE_RE = re.compile("[�¿]")
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
# Cyrillic is never expected in a Traditional Chinese reply.
_FOREIGN_SCRIPT_RE = re.compile(r"[А-Яа-яЁёЇїІіЄєҐґ]")
_EMPTY_PARENS_RE = re.compile(r"\(\s*\)")

_AUTHOR_YEAR_RE = re.compile(r"\((?:[A-Z][A-Za-z.'\-\s]+)(?:et\s+al\.)?,\s*\d{4}\)")
_NUMERIC_CITATION_RE = re.compile(r"\[\d{1,3}\]")
_REFERENCES_RE = re.compile(r"\n{2,}(References|參考資料|参考资料)[\s\S]*$", re.IGNORECASE)
_NON_CHINESE_RE = re.compile(r"[^一-鿿0-9a-zA-Z。，、！？；：「」『』（）()\-—…\s]")

Converter = Callable[[str], str]


@dataclass(slots=True)
class QualityReport:
    english_ratio: float
    garbled: bool

    def to_dict(self) -> dict[str, Any]:
        return {"english_ratio": round(self.english_ratio, 4), "garbled": self.garbled}


@dataclass(slots=True)
class SanitizedText:
    text: str
    raw: str
    cleaned: str
    report: QualityReport = field(default_factory=lambda: QualityReport(0.0, False))


def english_ratio(text: str) -> float:
    value = str(text or "")
    letters = len(_ASCII_LETTER_RE.findall(value))
    total = len(_WHITESPACE_RE.sub("", value)) or 1
    return letters / total


def looks_garbled(text: str) -> bool:
    value = str(text or "")
    return bool(
        _MOJIBAKE_RE.search(value) or _CONTROL_RE.search(value) or _FOREIGN_SCRIPT_RE.search(value)
    )


def evaluate(text: str) -> QualityReport:
    try:
        return QualityReport(english_ratio=english_ratio(text), garbled=looks_garbled(text))
    except Exception:
        logger.exception("Quality evaluation failed")
        return QualityReport(english_ratio=0.0, garbled=True)


def strip_citations(text: str) -> str:
    value = _AUTHOR_YEAR_RE.sub("", str(text or ""))
    value = _NUMERIC_CITATION_RE.sub("", value)
    return _REFERENCES_RE.sub("", value)


def strip_mojibake(text: str) -> str:
    value = _MOJIBAKE_RE.sub("", str(text or ""))
    value = _CONTROL_RE.sub("", value)
    return _EMPTY_PARENS_RE.sub("", value)


def keep_chinese(text: str) -> str:
    return _NON_CHINESE_RE.sub("", str(text or ""))


@lru_cache(maxsize=1)
def _opencc_converter() -> Converter:
    return opencc.OpenCC("s2twp").convert


def to_traditional(text: str) -> str:
    return _opencc_converter()(text)


def sanitize(
    text: str,
    *,
    keep_chinese_only: bool = False,
    converter: Converter | None = None,
) -> SanitizedText:
    raw = str(text or "")
    try:
        cleaned = strip_mojibake(raw)
        cleaned = strip_citations(cleaned)
        cleaned = _WHITESPACE_RE.sub(" ", cleaned).strip()
        if keep_chinese_only:
            cleaned = _WHITESPACE_RE.sub(" ", keep_chinese(cleaned)).strip()

        report = QualityReport(english_ratio=english_ratio(cleaned), garbled=looks_garbled(raw))
        final = (converter or to_traditional)(cleaned)
        return SanitizedText(text=final, raw=raw, cleaned=cleaned, report=report)
    except Exception:
        logger.exception("Sanitize failed, returning raw text")
        return SanitizedText(text=raw, raw=raw, cleaned=raw, report=QualityReport(english_ratio(raw), True))
