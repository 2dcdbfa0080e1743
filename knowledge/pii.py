from __future__ import annotations

import re

PII_KEYWORDS_RE = re.compile(r"(電話|手機|地址|身分證|信用卡|帳號|密碼|OTP|驗證碼)", re.IGNORECASE)

PII_PATTERNS: dict[str, re.Pattern[str]] = {
    "taiwan_id": re.compile(r"\b[A-Z][12]\d{8}\b"),
    "mobile_number": re.compile(r"(?<!\d)09\d{2}[- ]?\d{3}[- ]?\d{3}(?!\d)"),
    "email": re.compile(r"\b[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}\b"),
    "password": re.compile(r"\bpassword\b\s*[:=-]?\s*\S+", re.IGNORECASE),
    "otp": re.compile(r"\botp\b[^\n]{0,20}\b\d{4,8}\b|\b\d{4,8}\b(?=[^\n]{0,20}\botp\b)", re.IGNORECASE),
    "card_number": re.compile(r"\b(?:\d[ -]?){13,19}\b"),
}


def has_pii_keyword(text: str) -> bool:
    return bool(PII_KEYWORDS_RE.search(text))


def detect_pii_tags(text: str) -> list[str]:
    tags: list[str] = []
    for tag, pattern in PII_PATTERNS.items():
        if pattern.search(text):
            tags.append(tag)
    return sorted(tags)


def is_pii_risk(text: str) -> bool:
    return has_pii_keyword(text) or bool(detect_pii_tags(text))


def redact_sensitive_text(text: str) -> str:
    redacted = text
    for tag, pattern in PII_PATTERNS.items():
        redacted = pattern.sub(f"[REDACTED_{tag.upper()}]", redacted)
    return redacted
