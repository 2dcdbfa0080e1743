from __future__ import annotations

from dataclasses import dataclass
import re

from intents import accounting
from intents.rules import Rule, first_match, rule

# Phrases that only make sense against a clinical reference, checked before the
# accounting category table so "藥的副作用" is not booked as a healthcare expense.
MEDICAL_RULES: tuple[Rule, ...] = (
    rule(r"副作用|劑量|禁忌|交互作用|服用|用藥", "medication"),
    rule(r"症狀|診斷|病因|併發症|傳染", "condition"),
)

REFERENCE_RULES: tuple[Rule, ...] = (
    rule(r"法規|條例|法條|規定|施行細則", "regulation"),
    rule(r"公告|官方|政府|主管機關", "announcement"),
    rule(r"匯率|牌告", "exchange_rate"),
)

_MONEY_HINT_RE = re.compile(r"\d|元|塊|花了|付了|買了")


@dataclass(slots=True)
class AuthorityIntent:
    domain: str
    topic: str
    accounting: accounting.AccountingIntent | None = None


def classify_authority(text: str) -> AuthorityIntent | None:
    """Decide whether an authoritative tool service should be consulted."""
    text = str(text or "").strip()
    if not text:
        return None

    medical = first_match(MEDICAL_RULES, text)
    if medical and not _MONEY_HINT_RE.search(text):
        return AuthorityIntent(domain="medical", topic=medical.label)

    booking = accounting.classify(text)
    if booking is not None:
        return AuthorityIntent(
            domain="accounting",
            topic=booking.tool_intent or "unknown",
            accounting=booking,
        )

    reference = first_match(REFERENCE_RULES, text)
    if reference:
        return AuthorityIntent(domain="reference", topic=reference.label)
    return None
