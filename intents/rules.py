from __future__ import annotations

from dataclasses import dataclass
import re
from typing import Iterable, Sequence


@dataclass(frozen=True, slots=True)
class Rule:
    pattern: re.Pattern[str]
    label: str

    def matches(self, text: str) -> bool:
        return bool(self.pattern.search(text))


def rule(pattern: str, label: str, flags: int = 0) -> Rule:
    return Rule(pattern=re.compile(pattern, flags), label=label)


def first_match(rules: Sequence[Rule], text: str) -> Rule | None:
    for item in rules:
        if item.matches(text):
            return item
    return None


def any_match(patterns: Iterable[re.Pattern[str]], text: str) -> bool:
    return any(pattern.search(text) for pattern in patterns)
