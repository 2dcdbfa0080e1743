from __future__ import annotations

import hashlib
import re

_TRAILING_PUNCT_RE = re.compile(r"[！？!?。．…]+$")
_SPACE_RE = re.compile(r"\s+")


def normalize_text(text: object) -> str:
    """Trim, collapse whitespace and drop trailing sentence punctuation."""
    collapsed = _SPACE_RE.sub(" ", str(text or "").strip())
    return _TRAILING_PUNCT_RE.sub("", collapsed)


def query_tokens(query: str) -> list[str]:
    # Whitespace words plus single characters so CJK text scores without a tokenizer.
    words = [word for word in query.split() if word]
    tokens: list[str] = []
    seen: set[str] = set()
    for token in words + list(query):
        if not token or token.isspace() or token in seen:
            continue
        seen.add(token)
        tokens.append(token)
    return tokens


def sha1_hex(value: str) -> str:
    return hashlib.sha1(value.encode("utf-8")).hexdigest()


def chunk_hash(source: str, text: str) -> str:
    return sha1_hex(f"{source}{normalize_text(text)}")
