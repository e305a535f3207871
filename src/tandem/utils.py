"""Small text helpers shared across components."""

from __future__ import annotations

import re

_NON_WORD_RE = re.compile(r"[^\w\s]")


def tokenize(text: str) -> list[str]:
    """Lowercase, strip punctuation and drop single-character tokens."""

    return [token for token in _NON_WORD_RE.sub(" ", text.lower()).split() if len(token) > 1]


def shorten_text(text: str, width: int = 30, placeholder: str = "...") -> str:
    """Truncate to ``width`` characters, ending with ``placeholder``.

    Cuts mid-word, so long tokens without whitespace are bounded too.
    """
    if len(text) <= width:
        return text

    available = width - len(placeholder)
    if available <= 0:
        return placeholder

    return text[:available] + placeholder
