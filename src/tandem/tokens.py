"""Token accounting.

``TiktokenCounter`` counts under a model's tiktoken encoding and is what the
runtime uses. Components accept any object implementing ``TokenCounter`` so
tests can plug in deterministic counters.
"""

from __future__ import annotations

import json
from collections import OrderedDict
from collections.abc import Iterable
from typing import Protocol

import tiktoken
from loguru import logger

from tandem.errors import AccountingError
from tandem.types import Message

TOKENS_PER_MESSAGE = 3
TOKENS_FOR_REPLY_PRIMING = 3
DEFAULT_ENCODING = "cl100k_base"
MAX_CACHE_SIZE = 1000


class TokenCounter(Protocol):
    def count_text(self, text: str) -> int: ...

    def count_message(self, message: Message) -> int: ...

    def count_messages(self, messages: Iterable[Message]) -> int: ...


class TiktokenCounter:
    """Token counter using tiktoken.

    Falls back to ``cl100k_base`` when the model has no registered encoding.
    Text counts are memoized in a bounded LRU cache.
    """

    def __init__(self, model: str = "gpt-4", encoding_name: str | None = None) -> None:
        try:
            if encoding_name is not None:
                self._enc = tiktoken.get_encoding(encoding_name)
            else:
                try:
                    self._enc = tiktoken.encoding_for_model(model)
                except KeyError:
                    self._enc = tiktoken.get_encoding(DEFAULT_ENCODING)
        except Exception as exc:
            raise AccountingError(f"cannot load encoding for model={model}: {exc!s}") from exc
        self._cache: OrderedDict[str, int] = OrderedDict()
        logger.debug("tokens.encoding model={} encoding={}", model, self._enc.name)

    @property
    def encoding_name(self) -> str:
        return self._enc.name

    def count_text(self, text: str) -> int:
        if not text:
            return 0
        cached = self._cache.get(text)
        if cached is not None:
            self._cache.move_to_end(text)
            return cached

        try:
            count = len(self._enc.encode(text, disallowed_special=()))
        except Exception as exc:
            raise AccountingError(f"cannot count text: {exc!s}") from exc
        if len(self._cache) >= MAX_CACHE_SIZE:
            self._cache.popitem(last=False)
        self._cache[text] = count
        return count

    def count_message(self, message: Message) -> int:
        total = TOKENS_PER_MESSAGE + self.count_text(message.content) + self.count_text(message.role)
        if message.tool_calls:
            total += self.count_text(json.dumps([call.to_dict() for call in message.tool_calls]))
        return total

    def count_messages(self, messages: Iterable[Message]) -> int:
        return sum(self.count_message(message) for message in messages) + TOKENS_FOR_REPLY_PRIMING

    def clear(self) -> None:
        self._cache.clear()


def format_token_count(count: int) -> str:
    """Format a token count for display, e.g. ``1.2k`` for 1200."""

    if count <= 999:
        return str(count)
    if count < 1_000_000:
        value, suffix = count / 1000, "k"
    else:
        value, suffix = count / 1_000_000, "m"
    if value == int(value):
        return f"{int(value)}{suffix}"
    return f"{value:.1f}{suffix}"
