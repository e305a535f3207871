from __future__ import annotations

from collections.abc import Callable, Iterable
from typing import Any

import pytest
from republic import Tool

from tandem.tools.registry import CapabilityDescriptor, CapabilityRegistry, Category
from tandem.types import Message


class WordCounter:
    """Deterministic counter: one token per whitespace-separated word plus one per message."""

    def count_text(self, text: str) -> int:
        return len(text.split())

    def count_message(self, message: Message) -> int:
        total = 1 + self.count_text(message.content)
        for call in message.tool_calls:
            total += 1 + self.count_text(call.arguments)
        return total

    def count_messages(self, messages: Iterable[Message]) -> int:
        return sum(self.count_message(message) for message in messages)


def make_descriptor(
    name: str,
    *,
    handler: Callable[..., Any] | None = None,
    mutates_state: bool = False,
    category: Category = Category.UTILITY,
    keywords: tuple[str, ...] = (),
    priority: int = 5,
    description: str | None = None,
) -> CapabilityDescriptor:
    def _default(**kwargs: Any) -> str:
        return f"{name}:ok"

    tool = Tool(
        name=name,
        description=description or f"{name} capability",
        parameters={"type": "object", "properties": {}},
        handler=handler or _default,
    )
    return CapabilityDescriptor(
        name=name,
        tool=tool,
        mutates_state=mutates_state,
        category=category,
        keywords=keywords,
        priority=priority,
    )


@pytest.fixture
def counter() -> WordCounter:
    return WordCounter()


@pytest.fixture
def registry() -> CapabilityRegistry:
    return CapabilityRegistry([
        make_descriptor("view_file", category=Category.FILE_READ, keywords=("view", "read", "file"), priority=10),
        make_descriptor("search", category=Category.FILE_SEARCH, keywords=("search", "find", "grep"), priority=9),
        make_descriptor("create_file", mutates_state=True, category=Category.FILE_WRITE, keywords=("create", "new")),
        make_descriptor("edit_file", mutates_state=True, category=Category.FILE_WRITE, keywords=("edit", "replace")),
        make_descriptor("bash", mutates_state=True, category=Category.SYSTEM, keywords=("run", "command", "test")),
    ])
