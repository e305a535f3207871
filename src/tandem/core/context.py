"""Context window management.

The log is grouped into turns (a user message plus all assistant and tool
messages that follow it). When the log outgrows the prompt budget the oldest
turns are dropped whole, the leading system message is always kept and the
most recent ``min_recent_turns`` turns are kept verbatim.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Literal

from loguru import logger

from tandem.tokens import TokenCounter
from tandem.tools.safety import resource_of_invocation
from tandem.types import Message, ToolInvocation

DEFAULT_MAX_TOKENS = 120_000
DEFAULT_RESERVED_FOR_RESPONSE = 15_000
DEFAULT_MIN_RECENT_TURNS = 3


@dataclass(frozen=True)
class ContextConfig:
    max_tokens: int = DEFAULT_MAX_TOKENS
    reserved_for_response: int = DEFAULT_RESERVED_FOR_RESPONSE
    min_recent_turns: int = DEFAULT_MIN_RECENT_TURNS

    @property
    def available(self) -> int:
        return self.max_tokens - self.reserved_for_response


@dataclass(frozen=True)
class WorkItem:
    kind: Literal["assistant", "invocation", "outcome"]
    message: Message
    invocation: ToolInvocation | None = None


@dataclass
class ConversationTurn:
    """One user request and the work that answered it."""

    user: Message | None
    messages: list[Message] = field(default_factory=list)
    items: list[WorkItem] = field(default_factory=list)
    complete: bool = False
    tokens: int = 0
    resources: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ContextStats:
    total_tokens: int
    available_tokens: int
    usage_percent: float
    message_count: int


def group_turns(messages: Sequence[Message], counter: TokenCounter) -> list[ConversationTurn]:
    """Group a log without its system message into turns.

    Messages ahead of the first user message form a leading turn whose
    ``user`` is ``None``.
    """

    turns: list[ConversationTurn] = []
    current: ConversationTurn | None = None
    for message in messages:
        if message.role == "user":
            current = ConversationTurn(user=message)
            turns.append(current)
        elif current is None:
            current = ConversationTurn(user=None)
            turns.append(current)
        current.messages.append(message)
        current.tokens += counter.count_message(message)

    for turn in turns:
        _describe_turn(turn)
    return turns


def _describe_turn(turn: ConversationTurn) -> None:
    pending: dict[str, ToolInvocation] = {}
    for message in turn.messages:
        if message.role == "assistant":
            turn.items.append(WorkItem(kind="assistant", message=message))
            for invocation in message.tool_calls:
                turn.items.append(WorkItem(kind="invocation", message=message, invocation=invocation))
                pending[invocation.id] = invocation
        elif message.role == "tool":
            invocation = pending.pop(message.tool_call_id or "", None)
            turn.items.append(WorkItem(kind="outcome", message=message, invocation=invocation))
            if invocation is not None and (resource := resource_of_invocation(invocation)) is not None:
                # later outcomes overwrite earlier ones
                turn.resources[resource] = message.content

    last = turn.messages[-1] if turn.messages else None
    turn.complete = last is not None and last.role == "assistant" and not last.tool_calls and not pending


class ContextWindowManager:
    def __init__(self, counter: TokenCounter, config: ContextConfig | None = None) -> None:
        self._counter = counter
        self.config = config or ContextConfig()

    def manage(self, messages: list[Message]) -> list[Message]:
        """Return a log that fits the prompt budget.

        When the log already fits, the same list object is returned. On any
        internal failure the original list is returned untouched.
        """

        try:
            total = self._counter.count_messages(messages)
            if total <= self.config.available:
                return messages
            managed = self._compact(messages)
        except Exception:
            logger.exception("context.manage.error messages={}", len(messages))
            return messages
        logger.info(
            "context.compact messages={}->{} tokens={}->{}",
            len(messages),
            len(managed),
            total,
            self._counter.count_messages(managed),
        )
        return managed

    def stats(self, messages: Sequence[Message]) -> ContextStats:
        total = self._counter.count_messages(messages)
        available = self.config.available
        return ContextStats(
            total_tokens=total,
            available_tokens=available,
            usage_percent=round(total / available * 100, 1) if available > 0 else 100.0,
            message_count=len(messages),
        )

    def needs_compaction(self, messages: Sequence[Message]) -> bool:
        return self._counter.count_messages(messages) > self.config.available

    def _compact(self, messages: list[Message]) -> list[Message]:
        system: list[Message] = []
        rest: Sequence[Message] = messages
        if messages and messages[0].role == "system":
            system, rest = [messages[0]], messages[1:]

        turns = group_turns(rest, self._counter)
        keep = min(max(self.config.min_recent_turns, 0), len(turns))
        if turns and not turns[-1].complete:
            keep = max(keep, 1)
        retained = turns[len(turns) - keep :]
        older = turns[: len(turns) - keep]

        budget = self.config.available - self._counter.count_messages(system)
        for turn in reversed(older):
            candidate = [turn, *retained]
            if self._cost(candidate) > budget:
                break
            retained = candidate

        logger.debug("context.turns total={} retained={}", len(turns), len(retained))
        return [*system, *(message for turn in retained for message in turn.messages)]

    def _cost(self, turns: Sequence[ConversationTurn]) -> int:
        latest: dict[str, str] = {}
        for turn in turns:
            latest.update(turn.resources)
        surcharge = sum(self._counter.count_text(content) for content in latest.values())
        return sum(turn.tokens for turn in turns) + surcharge
