"""Streaming accumulator.

Provider deltas are parsed into a small tagged union and folded into an
``AccumulatedMessage``. Folding is pure and associative: strings concatenate,
tool-call fragments merge slot by slot, and the role is set once. The slot
index used to align tool-call fragments is the tuple position only, so no
transport field ever reaches the persisted message.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from functools import reduce
from typing import Any

from loguru import logger

from tandem.types import Message, ToolInvocation


@dataclass(frozen=True)
class RoleDelta:
    role: str


@dataclass(frozen=True)
class ContentDelta:
    text: str


@dataclass(frozen=True)
class ToolCallDelta:
    index: int
    id: str | None = None
    name: str | None = None
    arguments: str | None = None


StreamDelta = RoleDelta | ContentDelta | ToolCallDelta


@dataclass(frozen=True)
class PartialToolCall:
    id: str | None = None
    name: str | None = None
    arguments: str | None = None

    def combine(self, other: PartialToolCall) -> PartialToolCall:
        return PartialToolCall(
            id=_concat(self.id, other.id),
            name=_concat(self.name, other.name),
            arguments=_concat(self.arguments, other.arguments),
        )


_EMPTY_CALL = PartialToolCall()


@dataclass(frozen=True)
class AccumulatedMessage:
    role: str | None = None
    content: str | None = None
    tool_calls: tuple[PartialToolCall, ...] = ()

    def combine(self, other: AccumulatedMessage) -> AccumulatedMessage:
        size = max(len(self.tool_calls), len(other.tool_calls))
        calls = tuple(
            _slot(self.tool_calls, idx).combine(_slot(other.tool_calls, idx)) for idx in range(size)
        )
        return AccumulatedMessage(
            role=self.role or other.role,
            content=_concat(self.content, other.content),
            tool_calls=calls,
        )

    def has_named_tool_call(self) -> bool:
        """True once at least one tool call's name is decodable."""

        return any(call.name for call in self.tool_calls)

    def invocations(self) -> tuple[ToolInvocation, ...]:
        """Tool calls with a name; slots that never received one are dropped."""

        invocations: list[ToolInvocation] = []
        for idx, call in enumerate(self.tool_calls):
            if not call.name:
                logger.warning("stream.unnamed_tool_call slot={}", idx)
                continue
            call_id = call.id or f"call_{idx}"
            invocations.append(ToolInvocation(id=call_id, name=call.name, arguments=call.arguments or ""))
        return tuple(invocations)

    def to_message(self) -> Message:
        return Message.assistant(content=self.content or "", tool_calls=self.invocations())


def lift(delta: StreamDelta) -> AccumulatedMessage:
    match delta:
        case RoleDelta(role=role):
            return AccumulatedMessage(role=role)
        case ContentDelta(text=text):
            return AccumulatedMessage(content=text)
        case ToolCallDelta(index=index, id=call_id, name=name, arguments=arguments):
            slots = [_EMPTY_CALL] * index + [PartialToolCall(id=call_id, name=name, arguments=arguments)]
            return AccumulatedMessage(tool_calls=tuple(slots))
    raise TypeError(f"unsupported delta: {delta!r}")


def accumulate(message: AccumulatedMessage, delta: StreamDelta) -> AccumulatedMessage:
    return message.combine(lift(delta))


def merge_deltas(deltas: Iterable[StreamDelta], initial: AccumulatedMessage | None = None) -> AccumulatedMessage:
    return reduce(accumulate, deltas, initial or AccumulatedMessage())


def parse_delta(raw: Mapping[str, Any]) -> list[StreamDelta]:
    """Convert one provider delta into tagged deltas.

    Unknown fields are ignored and malformed tool-call entries are skipped.
    """

    deltas: list[StreamDelta] = []
    role = raw.get("role")
    if isinstance(role, str) and role:
        deltas.append(RoleDelta(role))

    content = raw.get("content")
    if isinstance(content, str) and content:
        deltas.append(ContentDelta(content))

    tool_calls = raw.get("tool_calls")
    if isinstance(tool_calls, list):
        for position, entry in enumerate(tool_calls):
            parsed = _parse_tool_call(entry, position)
            if parsed is not None:
                deltas.append(parsed)
    return deltas


def _parse_tool_call(entry: object, position: int) -> ToolCallDelta | None:
    if not isinstance(entry, Mapping):
        logger.debug("stream.skip_tool_call position={} type={}", position, type(entry).__name__)
        return None
    index = entry.get("index", position)
    if not isinstance(index, int) or isinstance(index, bool) or index < 0:
        logger.debug("stream.skip_tool_call position={} index={!r}", position, index)
        return None
    function = entry.get("function")
    function = function if isinstance(function, Mapping) else {}
    return ToolCallDelta(
        index=index,
        id=_str_or_none(entry.get("id")),
        name=_str_or_none(function.get("name")),
        arguments=_str_or_none(function.get("arguments")),
    )


def _str_or_none(value: object) -> str | None:
    return value if isinstance(value, str) and value else None


def _concat(left: str | None, right: str | None) -> str | None:
    if left is None:
        return right
    if right is None:
        return left
    return left + right


def _slot(calls: tuple[PartialToolCall, ...], idx: int) -> PartialToolCall:
    return calls[idx] if idx < len(calls) else _EMPTY_CALL
