"""Shared message and invocation dataclasses."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

Role = Literal["system", "user", "assistant", "tool"]


@dataclass(frozen=True)
class ToolInvocation:
    """One capability call requested by the model."""

    id: str
    name: str
    arguments: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass(frozen=True)
class ToolOutcome:
    """Result of one capability invocation."""

    invocation_id: str
    success: bool
    output: str | None = None
    error: str | None = None
    data: dict[str, Any] | None = None

    @property
    def content(self) -> str:
        if self.success:
            return self.output or "Success"
        return self.error or "Error"

    @classmethod
    def failed(cls, invocation_id: str, error: str) -> ToolOutcome:
        return cls(invocation_id=invocation_id, success=False, error=error)


@dataclass(frozen=True)
class Message:
    """One entry of the conversation log."""

    role: Role
    content: str = ""
    tool_calls: tuple[ToolInvocation, ...] = ()
    tool_call_id: str | None = None

    @classmethod
    def system(cls, content: str) -> Message:
        return cls(role="system", content=content)

    @classmethod
    def user(cls, content: str) -> Message:
        return cls(role="user", content=content)

    @classmethod
    def assistant(cls, content: str = "", tool_calls: tuple[ToolInvocation, ...] = ()) -> Message:
        return cls(role="assistant", content=content, tool_calls=tool_calls)

    @classmethod
    def tool(cls, outcome: ToolOutcome) -> Message:
        return cls(role="tool", content=outcome.content, tool_call_id=outcome.invocation_id)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            payload["tool_calls"] = [call.to_dict() for call in self.tool_calls]
        if self.tool_call_id is not None:
            payload["tool_call_id"] = self.tool_call_id
        return payload


@dataclass(frozen=True)
class ContentEvent:
    text: str
    kind: Literal["content"] = "content"


@dataclass(frozen=True)
class ToolCallsEvent:
    invocations: tuple[ToolInvocation, ...]
    kind: Literal["tool_calls"] = "tool_calls"


@dataclass(frozen=True)
class ToolOutcomeEvent:
    invocation: ToolInvocation
    outcome: ToolOutcome
    kind: Literal["tool_outcome"] = "tool_outcome"


@dataclass(frozen=True)
class TokenCountEvent:
    tokens: int
    kind: Literal["token_count"] = "token_count"


@dataclass(frozen=True)
class DoneEvent:
    state: str
    rounds: int = 0
    kind: Literal["done"] = "done"


AgentEvent = ContentEvent | ToolCallsEvent | ToolOutcomeEvent | TokenCountEvent | DoneEvent


@dataclass
class TokenUsage:
    """Running token totals for one submission."""

    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens
