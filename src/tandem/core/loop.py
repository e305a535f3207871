"""Round-by-round orchestration loop."""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from typing import Any
from enum import StrEnum

from loguru import logger

from tandem.core.backend import ChatOptions, ModelBackend
from tandem.core.context import ContextWindowManager
from tandem.core.selector import RelevanceSelector, SelectionResult, SelectorOptions
from tandem.core.stream import AccumulatedMessage, ContentDelta, accumulate, parse_delta
from tandem.errors import AccountingError, BackendError, SelectionError, TandemError
from tandem.tokens import TokenCounter
from tandem.tools.executor import CapabilityExecutor
from tandem.tools.registry import CapabilityRegistry
from tandem.tools.safety import can_parallelize
from tandem.types import (
    AgentEvent,
    ContentEvent,
    DoneEvent,
    Message,
    TokenCountEvent,
    TokenUsage,
    ToolCallsEvent,
    ToolInvocation,
    ToolOutcome,
    ToolOutcomeEvent,
)

DEFAULT_MAX_ROUNDS = 400
TOKEN_UPDATE_INTERVAL_SECONDS = 0.25
CANCELLED_NOTICE = "[Operation cancelled by user]"
ROUND_LIMIT_NOTICE = "Maximum tool execution rounds reached. Stopping to prevent infinite loops."
ERROR_NOTICE = "Sorry, I encountered an error: {error}"
CANCELLED_OUTCOME = "cancelled by user"


class LoopState(StrEnum):
    IDLE = "idle"
    AWAITING_MODEL = "awaiting_model"
    TOOL_CALLS_PENDING = "tool_calls_pending"
    RESPONSE_COMPLETE = "response_complete"
    CANCELLED = "cancelled"
    ROUND_LIMIT_REACHED = "round_limit_reached"
    FAILED = "failed"


@dataclass(frozen=True)
class AgentConfig:
    max_rounds: int = DEFAULT_MAX_ROUNDS
    parallel_tools: bool = True
    selection_enabled: bool = True
    selector_options: SelectorOptions = field(default_factory=SelectorOptions)
    chat_options: ChatOptions = field(default_factory=ChatOptions)
    token_update_interval: float = TOKEN_UPDATE_INTERVAL_SECONDS


class Agent:
    """One conversation: owns the message log and drives rounds for each submission.

    Collaborators are injected so that no mutable state is shared across
    conversations.
    """

    def __init__(
        self,
        backend: ModelBackend,
        registry: CapabilityRegistry,
        *,
        counter: TokenCounter,
        system_prompt: str = "",
        executor: CapabilityExecutor | None = None,
        selector: RelevanceSelector | None = None,
        context: ContextWindowManager | None = None,
        config: AgentConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._backend = backend
        self._registry = registry
        self._counter = counter
        self._system_message = Message.system(system_prompt)
        self._executor = executor or CapabilityExecutor(registry)
        self._selector = selector or RelevanceSelector(counter)
        self._context = context or ContextWindowManager(counter)
        self.config = config or AgentConfig()
        self._clock = clock
        self._messages: list[Message] = [self._system_message]
        self._cancel_event = asyncio.Event()
        self._state = LoopState.IDLE
        self._running = False
        self.usage = TokenUsage()
        self._last_count = 0

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    @property
    def state(self) -> LoopState:
        return self._state

    @property
    def selector(self) -> RelevanceSelector:
        return self._selector

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self) -> None:
        """Trip cooperative cancellation for the running submission."""

        if self._running:
            logger.info("loop.cancel.requested state={}", self._state)
            self._cancel_event.set()

    def reset(self) -> None:
        """Drop the conversation back to the system message."""

        if self._running:
            raise TandemError("cannot reset while a submission is running")
        self._messages = [self._system_message]
        self._state = LoopState.IDLE
        self.usage = TokenUsage()
        self._last_count = 0

    def token_count(self) -> int:
        self._last_count = self._count(self._counter.count_messages, self._messages, fallback=self._last_count)
        return self._last_count

    def _count(self, fn: Callable[[Any], int], value: Any, *, fallback: int = 0) -> int:
        try:
            return fn(value)
        except AccountingError:
            logger.exception("loop.accounting.error fallback={}", fallback)
            return fallback

    async def submit(self, text: str) -> AsyncIterator[AgentEvent]:
        """Run one user request to completion, yielding events as they happen."""

        if self._running:
            raise TandemError("a submission is already running")
        self._running = True
        self._cancel_event.clear()
        try:
            async for event in self._submit(text):
                yield event
        finally:
            self._running = False

    async def _submit(self, text: str) -> AsyncIterator[AgentEvent]:
        self._messages.append(Message.user(text))
        yield TokenCountEvent(self.token_count())

        selection: SelectionResult | None = None
        selected = False
        rounds = 0
        while True:
            if self.cancelled:
                async for event in self._finish_cancelled(rounds):
                    yield event
                return

            self._state = LoopState.AWAITING_MODEL
            if not selected:
                selection = self._select(text)
                selected = True
            capabilities = self._registry.schemas(selection.selected if selection is not None else None)
            logger.info(
                "loop.round.start round={} tools={} messages={}", rounds, len(capabilities), len(self._messages)
            )

            accumulated = AccumulatedMessage()
            announced = False
            last_update = self._clock()
            self.usage.input_tokens += self.token_count()
            try:
                async for raw in self._backend.stream(self._messages, capabilities, self.config.chat_options):
                    for delta in parse_delta(raw):
                        accumulated = accumulate(accumulated, delta)
                        if isinstance(delta, ContentDelta):
                            yield ContentEvent(delta.text)
                    if not announced and accumulated.has_named_tool_call():
                        announced = True
                        yield ToolCallsEvent(accumulated.invocations())
                    if self.cancelled:
                        break
                    now = self._clock()
                    if now - last_update >= self.config.token_update_interval:
                        last_update = now
                        streamed = self._count(self._counter.count_text, accumulated.content or "")
                        yield TokenCountEvent(self.token_count() + streamed)
            except Exception as exc:
                async for event in self._finish_failed(exc, rounds):
                    yield event
                return

            assistant = accumulated.to_message()
            self.usage.output_tokens += self._count(self._counter.count_message, assistant)

            if self.cancelled:
                if assistant.content or assistant.tool_calls:
                    self._messages.append(assistant)
                    self._resolve_cancelled(assistant.tool_calls, {})
                async for event in self._finish_cancelled(rounds):
                    yield event
                return

            self._messages.append(assistant)
            if not assistant.tool_calls:
                self._state = LoopState.RESPONSE_COMPLETE
                yield TokenCountEvent(self.token_count())
                logger.info("loop.complete rounds={} tokens={}", rounds, self.usage.total)
                yield DoneEvent(state=self._state, rounds=rounds)
                return

            self._state = LoopState.TOOL_CALLS_PENDING
            if selection is not None:
                for invocation in assistant.tool_calls:
                    self._selector.record_request(invocation.name, selection)

            parallel = self.config.parallel_tools and can_parallelize(assistant.tool_calls, self._registry)
            logger.info("loop.dispatch round={} calls={} parallel={}", rounds, len(assistant.tool_calls), parallel)
            outcomes = await self._executor.run_batch(
                assistant.tool_calls,
                parallel=parallel,
                should_continue=lambda: not self.cancelled,
            )

            if self.cancelled:
                for invocation in assistant.tool_calls:
                    if invocation.id in outcomes:
                        yield ToolOutcomeEvent(invocation, outcomes[invocation.id])
                self._resolve_cancelled(assistant.tool_calls, outcomes)
                async for event in self._finish_cancelled(rounds):
                    yield event
                return

            for invocation in assistant.tool_calls:
                outcome = outcomes.get(invocation.id) or ToolOutcome.failed(invocation.id, "not executed")
                self._messages.append(Message.tool(outcome))
                yield ToolOutcomeEvent(invocation, outcome)

            self._messages = self._context.manage(self._messages)
            yield TokenCountEvent(self.token_count())

            rounds += 1
            if rounds >= self.config.max_rounds:
                self._state = LoopState.ROUND_LIMIT_REACHED
                logger.warning("loop.round_limit rounds={}", rounds)
                yield ContentEvent(ROUND_LIMIT_NOTICE)
                yield DoneEvent(state=self._state, rounds=rounds)
                return

    def _select(self, query: str) -> SelectionResult | None:
        if not self.config.selection_enabled:
            return None
        try:
            return self._selector.select(query, self._registry, self.config.selector_options)
        except SelectionError:
            logger.exception("loop.selection.fallback tools={}", len(self._registry))
            return None

    def _resolve_cancelled(self, invocations: tuple[ToolInvocation, ...], outcomes: dict[str, ToolOutcome]) -> None:
        for invocation in invocations:
            outcome = outcomes.get(invocation.id) or ToolOutcome.failed(invocation.id, CANCELLED_OUTCOME)
            self._messages.append(Message.tool(outcome))

    async def _finish_cancelled(self, rounds: int) -> AsyncIterator[AgentEvent]:
        self._state = LoopState.CANCELLED
        logger.info("loop.cancelled rounds={}", rounds)
        yield ContentEvent(CANCELLED_NOTICE)
        yield DoneEvent(state=self._state, rounds=rounds)

    async def _finish_failed(self, exc: Exception, rounds: int) -> AsyncIterator[AgentEvent]:
        self._state = LoopState.FAILED
        if isinstance(exc, BackendError):
            logger.error("loop.backend.error round={} error={}", rounds, exc)
        else:
            logger.exception("loop.backend.error round={}", rounds)
        yield ContentEvent(ERROR_NOTICE.format(error=exc))
        yield DoneEvent(state=self._state, rounds=rounds)
