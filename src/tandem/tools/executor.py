"""Uniform asynchronous capability execution."""

from __future__ import annotations

import asyncio
import inspect
import json
import time
from collections.abc import Callable, Sequence
from contextvars import copy_context
from dataclasses import replace
from functools import partial
from typing import Any

from loguru import logger
from pydantic import ValidationError

from tandem.core.checkpoint import Checkpointer, NullCheckpointer
from tandem.errors import ClassificationParseError, ToolExecutionError
from tandem.tools.registry import CapabilityRegistry
from tandem.tools.safety import parse_arguments, resource_of
from tandem.types import ToolInvocation, ToolOutcome
from tandem.utils import shorten_text

DEFAULT_TOOL_TIMEOUT_SECONDS = 120.0
DEFAULT_MAX_CONCURRENCY = 8


class CapabilityExecutor:
    """Runs capability invocations and converts every result into a ``ToolOutcome``."""

    def __init__(
        self,
        registry: CapabilityRegistry,
        *,
        checkpointer: Checkpointer | None = None,
        timeout_seconds: float | None = DEFAULT_TOOL_TIMEOUT_SECONDS,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
    ) -> None:
        self._registry = registry
        self._checkpointer = checkpointer or NullCheckpointer()
        self._timeout_seconds = timeout_seconds
        self._max_concurrency = max(max_concurrency, 1)

    async def invoke(self, invocation: ToolInvocation) -> ToolOutcome:
        start = time.monotonic()
        try:
            output = await self._run(invocation)
        except ToolExecutionError as exc:
            logger.warning("tool.call.failed name={} id={} error={}", invocation.name, invocation.id, exc.message)
            return ToolOutcome.failed(invocation.id, exc.message)
        except TimeoutError:
            logger.warning("tool.call.timeout name={} id={}", invocation.name, invocation.id)
            return ToolOutcome.failed(invocation.id, f"timed out after {self._timeout_seconds}s")
        except Exception as exc:
            logger.exception("tool.call.error name={}", invocation.name)
            return ToolOutcome.failed(invocation.id, f"Tool execution error: {exc!s}")
        finally:
            duration = time.monotonic() - start
            logger.info("tool.call.end name={} duration={:.3f}ms", invocation.name, duration * 1000)
        return _to_outcome(invocation.id, output)

    async def run_batch(
        self,
        invocations: Sequence[ToolInvocation],
        *,
        parallel: bool,
        should_continue: Callable[[], bool] = lambda: True,
    ) -> dict[str, ToolOutcome]:
        """Run a batch and return outcomes keyed by invocation id.

        ``should_continue`` is checked before each dispatch. Results that land
        after it turns False are late and are discarded, so invocations that
        were never dispatched or finished late have no outcome.
        """

        outcomes: dict[str, ToolOutcome] = {}
        if parallel:
            if not should_continue():
                return outcomes
            semaphore = asyncio.Semaphore(self._max_concurrency)

            async def _bounded(invocation: ToolInvocation) -> ToolOutcome:
                async with semaphore:
                    return await self.invoke(invocation)

            results = await asyncio.gather(*(_bounded(invocation) for invocation in invocations))
            if not should_continue():
                logger.info("tool.batch.discarded count={}", len(results))
                return outcomes
            for invocation, outcome in zip(invocations, results, strict=True):
                outcomes[invocation.id] = outcome
            return outcomes

        for invocation in invocations:
            if not should_continue():
                break
            outcome = await self.invoke(invocation)
            if not should_continue():
                logger.info("tool.batch.discarded name={} id={}", invocation.name, invocation.id)
                break
            outcomes[invocation.id] = outcome
        return outcomes

    async def _run(self, invocation: ToolInvocation) -> Any:
        descriptor = self._registry.get(invocation.name)
        if descriptor is None:
            raise ToolExecutionError(invocation.name, f"Unknown tool: {invocation.name}")

        try:
            kwargs = parse_arguments(invocation.arguments)
        except ClassificationParseError as exc:
            raise ToolExecutionError(invocation.name, str(exc)) from exc

        self._log_tool_call(invocation, kwargs)
        if descriptor.mutates_state and (resource := resource_of(kwargs)) is not None:
            self._checkpointer.before_mutating_op(resource)

        async with asyncio.timeout(self._timeout_seconds):
            ctx = copy_context()
            try:
                result = await asyncio.to_thread(ctx.run, partial(descriptor.tool.run, **kwargs))
                if inspect.isawaitable(result):
                    result = await result
            except ValidationError as exc:
                raise ToolExecutionError(invocation.name, f"invalid arguments: {exc.error_count()} error(s)") from exc
        return result

    def _log_tool_call(self, invocation: ToolInvocation, kwargs: dict[str, Any]) -> None:
        params: list[str] = []
        for key, value in kwargs.items():
            try:
                rendered = json.dumps(value, ensure_ascii=False)
            except TypeError:
                rendered = repr(value)
            params.append(f"{key}={shorten_text(rendered, width=30, placeholder='...')}")
        logger.info(
            "tool.call.start name={} id={} {{ {} }}",
            invocation.name,
            invocation.id,
            ", ".join(params),
        )


def _to_outcome(invocation_id: str, result: Any) -> ToolOutcome:
    if isinstance(result, ToolOutcome):
        return replace(result, invocation_id=invocation_id)
    if isinstance(result, dict):
        return ToolOutcome(
            invocation_id=invocation_id,
            success=True,
            output=json.dumps(result, ensure_ascii=False),
            data=result,
        )
    if result is None:
        return ToolOutcome(invocation_id=invocation_id, success=True)
    return ToolOutcome(invocation_id=invocation_id, success=True, output=str(result))
