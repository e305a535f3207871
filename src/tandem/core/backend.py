"""Model backend protocol and the OpenAI-compatible implementation."""

from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass
from typing import Any, Literal, Protocol

import openai
from loguru import logger
from openai import AsyncOpenAI

from tandem.core.stream import merge_deltas, parse_delta
from tandem.errors import ApiKeyNotConfiguredError, BackendError
from tandem.types import Message


@dataclass(frozen=True)
class ChatOptions:
    tool_choice: Literal["auto", "none"] = "auto"
    max_tokens: int | None = None
    temperature: float | None = None


class ModelBackend(Protocol):
    def stream(
        self,
        messages: Sequence[Message],
        capabilities: Sequence[dict[str, Any]],
        options: ChatOptions,
    ) -> AsyncIterator[dict[str, Any]]: ...

    async def chat(
        self,
        messages: Sequence[Message],
        capabilities: Sequence[dict[str, Any]],
        options: ChatOptions,
    ) -> Message: ...


class OpenAIBackend:
    """Chat-completions backend for any OpenAI-compatible endpoint.

    ``stream`` yields provider deltas as plain dicts; every provider error is
    re-raised as ``BackendError``.
    """

    def __init__(
        self,
        *,
        model: str,
        api_key: str | None,
        api_base: str | None = None,
        timeout_seconds: float | None = None,
        client: AsyncOpenAI | None = None,
    ) -> None:
        if client is None:
            if not api_key:
                raise ApiKeyNotConfiguredError("API key is not configured; set TANDEM_API_KEY")
            client = AsyncOpenAI(api_key=api_key, base_url=api_base, timeout=timeout_seconds)
        self._client = client
        self.model = model

    async def stream(
        self,
        messages: Sequence[Message],
        capabilities: Sequence[dict[str, Any]],
        options: ChatOptions,
    ) -> AsyncIterator[dict[str, Any]]:
        request = self._request(messages, capabilities, options)
        logger.debug("backend.stream model={} messages={} tools={}", self.model, len(messages), len(capabilities))
        try:
            response = await self._client.chat.completions.create(stream=True, **request)
            async for chunk in response:
                if not chunk.choices:
                    continue
                yield chunk.choices[0].delta.model_dump(exclude_none=True)
        except openai.OpenAIError as exc:
            raise BackendError(str(exc)) from exc

    async def chat(
        self,
        messages: Sequence[Message],
        capabilities: Sequence[dict[str, Any]],
        options: ChatOptions,
    ) -> Message:
        request = self._request(messages, capabilities, options)
        try:
            response = await self._client.chat.completions.create(**request)
        except openai.OpenAIError as exc:
            raise BackendError(str(exc)) from exc
        if not response.choices:
            raise BackendError("empty response from model")
        raw = response.choices[0].message.model_dump(exclude_none=True)
        # full messages carry no slot indexes, position is enough
        return merge_deltas(parse_delta(raw)).to_message()

    def _request(
        self,
        messages: Sequence[Message],
        capabilities: Sequence[dict[str, Any]],
        options: ChatOptions,
    ) -> dict[str, Any]:
        request: dict[str, Any] = {
            "model": self.model,
            "messages": [message.to_dict() for message in messages],
        }
        if capabilities:
            request["tools"] = list(capabilities)
            request["tool_choice"] = options.tool_choice
        if options.max_tokens is not None:
            request["max_tokens"] = options.max_tokens
        if options.temperature is not None:
            request["temperature"] = options.temperature
        return request
