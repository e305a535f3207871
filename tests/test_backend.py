from __future__ import annotations

from dataclasses import dataclass, field
from types import SimpleNamespace
from typing import Any

import openai
import pytest

from tandem.core.backend import ChatOptions, OpenAIBackend
from tandem.errors import ApiKeyNotConfiguredError, BackendError
from tandem.types import Message, ToolInvocation


@dataclass
class _Delta:
    payload: dict[str, Any]

    def model_dump(self, exclude_none: bool = False) -> dict[str, Any]:
        return dict(self.payload)


def _chunk(**payload: Any) -> SimpleNamespace:
    return SimpleNamespace(choices=[SimpleNamespace(delta=_Delta(payload))])


async def _aiter(items):
    for item in items:
        yield item


@dataclass
class _Completions:
    chunks: list[Any] = field(default_factory=list)
    message: dict[str, Any] | None = None
    error: Exception | None = None
    requests: list[dict[str, Any]] = field(default_factory=list)

    async def create(self, **request: Any) -> Any:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        if request.get("stream"):
            return _aiter(self.chunks)
        return SimpleNamespace(choices=[SimpleNamespace(message=_Delta(self.message or {}))])


def _backend(completions: _Completions) -> OpenAIBackend:
    client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    return OpenAIBackend(model="test-model", api_key=None, client=client)


def test_missing_api_key_is_configuration_error() -> None:
    with pytest.raises(ApiKeyNotConfiguredError):
        OpenAIBackend(model="gpt-4o-mini", api_key=None)


@pytest.mark.asyncio
async def test_stream_yields_delta_dicts_and_builds_request() -> None:
    completions = _Completions(chunks=[_chunk(role="assistant"), SimpleNamespace(choices=[]), _chunk(content="hi")])
    backend = _backend(completions)
    tools = [{"type": "function", "function": {"name": "bash", "parameters": {}}}]

    deltas = [delta async for delta in backend.stream([Message.user("yo")], tools, ChatOptions(tool_choice="none"))]

    assert deltas == [{"role": "assistant"}, {"content": "hi"}]
    request = completions.requests[0]
    assert request["model"] == "test-model"
    assert request["stream"] is True
    assert request["messages"] == [{"role": "user", "content": "yo"}]
    assert request["tools"] == tools
    assert request["tool_choice"] == "none"


@pytest.mark.asyncio
async def test_stream_without_capabilities_omits_tools() -> None:
    completions = _Completions(chunks=[])
    backend = _backend(completions)
    _ = [delta async for delta in backend.stream([Message.user("yo")], [], ChatOptions())]
    assert "tools" not in completions.requests[0]
    assert "tool_choice" not in completions.requests[0]


@pytest.mark.asyncio
async def test_provider_errors_become_backend_errors() -> None:
    completions = _Completions(error=openai.OpenAIError("connection reset"))
    backend = _backend(completions)

    with pytest.raises(BackendError):
        _ = [delta async for delta in backend.stream([Message.user("yo")], [], ChatOptions())]
    with pytest.raises(BackendError):
        await backend.chat([Message.user("yo")], [], ChatOptions())


@pytest.mark.asyncio
async def test_chat_returns_assistant_message() -> None:
    completions = _Completions(
        message={
            "role": "assistant",
            "content": "running",
            "tool_calls": [{"id": "c1", "type": "function", "function": {"name": "bash", "arguments": "{}"}}],
        }
    )
    message = await _backend(completions).chat([Message.user("go")], [], ChatOptions())
    assert message == Message.assistant("running", (ToolInvocation(id="c1", name="bash", arguments="{}"),))
