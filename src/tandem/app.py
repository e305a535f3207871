"""Agent bootstrap helpers."""

from __future__ import annotations

from pathlib import Path

from tandem.config import Settings, load_settings
from tandem.core.backend import ModelBackend, OpenAIBackend
from tandem.core.checkpoint import FileSnapshotCheckpointer
from tandem.core.context import ContextWindowManager
from tandem.core.loop import Agent
from tandem.core.selector import MetricsSink, RelevanceSelector
from tandem.tokens import TiktokenCounter, TokenCounter
from tandem.tools.builtin import build_builtin_registry
from tandem.tools.executor import CapabilityExecutor
from tandem.tools.registry import CapabilityRegistry

WORKSPACE_PROMPT_FILE = "TANDEM.md"


def read_workspace_prompt(workspace: Path) -> str:
    """Read extra instructions from the workspace prompt file, if present."""
    prompt_path = workspace / WORKSPACE_PROMPT_FILE
    if not prompt_path.is_file():
        return ""
    return prompt_path.read_text(encoding="utf-8")


def build_agent(
    settings: Settings,
    *,
    backend: ModelBackend | None = None,
    registry: CapabilityRegistry | None = None,
    counter: TokenCounter | None = None,
    metrics_sink: MetricsSink | None = None,
) -> Agent:
    """Wire one conversation's collaborators from settings."""

    workspace = settings.workspace.resolve()
    counter = counter or TiktokenCounter(settings.model)
    registry = registry or build_builtin_registry(workspace)
    if backend is None:
        backend = OpenAIBackend(
            model=settings.model,
            api_key=settings.api_key,
            api_base=settings.api_base,
            timeout_seconds=settings.model_timeout_seconds,
        )
    executor = CapabilityExecutor(
        registry,
        checkpointer=FileSnapshotCheckpointer(workspace),
        timeout_seconds=settings.tool_timeout_seconds,
        max_concurrency=settings.max_concurrency,
    )
    system_prompt = "\n\n".join(part for part in (settings.system_prompt, read_workspace_prompt(workspace)) if part)
    return Agent(
        backend,
        registry,
        counter=counter,
        system_prompt=system_prompt,
        executor=executor,
        selector=RelevanceSelector(counter, metrics_sink=metrics_sink, base_min_score=settings.selection_min_score),
        context=ContextWindowManager(counter, settings.context_config()),
        config=settings.agent_config(),
    )


def build_agent_for_workspace(workspace: Path | None = None, *, model: str | None = None) -> Agent:
    settings = load_settings(workspace)
    if model:
        settings = settings.model_copy(update={"model": model})
    return build_agent(settings)
