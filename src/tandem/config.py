"""Configuration management for Tandem."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from tandem.core.backend import ChatOptions
from tandem.core.context import ContextConfig
from tandem.core.loop import DEFAULT_MAX_ROUNDS, AgentConfig
from tandem.core.selector import SelectorOptions
from tandem.tools.builtin import DEFAULT_ALWAYS_INCLUDE

DEFAULT_SYSTEM_PROMPT = (
    "You are a coding assistant working inside the user's workspace. "
    "Use the available tools to read, search and edit files or run commands, "
    "then answer concisely."
)


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_prefix="TANDEM_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        protected_namespaces=(),
    )

    # Model
    model: str = Field(default="gpt-4o-mini", description="Chat model name")
    api_key: str | None = Field(default=None, description="API key for the model provider")
    api_base: str | None = Field(default=None, description="Optional OpenAI-compatible base URL")
    model_timeout_seconds: float = Field(default=120.0, gt=0)
    max_response_tokens: int | None = Field(default=None, gt=0)

    # Context window
    context_max_tokens: int = Field(default=120_000, gt=0)
    reserved_for_response: int = Field(default=15_000, ge=0)
    min_recent_turns: int = Field(default=3, ge=0)

    # Loop
    max_rounds: int = Field(default=DEFAULT_MAX_ROUNDS, gt=0)
    parallel_tools: bool = True
    max_concurrency: int = Field(default=8, gt=0)
    tool_timeout_seconds: float = Field(default=120.0, gt=0)

    # Selection
    selection_enabled: bool = True
    selection_max_count: int = Field(default=15, gt=0)
    selection_min_score: float = Field(default=0.5, ge=0)
    selection_always_include: list[str] = Field(default_factory=lambda: list(DEFAULT_ALWAYS_INCLUDE))

    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    workspace: Path = Field(default_factory=Path.cwd)

    def context_config(self) -> ContextConfig:
        return ContextConfig(
            max_tokens=self.context_max_tokens,
            reserved_for_response=self.reserved_for_response,
            min_recent_turns=self.min_recent_turns,
        )

    def selector_options(self) -> SelectorOptions:
        return SelectorOptions(
            max_count=self.selection_max_count,
            always_include=tuple(self.selection_always_include),
            min_score=self.selection_min_score,
        )

    def agent_config(self) -> AgentConfig:
        return AgentConfig(
            max_rounds=self.max_rounds,
            parallel_tools=self.parallel_tools,
            selection_enabled=self.selection_enabled,
            selector_options=self.selector_options(),
            chat_options=ChatOptions(max_tokens=self.max_response_tokens),
        )


def load_settings(workspace: Path | None = None) -> Settings:
    if workspace is None:
        return Settings()
    return Settings(workspace=workspace)
