"""Tandem: a tool-using assistant orchestration engine."""

from tandem.core.loop import Agent, AgentConfig, LoopState
from tandem.types import Message, ToolInvocation, ToolOutcome

__all__ = ["Agent", "AgentConfig", "LoopState", "Message", "ToolInvocation", "ToolOutcome"]
__version__ = "0.1.0"
