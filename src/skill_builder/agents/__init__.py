"""Worker process management."""

from skill_builder.agents.events import (
    AgentEventHandler,
    AgentMessage,
    ConsoleEventHandler,
    LoggingEventHandler,
    parse_agent_message,
)
from skill_builder.agents.invocation import AgentInvocation
from skill_builder.agents.registry import AgentHandle, AgentOutcome, AgentRegistry, CancelAllReport

__all__ = [
    "AgentEventHandler",
    "AgentHandle",
    "AgentInvocation",
    "AgentMessage",
    "AgentOutcome",
    "AgentRegistry",
    "CancelAllReport",
    "ConsoleEventHandler",
    "LoggingEventHandler",
    "parse_agent_message",
]
