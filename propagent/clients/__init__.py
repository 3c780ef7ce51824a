"""
External collaborator clients.

- reasoning: ReasoningClient protocol, NoOp and ComputeClient-backed implementations
- notifications: Notifier protocol, in-memory and logging implementations
"""

from .notifications import InMemoryNotifier, LoggingNotifier, Notifier
from .reasoning import (
    ChatTurn,
    Classification,
    ComputeClient,
    LLMReasoningClient,
    NoOpReasoningClient,
    ReasoningClient,
    ToolCall,
    ToolDefinition,
)

__all__ = [
    "Notifier",
    "InMemoryNotifier",
    "LoggingNotifier",
    "ReasoningClient",
    "NoOpReasoningClient",
    "LLMReasoningClient",
    "ComputeClient",
    "Classification",
    "ChatTurn",
    "ToolCall",
    "ToolDefinition",
]
