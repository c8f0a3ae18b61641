"""Persisted and in-memory record types."""

from agentrun.schemas.run import (
    Identity,
    Lane,
    Run,
    RunLogEntry,
    RunStatus,
    TokenUsage,
    ToolInvocation,
    ToolInvocationState,
)

__all__ = [
    "Identity",
    "Lane",
    "Run",
    "RunLogEntry",
    "RunStatus",
    "TokenUsage",
    "ToolInvocation",
    "ToolInvocationState",
]
