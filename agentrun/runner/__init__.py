"""Tool capability adapter."""

from agentrun.runner.tool_registry import ToolOutcome, ToolRegistry, tool

__all__ = ["ToolOutcome", "ToolRegistry", "tool"]
