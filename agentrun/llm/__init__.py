"""Model capability abstraction."""

from agentrun.llm.fragments import (
    FinishFragment,
    Fragment,
    ReasoningFragment,
    StreamErrorFragment,
    TextFragment,
    ToolCallFragment,
)
from agentrun.llm.litellm import LiteLLMProvider
from agentrun.llm.mock import ScriptedLLMProvider, StreamScript
from agentrun.llm.provider import LLMProvider, LLMResponse, Tool, ToolResult, ToolUse

__all__ = [
    "LLMProvider",
    "LLMResponse",
    "Tool",
    "ToolUse",
    "ToolResult",
    "Fragment",
    "TextFragment",
    "ReasoningFragment",
    "ToolCallFragment",
    "FinishFragment",
    "StreamErrorFragment",
    "LiteLLMProvider",
    "ScriptedLLMProvider",
    "StreamScript",
]
