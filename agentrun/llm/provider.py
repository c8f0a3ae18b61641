"""Model capability abstraction for pluggable LLM backends."""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

from agentrun.llm.fragments import (
    FinishFragment,
    Fragment,
    TextFragment,
    ToolCallFragment,
)


@dataclass
class LLMResponse:
    """Response from a non-streaming model call."""

    content: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    stop_reason: str = ""
    tool_calls: list["ToolUse"] = field(default_factory=list)
    raw_response: Any = None


@dataclass
class Tool:
    """A tool the model can use."""

    name: str
    description: str
    parameters: dict[str, Any] = field(default_factory=dict)

    def to_function_schema(self) -> dict[str, Any]:
        """OpenAI-style function declaration (accepted by every litellm backend)."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters or {"type": "object", "properties": {}},
            },
        }


@dataclass
class ToolUse:
    """A tool call requested by the model."""

    id: str
    name: str
    input: dict[str, Any]


@dataclass
class ToolResult:
    """Result of executing a tool, as fed back into the conversation."""

    tool_use_id: str
    content: str
    is_error: bool = False


class LLMProvider(ABC):
    """
    A model backend. The StepDriver only calls :meth:`stream`; :meth:`complete`
    exists for one-shot callers and as the fallback behind the default stream.
    """

    model: str = ""

    @abstractmethod
    def complete(
        self,
        messages: list[dict[str, Any]],
        system: str = "",
        tools: list[Tool] | None = None,
        max_tokens: int = 1024,
    ) -> LLMResponse:
        """Run one non-streaming turn over OpenAI-style *messages*."""

    async def stream(
        self,
        messages: list[dict[str, Any]],
        system: str = "",
        tools: list[Tool] | None = None,
        max_tokens: int = 4096,
    ) -> AsyncIterator[Fragment]:
        """Yield one turn as Fragments.

        The default replays :meth:`complete` as text, tool-call and finish
        fragments. Tools requested here are never executed by the provider;
        the caller runs them and starts the next turn.
        """
        response = self.complete(
            messages=messages,
            system=system,
            tools=tools,
            max_tokens=max_tokens,
        )
        if response.content:
            yield TextFragment(content=response.content)
        for call in response.tool_calls:
            yield ToolCallFragment(
                tool_use_id=call.id,
                tool_name=call.name,
                tool_input=call.input,
            )
        yield FinishFragment(
            stop_reason=response.stop_reason,
            input_tokens=response.input_tokens,
            output_tokens=response.output_tokens,
            model=response.model,
        )

