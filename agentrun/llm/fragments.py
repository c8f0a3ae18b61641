"""Fragment types produced by a streaming model capability.

Defines a discriminated union of frozen dataclasses representing every piece
a streaming model call can yield. These types form the contract between the
provider layer and the StepDriver; the provider's own wire format never
leaks past it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal


@dataclass(frozen=True)
class TextFragment:
    """A chunk of answer text produced by the model."""

    type: Literal["text"] = "text"
    content: str = ""


@dataclass(frozen=True)
class ReasoningFragment:
    """A chunk of reasoning/thinking content."""

    type: Literal["reasoning"] = "reasoning"
    content: str = ""


@dataclass(frozen=True)
class ToolCallFragment:
    """The model has requested a tool call."""

    type: Literal["tool_call"] = "tool_call"
    tool_use_id: str = ""
    tool_name: str = ""
    tool_input: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class FinishFragment:
    """The model has finished one turn."""

    type: Literal["finish"] = "finish"
    stop_reason: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    model: str = ""


@dataclass(frozen=True)
class StreamErrorFragment:
    """An error occurred during streaming."""

    type: Literal["error"] = "error"
    error: str = ""
    recoverable: bool = False


# Discriminated union of all fragment types
Fragment = TextFragment | ReasoningFragment | ToolCallFragment | FinishFragment | StreamErrorFragment
