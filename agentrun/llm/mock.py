"""Scripted model capability for tests and offline demos."""

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

from agentrun.llm.fragments import (
    Fragment,
    FinishFragment,
    ReasoningFragment,
    StreamErrorFragment,
    TextFragment,
    ToolCallFragment,
)
from agentrun.llm.provider import LLMProvider, LLMResponse, Tool


@dataclass
class StreamScript:
    """One scripted stream() invocation.

    - text only  -> yields text fragments + finish (the run ends)
    - tool_calls -> yields tool-call fragments + finish (the driver runs
      the tools and calls stream() again)

    ``text`` may be a list to produce several deltas.
    """

    text: str | list[str] = ""
    reasoning: str | list[str] = ""
    tool_calls: list[dict[str, Any]] | None = None  # [{name, id?, input?}, ...]
    error: str = ""
    recoverable: bool = True
    raise_error: Exception | None = None
    input_tokens: int = 10
    output_tokens: int = 10


def _chunks(value: str | list[str]) -> list[str]:
    if isinstance(value, str):
        return [value] if value else []
    return [v for v in value if v]


class ScriptedLLMProvider(LLMProvider):
    """Model that plays back a flat list of StreamScript entries.

    Each call to stream() pops the next entry and yields the corresponding
    fragments. Every call's messages are kept in ``calls`` for assertions.
    """

    def __init__(self, scripts: list[StreamScript] | None = None, model: str = "mock-scripted"):
        self._scripts: list[StreamScript] = list(scripts or [])
        self._call_index = 0
        self.model = model
        self.calls: list[dict[str, Any]] = []

    @property
    def call_count(self) -> int:
        return self._call_index

    def complete(
        self,
        messages: list[dict[str, Any]],
        system: str = "",
        tools: list[Tool] | None = None,
        max_tokens: int = 1024,
    ) -> LLMResponse:
        return LLMResponse(content="", model=self.model)

    async def stream(
        self,
        messages: list[dict[str, Any]],
        system: str = "",
        tools: list[Tool] | None = None,
        max_tokens: int = 4096,
    ) -> AsyncIterator[Fragment]:
        self.calls.append(
            {
                "messages": [dict(m) for m in messages],
                "system": system,
                "tools": [t.name for t in tools or []],
            }
        )

        if self._call_index >= len(self._scripts):
            # Fallback: plain text finish so the run can terminate
            self._call_index += 1
            yield TextFragment(content="(no more scripts)")
            yield FinishFragment(stop_reason="stop", input_tokens=5, output_tokens=5)
            return

        script = self._scripts[self._call_index]
        self._call_index += 1

        if script.raise_error is not None:
            raise script.raise_error

        for chunk in _chunks(script.reasoning):
            yield ReasoningFragment(content=chunk)
        for chunk in _chunks(script.text):
            yield TextFragment(content=chunk)
        if script.error:
            yield StreamErrorFragment(error=script.error, recoverable=script.recoverable)
        for i, tc in enumerate(script.tool_calls or []):
            yield ToolCallFragment(
                tool_use_id=tc.get("id", f"call_{self._call_index}_{i}"),
                tool_name=tc["name"],
                tool_input=tc.get("input", {}),
            )
        yield FinishFragment(
            stop_reason="tool_calls" if script.tool_calls else "stop",
            input_tokens=script.input_tokens,
            output_tokens=script.output_tokens,
            model=self.model,
        )
