"""LiteLLM-backed model capability.

One provider class covers every backend litellm can route to (Gemini,
Anthropic, OpenAI, ...). Streaming chunks are translated into Fragments;
partial tool-call arguments are buffered per call index and released as a
single ToolCallFragment once the turn finishes.
"""

import json
import logging
import uuid
from collections.abc import AsyncIterator
from typing import Any

import litellm

from agentrun.llm.fragments import (
    Fragment,
    FinishFragment,
    ReasoningFragment,
    StreamErrorFragment,
    TextFragment,
    ToolCallFragment,
)
from agentrun.llm.provider import LLMProvider, LLMResponse, Tool, ToolUse

logger = logging.getLogger(__name__)


def _parse_arguments(raw: str) -> dict[str, Any]:
    """Decode tool arguments; undecodable payloads are kept under ``_raw``."""
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {"_raw": raw}
    return parsed if isinstance(parsed, dict) else {"value": parsed}


class LiteLLMProvider(LLMProvider):
    """Model capability over ``litellm.acompletion``."""

    def __init__(
        self,
        model: str,
        api_key: str | None = None,
        api_base: str | None = None,
        temperature: float | None = None,
        **extra_kwargs: Any,
    ):
        self.model = model
        self.api_key = api_key
        self.api_base = api_base
        self.temperature = temperature
        self.extra_kwargs = extra_kwargs

    def _build_kwargs(
        self,
        messages: list[dict[str, Any]],
        system: str,
        tools: list[Tool] | None,
        max_tokens: int,
    ) -> dict[str, Any]:
        full_messages = list(messages)
        if system:
            full_messages = [{"role": "system", "content": system}, *full_messages]

        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": full_messages,
            "max_tokens": max_tokens,
            **self.extra_kwargs,
        }
        if tools:
            kwargs["tools"] = [t.to_function_schema() for t in tools]
            kwargs["tool_choice"] = "auto"
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.api_base:
            kwargs["api_base"] = self.api_base
        if self.temperature is not None:
            kwargs["temperature"] = self.temperature
        return kwargs

    def complete(
        self,
        messages: list[dict[str, Any]],
        system: str = "",
        tools: list[Tool] | None = None,
        max_tokens: int = 1024,
    ) -> LLMResponse:
        response = litellm.completion(**self._build_kwargs(messages, system, tools, max_tokens))
        choice = response.choices[0]
        message = choice.message
        tool_calls = [
            ToolUse(
                id=tc.id,
                name=tc.function.name,
                input=_parse_arguments(tc.function.arguments or ""),
            )
            for tc in (getattr(message, "tool_calls", None) or [])
        ]
        usage = getattr(response, "usage", None)
        return LLMResponse(
            content=message.content or "",
            model=getattr(response, "model", None) or self.model,
            input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            output_tokens=getattr(usage, "completion_tokens", 0) or 0,
            stop_reason=choice.finish_reason or "",
            tool_calls=tool_calls,
            raw_response=response,
        )

    async def stream(
        self,
        messages: list[dict[str, Any]],
        system: str = "",
        tools: list[Tool] | None = None,
        max_tokens: int = 4096,
    ) -> AsyncIterator[Fragment]:
        kwargs = self._build_kwargs(messages, system, tools, max_tokens)
        kwargs["stream"] = True
        kwargs["stream_options"] = {"include_usage": True}

        try:
            response = await litellm.acompletion(**kwargs)
        except Exception as e:
            logger.error("Model request failed: %s", e, extra={"model": self.model})
            yield StreamErrorFragment(error=str(e), recoverable=False)
            return

        # index -> {"id", "name", "arguments"}
        pending_calls: dict[int, dict[str, str]] = {}
        stop_reason = ""
        input_tokens = 0
        output_tokens = 0

        async for chunk in response:
            usage = getattr(chunk, "usage", None)
            if usage is not None:
                input_tokens = getattr(usage, "prompt_tokens", 0) or input_tokens
                output_tokens = getattr(usage, "completion_tokens", 0) or output_tokens

            choices = getattr(chunk, "choices", None) or []
            if not choices:
                continue
            choice = choices[0]
            delta = getattr(choice, "delta", None)

            if delta is not None:
                reasoning = getattr(delta, "reasoning_content", None)
                if reasoning:
                    yield ReasoningFragment(content=reasoning)

                content = getattr(delta, "content", None)
                if content:
                    yield TextFragment(content=content)

                for tc in getattr(delta, "tool_calls", None) or []:
                    index = getattr(tc, "index", None) or 0
                    slot = pending_calls.setdefault(
                        index, {"id": "", "name": "", "arguments": ""}
                    )
                    if getattr(tc, "id", None):
                        slot["id"] = tc.id
                    function = getattr(tc, "function", None)
                    if function is not None:
                        if getattr(function, "name", None):
                            slot["name"] = function.name
                        if getattr(function, "arguments", None):
                            slot["arguments"] += function.arguments

            if getattr(choice, "finish_reason", None):
                stop_reason = choice.finish_reason

        for index in sorted(pending_calls):
            slot = pending_calls[index]
            yield ToolCallFragment(
                tool_use_id=slot["id"] or f"call_{uuid.uuid4().hex[:12]}",
                tool_name=slot["name"],
                tool_input=_parse_arguments(slot["arguments"]),
            )

        yield FinishFragment(
            stop_reason=stop_reason,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            model=self.model,
        )
