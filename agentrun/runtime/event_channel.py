"""
Event Channel - ordered, single-consumer stream of run events.

One producer (the StepDriver) emits typed events; one consumer (the
transport) iterates them and writes each as a JSON line. Emitting never
blocks, so a slow client cannot stall the run.

Guarantees enforced here:
- events come out in the order they were emitted
- a tool ``completed`` event for a call id needs exactly one earlier
  ``running`` event for that id, and nothing follows it for that id
- at most one terminal event (``complete`` or terminal ``error``), and it is
  the last event before the channel closes
"""

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class RunEventType(StrEnum):
    """Kinds of events sent to the client."""

    START = "start"
    REASONING = "reasoning"
    ASSISTANT = "assistant"
    TOOL = "tool"
    CREDITS_USED = "credits_used"
    ERROR = "error"
    COMPLETE = "complete"


class ToolEventStatus(StrEnum):
    RUNNING = "running"
    COMPLETED = "completed"


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class RunEvent:
    """One event on the wire."""

    type: RunEventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: int = field(default_factory=now_ms)
    terminal: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Flat wire shape: ``{"type": ..., **data, "timestamp": ...}``."""
        return {"type": self.type.value, **self.data, "timestamp": self.timestamp}

    def to_json_line(self) -> str:
        return json.dumps(self.to_dict(), default=str) + "\n"


class ChannelProtocolError(RuntimeError):
    """The producer broke an ordering guarantee."""


_CLOSED = object()


class EventChannel:
    """
    Queue-backed channel between one producer and one consumer.

    Example:
        channel = EventChannel()
        channel.emit_start(session_id="s1", run_id="r1", display_name="Assistant")
        channel.emit_complete("done")   # closes the channel

        async for event in channel:
            send(event.to_json_line())
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False
        self._consumed = False
        self._running_calls: set[str] = set()
        self._finished_calls: set[str] = set()
        self.history: list[RunEvent] = []

    @property
    def closed(self) -> bool:
        return self._closed

    def emit(self, event: RunEvent) -> bool:
        """Append an event. Returns False if the channel is already closed."""
        if self._closed:
            logger.debug("Dropping %s event on closed channel", event.type)
            return False

        if event.type == RunEventType.TOOL:
            self._check_tool_order(event)

        self.history.append(event)
        self._queue.put_nowait(event)
        if event.terminal:
            self.close()
        return True

    def _check_tool_order(self, event: RunEvent) -> None:
        call_id = event.data.get("toolCallId", "")
        status = event.data.get("status")
        if call_id in self._finished_calls:
            raise ChannelProtocolError(f"Tool call {call_id} already completed")
        if status == ToolEventStatus.RUNNING:
            if call_id in self._running_calls:
                raise ChannelProtocolError(f"Tool call {call_id} already running")
            self._running_calls.add(call_id)
        else:
            if call_id not in self._running_calls:
                raise ChannelProtocolError(f"Tool call {call_id} completed without running event")
            self._running_calls.discard(call_id)
            self._finished_calls.add(call_id)

    def close(self) -> None:
        """Signal end of stream. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)

    async def __aiter__(self) -> AsyncIterator[RunEvent]:
        if self._consumed:
            raise RuntimeError("EventChannel supports a single consumer")
        self._consumed = True
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item

    # === CONVENIENCE EMITTERS ===

    def emit_start(self, session_id: str, run_id: str, display_name: str) -> bool:
        return self.emit(
            RunEvent(
                type=RunEventType.START,
                data={"sessionId": session_id, "runId": run_id, "displayName": display_name},
            )
        )

    def emit_reasoning(self, delta: str) -> bool:
        return self.emit(RunEvent(type=RunEventType.REASONING, data={"delta": delta}))

    def emit_assistant(self, delta: str) -> bool:
        return self.emit(RunEvent(type=RunEventType.ASSISTANT, data={"delta": delta}))

    def emit_tool_running(
        self,
        tool_call_id: str,
        tool_name: str,
        tool_input: dict[str, Any],
        step_index: int,
    ) -> bool:
        return self.emit(
            RunEvent(
                type=RunEventType.TOOL,
                data={
                    "toolCallId": tool_call_id,
                    "toolName": tool_name,
                    "status": ToolEventStatus.RUNNING.value,
                    "input": tool_input,
                    "stepIndex": step_index,
                },
            )
        )

    def emit_tool_completed(
        self,
        tool_call_id: str,
        tool_name: str,
        tool_input: dict[str, Any],
        step_index: int,
        success: bool,
        output: Any = None,
        error: str | None = None,
    ) -> bool:
        data: dict[str, Any] = {
            "toolCallId": tool_call_id,
            "toolName": tool_name,
            "status": ToolEventStatus.COMPLETED.value,
            "input": tool_input,
            "stepIndex": step_index,
            "success": success,
            "output": output,
        }
        if error is not None:
            data["error"] = error
        return self.emit(RunEvent(type=RunEventType.TOOL, data=data))

    def emit_credits_used(self, credits_used: int, balance_after: int, total_tokens: int) -> bool:
        return self.emit(
            RunEvent(
                type=RunEventType.CREDITS_USED,
                data={
                    "creditsUsed": credits_used,
                    "balanceAfter": balance_after,
                    "totalTokens": total_tokens,
                },
            )
        )

    def emit_error(self, error: str, terminal: bool = False) -> bool:
        return self.emit(RunEvent(type=RunEventType.ERROR, data={"error": error}, terminal=terminal))

    def emit_complete(self, final_text: str) -> bool:
        return self.emit(
            RunEvent(type=RunEventType.COMPLETE, data={"finalText": final_text}, terminal=True)
        )
