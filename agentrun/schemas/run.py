"""
Run Schema - One execution of the agentic loop.

The Run is the only record the runtime persists. It is created before the
loop starts and mutated exactly once more, when the StepDriver reaches a
terminal state.
"""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, computed_field

from agentrun.errors import RunStateError


class Lane(StrEnum):
    """Calling context that determines prompt, tools and budget."""

    BUILDER = "builder"
    ASSISTANT = "assistant"
    PUBLIC_EXECUTE = "public-execute"
    WORKFLOW = "workflow"


class RunStatus(StrEnum):
    """Status of a run. Monotonic: terminal once non-running."""

    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self is not RunStatus.RUNNING


class ToolInvocationState(StrEnum):
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


class TokenUsage(BaseModel):
    """Token usage accumulated over every model turn of a run."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def normalize(cls, usage: dict[str, Any] | None) -> "TokenUsage":
        """Build usage from any provider-shaped mapping.

        Accepts ``input_tokens``/``output_tokens``, ``prompt_tokens``/
        ``completion_tokens`` and their camelCase variants. A missing or zero
        total falls back to prompt + completion.
        """
        if not usage:
            return cls()

        def first(*keys: str) -> int:
            for key in keys:
                value = usage.get(key)
                if value is not None:
                    return int(value)
            return 0

        prompt = first("input_tokens", "inputTokens", "prompt_tokens", "promptTokens")
        completion = first(
            "output_tokens", "outputTokens", "completion_tokens", "completionTokens"
        )
        total = first("total_tokens", "totalTokens")
        if total <= 0:
            total = prompt + completion
        return cls(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)

    def add(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


class RunLogEntry(BaseModel):
    """Compact log line stored alongside the run output."""

    kind: str  # tool_start, tool_end, error
    summary: str
    ts: int  # epoch milliseconds


class ToolInvocation(BaseModel):
    """One capability call requested by the model."""

    call_id: str
    name: str
    step_index: int
    state: ToolInvocationState = ToolInvocationState.RUNNING
    input: dict[str, Any] = Field(default_factory=dict)
    output: Any = None
    error_message: str | None = None


class Identity(BaseModel):
    """Who is asking. ``user_id=None`` is a guest."""

    user_id: str | None = None

    @property
    def is_guest(self) -> bool:
        return self.user_id is None

    @classmethod
    def guest(cls) -> "Identity":
        return cls()


class Run(BaseModel):
    """
    One execution of the loop.

    Fields mirror what run-history views read: status, input, output,
    token counts and credits.
    """

    id: str
    session_id: str
    lane: Lane
    status: RunStatus = RunStatus.RUNNING

    # Owning identity and target (agent or workflow id), when known
    user_id: str | None = None
    target_id: str | None = None

    input: dict[str, Any] = Field(default_factory=dict)
    output: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    credits_used: int = 0

    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = None

    model_config = {"extra": "allow"}

    @computed_field
    @property
    def duration_ms(self) -> int:
        """Duration of the run in milliseconds."""
        if self.completed_at is None:
            return 0
        delta = self.completed_at - self.started_at
        return int(delta.total_seconds() * 1000)

    def finish(
        self,
        status: RunStatus,
        output: dict[str, Any] | None = None,
        usage: TokenUsage | None = None,
        error: str | None = None,
        credits_used: int = 0,
        completed_at: datetime | None = None,
    ) -> None:
        """Move the run into a terminal state."""
        if self.status.is_terminal:
            raise RunStateError(f"Run {self.id} is already {self.status}")
        if not status.is_terminal:
            raise RunStateError(f"Cannot finish run {self.id} with status {status}")

        self.status = status
        if output is not None:
            self.output = output
        if usage is not None:
            self.prompt_tokens = usage.prompt_tokens
            self.completion_tokens = usage.completion_tokens
            self.total_tokens = usage.total_tokens
        self.error = error
        self.credits_used = credits_used
        self.completed_at = completed_at or datetime.now(UTC)
