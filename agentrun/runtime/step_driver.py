"""
StepDriver - the agentic execution loop shared by every lane.

INIT -> STREAMING -> (AWAITING_TOOLS -> STREAMING)* -> FINALIZING -> terminal

Each model turn streams fragments from the model capability. Reasoning and
text are forwarded to the EventChannel as they arrive; each tool call is
invoked through the lane's ToolRegistry, counted against the step budget and
fed back into the conversation. The loop takes another turn only when the
model asked for tools and the budget allows it.

Finalization always runs, whatever happened inside the loop:
  1. decide status (aborted, error, completed)
  2. charge credits (authenticated callers with nonzero usage, at most once)
  3. emit the terminal event (last event on the channel)
  4. write the final Run to the recorder

Nothing raised by the model, tools, meter or recorder escapes ``run()``.
Cancellation of the driver task itself is finalized as ``aborted`` and then
re-raised.
"""

import asyncio
import json
import logging
import uuid
from datetime import datetime
from typing import Any

from agentrun.config import RuntimeConfig
from agentrun.credits.meter import ChargeResult, CreditMeter
from agentrun.llm.fragments import (
    FinishFragment,
    ReasoningFragment,
    StreamErrorFragment,
    TextFragment,
    ToolCallFragment,
)
from agentrun.llm.provider import LLMProvider
from agentrun.observability.logging import clear_trace_context, set_trace_context
from agentrun.runner.tool_registry import ToolOutcome, ToolRegistry
from agentrun.runtime.budget import BudgetTracker
from agentrun.runtime.cancellation import USER_STOP_MESSAGE, CancellationToken
from agentrun.runtime.event_channel import EventChannel, now_ms
from agentrun.schemas.run import (
    Run,
    RunLogEntry,
    RunStatus,
    TokenUsage,
    ToolInvocation,
    ToolInvocationState,
)
from agentrun.sessions.lanes import LaneConfig
from agentrun.storage.run_recorder import RunRecorder

logger = logging.getLogger(__name__)

LOG_SUMMARY_CHARS = 120


def generate_run_id() -> str:
    """Run id in the form ``run_YYYYMMDD_HHMMSS_{uuid8}``."""
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    return f"run_{timestamp}_{uuid.uuid4().hex[:8]}"


class StepDriver:
    """
    Drives one run to a terminal state.

    One instance per request; instances share nothing except the injected
    meter and recorder.

    Example:
        driver = StepDriver(lane_config, llm, channel, meter=meter, recorder=recorder)
        task = asyncio.create_task(driver.run())
        async for event in channel:
            ...
        run = await task
    """

    def __init__(
        self,
        lane_config: LaneConfig,
        llm: LLMProvider,
        channel: EventChannel,
        *,
        meter: CreditMeter | None = None,
        recorder: RunRecorder | None = None,
        token: CancellationToken | None = None,
        config: RuntimeConfig | None = None,
        run_id: str | None = None,
    ):
        self.lane_config = lane_config
        self.llm = llm
        self.channel = channel
        self.meter = meter
        self.recorder = recorder
        self.token = token or CancellationToken()
        self.config = config or RuntimeConfig()
        self.run_id = run_id or generate_run_id()

        self.budget = BudgetTracker(lane_config.max_steps)
        self.usage = TokenUsage()
        self.final_text = ""
        self.reasoning_text = ""
        self.logs: list[RunLogEntry] = []
        self.invocations: list[ToolInvocation] = []

        self._messages: list[dict[str, Any]] = [dict(m) for m in lane_config.messages]
        self._call_ids: set[str] = set()
        self._budget_stopped = False
        self._fatal_error: str | None = None
        self._model_name: str | None = getattr(llm, "model", None)
        self._started = False

    @property
    def tools(self) -> ToolRegistry:
        return self.lane_config.tools

    @property
    def messages(self) -> list[dict[str, Any]]:
        return self._messages

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(self) -> Run:
        """Execute the run. Returns the final Run record."""
        if self._started:
            raise RuntimeError("StepDriver.run() may only be called once")
        self._started = True

        cfg = self.lane_config
        run = Run(
            id=self.run_id,
            session_id=cfg.session_id,
            lane=cfg.lane,
            user_id=cfg.identity.user_id,
            target_id=cfg.target_id,
            input=cfg.run_input,
        )

        set_trace_context(run_id=run.id, session_id=cfg.session_id, lane=cfg.lane.value)
        context_token = ToolRegistry.set_execution_context(
            session_id=cfg.session_id,
            run_id=run.id,
            user_id=cfg.identity.user_id,
        )
        try:
            return await self._run(run)
        finally:
            ToolRegistry.reset_execution_context(context_token)
            clear_trace_context()

    async def _run(self, run: Run) -> Run:
        cfg = self.lane_config
        await self._record_create(run)
        logger.info(
            "Run started (max %d steps, %d tools)",
            self.budget.max_steps,
            len(self.tools.get_registered_names()),
            extra={"event": "run_started", "model": self._model_name},
        )
        self.channel.emit_start(
            session_id=cfg.session_id, run_id=run.id, display_name=cfg.display_name
        )

        task_cancelled: asyncio.CancelledError | None = None
        try:
            await self._loop()
        except asyncio.CancelledError as e:
            task_cancelled = e
            self.token.cancel("driver task cancelled")
        except Exception as e:
            logger.error("Run failed: %s", e, exc_info=True, extra={"event": "run_failed"})
            self._fatal_error = str(e) or type(e).__name__
            self.logs.append(self._log_entry("error", self._fatal_error))

        status, error = self._decide_outcome()
        await self._finalize(run, status, error)

        if task_cancelled is not None:
            raise task_cancelled
        return run

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def _loop(self) -> None:
        turn = 0
        while True:
            turn += 1
            executed = await self._run_turn(turn)
            if self.token.cancelled or self._fatal_error or self._budget_stopped:
                return
            if executed == 0:
                # No tool calls: the model produced its final answer
                return
            if self.budget.is_exhausted():
                self._budget_stopped = True
                return

    async def _run_turn(self, turn: int) -> int:
        """Stream one model turn. Returns the number of tool calls executed."""
        turn_text = ""
        executed: list[tuple[ToolCallFragment, str, ToolOutcome]] = []

        stream = self.llm.stream(
            messages=self._messages,
            system=self.lane_config.system_prompt,
            tools=self.tools.list_tools() or None,
            max_tokens=self.config.max_tokens,
        )
        try:
            async for fragment in stream:
                if self.token.cancelled:
                    return len(executed)

                if isinstance(fragment, ReasoningFragment):
                    self.reasoning_text += fragment.content
                    self.channel.emit_reasoning(fragment.content)

                elif isinstance(fragment, TextFragment):
                    self.final_text += fragment.content
                    turn_text += fragment.content
                    self.channel.emit_assistant(fragment.content)

                elif isinstance(fragment, ToolCallFragment):
                    if self.budget.is_exhausted():
                        # Calls past the budget are never started
                        self._budget_stopped = True
                        logger.info(
                            "Skipping tool '%s': step budget exhausted",
                            fragment.tool_name,
                            extra={"tool_name": fragment.tool_name},
                        )
                        continue
                    call_id, outcome = await self._execute_tool(fragment)
                    executed.append((fragment, call_id, outcome))
                    if self.token.cancelled:
                        return len(executed)

                elif isinstance(fragment, FinishFragment):
                    self.usage = self.usage.add(
                        TokenUsage.normalize(
                            {
                                "input_tokens": fragment.input_tokens,
                                "output_tokens": fragment.output_tokens,
                            }
                        )
                    )
                    if fragment.model:
                        self._model_name = fragment.model

                elif isinstance(fragment, StreamErrorFragment):
                    if not fragment.recoverable:
                        self._fatal_error = fragment.error or "Model stream failed"
                        self.logs.append(self._log_entry("error", self._fatal_error))
                        logger.error(
                            "Model stream failed: %s", fragment.error, extra={"event": "stream_error"}
                        )
                        return len(executed)
                    logger.warning(
                        "Recoverable model error: %s", fragment.error, extra={"event": "stream_error"}
                    )
                    self.channel.emit_error(fragment.error)
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        logger.debug(
            "Turn %d finished: %d chars, %d tool calls", turn, len(turn_text), len(executed)
        )
        if executed:
            self._append_tool_turn(turn_text, executed)
        elif turn_text:
            self._messages.append({"role": "assistant", "content": turn_text})
        return len(executed)

    async def _execute_tool(self, fragment: ToolCallFragment) -> tuple[str, ToolOutcome]:
        """Run one requested call. Returns the id the model knows it by, and the outcome."""
        model_call_id = fragment.tool_use_id or f"call_{uuid.uuid4().hex[:12]}"
        call_id = self._claim_call_id(model_call_id)
        name = fragment.tool_name
        tool_input = fragment.tool_input or {}
        step_index = self.budget.steps_used
        invocation = ToolInvocation(
            call_id=call_id, name=name, step_index=step_index, input=tool_input
        )
        self.invocations.append(invocation)

        self.channel.emit_tool_running(call_id, name, tool_input, step_index)
        self.logs.append(
            self._log_entry("tool_start", f"{name}: {self._compact(tool_input)}")
        )

        outcome = await self.tools.invoke(
            name, tool_input, timeout=self.config.tool_timeout_seconds
        )
        self.budget.record_tool_completion()
        if outcome.success:
            invocation.state = ToolInvocationState.COMPLETED
            invocation.output = outcome.output
        else:
            invocation.state = ToolInvocationState.ERROR
            invocation.error_message = outcome.error
        logger.info(
            "Tool '%s' %s",
            name,
            "succeeded" if outcome.success else "failed",
            extra={
                "event": "tool_completed",
                "tool_name": name,
                "step_index": step_index,
                "latency_ms": outcome.latency_ms,
            },
        )
        self.logs.append(
            self._log_entry("tool_end", f"{name} → {self._compact(outcome.to_payload())}")
        )

        if self.token.cancelled:
            return model_call_id, outcome

        self.channel.emit_tool_completed(
            call_id,
            name,
            tool_input,
            step_index,
            success=outcome.success,
            output=outcome.output,
            error=outcome.error,
        )
        return model_call_id, outcome

    def _claim_call_id(self, model_call_id: str) -> str:
        """Run-unique id for the event stream.

        Providers may reuse ids across turns (or number them by position), so
        a repeated id gets a suffix. The model-side id is left untouched.
        """
        call_id = model_call_id
        while call_id in self._call_ids:
            call_id = f"{model_call_id}_{uuid.uuid4().hex[:6]}"
        self._call_ids.add(call_id)
        return call_id

    def _append_tool_turn(
        self,
        turn_text: str,
        executed: list[tuple[ToolCallFragment, str, ToolOutcome]],
    ) -> None:
        """Add the assistant tool-call message and one tool message per result."""
        self._messages.append(
            {
                "role": "assistant",
                "content": turn_text or None,
                "tool_calls": [
                    {
                        "id": call_id,
                        "type": "function",
                        "function": {
                            "name": fragment.tool_name,
                            "arguments": json.dumps(fragment.tool_input or {}, default=str),
                        },
                    }
                    for fragment, call_id, _ in executed
                ],
            }
        )
        for fragment, call_id, outcome in executed:
            self._messages.append(
                {
                    "role": "tool",
                    "tool_call_id": call_id,
                    "content": self._truncate_tool_content(outcome.to_content(), fragment.tool_name),
                }
            )

    def _truncate_tool_content(self, content: str, tool_name: str) -> str:
        """Keep large tool results from flooding the conversation.

        The event stream still carries the full output.
        """
        limit = self.config.max_tool_result_chars
        if limit <= 0 or len(content) <= limit:
            return content
        preview_chars = max(limit - 300, limit // 2)
        logger.info(
            "Tool result truncated: %d → %d chars",
            len(content),
            preview_chars,
            extra={"tool_name": tool_name},
        )
        return (
            f"{content[:preview_chars]}…\n\n"
            f"[Result truncated: {len(content)} chars total, showing the first {preview_chars}.]"
        )

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------

    def _decide_outcome(self) -> tuple[RunStatus, str | None]:
        if self.token.cancelled:
            return RunStatus.ABORTED, USER_STOP_MESSAGE
        if self._fatal_error:
            return RunStatus.ERROR, self._fatal_error
        if self._budget_stopped and not self.final_text.strip():
            return RunStatus.ERROR, self.budget.limit_message()
        return RunStatus.COMPLETED, None

    async def _finalize(self, run: Run, status: RunStatus, error: str | None) -> None:
        credits_used = 0
        charge = await self._charge(run)
        if charge is not None:
            credits_used = charge.credits_deducted
            if status is not RunStatus.ABORTED:
                self.channel.emit_credits_used(
                    credits_used=charge.credits_deducted,
                    balance_after=charge.balance_after,
                    total_tokens=self.usage.total_tokens,
                )

        if status is RunStatus.COMPLETED:
            self.channel.emit_complete(self.final_text)
        else:
            if error != self._fatal_error:
                self.logs.append(self._log_entry("error", error or "Run failed"))
            self.channel.emit_error(error or "Run failed", terminal=True)

        output = {
            "result": self.final_text,
            "logs": [entry.model_dump() for entry in self.logs],
            "tool_calls_count": self.budget.steps_used,
            "tool_calls": [self._jsonable(inv.model_dump()) for inv in self.invocations],
        }
        run.finish(
            status,
            output=output,
            usage=self.usage,
            error=error,
            credits_used=credits_used,
        )
        logger.info(
            "Run finished: %s",
            status.value,
            extra={
                "event": "run_finished",
                "tokens_used": self.usage.total_tokens,
                "latency_ms": run.duration_ms,
                "model": self._model_name,
            },
        )
        await self._record_update(run)

    async def _charge(self, run: Run) -> ChargeResult | None:
        identity = self.lane_config.identity
        if self.meter is None or identity.is_guest or self.usage.total_tokens <= 0:
            return None
        try:
            return await self.meter.charge(
                identity, self.usage, model=self._model_name, run_id=run.id
            )
        except Exception as e:
            logger.error(
                "Credit charge failed for run %s: %s",
                run.id,
                e,
                exc_info=True,
                extra={"tokens_used": self.usage.total_tokens},
            )
            return None

    async def _record_create(self, run: Run) -> None:
        if self.recorder is None:
            return
        try:
            await self.recorder.create(run)
        except Exception as e:
            logger.error("Failed to record run %s: %s", run.id, e, exc_info=True)

    async def _record_update(self, run: Run) -> None:
        if self.recorder is None:
            return
        try:
            await self.recorder.update(
                run.id,
                run.status,
                output=run.output,
                usage=self.usage,
                error=run.error,
                credits_used=run.credits_used,
                completed_at=run.completed_at,
            )
        except Exception as e:
            logger.error("Failed to update run %s: %s", run.id, e, exc_info=True)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _compact(value: Any) -> str:
        return json.dumps(value, default=str)[:LOG_SUMMARY_CHARS]

    @staticmethod
    def _log_entry(kind: str, summary: str) -> RunLogEntry:
        return RunLogEntry(kind=kind, summary=summary, ts=now_ms())

    @staticmethod
    def _jsonable(value: Any) -> Any:
        return json.loads(json.dumps(value, default=str))
