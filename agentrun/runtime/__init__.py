"""Run execution: budget, cancellation, event channel and the step driver."""

from agentrun.runtime.budget import BudgetTracker, CreditGate
from agentrun.runtime.cancellation import USER_STOP_MESSAGE, CancellationToken
from agentrun.runtime.event_channel import (
    ChannelProtocolError,
    EventChannel,
    RunEvent,
    RunEventType,
    ToolEventStatus,
)
from agentrun.runtime.step_driver import StepDriver, generate_run_id

__all__ = [
    "BudgetTracker",
    "CancellationToken",
    "ChannelProtocolError",
    "CreditGate",
    "EventChannel",
    "RunEvent",
    "RunEventType",
    "StepDriver",
    "ToolEventStatus",
    "USER_STOP_MESSAGE",
    "generate_run_id",
]
