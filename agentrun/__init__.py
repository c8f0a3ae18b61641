"""
agentrun - streaming agentic execution runtime.

One StepDriver runs the model/tool loop for every entry point (builder,
assistant, public execution, saved workflows), streaming typed events to
the client while enforcing a step budget, metering credits and recording
each run.
"""

from agentrun.config import RuntimeConfig, ServerConfig
from agentrun.errors import (
    AdmissionError,
    InsufficientCreditsError,
    MalformedRequestError,
    TargetNotFoundError,
    UnauthenticatedError,
)
from agentrun.runtime import CancellationToken, EventChannel, RunEvent, RunEventType, StepDriver
from agentrun.schemas import Identity, Lane, Run, RunStatus, TokenUsage

__all__ = [
    "AdmissionError",
    "CancellationToken",
    "EventChannel",
    "Identity",
    "InsufficientCreditsError",
    "Lane",
    "MalformedRequestError",
    "Run",
    "RunEvent",
    "RunEventType",
    "RunStatus",
    "RuntimeConfig",
    "ServerConfig",
    "StepDriver",
    "TargetNotFoundError",
    "TokenUsage",
    "UnauthenticatedError",
]
